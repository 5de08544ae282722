"""
Sign-In with Ethereum endpoints backed by a cookie session.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from energy_market.api.controller.auth.dto.input_dto import VerifyRequestDto
from energy_market.api.controller.auth.dto.output_dto import LogoutResponseDto, NonceResponseDto, UserResponseDto
from energy_market.api.utils.session_cookie import clear_session_cookie, set_session_cookie
from energy_market.api.utils.validators import RequestValidator
from energy_market.core.dependencies import MarketContainer, get_container, get_current_user, get_session_id
from energy_market.core.logger.logger import get_logger
from energy_market.core.service.ledger.models import User

logger = get_logger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.get("/nonce", response_model=NonceResponseDto)
async def get_nonce(
    response: Response,
    session_id: Optional[str] = Depends(get_session_id),
    container: MarketContainer = Depends(get_container)
):
    """
    Issue a sign-in nonce bound to the caller's session.

    Starts an anonymous session (and sets its cookie) when the caller has none.
    Any earlier unused nonce for the session stops working.
    """
    nonce, session = await container.challenge_service.issue_nonce(session_id)
    set_session_cookie(response, session, container.settings)
    return NonceResponseDto(nonce=nonce)


@router.post("/verify", response_model=UserResponseDto)
async def verify_signature(
    body: VerifyRequestDto,
    request: Request,
    response: Response,
    session_id: Optional[str] = Depends(get_session_id),
    container: MarketContainer = Depends(get_container)
):
    """
    Verify a signed sign-in message and log the wallet in.

    The message must name this server's host and origin, the configured chain
    and the session's live nonce. Every attempt consumes the nonce. On success
    the session id is rotated and the new cookie returned.
    """
    domain, uri = RequestValidator.expected_origin(request)
    user, session = await container.challenge_service.sign_in(
        session_id=session_id,
        raw_message=body.message,
        signature=body.signature,
        domain=domain,
        uri=uri
    )
    set_session_cookie(response, session, container.settings)
    return UserResponseDto(user=user)


@router.get("/me", response_model=UserResponseDto)
async def get_me(user: User = Depends(get_current_user)):
    """Return the signed-in user"""
    return UserResponseDto(user=user)


@router.post("/logout", response_model=LogoutResponseDto)
async def logout(
    response: Response,
    session_id: Optional[str] = Depends(get_session_id),
    container: MarketContainer = Depends(get_container)
):
    """Destroy the session server-side and clear its cookie"""
    await container.binder.logout(session_id)
    clear_session_cookie(response, container.settings)
    return LogoutResponseDto()
