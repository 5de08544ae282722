from fastapi import APIRouter, Depends

from energy_market.api.controller.auth.dto.output_dto import UserResponseDto
from energy_market.api.utils.validators import RequestValidator
from energy_market.core.dependencies import MarketContainer, get_container, require_session
from energy_market.core.exceptions.handler import NotFoundError
from energy_market.core.service.auth.models.session import WebSession
from energy_market.infra.repository.user_repository import UserRepository

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/{wallet_address}", response_model=UserResponseDto)
async def get_user(
    wallet_address: str,
    session: WebSession = Depends(require_session),
    container: MarketContainer = Depends(get_container)
):
    """
    Look up a user by wallet, refreshing cached balances from the chain first.
    When the chain cannot be read the last known balances are returned.
    """
    wallet = RequestValidator.validate_wallet_address(wallet_address)
    await container.reconciler.refresh(wallet)

    async with container.database.session_factory() as db:
        user = await UserRepository(db).get_by_wallet(wallet)
    if user is None:
        raise NotFoundError("User not found")
    return UserResponseDto(user=user)
