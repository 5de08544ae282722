from typing import Optional, Tuple

from energy_market.core.exceptions.handler import AuthError, MessageParseError, ServiceErrorCode, ValidationError
from energy_market.core.logger.logger import logger
from energy_market.core.service.auth import siwe_message
from energy_market.core.service.auth.cache.challenge_store import ChallengeStore
from energy_market.core.service.auth.models.challenge import ExpectedSignIn
from energy_market.core.service.auth.models.session import WebSession
from energy_market.core.service.auth.session_service import SessionBinder
from energy_market.core.service.auth.signature_verification import SignatureVerifier
from energy_market.core.service.ledger.models import User


class ChallengeService:
    """Nonce issuance and the sign-in exchange built on it"""

    def __init__(
        self,
        challenge_store: ChallengeStore,
        verifier: SignatureVerifier,
        binder: SessionBinder,
        chain_id: int
    ):
        self.store = challenge_store
        self.verifier = verifier
        self.binder = binder
        self.chain_id = chain_id

    async def issue_nonce(self, session_id: Optional[str]) -> Tuple[str, WebSession]:
        """Issue a nonce bound to the caller's session, starting one if needed"""
        session = await self.binder.ensure_session(session_id)
        nonce = await self.store.issue(session.id)
        logger.info("Sign-in nonce issued", extra={"session_id": session.id[:8]})
        return nonce, session

    async def sign_in(
        self,
        session_id: Optional[str],
        raw_message: str,
        signature: str,
        domain: str,
        uri: str
    ) -> Tuple[User, WebSession]:
        """
        Parse and verify a signed message, then bind the wallet to a new session.

        Raises:
            ValidationError: missing input or malformed message
            AuthError: no nonce for this session, or a failed verification check
        """
        session = await self.binder.session_store.get_session(session_id) if session_id else None
        if session is None or not await self.store.has_challenge(session.id):
            raise AuthError(ServiceErrorCode.NONCE_NOT_ISSUED, "No nonce found. Request a nonce first.")

        if not raw_message or not signature:
            await self.store.revoke(session.id)
            raise ValidationError("Message and signature are required", code=ServiceErrorCode.MISSING_FIELD)

        try:
            message = siwe_message.parse(raw_message)
        except MessageParseError:
            await self.store.revoke(session.id)
            raise

        expected = ExpectedSignIn(domain=domain, uri=uri, chain_id=self.chain_id)
        wallet_address = await self.verifier.verify(message, raw_message, signature, expected, session.id)
        return await self.binder.bind(session, wallet_address)
