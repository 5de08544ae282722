import binascii
from datetime import datetime, timedelta, timezone
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct, SignableMessage
from hexbytes import HexBytes

from energy_market.core.exceptions.handler import AuthError, ServiceErrorCode
from energy_market.core.logger.logger import get_logger
from energy_market.core.service.auth.cache.challenge_store import ChallengeStore
from energy_market.core.service.auth.models.challenge import ExpectedSignIn, SignInMessage
from energy_market.core.service.auth.utils.address import normalize_address

logger = get_logger(__name__)

# Allowed clock skew for Issued At in the future
_FUTURE_SKEW = timedelta(seconds=60)


def recover_signer(message: str, signature: str) -> Optional[str]:
    """
    Recover the address that produced an EIP-191 personal-message signature.

    Returns None when the signature is not decodable or not recoverable.
    """
    try:
        if isinstance(signature, str):
            signature = HexBytes(signature if signature.startswith("0x") else "0x" + signature)
        else:
            signature = HexBytes(signature)
    except (ValueError, TypeError, binascii.Error):
        return None

    signable_message: SignableMessage = encode_defunct(text=message)
    try:
        return Account.recover_message(signable_message, signature=signature)
    except Exception as e:
        logger.debug("Signature recovery failed", extra={"error": str(e)})
        return None


class SignatureVerifier:
    """
    Verifies a parsed sign-in message and its signature against what the
    server expects for this request and session.

    The session's challenge is consumed before any check runs, so every
    attempt (successful or not) needs a fresh nonce.
    """

    def __init__(self, challenge_store: ChallengeStore, max_message_age_seconds: Optional[int] = None):
        self.challenge_store = challenge_store
        self.max_message_age_seconds = max_message_age_seconds

    async def verify(
        self,
        message: SignInMessage,
        raw_message: str,
        signature: str,
        expected: ExpectedSignIn,
        session_id: str
    ) -> str:
        """
        Run every check in order and return the canonical wallet address.

        Raises:
            AuthError: code names the first failed check
        """
        nonce_ok = await self.challenge_store.consume(session_id, message.nonce)

        if message.domain != expected.domain:
            self._reject(ServiceErrorCode.DOMAIN_MISMATCH, "Invalid domain in SIWE message", message,
                         expected=expected.domain, actual=message.domain)

        if message.uri != expected.uri:
            self._reject(ServiceErrorCode.URI_MISMATCH, "Invalid URI in SIWE message", message,
                         expected=expected.uri, actual=message.uri)

        if message.chain_id != expected.chain_id:
            self._reject(ServiceErrorCode.CHAIN_MISMATCH,
                         f"Invalid chain ID, must be {expected.chain_id}", message,
                         expected=expected.chain_id, actual=message.chain_id)

        if not nonce_ok:
            self._reject(ServiceErrorCode.NONCE_MISMATCH, "Invalid nonce", message)

        if self.max_message_age_seconds is not None:
            self._check_issued_at(message)

        recovered = recover_signer(raw_message, signature)
        if recovered is None or normalize_address(recovered) != normalize_address(message.address):
            self._reject(ServiceErrorCode.SIGNATURE_INVALID, "Invalid signature", message,
                         recovered_address=recovered)

        wallet_address = normalize_address(message.address)
        logger.info("Sign-in message verified", extra={"wallet_address": wallet_address})
        return wallet_address

    def _check_issued_at(self, message: SignInMessage) -> None:
        try:
            issued_at = datetime.fromisoformat(message.issued_at.replace("Z", "+00:00"))
        except ValueError:
            self._reject(ServiceErrorCode.MESSAGE_EXPIRED, "Issued At is not a valid timestamp", message)
        if issued_at.tzinfo is None:
            issued_at = issued_at.replace(tzinfo=timezone.utc)

        now = datetime.now(timezone.utc)
        if issued_at > now + _FUTURE_SKEW or now - issued_at > timedelta(seconds=self.max_message_age_seconds):
            self._reject(ServiceErrorCode.MESSAGE_EXPIRED, "Sign-in message is too old", message,
                         issued_at=message.issued_at)

    @staticmethod
    def _reject(code: str, public_message: str, message: SignInMessage, **context) -> None:
        logger.warning(
            f"Sign-in rejected: {code}",
            extra={"claimed_address": message.address, **{k: str(v) for k, v in context.items()}}
        )
        raise AuthError(code, public_message, context=context)
