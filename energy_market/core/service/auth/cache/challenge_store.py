import secrets
from typing import Optional

import redis.asyncio as redis

from energy_market.core.logger.logger import get_logger
from energy_market.infra.config.settings import get_settings

logger = get_logger(__name__)


class ChallengeStore:
    """
    Redis store for sign-in challenges.
    At most one live nonce per session; a nonce is consumed by its first
    verification attempt whatever the outcome.
    """

    NONCE_BYTES = 16  # 128 bits, hex keeps it alphanumeric as SIWE requires

    def __init__(self, redis_client: redis.Redis, expiry_seconds: Optional[int] = None):
        self.redis = redis_client
        self.key_prefix = "auth:challenge:"
        self.expiry_seconds = expiry_seconds or get_settings().CHALLENGE_EXPIRY_SECONDS

    def _get_key(self, session_id: str) -> str:
        """Get Redis key for a session"""
        return f"{self.key_prefix}{session_id}"

    def _generate_nonce(self) -> str:
        return secrets.token_hex(self.NONCE_BYTES)

    async def issue(self, session_id: str) -> str:
        """Issue a fresh nonce for the session, replacing any unconsumed one"""
        nonce = self._generate_nonce()
        await self.redis.setex(self._get_key(session_id), self.expiry_seconds, nonce)
        logger.debug("Issued sign-in challenge", extra={"session_id": session_id[:8]})
        return nonce

    async def consume(self, session_id: str, supplied_nonce: Optional[str]) -> bool:
        """Remove the session's nonce and report whether it matched"""
        stored = await self.redis.getdel(self._get_key(session_id))
        if stored is None:
            logger.warning("No live challenge for session", extra={"session_id": session_id[:8]})
            return False

        matched = bool(supplied_nonce) and secrets.compare_digest(
            stored.encode("utf-8"), supplied_nonce.encode("utf-8")
        )
        if not matched:
            logger.warning("Challenge nonce mismatch", extra={"session_id": session_id[:8]})
        return matched

    async def has_challenge(self, session_id: str) -> bool:
        return bool(await self.redis.exists(self._get_key(session_id)))

    async def revoke(self, session_id: str) -> None:
        """Burn the session's challenge without checking it"""
        await self.redis.delete(self._get_key(session_id))
