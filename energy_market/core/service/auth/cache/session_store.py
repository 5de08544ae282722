import json
from typing import Optional

from redis.asyncio import Redis

from energy_market.core.logger.logger import get_logger
from energy_market.core.service.auth.models.session import WebSession
from energy_market.infra.config.settings import get_settings

logger = get_logger(__name__)


class SessionStore:
    """Redis-based store for cookie sessions; Redis TTL enforces expiry"""

    def __init__(self, redis_client: Redis, ttl_seconds: Optional[int] = None):
        self.redis = redis_client
        self.session_key_prefix = "session:"
        self.ttl_seconds = ttl_seconds or get_settings().SESSION_TTL_SECONDS

    def _get_key(self, session_id: str) -> str:
        return f"{self.session_key_prefix}{session_id}"

    def _serialize_session(self, session: WebSession) -> str:
        return session.model_dump_json()

    def _deserialize_session(self, data: str) -> WebSession:
        return WebSession.model_validate(json.loads(data))

    async def _write(self, session: WebSession) -> None:
        ttl = session.ttl_seconds()
        if ttl <= 0:
            raise ValueError(f"Session {session.id[:8]} already expired")
        await self.redis.setex(self._get_key(session.id), ttl, self._serialize_session(session))

    async def create_session(self) -> WebSession:
        """Start a new anonymous session"""
        session = WebSession.start(self.ttl_seconds)
        await self._write(session)
        logger.debug("Session created", extra={"session_id": session.id[:8]})
        return session

    async def get_session(self, session_id: str) -> Optional[WebSession]:
        """Retrieve a live session by ID"""
        if not session_id:
            return None
        data = await self.redis.get(self._get_key(session_id))
        if not data:
            return None

        session = self._deserialize_session(data)
        if session.is_expired():
            await self.destroy_session(session_id)
            return None
        return session

    async def update_session(self, session: WebSession) -> None:
        """Persist changes to an existing session"""
        exists = await self.redis.exists(self._get_key(session.id))
        if not exists:
            raise ValueError(f"Session {session.id[:8]} not found")
        await self._write(session)

    async def regenerate_session(self, session_id: str) -> WebSession:
        """Replace a session with a fresh identifier; the old id stops working"""
        await self.destroy_session(session_id)
        session = WebSession.start(self.ttl_seconds)
        await self._write(session)
        logger.info(
            "Session regenerated",
            extra={"old_session_id": session_id[:8], "session_id": session.id[:8]}
        )
        return session

    async def destroy_session(self, session_id: str) -> None:
        await self.redis.delete(self._get_key(session_id))
