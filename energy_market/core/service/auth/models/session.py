import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field


def new_session_id() -> str:
    """Unguessable session identifier for the cookie"""
    return secrets.token_urlsafe(32)


class WebSession(BaseModel):
    """Server-side state behind a session cookie"""
    id: str = Field(default_factory=new_session_id)
    user_id: Optional[str] = None
    wallet_address: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime

    @classmethod
    def start(cls, ttl_seconds: int) -> "WebSession":
        return cls(expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds))

    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None and self.wallet_address is not None

    def ttl_seconds(self) -> int:
        return int((self.expires_at - datetime.now(timezone.utc)).total_seconds())
