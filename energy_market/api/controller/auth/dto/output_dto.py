"""
Output DTOs for authentication and user endpoints.
"""

from pydantic import BaseModel, Field

from energy_market.core.service.ledger.models import User


class NonceResponseDto(BaseModel):
    """DTO for nonce issuance."""

    nonce: str = Field(..., description="Single-use nonce to embed in the sign-in message")


class UserResponseDto(BaseModel):
    """DTO wrapping the signed-in (or looked-up) user."""

    user: User


class LogoutResponseDto(BaseModel):
    """DTO for logout response."""

    success: bool = Field(True, description="Logout success status")
    message: str = Field(default="Successfully logged out", description="Logout message")
