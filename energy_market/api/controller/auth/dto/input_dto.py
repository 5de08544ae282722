"""
Input DTOs for authentication API endpoints.
"""

from pydantic import BaseModel, ConfigDict, Field


class VerifyRequestDto(BaseModel):
    """DTO for sign-in verification."""

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "message": (
                "localhost:5000 wants you to sign in with your Ethereum account:\n"
                "0x742d35Cc6634C0532925a3b844Bc454e4438f44e\n\n"
                "Sign in with Ethereum to EnergyMarket\n\n"
                "URI: http://localhost:5000\nVersion: 1\nChain ID: 11155111\n"
                "Nonce: 9f8e7d6c5b4a39281706f5e4d3c2b1a0\nIssued At: 2024-02-06T10:00:00.000Z"
            ),
            "signature": "0x..."
        }
    })

    message: str = Field("", description="Sign-in message exactly as the wallet signed it")
    signature: str = Field("", description="0x-prefixed personal_sign signature")
