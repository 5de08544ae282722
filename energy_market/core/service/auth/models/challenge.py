from pydantic import BaseModel, ConfigDict, Field


class SignInMessage(BaseModel):
    """Structured form of a Sign-In with Ethereum message"""

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "domain": "localhost:5000",
            "address": "0x742d35Cc6634C0532925a3b844Bc454e4438f44e",
            "statement": "Sign in with Ethereum to EnergyMarket",
            "uri": "http://localhost:5000",
            "version": "1",
            "chain_id": 11155111,
            "nonce": "9f8e7d6c5b4a39281706f5e4d3c2b1a0",
            "issued_at": "2024-02-06T10:00:00.000Z"
        }
    })

    domain: str = Field(..., description="Host the wallet was asked to sign in to")
    address: str = Field(..., description="Address claimed by the message, as written")
    statement: str = Field("", description="Human readable statement")
    uri: str = Field(..., description="Origin of the requesting site")
    version: str = Field(..., description="Message format version")
    chain_id: int = Field(..., description="EIP-155 chain id")
    nonce: str = Field(..., description="Session challenge being answered")
    issued_at: str = Field(..., description="ISO-8601 timestamp as written by the client")


class ExpectedSignIn(BaseModel):
    """What the server requires a sign-in message to say"""
    domain: str
    uri: str
    chain_id: int
