from decimal import Decimal
from enum import Enum
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class SettlementMode(str, Enum):
    """How ledger operations reach the escrow contract"""
    LIVE = "live"
    SIMULATED = "simulated"


class Settings(BaseSettings):
    # App Settings
    APP_NAME: str = "EnergyMarket"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 5000

    # CORS
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:5000",  # Frontend development
        "http://localhost:3000",
    ]

    # Database Settings
    DATABASE_URL: Optional[str] = None  # Overrides the POSTGRES_* parts when set
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "energy_market"
    POSTGRES_MIN_POOL_SIZE: int = 5
    POSTGRES_MAX_POOL_SIZE: int = 20
    DB_LOGGING_ENABLED: bool = False

    # Redis Settings
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 10

    # Session Settings
    SESSION_COOKIE_NAME: str = "sid"
    SESSION_TTL_SECONDS: int = 24 * 60 * 60  # 24 hours
    SESSION_COOKIE_SECURE: bool = False
    SESSION_COOKIE_SAMESITE: str = "lax"

    # Sign-in Settings
    CHALLENGE_EXPIRY_SECONDS: int = 300  # 5 minutes
    CHAIN_ID: int = 11155111  # Sepolia
    SIWE_MAX_MESSAGE_AGE_SECONDS: Optional[int] = None  # Issued At is not checked when unset

    # Ledger Settings
    INITIAL_ENERGY_GRANT: Decimal = Decimal("1000")

    # Settlement Settings
    SETTLEMENT_MODE: SettlementMode = SettlementMode.SIMULATED
    RPC_URL: str = "https://eth-sepolia.g.alchemy.com/v2/demo"
    ADMIN_PRIVATE_KEY: Optional[str] = None
    ENERGY_TOKEN_ADDRESS: Optional[str] = None
    MARKETPLACE_ADDRESS: Optional[str] = None
    ENERGY_TOKEN_DECIMALS: int = 18
    SETTLEMENT_TIMEOUT_SECONDS: float = 60.0

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

@lru_cache()
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
