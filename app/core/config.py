# app/core/config.py
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from typing import Optional
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "Invite Markets API"
    API_V1_STR: str = "/api/v1"

    DATABASE_URL: str = "sqlite+aiosqlite:///./invite_markets.db"

    # Network selection: Base Sepolia (84532) when true, Base mainnet (8453) otherwise
    IS_TESTNET: bool = True
    BASE_RPC_URL: AnyHttpUrl = "https://mainnet.base.org"
    BASE_SEPOLIA_RPC_URL: AnyHttpUrl = "https://sepolia.base.org"
    RPC_TIMEOUT_SECONDS: float = 10.0

    # x402 facilitator
    X402_FACILITATOR_URL: AnyHttpUrl = "https://x402.org/facilitator"
    X402_FACILITATOR_API_KEY: Optional[str] = None
    X402_FACILITATOR_TIMEOUT_SECONDS: float = 30.0
    X402_MAX_TIMEOUT_SECONDS: int = 300
    # how long an unsettled or ambiguous purchase holds its unit of inventory
    X402_RESERVATION_TTL_SECONDS: int = 300
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    # Freeform signed message windows (milliseconds)
    SIGNATURE_MAX_AGE_MS: int = 300_000
    SIGNATURE_CLOCK_SKEW_MS: int = 30_000

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
