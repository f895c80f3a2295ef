# paygate/core/config.py
import re
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from dotenv import load_dotenv

from paygate.x402.pricing import to_smallest_unit

# Load .env file if it exists
load_dotenv()

ADDRESS_PATTERN = re.compile(r"0x[0-9a-fA-F]{40}")


class Settings(BaseSettings):
    PROJECT_NAME: str = "MicroGate Payment Gateway"
    API_PREFIX: str = "/api"

    # Payment terms
    X402_PAY_TO_ADDRESS: Optional[str] = None
    X402_MIN_PAYMENT: Decimal = Decimal("0.0001")  # in whole units of X402_ASSET
    X402_ASSET: str = "ETH"
    X402_ASSET_DECIMALS: int = 18
    X402_CHAIN_ID: int = 84532
    X402_NETWORK: str = "Base Sepolia"
    X402_MIN_CONFIRMATIONS: int = 1  # Production: increase to 3+
    X402_PAYMENT_HEADER: str = "X-Payment-Hash"

    # Ledger access
    BASE_RPC_URL: AnyHttpUrl = "https://sepolia.base.org"
    X402_RPC_TIMEOUT_SECONDS: float = 10.0
    X402_RPC_MAX_ATTEMPTS: int = 3
    X402_RPC_BACKOFF_SECONDS: float = 0.5

    # Storage and logging
    X402_REPLAY_DB_URL: str = "sqlite:///./paygate.db"
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    # Abuse protection
    X402_RATE_LIMIT_PER_IP: int = 5
    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env


@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()


def is_valid_address(address: Optional[str]) -> bool:
    """Check that a string looks like a 20-byte hex account address."""
    return bool(address) and ADDRESS_PATTERN.fullmatch(address) is not None


@dataclass(frozen=True)
class GateConfig:
    """
    Payment terms for the gateway, fixed for the lifetime of the process.

    Built once at startup and handed to the verifier and middleware so no
    request path reads the environment.
    """
    recipient_address: str
    required_amount: int
    chain_id: int
    network: str
    asset: str = "ETH"
    asset_decimals: int = 18
    min_confirmations: int = 1
    payment_header: str = "X-Payment-Hash"

    def __post_init__(self):
        if not is_valid_address(self.recipient_address):
            raise ValueError(f"Invalid recipient address: {self.recipient_address!r}")
        if self.required_amount < 0:
            raise ValueError("required_amount must not be negative")
        if self.min_confirmations < 0:
            raise ValueError("min_confirmations must not be negative")

    @classmethod
    def from_settings(cls, source: Optional[Settings] = None) -> "GateConfig":
        """
        Build the gateway configuration from environment settings.

        Raises:
            ValueError: If X402_PAY_TO_ADDRESS is missing or malformed, or the
                minimum payment cannot be expressed in the asset's smallest unit
        """
        source = source or settings
        if not source.X402_PAY_TO_ADDRESS:
            raise ValueError("X402_PAY_TO_ADDRESS is not configured")

        return cls(
            recipient_address=source.X402_PAY_TO_ADDRESS,
            required_amount=to_smallest_unit(source.X402_MIN_PAYMENT, source.X402_ASSET_DECIMALS),
            chain_id=source.X402_CHAIN_ID,
            network=source.X402_NETWORK,
            asset=source.X402_ASSET,
            asset_decimals=source.X402_ASSET_DECIMALS,
            min_confirmations=source.X402_MIN_CONFIRMATIONS,
            payment_header=source.X402_PAYMENT_HEADER,
        )
