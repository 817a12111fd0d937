"""Pydantic BaseSettings — wallet, network and service configuration."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration loaded from env / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ─────────────────────────────────────────────
    APP_ENV: Literal["dev", "prod"] = "dev"
    APP_NAME: str = "oneinch-limit-orders"
    LOG_LEVEL: str = "INFO"

    # ── Chain / RPC ─────────────────────────────────────────────
    CHAIN_ID: int = 1
    RPC_URL: str = "https://eth.llamarpc.com"
    # Comma-separated list, tried after RPC_URL
    RPC_FALLBACK_URLS: str = ""
    RPC_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    TX_CONFIRMATION_TIMEOUT_SECONDS: float = Field(default=120.0, gt=0)

    # ── 1inch ───────────────────────────────────────────────────
    ONEINCH_API_KEY: str = ""
    ORDERBOOK_BASE_URL: str = "https://api.1inch.dev/orderbook/v4.0"
    ROUTER_ADDRESS: str = "0x111111125421ca6dc452d289314280a0f8842a65"
    HTTP_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    HTTP_MAX_RETRIES: int = Field(default=3, ge=1)
    RATE_LIMIT_RPS: float = Field(default=1.0, gt=0)

    # ── Orders ──────────────────────────────────────────────────
    DEFAULT_EXPIRATION_MINUTES: int = Field(default=60, gt=0)
    AUTO_APPROVE: bool = False
    APPROVE_UNLIMITED: bool = False

    # ── Credentials (never commit real values) ──────────────────
    PRIVATE_KEY: str = ""

    # ── HTTP service ────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 3001

    def rpc_endpoints(self) -> list[str]:
        """Primary RPC URL followed by any fallbacks, deduplicated."""
        urls = [self.RPC_URL]
        for url in self.RPC_FALLBACK_URLS.split(","):
            url = url.strip()
            if url and url not in urls:
                urls.append(url)
        return urls


settings = Settings()
