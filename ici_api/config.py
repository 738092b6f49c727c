from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_INDEX_JSON_URL = "https://yy0x.github.io/InvestmentClimateIndex/index.json"

STRIPE_ENV = {
    "secret_key": "STRIPE_SECRET_KEY",
    "webhook_secret": "STRIPE_WEBHOOK_SECRET",
    "price_id": "STRIPE_PRICE_ID",
    "public_base_url": "PUBLIC_BASE_URL",
}


def _default_db_path() -> Path:
    return Path.cwd() / "data" / "ici_api.db"


class Settings(BaseSettings):
    """Deployment configuration, read from the environment and ``.env`` once at startup."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_price_id: str = ""
    public_base_url: str = ""
    mailer_url: str = ""
    telegram_bot_token: str = ""
    index_json_url: str = DEFAULT_INDEX_JSON_URL
    port: int = 8080
    db_path: Path = Field(default_factory=_default_db_path, validation_alias="ICI_DB_PATH")
    base_refresh_seconds: float = Field(default=300.0, validation_alias="ICI_BASE_REFRESH_SECONDS")
    market_refresh_seconds: float = Field(default=15.0, validation_alias="ICI_MARKET_REFRESH_SECONDS")
    upstream_timeout_seconds: float = Field(default=10.0, validation_alias="ICI_UPSTREAM_TIMEOUT_SECONDS")
    scheduler_enabled: bool = Field(default=True, validation_alias="ICI_ENABLE_SCHEDULER")
    cors_allow_origins: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["*"], validation_alias="ICI_CORS_ALLOW_ORIGINS"
    )
    log_level: str = Field(default="info", validation_alias="ICI_LOG_LEVEL")

    @field_validator("public_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("index_json_url")
    @classmethod
    def _index_url_or_default(cls, value: str) -> str:
        return value or DEFAULT_INDEX_JSON_URL

    @field_validator("db_path")
    @classmethod
    def _expand_db_path(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        # comma-separated in the environment
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @classmethod
    def from_env(cls, env_file: Optional[str] = ".env") -> "Settings":
        return cls(_env_file=env_file)

    def billing_readiness(self) -> Dict[str, object]:
        """Presence of billing configuration; never exposes the values."""
        env = {
            "secret_key": bool(self.stripe_secret_key),
            "webhook_secret": bool(self.stripe_webhook_secret),
            "price_id": bool(self.stripe_price_id),
            "public_base_url": bool(self.public_base_url),
            "mailer_url": bool(self.mailer_url),
        }
        return {
            "env": env,
            "ready_for_checkout": env["secret_key"] and env["price_id"] and env["public_base_url"],
            "ready_for_webhook": env["webhook_secret"],
        }


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "info").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
