"""Application configuration via Pydantic Settings."""

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


def _split_csv(value: str) -> frozenset[str]:
    return frozenset(item.strip() for item in value.split(",") if item.strip())


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./premarket_platform.db"

    # Auth / JWT
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Payment provider
    payment_provider_url: str = ""
    payment_provider_api_key: str = ""
    payment_webhook_secret: str = ""

    # Notifications
    sendgrid_api_key: str = ""
    notification_from_email: str = ""

    # Grant access
    grant_default_charge_amount: float = 0.0
    grant_currency: str = "USD"
    max_payment_attempts: int = 3
    webhook_timeout_ms: int = 5000
    timeout_sweep_interval_seconds: int = 30
    grant_access_ttl_days: Optional[int] = None
    allow_regrant_after_rejection: bool = False
    grant_promotional_free_agents: str = ""  # comma-separated agent ids
    grant_tier_amounts: dict[str, float] = Field(default_factory=dict)  # JSON, e.g. {"3BR": 90}

    # Admin alerts
    admin_user_ids: str = ""  # comma-separated; each gets an in-app notification
    admin_alert_email: str = ""

    # General
    debug: bool = True
    cors_origins: str = "http://localhost:3000"

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Comma-separated CORS origins as a list; any origin in debug mode."""
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def promotional_free_agent_ids(self) -> frozenset[str]:
        return _split_csv(self.grant_promotional_free_agents)

    @property
    def admin_user_id_list(self) -> list[str]:
        return sorted(_split_csv(self.admin_user_ids))


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()


@dataclass(frozen=True)
class GrantAccessConfig:
    """Pricing, retry and timeout knobs for the grant-access lifecycle.

    Passed explicitly into the pricing resolver, the lifecycle manager and the
    webhook reconciler so tests can inject their own values.
    """

    default_charge_amount: float = 0.0
    currency: str = "USD"
    max_payment_attempts: int = 3
    webhook_timeout_ms: int = 5000
    grant_ttl_days: Optional[int] = None
    allow_regrant_after_rejection: bool = False
    promotional_free_agents: frozenset[str] = field(default_factory=frozenset)
    tier_amounts: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> "GrantAccessConfig":
        return cls(
            default_charge_amount=settings.grant_default_charge_amount,
            currency=settings.grant_currency,
            max_payment_attempts=settings.max_payment_attempts,
            webhook_timeout_ms=settings.webhook_timeout_ms,
            grant_ttl_days=settings.grant_access_ttl_days,
            allow_regrant_after_rejection=settings.allow_regrant_after_rejection,
            promotional_free_agents=settings.promotional_free_agent_ids,
            tier_amounts=dict(settings.grant_tier_amounts),
        )


def get_grant_config() -> GrantAccessConfig:
    """FastAPI dependency: grant-access config derived from settings."""
    return GrantAccessConfig.from_settings(get_settings())
