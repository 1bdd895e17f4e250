"""Process configuration, read from the environment once at startup."""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from typing import Optional

# keys shipped in the sample .env; treated as "not configured"
PLACEHOLDER_KEY_MARKER = "51234567890abcdef"


def _usable_key(value: Optional[str]) -> Optional[str]:
    if not value or PLACEHOLDER_KEY_MARKER in value:
        return None
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./unicorns.db"
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    gateway_backend: str = "stripe"  # 'stripe' | 'mock'
    stripe_secret_key: Optional[str] = None
    stripe_publishable_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    mock_secret: str = "supersecret"
    mock_webhook_url: str = "http://localhost:3000/webhook"
    webhook_tolerance_seconds: int = 300
    gateway_timeout_seconds: float = 10.0

    unicorn_price: int = 25  # minor currency units
    currency: str = "usd"
    pending_ttl_seconds: int = 3600

    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key and self.stripe_webhook_secret)

    @classmethod
    def from_env(cls, env=None) -> "Settings":
        env = os.environ if env is None else env
        gate = env.get("DB_GATE_LIMIT")
        return cls(
            database_url=env.get("DATABASE_URL", cls.database_url),
            db_pool_size=int(env.get("DB_POOL_SIZE", "10")),
            db_max_overflow=int(env.get("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(env.get("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=int(gate) if gate else None,
            gateway_backend=env.get("GATEWAY_BACKEND", "stripe").lower(),
            stripe_secret_key=_usable_key(env.get("STRIPE_SECRET_KEY")),
            stripe_publishable_key=_usable_key(
                env.get("STRIPE_PUBLISHABLE_KEY")
            ),
            stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET") or None,
            mock_secret=env.get("MOCK_SECRET", cls.mock_secret),
            mock_webhook_url=env.get("MOCK_WEBHOOK_URL",
                                     cls.mock_webhook_url),
            webhook_tolerance_seconds=int(
                env.get("WEBHOOK_TOLERANCE_SECONDS", "300")
            ),
            gateway_timeout_seconds=float(
                env.get("GATEWAY_TIMEOUT_SECONDS", "10")
            ),
            unicorn_price=int(env.get("UNICORN_PRICE") or 25),
            currency=env.get("CURRENCY", "usd"),
            pending_ttl_seconds=int(env.get("PENDING_TTL_SECONDS", "3600")),
            host=env.get("HOST", cls.host),
            port=int(env.get("PORT", "3000")),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
