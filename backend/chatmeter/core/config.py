"""Process-wide configuration loaded from the environment.

Values are read once (``get_settings`` is cached) and frozen; anything that
depends on them, such as the plan catalog and product bindings, is built from
the same snapshot at startup.
"""
import os
from dataclasses import dataclass, field
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _optional(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    """Immutable snapshot of the environment."""
    env: str = "development"
    database_url: str = "sqlite:///./chatmeter.db"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    cors_origins: tuple[str, ...] = field(default_factory=tuple)
    app_url: str = "http://localhost:3000"

    # Billing provider
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_product_pro: str | None = None
    stripe_product_unlimited: str | None = None

    # Plan quotas (calls per calendar month)
    plan_quota_free: int = 10
    plan_quota_pro: int = 100

    # Completion provider
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    chat_model: str = "gpt-4o-mini"
    chat_system_prompt: str = "You are a helpful assistant."

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"


def load_settings() -> Settings:
    """Build a Settings object from the current environment."""
    return Settings(
        env=os.environ.get("ENV", "development"),
        database_url=os.environ.get("DATABASE_URL", "sqlite:///./chatmeter.db"),
        db_pool_size=int(os.environ.get("DB_POOL_SIZE", "5")),
        db_max_overflow=int(os.environ.get("DB_MAX_OVERFLOW", "10")),
        cors_origins=_split_csv(os.environ.get("CORS_ORIGINS", "")),
        app_url=os.environ.get("APP_URL", "http://localhost:3000").rstrip("/"),
        stripe_secret_key=_optional("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_optional("STRIPE_WEBHOOK_SECRET"),
        stripe_product_pro=_optional("STRIPE_PRODUCT_PRO"),
        stripe_product_unlimited=_optional("STRIPE_PRODUCT_UNLIMITED"),
        plan_quota_free=int(os.environ.get("PLAN_QUOTA_FREE", "10")),
        plan_quota_pro=int(os.environ.get("PLAN_QUOTA_PRO", "100")),
        openai_api_key=_optional("OPENAI_API_KEY"),
        openai_base_url=_optional("OPENAI_BASE_URL"),
        chat_model=os.environ.get("CHAT_MODEL", "gpt-4o-mini"),
        chat_system_prompt=os.environ.get("CHAT_SYSTEM_PROMPT", "You are a helpful assistant."),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
