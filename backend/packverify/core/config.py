"""Configuration management.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables; structured values (``MODEL_PRICING``, ``CREDIT_PACKAGES``)
accept JSON.

Nothing in here is mutated at runtime.  Billing code never reads the
pricing dictionaries directly; it receives an immutable
``PricingTable`` built from these values (see
``packverify.services.pricing``).
"""

from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

from packverify.models.enums import BillingMode
from packverify.models.schemas import CreditPackage, ModelRate

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  Files are
# loaded in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


# Base model prices in USD per million tokens, before markup.
DEFAULT_MODEL_PRICING: dict[str, ModelRate] = {
    # Primary gateway models
    "gemini-3-pro-preview": ModelRate(input="1.2", output="7.2"),
    "gpt-5.1": ModelRate(input="1.25", output="10"),
    # Backup gateway
    "gpt-5.2": ModelRate(input="1.75", output="14"),
    "gpt-5.1-zenmux": ModelRate(input="1.25", output="10"),
    "gemini-3-pro-preview-zenmux": ModelRate(input="2", output="12"),
    # Legacy
    "gpt-4o": ModelRate(input="2.5", output="10"),
    "gpt-4o-mini": ModelRate(input="0.15", output="0.6"),
    "gemini-2.0-flash-exp": ModelRate(input="0.1", output="0.4"),
}

DEFAULT_CREDIT_PACKAGES: list[CreditPackage] = [
    CreditPackage(id="credits_50", credits=50, price_minor_units=1990, display_name="50 credits"),
    CreditPackage(id="credits_200", credits=200, price_minor_units=5990, display_name="200 credits"),
    CreditPackage(id="credits_500", credits=500, price_minor_units=12990, display_name="500 credits"),
]


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    # API Settings
    PROJECT_NAME: str = "PackVerify Metering"
    ENVIRONMENT: str = Field(default="development")

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)
    # Dev DB fallback (fail fast by default)
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=False)

    # Billing
    BILLING_MODE: BillingMode = Field(default=BillingMode.TOKENS)
    # Credits granted per US cent of marked-up model cost
    CREDITS_PER_CENT: Decimal = Field(default=Decimal("1"))
    PRICING_MARKUP: Decimal = Field(default=Decimal("1.3"))
    MODEL_PRICING: dict[str, ModelRate] = Field(default_factory=lambda: dict(DEFAULT_MODEL_PRICING))
    # Unknown model identifiers are billed at this model's rates
    DEFAULT_PRICING_MODEL: str = Field(default="gpt-4o")
    DEFAULT_USER_QUOTA: int = Field(default=50)

    # Analysis
    ANALYSIS_TIMEOUT_SECONDS: float = Field(default=60.0)
    ANALYSIS_MAX_RETRIES: int = Field(default=1)
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    OPENAI_BASE_URL: Optional[str] = Field(default=None)
    VISION_MODEL: str = Field(default="gpt-4o")
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB

    # Auth
    # Trusted gateway supplies x-user-id.  Bypass only for local development.
    DEV_AUTH_BYPASS: bool = Field(default=False)

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:5173", "http://127.0.0.1:5173"],
    )
    # Frontend base URL used for Stripe redirects
    FRONTEND_BASE_URL: str = Field(default="http://localhost:5173")

    # Stripe
    STRIPE_API_KEY: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRETS: Optional[str] = Field(default=None)
    STRIPE_CURRENCY: str = Field(default="cny")
    STRIPE_PAYMENT_METHOD_TYPES: list[str] = Field(default=["card", "alipay"])
    CREDIT_PACKAGES: list[CreditPackage] = Field(default_factory=lambda: list(DEFAULT_CREDIT_PACKAGES))

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)


# Instantiate global settings
settings = Settings()


def get_webhook_secret_list() -> list[str]:
    """Return list of webhook secrets for signature verification.

    Precedence:
    1. STRIPE_WEBHOOK_SECRETS (comma separated, ordered)
    2. Fallback to singular STRIPE_WEBHOOK_SECRET if set
    """
    secrets: list[str] = []
    if settings.STRIPE_WEBHOOK_SECRETS:
        secrets.extend([s.strip() for s in settings.STRIPE_WEBHOOK_SECRETS.split(",") if s.strip()])
    elif settings.STRIPE_WEBHOOK_SECRET:
        secrets.append(settings.STRIPE_WEBHOOK_SECRET.strip())
    return secrets


def is_development() -> bool:
    return (settings.ENVIRONMENT or os.getenv("ENVIRONMENT") or "development").lower() == "development"
