"""Pydantic schemas for configuration values and API payloads.

Pydantic models validate and serialise data that crosses the boundary
of the API.  They are intentionally separate from the SQLAlchemy
models so that the shape exposed over HTTP can differ from what is
stored.  A few schemas (``ModelRate``, ``CreditPackage``) are also used
by ``packverify.core.config`` to type structured settings.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import BillingMode


# ---------------------------------------------------------------------------
# Configuration value types


class ModelRate(BaseModel):
    """USD price per million tokens for one model."""

    model_config = ConfigDict(frozen=True)

    input: Decimal = Field(ge=0)
    output: Decimal = Field(ge=0)


class CreditPackage(BaseModel):
    """Purchasable credit bundle from the static catalog."""

    model_config = ConfigDict(frozen=True)

    id: str
    credits: int = Field(gt=0)
    price_minor_units: int = Field(gt=0, description="Price in the smallest currency unit")
    display_name: str


# ---------------------------------------------------------------------------
# Metering


class TokenUsage(BaseModel):
    """Token counts reported by the vision provider for one call."""

    model: Optional[str] = None
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.prompt_tokens <= 0 and self.completion_tokens <= 0


class CostDetail(BaseModel):
    """Audit record stored with each usage event.  Never re-parsed for billing."""

    billing_mode: BillingMode
    model: Optional[str] = None
    pricing_model: Optional[str] = None
    pricing_fallback: bool = False
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    cost_usd: Optional[str] = None
    credits_per_cent: Optional[str] = None


class QuotaUseRequest(BaseModel):
    kind: str = Field(min_length=1, max_length=32)
    subject_label: str = Field(default="", max_length=512)
    requested_count: int = Field(default=1)
    token_usage: Optional[TokenUsage] = None

    @field_validator("kind", "subject_label", mode="before")
    def sanitize_fields(cls, v):
        from packverify.utils.sanitization import sanitize_string
        return sanitize_string(v) if v is not None else v


class QuotaRead(BaseModel):
    quota_total: int
    quota_used: int
    remaining: int


class UsageEventRead(BaseModel):
    id: str
    kind: str
    subject_label: str
    debited_credits: int
    created_at: datetime
    cost_detail: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class UsageHistoryResponse(BaseModel):
    events: List[UsageEventRead]
    next_before: Optional[datetime] = None
    next_before_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Users


class UserUpsert(BaseModel):
    email: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = None

    @field_validator("email", "display_name", mode="before")
    def sanitize_fields(cls, v):
        from packverify.utils.sanitization import sanitize_string
        return sanitize_string(v) if v is not None else v


class UserRead(BaseModel):
    uid: str
    email: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    quota_total: int
    quota_used: int
    is_admin: bool
    created_at: datetime
    last_login_at: datetime

    model_config = ConfigDict(from_attributes=True)


class QuotaTopUp(BaseModel):
    credits: int = Field(gt=0)


# ---------------------------------------------------------------------------
# Payments


class CheckoutRequest(BaseModel):
    package_id: str


class CheckoutResponse(BaseModel):
    url: str
    session_id: str


class PurchaseRead(BaseModel):
    id: str
    package_id: Optional[str] = None
    credits_granted: int
    amount_minor_units: Optional[int] = None
    provider_session_id: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Analysis


class AnalysisResponse(BaseModel):
    state: str
    attempts: int
    result: Any = None
    token_usage: Optional[TokenUsage] = None
    quota: Optional[QuotaRead] = None
