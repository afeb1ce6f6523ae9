"""Common dependencies for FastAPI routes.

Authentication is handled upstream: the gateway verifies the session
and forwards the account id in ``x-user-id``.  This module turns that
into the current user and wires the billing services (ledger, payment
reconciler, orchestrator) with their configuration so route handlers
remain thin and tests can override any piece via
``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from packverify.core.config import settings, get_webhook_secret_list
from packverify.core.database import get_db
from packverify.models.tables import User
from packverify.services.analysis import AnalysisOrchestrator
from packverify.services.payments import PaymentReconciler
from packverify.services.pricing import PricingTable
from packverify.services.usage_ledger import UsageLedger
from packverify.services.vision import OpenAIVisionService, VisionAnalyzer

logger = logging.getLogger(__name__)

DEV_USER_ID = "dev_user"


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Alias for `get_db` to be imported in routers."""
    async for session in get_db():
        yield session


# -----------------------------------------------------------------------------
# Authentication helpers

def get_current_uid(request: Request) -> str:
    """Return the authenticated account id supplied by the gateway."""
    if settings.DEV_AUTH_BYPASS:
        return request.headers.get("x-user-id") or DEV_USER_ID
    uid = (request.headers.get("x-user-id") or "").strip()
    if not uid:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthenticated")
    return uid


async def get_current_user(
    uid: str = Depends(get_current_uid),
    db: AsyncSession = Depends(get_db_session),
) -> User:
    user = await db.get(User, uid, populate_existing=True)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Requires admin role")
    return user


# -----------------------------------------------------------------------------
# Billing services

@lru_cache(maxsize=1)
def get_pricing_table() -> PricingTable:
    return PricingTable.from_settings(settings)


async def get_usage_ledger(
    db: AsyncSession = Depends(get_db_session),
    pricing: PricingTable = Depends(get_pricing_table),
) -> UsageLedger:
    return UsageLedger(
        db,
        pricing=pricing,
        billing_mode=settings.BILLING_MODE,
        credits_per_cent=settings.CREDITS_PER_CENT,
    )


async def get_payment_reconciler(db: AsyncSession = Depends(get_db_session)) -> PaymentReconciler:
    return PaymentReconciler(db, get_webhook_secret_list())


def get_vision_service() -> VisionAnalyzer:
    return OpenAIVisionService()


async def get_analysis_orchestrator(
    ledger: UsageLedger = Depends(get_usage_ledger),
    vision: VisionAnalyzer = Depends(get_vision_service),
) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(
        ledger,
        vision,
        timeout_seconds=settings.ANALYSIS_TIMEOUT_SECONDS,
        max_retries=settings.ANALYSIS_MAX_RETRIES,
    )
