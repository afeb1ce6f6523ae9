"""Billing routes: credit package catalog, checkout and purchase history.

Credits are granted by the Stripe webhook (``stripe_webhooks``), never
by these endpoints; the checkout route only creates a Stripe session
carrying the package metadata the webhook relies on.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from packverify.api.dependencies import get_current_user, get_db_session
from packverify.models.schemas import CheckoutRequest, CheckoutResponse, CreditPackage, PurchaseRead
from packverify.models.tables import Purchase, User
from packverify.services.payments import create_checkout_session, find_package, list_packages

router = APIRouter(prefix="/api", tags=["billing"])


@router.get("/packages", response_model=list[CreditPackage])
async def get_packages() -> list[CreditPackage]:
    return list_packages()


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    user: User = Depends(get_current_user),
) -> CheckoutResponse:
    package = find_package(body.package_id)
    if package is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid package")
    # Stripe SDK is synchronous
    session = await run_in_threadpool(create_checkout_session, user.uid, package, user.email)
    return CheckoutResponse(**session)


@router.get("/purchases", response_model=list[PurchaseRead])
async def get_purchases(
    limit: int = Query(50, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> list[PurchaseRead]:
    result = await db.execute(
        select(Purchase)
        .where(Purchase.user_id == user.uid)
        .order_by(Purchase.created_at.desc())
        .limit(limit)
    )
    return [PurchaseRead.model_validate(p) for p in result.scalars().all()]
