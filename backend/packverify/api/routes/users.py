"""API routes for user accounts.

Users are created on first authentication with the default credit
quota and refreshed on later logins.  Administrators can raise a user's
``quota_total`` directly; this is the only path besides purchases that
changes it.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from packverify.api.dependencies import (
    get_current_uid,
    get_current_user,
    get_db_session,
    get_usage_ledger,
    require_admin,
)
from packverify.core.config import settings
from packverify.models.schemas import QuotaRead, QuotaTopUp, UserRead, UserUpsert
from packverify.models.tables import User
from packverify.services.usage_ledger import UsageLedger, quota_snapshot
from packverify.utils.helpers import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


@router.post("", response_model=UserRead)
async def create_or_update_user(
    user_in: UserUpsert,
    uid: str = Depends(get_current_uid),
    db: AsyncSession = Depends(get_db_session),
) -> UserRead:
    """Create the caller's account on first login, otherwise refresh its profile."""
    user = await db.get(User, uid, populate_existing=True)
    now = utcnow()
    if user:
        user.email = user_in.email
        user.display_name = user_in.display_name
        user.photo_url = user_in.photo_url
        user.last_login_at = now
    else:
        user = User(
            uid=uid,
            email=user_in.email,
            display_name=user_in.display_name,
            photo_url=user_in.photo_url,
            quota_total=settings.DEFAULT_USER_QUOTA,
            quota_used=0,
            is_admin=False,
            created_at=now,
            last_login_at=now,
        )
        db.add(user)
        logger.info("[users] created uid=%s quota=%s", uid, settings.DEFAULT_USER_QUOTA)
    await db.commit()
    await db.refresh(user)
    return UserRead.model_validate(user)


@router.get("/me", response_model=UserRead)
async def read_current_user(user: User = Depends(get_current_user)) -> UserRead:
    return UserRead.model_validate(user)


@router.post("/{uid}/quota", response_model=QuotaRead)
async def top_up_quota(
    uid: str,
    body: QuotaTopUp,
    admin: User = Depends(require_admin),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> QuotaRead:
    """Raise another user's ``quota_total`` (admins only)."""
    user = await ledger.top_up(uid, body.credits)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    logger.info("[users] admin=%s topped up uid=%s by %s", admin.uid, uid, body.credits)
    return quota_snapshot(user)
