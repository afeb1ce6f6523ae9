"""Quota routes: checked debits and usage history."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from packverify.api.dependencies import get_current_uid, get_usage_ledger
from packverify.api.error_handlers import debit_error
from packverify.models.schemas import (
    QuotaRead,
    QuotaUseRequest,
    UsageEventRead,
    UsageHistoryResponse,
)
from packverify.services.usage_ledger import HISTORY_MAX_LIMIT, UsageLedger, quota_snapshot
from packverify.utils.helpers import parse_iso_datetime

router = APIRouter(prefix="/api/quota", tags=["quota"])


@router.get("", response_model=QuotaRead)
async def read_quota(
    uid: str = Depends(get_current_uid),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> QuotaRead:
    balance = await ledger.balance(uid)
    if balance is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return balance


@router.post("/use", response_model=QuotaRead)
async def use_quota(
    body: QuotaUseRequest,
    uid: str = Depends(get_current_uid),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> QuotaRead:
    """Debit the caller for one completed action."""
    result = await ledger.checked_debit(
        uid,
        requested_count=body.requested_count,
        token_usage=body.token_usage,
        kind=body.kind,
        subject_label=body.subject_label,
    )
    if not result.ok:
        raise debit_error(result.status, result.user, result.debit)
    return quota_snapshot(result.user)


@router.get("/history", response_model=UsageHistoryResponse)
async def quota_history(
    limit: int = Query(HISTORY_MAX_LIMIT, ge=1, le=HISTORY_MAX_LIMIT),
    before: Optional[str] = Query(None, description="ISO timestamp; return events strictly older"),
    before_id: Optional[str] = Query(None, description="id of the last event seen; pairs with 'before'"),
    uid: str = Depends(get_current_uid),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> UsageHistoryResponse:
    cursor = None
    if before:
        cursor = parse_iso_datetime(before)
        if cursor is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid 'before' timestamp")
    events = await ledger.history(uid, limit=limit, before=cursor, before_id=before_id)
    page_full = len(events) == limit
    return UsageHistoryResponse(
        events=[UsageEventRead.model_validate(e) for e in events],
        next_before=events[-1].created_at if page_full else None,
        next_before_id=events[-1].id if page_full else None,
    )
