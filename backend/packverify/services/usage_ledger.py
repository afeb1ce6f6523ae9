"""Usage ledger: quota counters and the append-only usage history.

The ledger is the only code that writes ``User.quota_used``.  A debit
is a single conditional update::

    UPDATE users SET quota_used = quota_used + :debit
     WHERE uid = :uid AND quota_used + :debit <= quota_total

followed by the usage-event insert, both committed in one transaction.
Two concurrent debits for the same user therefore cannot both pass the
quota comparison: the database re-evaluates the ``WHERE`` clause against
the committed counter and the loser affects zero rows, which is
reported as ``QUOTA_EXCEEDED``.  Nothing is cached between calls; every
read goes to the database.

Callers debit only after the billed work has completed (see
``packverify.services.analysis``); there is no reserve/commit step.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from packverify.core.observability import sentry_metric_inc
from packverify.models.enums import BillingMode, DebitStatus
from packverify.models.schemas import QuotaRead, TokenUsage
from packverify.models.tables import UsageEvent, User
from packverify.services.credits import quote
from packverify.services.pricing import PricingTable
from packverify.utils.sanitization import sanitize_string

logger = logging.getLogger(__name__)

HISTORY_MAX_LIMIT = 100


@dataclass(frozen=True)
class DebitResult:
    status: DebitStatus
    user: Optional[User] = None
    event: Optional[UsageEvent] = None
    debit: int = 0

    @property
    def ok(self) -> bool:
        return self.status is DebitStatus.OK


def quota_snapshot(user: User) -> QuotaRead:
    return QuotaRead(
        quota_total=user.quota_total,
        quota_used=user.quota_used,
        remaining=max(0, user.quota_total - user.quota_used),
    )


class UsageLedger:
    """Checked debits, balance reads and usage history for one session."""

    def __init__(
        self,
        db: AsyncSession,
        pricing: PricingTable,
        billing_mode: BillingMode = BillingMode.TOKENS,
        credits_per_cent: Decimal = Decimal("1"),
    ):
        self.db = db
        self.pricing = pricing
        self.billing_mode = BillingMode(billing_mode)
        self.credits_per_cent = Decimal(str(credits_per_cent))

    async def get_user(self, uid: str) -> Optional[User]:
        # populate_existing forces a fresh row even if the session already holds one
        return await self.db.get(User, uid, populate_existing=True)

    async def balance(self, uid: str) -> Optional[QuotaRead]:
        """Snapshot of the user's counters; the read transaction is ended before returning.

        Callers such as the analysis orchestrator keep the session open
        across a slow provider call, so the connection must not stay idle
        in transaction.
        """
        user = await self.get_user(uid)
        snapshot = quota_snapshot(user) if user else None
        await self.db.commit()
        return snapshot

    async def checked_debit(
        self,
        uid: str,
        requested_count: int = 1,
        token_usage: Optional[TokenUsage] = None,
        kind: str = "analyze",
        subject_label: str = "",
    ) -> DebitResult:
        """Debit the user's quota for one completed action.

        Returns ``QUOTA_EXCEEDED`` or ``USER_NOT_FOUND`` without writing
        anything.  Storage errors propagate after the transaction is
        rolled back.
        """
        user = await self.get_user(uid)
        if user is None:
            logger.info("[ledger] debit refused uid=%s reason=user_not_found", uid)
            return DebitResult(status=DebitStatus.USER_NOT_FOUND)

        q = quote(token_usage, self.billing_mode, self.credits_per_cent, self.pricing, requested_count)
        debit = q.credits

        if user.quota_used + debit > user.quota_total:
            return self._quota_exceeded(user, debit)

        try:
            result = await self.db.execute(
                update(User)
                .where(User.uid == uid, User.quota_used + debit <= User.quota_total)
                .values(quota_used=User.quota_used + debit)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Counter moved between the read and the update
                await self.db.rollback()
                user = await self.get_user(uid)
                if user is None:
                    return DebitResult(status=DebitStatus.USER_NOT_FOUND)
                return self._quota_exceeded(user, debit)

            event = UsageEvent(
                user_id=uid,
                kind=sanitize_string(kind, max_length=32) or "analyze",
                subject_label=sanitize_string(subject_label, max_length=512) or "",
                debited_credits=debit,
                cost_detail=q.cost_detail.model_dump(mode="json", exclude_none=True),
            )
            self.db.add(event)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("[ledger] debit write failed uid=%s debit=%s", uid, debit)
            raise

        await self.db.refresh(user)
        logger.info(
            "[ledger] debit uid=%s kind=%s debit=%s used=%s/%s mode=%s",
            uid, event.kind, debit, user.quota_used, user.quota_total, self.billing_mode.value,
        )
        sentry_metric_inc("ledger.debit", value=debit, tags={"kind": event.kind, "mode": self.billing_mode.value})
        return DebitResult(status=DebitStatus.OK, user=user, event=event, debit=debit)

    def _quota_exceeded(self, user: User, debit: int) -> DebitResult:
        logger.info(
            "[ledger] debit refused uid=%s reason=quota_exceeded debit=%s used=%s/%s",
            user.uid, debit, user.quota_used, user.quota_total,
        )
        sentry_metric_inc("ledger.quota_exceeded")
        return DebitResult(status=DebitStatus.QUOTA_EXCEEDED, user=user, debit=debit)

    async def history(
        self,
        uid: str,
        limit: int = HISTORY_MAX_LIMIT,
        before: Optional[dt.datetime] = None,
        before_id: Optional[str] = None,
    ) -> List[UsageEvent]:
        """Usage events newest first, ordered by ``(created_at, id)``.

        ``before`` alone is an exclusive timestamp cursor.  Passing the
        last event's ``id`` as ``before_id`` as well resumes exactly after
        that event, so events sharing its timestamp are not skipped.
        """
        limit = max(1, min(int(limit), HISTORY_MAX_LIMIT))
        stmt = select(UsageEvent).where(UsageEvent.user_id == uid)
        if before is not None and before_id:
            stmt = stmt.where(
                or_(
                    UsageEvent.created_at < before,
                    and_(UsageEvent.created_at == before, UsageEvent.id < before_id),
                )
            )
        elif before is not None:
            stmt = stmt.where(UsageEvent.created_at < before)
        stmt = stmt.order_by(UsageEvent.created_at.desc(), UsageEvent.id.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def top_up(self, uid: str, credits: int) -> Optional[User]:
        """Administrative raise of ``quota_total``; returns None for unknown users."""
        if credits <= 0:
            raise ValueError("credits must be positive")
        try:
            result = await self.db.execute(
                update(User)
                .where(User.uid == uid)
                .values(quota_total=User.quota_total + credits)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                return None
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info("[ledger] admin top-up uid=%s credits=%s", uid, credits)
        return await self.get_user(uid)


__all__ = ["UsageLedger", "DebitResult", "quota_snapshot", "HISTORY_MAX_LIMIT"]
