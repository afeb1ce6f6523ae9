"""Analysis orchestration: timeout, single retry and debit-on-success.

One unit of work moves through an explicit state machine::

    IDLE --start--> RUNNING --completed--> SUCCEEDED
                       |  \\--error-----> FAILED
                       \\--timeout--> TIMED_OUT --retry--> RUNNING

Each attempt of the vision call runs under a wall-clock timeout.  A
timed-out attempt is cancelled, so a late completion can never be
applied, and is retried ``max_retries`` times (one by default); a
second timeout leaves the work in ``TIMED_OUT``.  Non-timeout errors go
straight to ``FAILED`` and are not retried.

Quota is debited only from ``SUCCEEDED``, using the token usage of the
attempt that succeeded.  The quota check before the call is a courtesy
that avoids paying for work the user cannot afford; the binding check
is the ledger's conditional debit afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

from packverify.core.observability import sentry_breadcrumb, sentry_metric_inc
from packverify.models.enums import AnalysisEvent, AnalysisState, DebitStatus
from packverify.models.schemas import QuotaRead, TokenUsage
from packverify.services.usage_ledger import DebitResult
from packverify.services.vision import VisionAnalyzer, VisionResult

logger = logging.getLogger(__name__)


TRANSITIONS: Dict[Tuple[AnalysisState, AnalysisEvent], AnalysisState] = {
    (AnalysisState.IDLE, AnalysisEvent.START): AnalysisState.RUNNING,
    (AnalysisState.RUNNING, AnalysisEvent.COMPLETED): AnalysisState.SUCCEEDED,
    (AnalysisState.RUNNING, AnalysisEvent.TIMEOUT): AnalysisState.TIMED_OUT,
    (AnalysisState.RUNNING, AnalysisEvent.ERROR): AnalysisState.FAILED,
    (AnalysisState.TIMED_OUT, AnalysisEvent.RETRY): AnalysisState.RUNNING,
}


class InvalidTransition(ValueError):
    def __init__(self, state: AnalysisState, event: AnalysisEvent):
        super().__init__(f"no transition from {state.value} on {event.value}")
        self.state = state
        self.event = event


def transition(state: AnalysisState, event: AnalysisEvent) -> AnalysisState:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(state, event) from None


class Ledger(Protocol):
    async def balance(self, uid: str) -> Optional[QuotaRead]:
        ...

    async def checked_debit(
        self,
        uid: str,
        requested_count: int = 1,
        token_usage: Optional[TokenUsage] = None,
        kind: str = "analyze",
        subject_label: str = "",
    ) -> DebitResult:
        ...


@dataclass
class AnalysisOutcome:
    state: AnalysisState
    attempts: int = 0
    result: Optional[VisionResult] = None
    debit: Optional[DebitResult] = None
    # Set when the request was refused before the vision call was made
    refused: Optional[DebitStatus] = None
    error: Optional[str] = None

    @property
    def billed(self) -> bool:
        return self.debit is not None and self.debit.ok


class AnalysisOrchestrator:
    """Runs one vision call with a bounded timeout and bills it on success."""

    def __init__(
        self,
        ledger: Ledger,
        vision: VisionAnalyzer,
        timeout_seconds: float = 60.0,
        max_retries: int = 1,
    ):
        self.ledger = ledger
        self.vision = vision
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, int(max_retries))

    async def _attempt(self, image: bytes, prompt: str) -> Tuple[AnalysisEvent, Optional[VisionResult], Optional[str]]:
        task = asyncio.ensure_future(self.vision.invoke_vision_analysis(image, prompt))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.timeout_seconds)
        finally:
            if not task.done():
                task.cancel()
        if task not in done:
            # Wait for the cancellation to land so a late result is never observed
            await asyncio.gather(task, return_exceptions=True)
            return AnalysisEvent.TIMEOUT, None, "analysis timed out"
        # A TimeoutError raised by the provider itself is a failure, not our deadline
        try:
            result = task.result()
        except Exception as exc:
            logger.warning("[analysis] vision call failed: %s", exc, exc_info=True)
            return AnalysisEvent.ERROR, None, str(exc) or exc.__class__.__name__
        return AnalysisEvent.COMPLETED, result, None

    async def run(
        self,
        uid: str,
        image: bytes,
        prompt: str,
        kind: str = "analyze",
        subject_label: str = "",
    ) -> AnalysisOutcome:
        balance = await self.ledger.balance(uid)
        if balance is None:
            return AnalysisOutcome(state=AnalysisState.IDLE, refused=DebitStatus.USER_NOT_FOUND)
        if balance.quota_used >= balance.quota_total:
            logger.info("[analysis] refused before call uid=%s used=%s/%s", uid, balance.quota_used, balance.quota_total)
            return AnalysisOutcome(state=AnalysisState.IDLE, refused=DebitStatus.QUOTA_EXCEEDED)

        state = transition(AnalysisState.IDLE, AnalysisEvent.START)
        attempts = 0
        timeouts = 0
        result: Optional[VisionResult] = None
        error: Optional[str] = None
        while state is AnalysisState.RUNNING:
            attempts += 1
            event, result, error = await self._attempt(image, prompt)
            state = transition(state, event)
            if state is AnalysisState.TIMED_OUT:
                timeouts += 1
                sentry_metric_inc("analysis.timeout", tags={"attempt": attempts})
                logger.warning(
                    "[analysis] attempt %s timed out after %ss uid=%s subject=%s",
                    attempts, self.timeout_seconds, uid, subject_label,
                )
                if timeouts <= self.max_retries:
                    state = transition(state, AnalysisEvent.RETRY)

        if state is not AnalysisState.SUCCEEDED:
            sentry_metric_inc("analysis.failed", tags={"state": state.value})
            logger.info("[analysis] unit finished without debit uid=%s state=%s attempts=%s", uid, state.value, attempts)
            return AnalysisOutcome(state=state, attempts=attempts, error=error)

        sentry_metric_inc("analysis.succeeded")
        sentry_breadcrumb(category="analysis", message="succeeded", data={"attempts": attempts})
        debit = await self.ledger.checked_debit(
            uid,
            requested_count=1,
            token_usage=result.token_usage if result else None,
            kind=kind,
            subject_label=subject_label,
        )
        if not debit.ok:
            logger.warning("[analysis] post-call debit refused uid=%s status=%s", uid, debit.status.value)
        return AnalysisOutcome(state=state, attempts=attempts, result=result, debit=debit)


__all__ = [
    "AnalysisOrchestrator",
    "AnalysisOutcome",
    "InvalidTransition",
    "TRANSITIONS",
    "transition",
]
