from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from packverify.core.config import DEFAULT_MODEL_PRICING
from packverify.core.database import Base
from packverify.models.enums import AnalysisEvent, AnalysisState, DebitStatus
from packverify.models.schemas import QuotaRead, TokenUsage
from packverify.models.tables import User
from packverify.services.analysis import AnalysisOrchestrator, InvalidTransition, transition
from packverify.services.pricing import PricingTable
from packverify.services.usage_ledger import DebitResult, UsageLedger
from packverify.services.vision import VisionResult


class FakeLedger:
    def __init__(self, total=10, used=0, exists=True, debit_status=DebitStatus.OK):
        self.total = total
        self.used = used
        self.exists = exists
        self.debit_status = debit_status
        self.debits = []

    async def balance(self, uid):
        if not self.exists:
            return None
        return QuotaRead(quota_total=self.total, quota_used=self.used, remaining=max(0, self.total - self.used))

    async def checked_debit(self, uid, requested_count=1, token_usage=None, kind="analyze", subject_label=""):
        self.debits.append({"uid": uid, "token_usage": token_usage, "kind": kind, "subject_label": subject_label})
        if self.debit_status is not DebitStatus.OK:
            return DebitResult(status=self.debit_status)
        self.used += 1
        return DebitResult(status=DebitStatus.OK, debit=1)


class ScriptedVision:
    """Plays back one step per call: a VisionResult, an exception, or "hang"."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = 0
        self.cancelled = 0

    async def invoke_vision_analysis(self, image, prompt):
        step = self.steps[self.calls]
        self.calls += 1
        if step == "hang":
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        if isinstance(step, Exception):
            raise step
        return step


def _result(tag, prompt_tokens=100):
    return VisionResult(
        result_payload={"tag": tag},
        token_usage=TokenUsage(model="gpt-4o", prompt_tokens=prompt_tokens, completion_tokens=10),
    )


def _orchestrator(ledger, vision, max_retries=1):
    return AnalysisOrchestrator(ledger, vision, timeout_seconds=0.05, max_retries=max_retries)


@pytest.mark.asyncio
async def test_success_debits_once():
    ledger = FakeLedger()
    vision = ScriptedVision(_result("ok"))
    outcome = await _orchestrator(ledger, vision).run("u1", b"img", "check", subject_label="a.png")
    assert outcome.state is AnalysisState.SUCCEEDED
    assert outcome.attempts == 1
    assert outcome.billed
    assert outcome.result.result_payload == {"tag": "ok"}
    assert len(ledger.debits) == 1
    assert ledger.debits[0]["subject_label"] == "a.png"


@pytest.mark.asyncio
async def test_timeout_then_success_bills_the_retry():
    ledger = FakeLedger()
    vision = ScriptedVision("hang", _result("second", prompt_tokens=777))
    outcome = await _orchestrator(ledger, vision).run("u1", b"img", "check")
    assert outcome.state is AnalysisState.SUCCEEDED
    assert outcome.attempts == 2
    assert vision.cancelled == 1
    assert len(ledger.debits) == 1
    assert ledger.debits[0]["token_usage"].prompt_tokens == 777


@pytest.mark.asyncio
async def test_two_timeouts_end_timed_out_without_debit():
    ledger = FakeLedger()
    vision = ScriptedVision("hang", "hang")
    outcome = await _orchestrator(ledger, vision).run("u1", b"img", "check")
    assert outcome.state is AnalysisState.TIMED_OUT
    assert outcome.attempts == 2
    assert not outcome.billed
    assert ledger.debits == []
    assert vision.cancelled == 2


@pytest.mark.asyncio
async def test_retries_can_be_disabled():
    ledger = FakeLedger()
    vision = ScriptedVision("hang", _result("never"))
    outcome = await _orchestrator(ledger, vision, max_retries=0).run("u1", b"img", "check")
    assert outcome.state is AnalysisState.TIMED_OUT
    assert vision.calls == 1
    assert ledger.debits == []


@pytest.mark.asyncio
async def test_provider_error_fails_without_retry_or_debit():
    ledger = FakeLedger()
    vision = ScriptedVision(RuntimeError("upstream 500"), _result("never"))
    outcome = await _orchestrator(ledger, vision).run("u1", b"img", "check")
    assert outcome.state is AnalysisState.FAILED
    assert outcome.error == "upstream 500"
    assert vision.calls == 1
    assert ledger.debits == []


@pytest.mark.asyncio
async def test_exhausted_quota_skips_the_call():
    ledger = FakeLedger(total=5, used=5)
    vision = ScriptedVision(_result("never"))
    outcome = await _orchestrator(ledger, vision).run("u1", b"img", "check")
    assert outcome.state is AnalysisState.IDLE
    assert outcome.refused is DebitStatus.QUOTA_EXCEEDED
    assert vision.calls == 0
    assert ledger.debits == []


@pytest.mark.asyncio
async def test_unknown_user_skips_the_call():
    vision = ScriptedVision(_result("never"))
    outcome = await _orchestrator(FakeLedger(exists=False), vision).run("ghost", b"img", "check")
    assert outcome.refused is DebitStatus.USER_NOT_FOUND
    assert vision.calls == 0


@pytest.mark.asyncio
async def test_refused_post_call_debit_is_reported():
    ledger = FakeLedger(debit_status=DebitStatus.QUOTA_EXCEEDED)
    vision = ScriptedVision(_result("ok"))
    outcome = await _orchestrator(ledger, vision).run("u1", b"img", "check")
    assert outcome.state is AnalysisState.SUCCEEDED
    assert not outcome.billed
    assert outcome.debit.status is DebitStatus.QUOTA_EXCEEDED


def test_transitions():
    assert transition(AnalysisState.IDLE, AnalysisEvent.START) is AnalysisState.RUNNING
    assert transition(AnalysisState.RUNNING, AnalysisEvent.TIMEOUT) is AnalysisState.TIMED_OUT
    assert transition(AnalysisState.TIMED_OUT, AnalysisEvent.RETRY) is AnalysisState.RUNNING
    assert transition(AnalysisState.RUNNING, AnalysisEvent.COMPLETED) is AnalysisState.SUCCEEDED


@pytest.mark.parametrize(
    "state,event",
    [
        (AnalysisState.SUCCEEDED, AnalysisEvent.RETRY),
        (AnalysisState.FAILED, AnalysisEvent.RETRY),
        (AnalysisState.IDLE, AnalysisEvent.COMPLETED),
        (AnalysisState.TIMED_OUT, AnalysisEvent.COMPLETED),
    ],
)
def test_invalid_transitions_raise(state, event):
    with pytest.raises(InvalidTransition):
        transition(state, event)


@pytest.mark.asyncio
async def test_provider_timeout_error_is_a_failure_not_a_retry():
    ledger = FakeLedger()
    vision = ScriptedVision(TimeoutError("read timed out"), _result("never"))
    outcome = await _orchestrator(ledger, vision).run("u1", b"img", "check")
    assert outcome.state is AnalysisState.FAILED
    assert outcome.attempts == 1
    assert vision.calls == 1
    assert ledger.debits == []


@pytest.mark.asyncio
async def test_session_is_not_held_in_transaction_during_vision_call(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'analysis.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    async with Session() as session:
        session.add(User(uid="u1", email="u1@example.com", quota_total=10, quota_used=0))
        await session.commit()

    async with Session() as session:
        ledger = UsageLedger(session, pricing=PricingTable.build(DEFAULT_MODEL_PRICING, "1.3", "gpt-4o"))
        seen = []

        class RecordingVision:
            async def invoke_vision_analysis(self, image, prompt):
                seen.append(session.in_transaction())
                return _result("ok")

        outcome = await AnalysisOrchestrator(ledger, RecordingVision(), timeout_seconds=1).run("u1", b"img", "check")
        assert outcome.billed
        assert seen == [False]
        assert outcome.debit.user.quota_used == 1
    await engine.dispose()
