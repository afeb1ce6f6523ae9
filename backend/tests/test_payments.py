from __future__ import annotations

import hashlib
import hmac
import json
import time

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from packverify.core.database import Base
from packverify.models.enums import WebhookOutcome
from packverify.models.tables import Purchase, User
from packverify.services import payments
from packverify.services.payments import PaymentReconciler, find_package, list_packages

SECRET = "whsec_test"


def _sign(payload: bytes, secret: str = SECRET, timestamp: int | None = None) -> str:
    ts = timestamp if timestamp is not None else int(time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    sig = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def _event(
    session_id="sess_abc",
    uid="u1",
    credits="200",
    event_type="checkout.session.completed",
    payment_status="paid",
    package_id="credits_200",
) -> bytes:
    metadata = {"uid": uid, "credits": credits, "package_id": package_id}
    body = {
        "id": "evt_1",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_status": payment_status,
                "amount_total": 5990,
                "metadata": {k: v for k, v in metadata.items() if v is not None},
            }
        },
    }
    return json.dumps(body).encode("utf-8")


async def _setup(tmp_path, total=50):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    async with Session() as session:
        session.add(User(uid="u1", email="u1@example.com", quota_total=total, quota_used=0))
        await session.commit()
    return engine, Session


async def _state(Session):
    async with Session() as session:
        user = await session.get(User, "u1")
        purchases = await session.scalar(select(func.count()).select_from(Purchase))
        return user.quota_total, purchases


@pytest.mark.asyncio
async def test_completed_checkout_grants_credits(tmp_path):
    engine, Session = await _setup(tmp_path)
    payload = _event()
    async with Session() as session:
        outcome = await PaymentReconciler(session, [SECRET]).apply(payload, _sign(payload))
    assert outcome is WebhookOutcome.APPLIED
    assert await _state(Session) == (250, 1)
    async with Session() as session:
        purchase = (await session.execute(select(Purchase))).scalar_one()
        assert purchase.provider_session_id == "sess_abc"
        assert purchase.package_id == "credits_200"
        assert purchase.credits_granted == 200
        assert purchase.amount_minor_units == 5990
    await engine.dispose()


@pytest.mark.asyncio
async def test_replayed_delivery_credits_once(tmp_path):
    engine, Session = await _setup(tmp_path)
    payload = _event()
    for _ in range(3):
        async with Session() as session:
            outcome = await PaymentReconciler(session, [SECRET]).apply(payload, _sign(payload))
        assert outcome is WebhookOutcome.APPLIED
    assert await _state(Session) == (250, 1)
    await engine.dispose()


@pytest.mark.asyncio
async def test_completed_then_async_succeeded_credits_once(tmp_path):
    engine, Session = await _setup(tmp_path)
    completed = _event()
    succeeded = _event(event_type="checkout.session.async_payment_succeeded")
    async with Session() as session:
        reconciler = PaymentReconciler(session, [SECRET])
        assert await reconciler.apply(completed, _sign(completed)) is WebhookOutcome.APPLIED
        assert await reconciler.apply(succeeded, _sign(succeeded)) is WebhookOutcome.APPLIED
    assert await _state(Session) == (250, 1)
    await engine.dispose()


@pytest.mark.asyncio
async def test_invalid_signature_mutates_nothing(tmp_path):
    engine, Session = await _setup(tmp_path)
    payload = _event()
    async with Session() as session:
        reconciler = PaymentReconciler(session, [SECRET])
        assert await reconciler.apply(payload, _sign(payload, secret="whsec_other")) is WebhookOutcome.SIGNATURE_INVALID
        assert await reconciler.apply(payload, None) is WebhookOutcome.SIGNATURE_INVALID
        assert await reconciler.apply(payload, "garbage") is WebhookOutcome.SIGNATURE_INVALID
    assert await _state(Session) == (50, 0)
    await engine.dispose()


@pytest.mark.asyncio
async def test_signature_over_other_bytes_is_rejected(tmp_path):
    engine, Session = await _setup(tmp_path)
    signed = _event(credits="50")
    tampered = _event(credits="500")
    async with Session() as session:
        outcome = await PaymentReconciler(session, [SECRET]).apply(tampered, _sign(signed))
    assert outcome is WebhookOutcome.SIGNATURE_INVALID
    assert await _state(Session) == (50, 0)
    await engine.dispose()


@pytest.mark.asyncio
async def test_expired_timestamp_is_rejected(tmp_path):
    engine, Session = await _setup(tmp_path)
    payload = _event()
    async with Session() as session:
        header = _sign(payload, timestamp=int(time.time()) - 3600)
        outcome = await PaymentReconciler(session, [SECRET]).apply(payload, header)
    assert outcome is WebhookOutcome.SIGNATURE_INVALID
    await engine.dispose()


@pytest.mark.asyncio
async def test_rotated_secret_is_accepted(tmp_path):
    engine, Session = await _setup(tmp_path)
    payload = _event()
    async with Session() as session:
        reconciler = PaymentReconciler(session, ["whsec_new", SECRET])
        assert await reconciler.apply(payload, _sign(payload)) is WebhookOutcome.APPLIED
    assert await _state(Session) == (250, 1)
    await engine.dispose()


@pytest.mark.asyncio
async def test_no_secrets_rejects_everything(tmp_path):
    engine, Session = await _setup(tmp_path)
    payload = _event()
    async with Session() as session:
        assert await PaymentReconciler(session, []).apply(payload, _sign(payload)) is WebhookOutcome.SIGNATURE_INVALID
    await engine.dispose()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        _event(event_type="customer.subscription.updated"),
        _event(payment_status="unpaid"),
        _event(uid=None),
        _event(credits=None),
        _event(credits="abc"),
        _event(credits="0"),
        _event(session_id=None),
        b"not json",
        b"[1, 2, 3]",
        json.dumps({"type": "checkout.session.completed", "data": "oops"}).encode(),
        json.dumps({"type": "checkout.session.completed", "data": {"object": "sess_abc"}}).encode(),
        json.dumps(
            {"type": "checkout.session.completed", "data": {"object": {"id": "sess_abc", "metadata": "x"}}}
        ).encode(),
        json.dumps({"type": ["checkout.session.completed"], "data": {}}).encode(),
    ],
)
async def test_irrelevant_or_malformed_events_are_ignored(tmp_path, payload):
    engine, Session = await _setup(tmp_path)
    async with Session() as session:
        outcome = await PaymentReconciler(session, [SECRET]).apply(payload, _sign(payload))
    assert outcome is WebhookOutcome.IGNORED
    assert await _state(Session) == (50, 0)
    await engine.dispose()


@pytest.mark.asyncio
async def test_unknown_user_is_ignored(tmp_path):
    engine, Session = await _setup(tmp_path)
    payload = _event(uid="ghost")
    async with Session() as session:
        outcome = await PaymentReconciler(session, [SECRET]).apply(payload, _sign(payload))
    assert outcome is WebhookOutcome.IGNORED
    assert await _state(Session) == (50, 0)
    await engine.dispose()


@pytest.mark.asyncio
async def test_client_reference_id_and_legacy_package_key(tmp_path):
    engine, Session = await _setup(tmp_path)
    body = {
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "sess_legacy",
                "payment_status": "paid",
                "client_reference_id": "u1",
                "metadata": {"packageId": "credits_50", "credits": "50"},
            }
        },
    }
    payload = json.dumps(body).encode("utf-8")
    async with Session() as session:
        assert await PaymentReconciler(session, [SECRET]).apply(payload, _sign(payload)) is WebhookOutcome.APPLIED
    async with Session() as session:
        purchase = (await session.execute(select(Purchase))).scalar_one()
        assert purchase.package_id == "credits_50"
        assert purchase.user_id == "u1"
    assert await _state(Session) == (100, 1)
    await engine.dispose()


def test_package_catalog():
    ids = [p.id for p in list_packages()]
    assert ids == ["credits_50", "credits_200", "credits_500"]
    assert find_package("credits_200").credits == 200
    assert find_package("nope") is None


def test_create_checkout_session_sends_package_metadata(monkeypatch):
    captured = {}

    class DummySession:
        @staticmethod
        def create(**kwargs):
            captured.update(kwargs)
            return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}

    monkeypatch.setattr(payments.settings, "STRIPE_API_KEY", "sk_test_x")
    monkeypatch.setattr(payments.stripe.checkout, "Session", DummySession)

    pkg = find_package("credits_200")
    result = payments.create_checkout_session("u1", pkg, customer_email="u1@example.com")

    assert result == {"url": "https://checkout.stripe.test/cs_test_1", "session_id": "cs_test_1"}
    assert captured["mode"] == "payment"
    assert captured["client_reference_id"] == "u1"
    assert captured["metadata"] == {"uid": "u1", "package_id": "credits_200", "credits": "200"}
    assert captured["line_items"][0]["price_data"]["unit_amount"] == 5990
    assert captured["line_items"][0]["price_data"]["currency"] == "cny"
    assert captured["customer_email"] == "u1@example.com"
    assert captured["success_url"].endswith("/app?payment=success")


def test_create_checkout_session_requires_api_key(monkeypatch):
    from fastapi import HTTPException

    monkeypatch.setattr(payments.settings, "STRIPE_API_KEY", None)
    with pytest.raises(HTTPException) as exc:
        payments.create_checkout_session("u1", find_package("credits_50"))
    assert exc.value.status_code == 500
