"""Stripe checkout and webhook reconciliation for credit purchases.

``PaymentReconciler.apply`` turns a signed Stripe webhook delivery into
a credit top-up:

1. The ``Stripe-Signature`` header is verified against the *raw* request
   bytes with every configured endpoint secret (rotation).  Verifying a
   re-serialised payload would accept forged bodies, so nothing is parsed
   before the signature passes.
2. Only completed, paid checkout sessions carrying package metadata are
   relevant; everything else is ``IGNORED``.
3. The purchase row is written with ``INSERT ... ON CONFLICT
   (provider_session_id) DO NOTHING``.  If the row already existed the
   delivery is a replay and is acknowledged as ``APPLIED`` without
   crediting again; otherwise ``quota_total`` is raised in the same
   transaction.

Malformed payloads and unknown users are ``IGNORED`` rather than raised
so the handler always acknowledges; operators can replay those events
from the Stripe dashboard once fixed.  Storage errors still propagate so
Stripe retries the delivery.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

import stripe
from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from packverify.core.config import settings
from packverify.core.database import upsert_insert
from packverify.core.observability import (
    sentry_breadcrumb,
    sentry_capture_message,
    sentry_metric_inc,
    sentry_set_tags,
)
from packverify.models.enums import WebhookOutcome
from packverify.models.schemas import CreditPackage
from packverify.models.tables import Purchase, User
from packverify.utils.helpers import new_id, utcnow

logger = logging.getLogger(__name__)

CREDIT_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")


def list_packages(packages: Optional[Iterable[CreditPackage]] = None) -> List[CreditPackage]:
    return list(packages if packages is not None else settings.CREDIT_PACKAGES)


def find_package(package_id: str, packages: Optional[Iterable[CreditPackage]] = None) -> Optional[CreditPackage]:
    for pkg in list_packages(packages):
        if pkg.id == package_id:
            return pkg
    return None


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class PaymentReconciler:
    """Applies verified Stripe events to the credit ledger."""

    def __init__(self, db: AsyncSession, secrets: List[str]):
        self.db = db
        self.secrets = [s for s in secrets if s]

    def verify_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        if not signature_header or not self.secrets:
            return False
        try:
            payload_text = raw_payload.decode("utf-8")
        except UnicodeDecodeError:
            return False
        last_error: Exception | None = None
        for secret in self.secrets:
            try:
                stripe.WebhookSignature.verify_header(
                    payload_text,
                    signature_header,
                    secret,
                    tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
                )
                return True
            except stripe.SignatureVerificationError as e:
                last_error = e
                continue
        logger.warning("[stripe] invalid signature after trying %d secrets: %s", len(self.secrets), last_error)
        return False

    async def apply(self, raw_payload: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        if not self.verify_signature(raw_payload, signature_header):
            sentry_metric_inc("stripe.webhook.invalid_signature")
            sentry_capture_message("stripe webhook rejected: invalid signature", level="warning")
            return WebhookOutcome.SIGNATURE_INVALID

        try:
            event = json.loads(raw_payload)
        except ValueError as e:
            logger.warning("[stripe] verified payload is not valid JSON: %s", e)
            return self._ignored("malformed")
        if not isinstance(event, dict):
            return self._ignored("malformed")

        event_type = event.get("type") or ""
        if not isinstance(event_type, str):
            return self._ignored("malformed")
        sentry_set_tags({"stripe.event_type": event_type})
        if event_type not in CREDIT_EVENTS:
            logger.debug("[stripe] unhandled event type=%s id=%s", event_type, event.get("id"))
            return self._ignored("event_type", event_type)

        data = event.get("data") or {}
        data_object = data.get("object") if isinstance(data, dict) else None
        if not isinstance(data_object, dict):
            logger.warning("[stripe] %s without a session object id=%s", event_type, event.get("id"))
            return self._ignored("malformed", event_type)

        session_id = data_object.get("id")
        if event_type == "checkout.session.completed" and data_object.get("payment_status") == "unpaid":
            # Delayed methods complete later via async_payment_succeeded
            logger.info("[stripe] checkout completed but unpaid id=%s; awaiting async payment", session_id)
            return self._ignored("unpaid", event_type)

        metadata = data_object.get("metadata") or {}
        if not isinstance(metadata, dict):
            logger.warning("[stripe] checkout metadata is not an object id=%s", session_id)
            return self._ignored("malformed", event_type)
        uid = metadata.get("uid") or data_object.get("client_reference_id")
        credits = _to_int(metadata.get("credits"))
        package_id = metadata.get("package_id") or metadata.get("packageId")
        package_id = str(package_id) if package_id else None
        if not session_id or not uid or credits <= 0:
            logger.warning(
                "[stripe] checkout missing metadata id=%s uid=%s credits=%s package=%s",
                session_id, uid, credits, package_id,
            )
            return self._ignored("metadata", event_type)

        return await self._grant(
            uid=str(uid),
            session_id=str(session_id),
            credits=credits,
            package_id=package_id,
            amount=data_object.get("amount_total"),
        )

    async def _grant(self, uid: str, session_id: str, credits: int, package_id: Optional[str], amount: Any) -> WebhookOutcome:
        try:
            user = await self.db.get(User, uid, populate_existing=True)
            if user is None:
                logger.warning("[stripe] no user for uid=%s session=%s; not crediting", uid, session_id)
                await self.db.rollback()
                return self._ignored("unknown_user")

            insert_stmt = (
                upsert_insert(self.db, Purchase.__table__)
                .values(
                    id=new_id(),
                    user_id=uid,
                    package_id=package_id,
                    credits_granted=credits,
                    amount_minor_units=_to_int(amount) if amount is not None else None,
                    provider_session_id=session_id,
                    created_at=utcnow(),
                )
                .on_conflict_do_nothing(index_elements=["provider_session_id"])
            )
            inserted = await self.db.execute(insert_stmt)
            if inserted.rowcount != 1:
                await self.db.rollback()
                logger.info("[stripe] duplicate delivery for session=%s; already credited", session_id)
                sentry_metric_inc("stripe.webhook.duplicate")
                return WebhookOutcome.APPLIED

            await self.db.execute(
                update(User)
                .where(User.uid == uid)
                .values(quota_total=User.quota_total + credits)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("[stripe] failed to record purchase session=%s uid=%s", session_id, uid)
            raise

        logger.info("[stripe] added %s credits to user %s session=%s package=%s", credits, uid, session_id, package_id)
        sentry_metric_inc("stripe.credits.granted", value=credits, tags={"package_id": package_id or ""})
        sentry_breadcrumb(category="stripe", message="credits.granted", data={"session": session_id, "credits": credits})
        return WebhookOutcome.APPLIED

    def _ignored(self, reason: str, event_type: str = "") -> WebhookOutcome:
        sentry_metric_inc("stripe.webhook.ignored", tags={"reason": reason, "event_type": event_type})
        return WebhookOutcome.IGNORED


def create_checkout_session(uid: str, package: CreditPackage, customer_email: Optional[str] = None) -> Dict[str, Any]:
    """Create a one-off Stripe Checkout Session for ``package``."""
    if not settings.STRIPE_API_KEY:
        raise HTTPException(status_code=500, detail="Stripe not configured")
    base_url = settings.FRONTEND_BASE_URL.rstrip("/")
    params: Dict[str, Any] = dict(
        api_key=settings.STRIPE_API_KEY,
        mode="payment",
        payment_method_types=list(settings.STRIPE_PAYMENT_METHOD_TYPES),
        client_reference_id=uid,
        line_items=[
            {
                "price_data": {
                    "currency": settings.STRIPE_CURRENCY,
                    "unit_amount": package.price_minor_units,
                    "product_data": {
                        "name": package.display_name,
                        "description": f"{package.credits} credits",
                        "metadata": {"credits": str(package.credits)},
                    },
                },
                "quantity": 1,
            }
        ],
        metadata={"uid": uid, "package_id": package.id, "credits": str(package.credits)},
        success_url=f"{base_url}/app?payment=success",
        cancel_url=f"{base_url}/app?payment=cancelled",
    )
    if customer_email:
        params["customer_email"] = customer_email
    session = stripe.checkout.Session.create(**params)
    logger.info("[stripe] checkout session created id=%s uid=%s package=%s", session["id"], uid, package.id)
    return {"url": session["url"], "session_id": session["id"]}


__all__ = [
    "PaymentReconciler",
    "CREDIT_EVENTS",
    "create_checkout_session",
    "find_package",
    "list_packages",
]
