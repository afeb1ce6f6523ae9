"""Observability helpers (Sentry init & common scrubbing).

Centralises Sentry initialisation so configuration does not drift.
Keeps initialisation a no-op if the SDK or DSN are missing.  The
metric helpers are best-effort: billing code calls them inline and
must never fail because telemetry is unavailable.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from packverify.core.config import settings

try:  # Optional import
	import sentry_sdk  # type: ignore
	from sentry_sdk.integrations.fastapi import FastApiIntegration  # type: ignore
	from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration  # type: ignore
	_SENTRY_AVAILABLE = True
except Exception:  # pragma: no cover
	_SENTRY_AVAILABLE = False

_SCRUBBED_HEADERS = ("authorization", "cookie", "set-cookie", "x-api-key", "stripe-signature")


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):  # type: ignore[override]
	"""Scrub obvious PII / secrets before sending to Sentry.

	- Drop Authorization, Cookie and Stripe-Signature headers
	- Remove request data/body (keep method + URL); webhook bodies carry
	  customer details
	"""
	try:
		req = event.get("request") or {}
		headers = req.get("headers") or {}
		for k in list(headers.keys()):
			if k.lower() in _SCRUBBED_HEADERS:
				headers.pop(k, None)
		req.pop("data", None)
		event["request"] = req
	except Exception:  # best effort
		pass
	return event


def _enabled() -> bool:
	return bool(_SENTRY_AVAILABLE and settings.SENTRY_DSN)


def init_sentry(service: str) -> bool:
	"""Initialise Sentry once for a given process.

	Returns True if Sentry was initialised; False otherwise.
	"""
	if not _enabled():  # pragma: no cover - simple guard
		return False
	if getattr(init_sentry, "_done", False):
		return True
	sentry_sdk.init(
		dsn=settings.SENTRY_DSN,
		integrations=[FastApiIntegration(), SqlalchemyIntegration()],
		traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
		profiles_sample_rate=float(settings.SENTRY_PROFILES_SAMPLE_RATE or 0),
		environment=settings.ENVIRONMENT,
		release=settings.SENTRY_RELEASE,
		before_send=_before_send,
	)
	sentry_sdk.set_tag("service", service)
	init_sentry._done = True  # type: ignore[attr-defined]
	return True


def sentry_set_tags(tags: Dict[str, Any]) -> None:
	"""Best-effort: set tags on the current Sentry scope (strings only)."""
	try:
		if not _enabled():
			return
		for k, v in (tags or {}).items():
			sentry_sdk.set_tag(str(k), str(v)[:128] if v is not None else "")
	except Exception:
		return


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
	"""Best-effort: add a breadcrumb for important lifecycle steps."""
	try:
		if not _enabled():
			return
		sentry_sdk.add_breadcrumb(
			category=category,
			message=message,
			level=level,
			data=data or {},
		)
	except Exception:
		return


def sentry_capture_message(message: str, level: str = "warning") -> None:
	"""Best-effort: record a standalone event (used for security-relevant rejections)."""
	try:
		if not _enabled():
			return
		sentry_sdk.capture_message(message, level=level)
	except Exception:
		return


def sentry_metric_inc(name: str, value: int = 1, tags: Optional[Dict[str, Any]] = None) -> None:
	"""Best-effort: increment a metric using Sentry Metrics if available.

	Falls back to no-op when metrics are unavailable.
	"""
	try:
		if not _enabled():
			return
		from sentry_sdk import metrics  # type: ignore
		# Coerce tag values to short strings to avoid PII/large payloads
		safe_tags = {str(k): str(v)[:64] for k, v in (tags or {}).items()}
		metrics.increment(name, value=value, tags=safe_tags)  # type: ignore
	except Exception:
		return


__all__ = [
	"init_sentry",
	"sentry_set_tags",
	"sentry_breadcrumb",
	"sentry_capture_message",
	"sentry_metric_inc",
]
