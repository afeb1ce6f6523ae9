"""Miscellaneous helper functions."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Optional


def utcnow() -> dt.datetime:
    """Naive UTC timestamp, matching how ``DateTime`` columns are stored."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_iso_datetime(value: str | None) -> Optional[dt.datetime]:
    """Parse an ISO8601 datetime string into a naive UTC :class:`datetime`.

    ``datetime.fromisoformat`` does not accept a lowercase ``z`` as the
    UTC designator; this normalises that case and returns ``None`` if the
    value cannot be parsed.  Aware values are converted to UTC.
    """
    if not value:
        return None
    try:
        if value.endswith(("z", "Z")):
            value = value[:-1] + "+00:00"
        parsed = dt.datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(dt.timezone.utc).replace(tzinfo=None)
    return parsed
