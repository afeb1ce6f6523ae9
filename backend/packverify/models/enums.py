"""Enumeration types used throughout the metering service.

Enumerations constrain the values that can be stored in the database
or passed through the API, and they name the terminal outcomes of the
billing operations so callers never have to match on strings.

When modifying these enums you should update any corresponding
database columns or Pydantic validators so that new values are
accepted where appropriate.
"""

from enum import Enum


class BillingMode(str, Enum):
    """How a billed action is converted into credits."""

    COUNT = "count"
    TOKENS = "tokens"


class UsageKind(str, Enum):
    """Common operation tags recorded on usage events.

    The column itself is free text; these are the values the
    application emits.
    """

    ANALYZE = "analyze"
    RETRY = "retry"
    OCR = "ocr"


class DebitStatus(str, Enum):
    """Outcome of a checked debit against the usage ledger."""

    OK = "ok"
    QUOTA_EXCEEDED = "quota_exceeded"
    USER_NOT_FOUND = "user_not_found"


class WebhookOutcome(str, Enum):
    """Outcome of applying a payment provider webhook."""

    APPLIED = "applied"
    SIGNATURE_INVALID = "signature_invalid"
    IGNORED = "ignored"


class AnalysisState(str, Enum):
    """Lifecycle of a single unit of analysis work."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class AnalysisEvent(str, Enum):
    """Inputs that drive ``AnalysisState`` transitions."""

    START = "start"
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    ERROR = "error"
    RETRY = "retry"
