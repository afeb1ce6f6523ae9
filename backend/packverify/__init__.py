"""Usage metering and billing backend for the package-label checker.

This package holds the credit ledger, model pricing, Stripe payment
reconciliation and the analysis orchestrator that bills a vision call
only once it has succeeded, together with the FastAPI routes exposing
them.

To run the API locally from the repository root::

    uvicorn packverify.api.main:app --reload --app-dir backend

Configuration is read from environment variables or a ``.env`` file at
the repository root (see ``packverify.core.config``).
"""

__all__: list[str] = []
