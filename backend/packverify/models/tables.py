"""SQLAlchemy ORM models for the metering service.

``User`` carries the two quota counters.  ``UsageEvent`` and
``Purchase`` are append-only: rows are inserted once and only removed
by the account-level cascade when a user is deleted.  The unique
constraint on ``Purchase.provider_session_id`` is what makes webhook
replays harmless, so keep it if you touch this table.

If you extend or modify these models remember to recreate the tables
(``init_db``) during development.
"""

from __future__ import annotations

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    ForeignKey,
    JSON,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import relationship

from packverify.core.database import Base
from packverify.utils.helpers import new_id, utcnow


class User(Base):
    """Account holding a credit quota."""

    __tablename__ = "users"

    uid = Column(String, primary_key=True)
    email = Column(String, nullable=False)
    display_name = Column(String, nullable=True)
    photo_url = Column(String, nullable=True)
    # quota_used <= quota_total is maintained by the ledger's conditional update
    quota_total = Column(Integer, nullable=False, default=0)
    quota_used = Column(Integer, nullable=False, default=0)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_login_at = Column(DateTime, default=utcnow, nullable=False)

    usage_events = relationship("UsageEvent", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    purchases = relationship("Purchase", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        CheckConstraint("quota_used >= 0", name="ck_users_quota_used_nonnegative"),
    )


class UsageEvent(Base):
    """One billed action."""

    __tablename__ = "usage_events"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.uid", ondelete="CASCADE"), nullable=False)
    kind = Column(String, nullable=False)
    subject_label = Column(String, nullable=False, default="")
    debited_credits = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    # Raw token counts, model, computed cost, mode and rate for audit only
    cost_detail = Column(JSON, nullable=True)

    user = relationship("User", back_populates="usage_events")

    __table_args__ = (
        CheckConstraint("debited_credits >= 1", name="ck_usage_events_debit_positive"),
        Index("ix_usage_events_user_created", "user_id", "created_at"),
    )


class Purchase(Base):
    """Credit top-up recorded from a completed checkout."""

    __tablename__ = "purchases"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.uid", ondelete="CASCADE"), nullable=False, index=True)
    package_id = Column(String, nullable=True)
    credits_granted = Column(Integer, nullable=False)
    amount_minor_units = Column(Integer, nullable=True)
    # Idempotency anchor for webhook replay
    provider_session_id = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="purchases")
