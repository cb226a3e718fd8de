"""
SQLAlchemy database models for the unsubscribe pipeline.
Defines the job, email and credential tables.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from db import Base


def _new_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# Enums
# ============================================================================


class JobStatus(str, Enum):
    """Lifecycle states of an unsubscribe job."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    NEEDS_CONFIRMATION = "NEEDS_CONFIRMATION"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.NEEDS_CONFIRMATION,
    JobStatus.CANCELLED,
})

ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})

# Statuses a user may cancel from
CANCELLABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.NEEDS_CONFIRMATION})


class UnsubscribeStatus(str, Enum):
    """Denormalized badge state shown on an email."""
    ATTEMPTED = "ATTEMPTED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


# ============================================================================
# Tables
# ============================================================================


class GmailCredentials(Base):
    """
    Stores encrypted Gmail OAuth credentials for accessing a user's mailbox.
    """
    __tablename__ = "gmail_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), unique=True, default="default_user")
    email_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)  # Encrypted
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)  # Encrypted
    token_expiry: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    scopes: Mapped[str] = mapped_column(Text, nullable=False)  # JSON string
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<GmailCredentials(user_id={self.user_id})>"


class Email(Base):
    """
    An ingested message that may be unsubscribed from.
    Keeps the raw unsubscribe headers and body so the link can be re-extracted.
    """
    __tablename__ = "emails"
    __table_args__ = (
        UniqueConstraint("user_id", "gmail_id", name="uq_email_user_gmail"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    gmail_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sender: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Raw unsubscribe signals
    list_unsubscribe: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    list_unsubscribe_post: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    body_html: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    unsubscribe_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    unsubscribe_status: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True
        # Valid values: ATTEMPTED, SUCCEEDED, FAILED
    )
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Email(id={self.id}, subject={self.subject!r}, status={self.unsubscribe_status})>"


class UnsubscribeJob(Base):
    """
    A single unsubscribe request driven through the tiered executor.
    Mutated only by the queue (claim/finish/reschedule) or user cancellation.
    """
    __tablename__ = "unsubscribe_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email_id: Mapped[str] = mapped_column(String(36), ForeignKey("emails.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=JobStatus.PENDING.value
        # Valid values: see JobStatus
    )
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    # Retry accounting
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)

    # Lifecycle timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Outcome
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    def __repr__(self) -> str:
        return f"<UnsubscribeJob(id={self.id}, status={self.status}, attempts={self.attempts})>"


# Claim query: eligible pending jobs by priority then age
Index(
    "idx_job_claim",
    UnsubscribeJob.status,
    UnsubscribeJob.scheduled_for,
    UnsubscribeJob.priority,
    UnsubscribeJob.created_at,
)
Index("idx_job_email", UnsubscribeJob.email_id, UnsubscribeJob.status)
