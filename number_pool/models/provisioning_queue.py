"""Provisioning queue model."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
import uuid

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from number_pool.core.database import Base
from number_pool.utils.helpers import utc_now


class QueueStatus(str, Enum):
    """Provisioning queue item status."""

    pending = "pending"  # Waiting for first attempt or a partial retry
    processing = "processing"  # Attempt in progress
    completed = "completed"  # All requested numbers provisioned
    partial = "partial"  # Ran out of attempts with some numbers provisioned
    failed = "failed"  # Last attempt raised, retry scheduled
    max_attempts_reached = "max_attempts_reached"  # Needs an operator


DRAINABLE_STATUSES = (QueueStatus.pending.value, QueueStatus.failed.value)
TERMINAL_STATUSES = (
    QueueStatus.completed.value,
    QueueStatus.partial.value,
    QueueStatus.max_attempts_reached.value,
)


class ProvisioningQueueItem(Base):
    """Durable request to give a tenant up to N pool numbers.

    Rows are never deleted; finished items stay for support and audit.
    """

    __tablename__ = "provisioning_queue"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    region: Mapped[str] = mapped_column(String(2), default="IE", nullable=False)

    # Shrinks on partial success so only the remainder is retried
    numbers_requested: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(
        String(30), default=QueueStatus.pending.value, nullable=False, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_retry_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False, index=True
    )
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<ProvisioningQueueItem {self.id} {self.status} attempts={self.attempts}>"
