"""Phone number pool models.

Numbers are pre-purchased by an admin (VoIPcloud has no provisioning API)
and handed out to tenants from this pool.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
import uuid

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from number_pool.core.database import Base
from number_pool.utils.helpers import utc_now


class PoolStatus(str, Enum):
    """Lifecycle of a pool entry.

    available -> reserved -> assigned -> released -> available
    A reservation can also go straight back to available (cancel or expiry).
    """

    available = "available"
    reserved = "reserved"
    assigned = "assigned"
    released = "released"


class AssignmentAction(str, Enum):
    """Actions recorded in the assignment history."""

    reserved = "reserved"
    assigned = "assigned"
    released = "released"
    cancelled = "cancelled"


class PoolEntry(Base):
    """A phone number under pool management."""

    __tablename__ = "phone_number_pool"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # The actual phone number (E.164 format)
    phone_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    region: Mapped[str] = mapped_column(String(2), default="IE", nullable=False, index=True)

    # Upstream carrier
    provider: Mapped[str] = mapped_column(String(50), default="voipcloud", nullable=False)
    provider_number_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Voice provider id, set on first assignment and reused afterwards
    external_voice_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Assignment
    status: Mapped[str] = mapped_column(
        String(20), default=PoolStatus.available.value, nullable=False, index=True
    )
    owner: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reserved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reserved_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Metadata
    capabilities: Mapped[dict[str, Any]] = mapped_column(
        JSON, default=lambda: {"voice": True, "sms": False}, nullable=False
    )
    monthly_cost_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps (updated_at doubles as the recycle cooldown clock)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<PoolEntry {self.phone_number} {self.status}>"


class AssignmentEvent(Base):
    """Append-only audit trail of pool transitions."""

    __tablename__ = "number_assignment_history"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    pool_entry_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("phone_number_pool.id"), nullable=False, index=True
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, default=dict, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<AssignmentEvent {self.action} {self.pool_entry_id}>"
