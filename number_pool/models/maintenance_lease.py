"""Lease records for background jobs that must run on one worker at a time."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from number_pool.core.database import Base
from number_pool.utils.helpers import utc_now


class MaintenanceLease(Base):
    """Named lease held by one runner until released or expired.

    An expired lease can be taken over, which covers runners that crashed
    without releasing.
    """

    __tablename__ = "maintenance_leases"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<MaintenanceLease {self.name} owner={self.owner}>"
