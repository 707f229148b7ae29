"""Number pool and provisioning schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class RegionStats(BaseModel):
    """Per-region inventory counts."""

    total: int = 0
    available: int = 0


class PoolStats(BaseModel):
    """Pool inventory snapshot, polled for low-inventory alerting."""

    total: int = 0
    available: int = 0
    reserved: int = 0
    assigned: int = 0
    released: int = 0
    by_region: dict[str, RegionStats] = Field(default_factory=dict)

    def is_low(self, threshold: int) -> bool:
        """True when fewer than ``threshold`` numbers are available."""
        return self.available < threshold


class ProvisionedNumber(BaseModel):
    """A pool number handed to a tenant."""

    pool_entry_id: str
    phone_number: str
    region: str
    external_voice_id: Optional[str] = None


class ProvisioningResult(BaseModel):
    """Outcome of one provision_user_numbers call."""

    provisioned: int
    requested: int
    numbers: list[ProvisionedNumber] = Field(default_factory=list)
    error: Optional[str] = None  # What stopped a partial run early


class QueueItemResult(BaseModel):
    """Outcome of processing a single queue item."""

    item_id: str
    tenant_id: str
    status: str
    attempts: int
    provisioned: int = 0
    numbers_requested: int
    next_retry_at: Optional[datetime] = None
    error_message: Optional[str] = None


class MaintenanceResult(BaseModel):
    """Summary of one maintenance run."""

    expired_reservations_cleared: int = 0
    numbers_recycled: int = 0
    stats: PoolStats
    low_inventory: bool = False
