"""Pydantic schemas for service results."""

from number_pool.schemas.pool import (
    MaintenanceResult,
    PoolStats,
    ProvisionedNumber,
    ProvisioningResult,
    QueueItemResult,
    RegionStats,
)

__all__ = [
    "MaintenanceResult",
    "PoolStats",
    "ProvisionedNumber",
    "ProvisioningResult",
    "QueueItemResult",
    "RegionStats",
]
