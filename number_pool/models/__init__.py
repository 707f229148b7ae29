"""Database models for the number pool."""

from number_pool.models.maintenance_lease import MaintenanceLease
from number_pool.models.pool_entry import (
    AssignmentAction,
    AssignmentEvent,
    PoolEntry,
    PoolStatus,
)
from number_pool.models.provisioning_queue import (
    DRAINABLE_STATUSES,
    TERMINAL_STATUSES,
    ProvisioningQueueItem,
    QueueStatus,
)

__all__ = [
    "AssignmentAction",
    "AssignmentEvent",
    "DRAINABLE_STATUSES",
    "MaintenanceLease",
    "PoolEntry",
    "PoolStatus",
    "ProvisioningQueueItem",
    "QueueStatus",
    "TERMINAL_STATUSES",
]
