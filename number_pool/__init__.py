"""Phone number pool allocation and provisioning retry queue."""

__version__ = "1.0.0"
