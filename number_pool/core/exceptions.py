"""Errors raised by the number pool and provisioning queue."""

from typing import Optional


class NumberPoolError(Exception):
    """Base class for number pool errors."""


class NumberUnavailableError(NumberPoolError):
    """No number could be claimed right now. Callers can retry later or queue the request."""


class NoAvailableNumber(NumberUnavailableError):
    """The region has no available entries."""

    def __init__(self, region: str):
        self.region = region
        super().__init__(f"No available phone numbers in {region} region")


class PoolExhausted(NumberUnavailableError):
    """Every candidate was claimed by a concurrent caller first."""

    def __init__(self, region: str, attempts: int):
        self.region = region
        self.attempts = attempts
        super().__init__(
            f"Lost the claim race on {attempts} candidate(s) in {region} region"
        )


class ReservationNotFound(NumberPoolError):
    """No reserved entry matches the tenant (or the entry id given)."""

    def __init__(self, tenant_id: str, pool_entry_id: Optional[str] = None):
        self.tenant_id = tenant_id
        self.pool_entry_id = pool_entry_id
        super().__init__("No reserved number found for user")


class AlreadyAssigned(NumberPoolError):
    """The entry is already assigned."""

    def __init__(self, pool_entry_id: str):
        self.pool_entry_id = pool_entry_id
        super().__init__("Pool number is already assigned")


class ReservedByOther(NumberPoolError):
    """The entry is reserved for a different tenant."""

    def __init__(self, pool_entry_id: str):
        self.pool_entry_id = pool_entry_id
        super().__init__("Pool number is reserved for a different user")


class ImportGatewayFailure(NumberPoolError):
    """Registering the number with the voice provider failed or timed out.

    The entry is left reserved, so the assignment can be retried.
    """

    def __init__(self, phone_number: str, message: str):
        self.phone_number = phone_number
        super().__init__(f"Voice provider import failed: {message}")


class MaxAttemptsReached(NumberPoolError):
    """A provisioning queue item ran out of attempts."""

    def __init__(self, item_id: str, attempts: int, last_error: str):
        self.item_id = item_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Provisioning gave up after {attempts} attempts: {last_error}"
        )
