"""Business logic services."""

from number_pool.services.lease_service import LeaseService
from number_pool.services.notification_service import NotificationService
from number_pool.services.number_pool_service import NumberPoolService
from number_pool.services.provisioning_queue import ProvisioningQueueService
from number_pool.services.provisioning_service import ProvisioningService
from number_pool.services.voice_provider import (
    MockVoiceProvider,
    VapiVoiceProvider,
    VoiceProvider,
    get_voice_provider,
)

__all__ = [
    "LeaseService",
    "MockVoiceProvider",
    "NotificationService",
    "NumberPoolService",
    "ProvisioningQueueService",
    "ProvisioningService",
    "VapiVoiceProvider",
    "VoiceProvider",
    "get_voice_provider",
]
