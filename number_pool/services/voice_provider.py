"""Voice AI provider adapters.

Pool numbers are imported into the voice provider the first time they are
assigned. Real imports go to Vapi; the mock is used in development and tests.
"""

from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Optional
from uuid import uuid4

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from number_pool.core.config import settings
from number_pool.core.logging import get_logger
from number_pool.utils.helpers import mask_phone

logger = get_logger(__name__)

# Vapi rejects phone number names longer than this
MAX_NAME_LENGTH = 40

# Carriers we connect to Vapi through our own SIP trunk
SIP_TRUNK_PROVIDERS = {"voipcloud", "byo-sip-trunk"}


class VoiceProvider(ABC):
    """Interface every voice provider adapter implements."""

    name: str = "base"

    @abstractmethod
    async def import_phone_number(
        self,
        phone_number: str,
        provider: str,
        name: Optional[str] = None,
        assistant_id: Optional[str] = None,
    ) -> dict:
        """Register a number with the voice provider.

        Returns:
            dict with at least ``id`` (the provider's phone number id)
        """


class VapiVoiceProvider(VoiceProvider):
    """Vapi phone number import."""

    name = "vapi"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key or settings.vapi_api_key
        self.base_url = (base_url or settings.vapi_base_url).rstrip("/")
        self.credential_id = settings.vapi_credential_id

    def _get_headers(self) -> dict:
        """Get API request headers."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(
        self,
        phone_number: str,
        provider: str,
        name: Optional[str],
        assistant_id: Optional[str],
    ) -> dict:
        name = (name or f"Number-{phone_number[-4:]}")[:MAX_NAME_LENGTH]
        payload = {"provider": provider, "number": phone_number, "name": name}

        if provider in SIP_TRUNK_PROVIDERS:
            if self.credential_id:
                payload["provider"] = "byo-sip-trunk"
                payload["credentialId"] = self.credential_id
            else:
                logger.warning("vapi_credential_missing", provider=provider)

        if assistant_id:
            payload["assistantId"] = assistant_id

        return payload

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def import_phone_number(
        self,
        phone_number: str,
        provider: str,
        name: Optional[str] = None,
        assistant_id: Optional[str] = None,
    ) -> dict:
        logger.info(
            "vapi_import_attempt",
            phone_number=mask_phone(phone_number),
            provider=provider,
        )

        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{self.base_url}/phone-number",
                headers=self._get_headers(),
                json=self._build_payload(phone_number, provider, name, assistant_id),
                timeout=settings.import_timeout_seconds,
            )
            response.raise_for_status()
            data = response.json()

        logger.info(
            "vapi_number_imported",
            phone_number=mask_phone(phone_number),
            vapi_id=data.get("id"),
        )

        return {
            "id": data.get("id"),
            "number": data.get("number", phone_number),
            "provider": data.get("provider", provider),
            "name": data.get("name"),
            "assistant_id": data.get("assistantId"),
        }


class MockVoiceProvider(VoiceProvider):
    """In-memory provider for development and tests."""

    name = "mock"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.imported: dict[str, dict] = {}
        self.calls: list[str] = []

    async def import_phone_number(
        self,
        phone_number: str,
        provider: str,
        name: Optional[str] = None,
        assistant_id: Optional[str] = None,
    ) -> dict:
        self.calls.append(phone_number)
        if self.fail:
            raise httpx.ConnectError("Mock voice provider unavailable")

        number = {
            "id": f"mock_phone_{uuid4().hex[:12]}",
            "number": phone_number,
            "provider": provider,
            "name": name or f"Number-{phone_number[-4:]}",
            "assistant_id": assistant_id,
        }
        self.imported[number["id"]] = number
        logger.info("mock_number_imported", phone_number=mask_phone(phone_number), vapi_id=number["id"])
        return number


@lru_cache
def get_voice_provider() -> VoiceProvider:
    """Get the configured voice provider (cached)."""
    if settings.use_mock_voice_provider:
        logger.info("voice_provider_selected", provider="mock")
        return MockVoiceProvider()
    logger.info("voice_provider_selected", provider="vapi")
    return VapiVoiceProvider()
