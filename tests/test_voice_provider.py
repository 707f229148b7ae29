"""Tests for voice provider adapters and phone helpers."""
import httpx
import pytest

from number_pool.services import MockVoiceProvider, VapiVoiceProvider
from number_pool.utils.helpers import mask_phone, normalize_phone


def test_payload_for_direct_provider():
    provider = VapiVoiceProvider(api_key="test-key", base_url="https://vapi.test/")

    payload = provider._build_payload("+35312655181", "twilio", None, None)

    assert payload == {"provider": "twilio", "number": "+35312655181", "name": "Number-5181"}


def test_payload_routes_sip_carriers_through_credential():
    provider = VapiVoiceProvider(api_key="test-key")
    provider.credential_id = "cred_123"

    payload = provider._build_payload("+35312655181", "voipcloud", "Ireland-5181", "asst_1")

    assert payload["provider"] == "byo-sip-trunk"
    assert payload["credentialId"] == "cred_123"
    assert payload["assistantId"] == "asst_1"
    assert payload["name"] == "Ireland-5181"


def test_payload_truncates_long_names():
    provider = VapiVoiceProvider(api_key="test-key")

    payload = provider._build_payload("+35312655181", "twilio", "x" * 60, None)

    assert len(payload["name"]) == 40


@pytest.mark.asyncio
async def test_vapi_import_posts_to_phone_number_endpoint(monkeypatch):
    sent = {}

    async def fake_post(self, url, **kwargs):
        sent["url"] = url
        sent["json"] = kwargs["json"]
        sent["auth"] = kwargs["headers"]["Authorization"]
        return httpx.Response(
            201,
            json={"id": "vapi_abc", "number": "+35312655181", "provider": "twilio"},
            request=httpx.Request("POST", url),
        )

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)
    provider = VapiVoiceProvider(api_key="test-key", base_url="https://vapi.test")

    imported = await provider.import_phone_number("+35312655181", "twilio", name="Ireland-5181")

    assert imported["id"] == "vapi_abc"
    assert sent["url"] == "https://vapi.test/phone-number"
    assert sent["json"]["name"] == "Ireland-5181"
    assert sent["auth"] == "Bearer test-key"


@pytest.mark.asyncio
async def test_vapi_import_raises_on_error_status(monkeypatch):
    async def fake_post(self, url, **kwargs):
        return httpx.Response(400, json={"message": "bad number"}, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)
    provider = VapiVoiceProvider(api_key="test-key", base_url="https://vapi.test")

    with pytest.raises(httpx.HTTPStatusError):
        await provider.import_phone_number("+35312655181", "twilio")


@pytest.mark.asyncio
async def test_mock_provider_records_imports():
    provider = MockVoiceProvider()

    imported = await provider.import_phone_number("+35312655181", "voipcloud")

    assert imported["id"].startswith("mock_phone_")
    assert provider.imported[imported["id"]]["number"] == "+35312655181"
    assert provider.calls == ["+35312655181"]


@pytest.mark.asyncio
async def test_mock_provider_can_fail():
    provider = MockVoiceProvider(fail=True)

    with pytest.raises(httpx.ConnectError):
        await provider.import_phone_number("+35312655181", "voipcloud")

    assert provider.calls == ["+35312655181"]
    assert provider.imported == {}


@pytest.mark.parametrize(
    "raw,region,expected",
    [
        ("01 265 5181", "IE", "+35312655181"),
        ("+353 1 265 5181", "IE", "+35312655181"),
        ("020 7946 0958", "GB", "+442079460958"),
        ("35312655181", "IE", "+35312655181"),
        ("", "IE", None),
    ],
)
def test_normalize_phone(raw, region, expected):
    assert normalize_phone(raw, region) == expected


def test_mask_phone():
    assert mask_phone("+35312655181") == "***5181"
    assert mask_phone("12") == "***"
