"""Tests for the payment provider client and webhook signature helpers."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from premarket_platform.domain.errors import PaymentProviderError
from premarket_platform.infra.payment_provider import (
    PaymentProviderClient,
    compute_signature,
    verify_signature,
)

CLIENT_PATH = "premarket_platform.infra.payment_provider.httpx.AsyncClient"


def _make_mock_response(json_data: dict, status_code: int = 200) -> MagicMock:
    """Create a mock httpx.Response."""
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status_code
    resp.json.return_value = json_data
    resp.text = str(json_data)
    return resp


def _mock_client(response=None, side_effect=None) -> AsyncMock:
    mock_client = AsyncMock(spec=httpx.AsyncClient)
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
    else:
        mock_client.post.return_value = response
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


@pytest.fixture
def provider() -> PaymentProviderClient:
    return PaymentProviderClient(base_url="https://pay.example.com/", api_key="sk_test")


class TestCreateCharge:
    async def test_returns_reference_and_sends_cents(self, provider):
        mock_client = _mock_client(_make_mock_response({"id": "ch_123"}))

        with patch(CLIENT_PATH, return_value=mock_client):
            reference = await provider.create_charge(
                49.99, "USD", metadata={"grant_id": "g1", "idempotency_key": "p1:1"}
            )

        assert reference == "ch_123"
        args, kwargs = mock_client.post.call_args
        assert args[0] == "https://pay.example.com/charges"
        assert kwargs["json"]["amount"] == 4999
        assert kwargs["json"]["currency"] == "usd"
        assert kwargs["json"]["metadata"]["grant_id"] == "g1"
        assert kwargs["headers"]["Authorization"] == "Bearer sk_test"
        assert kwargs["headers"]["Idempotency-Key"] == "p1:1"

    async def test_non_2xx_raises(self, provider):
        mock_client = _mock_client(_make_mock_response({"error": "card_declined"}, status_code=402))

        with patch(CLIENT_PATH, return_value=mock_client):
            with pytest.raises(PaymentProviderError, match="402"):
                await provider.create_charge(10, "USD")

    async def test_missing_reference_raises(self, provider):
        mock_client = _mock_client(_make_mock_response({}))

        with patch(CLIENT_PATH, return_value=mock_client):
            with pytest.raises(PaymentProviderError, match="missing charge id"):
                await provider.create_charge(10, "USD")

    async def test_timeout_raises(self, provider):
        mock_client = _mock_client(side_effect=httpx.ReadTimeout("slow"))

        with patch(CLIENT_PATH, return_value=mock_client):
            with pytest.raises(PaymentProviderError, match="timed out"):
                await provider.create_charge(10, "USD")

    async def test_transport_error_raises(self, provider):
        mock_client = _mock_client(side_effect=httpx.ConnectError("refused"))

        with patch(CLIENT_PATH, return_value=mock_client):
            with pytest.raises(PaymentProviderError):
                await provider.create_charge(10, "USD")

    async def test_not_configured(self):
        unconfigured = PaymentProviderClient(base_url="", api_key="")
        with patch(CLIENT_PATH) as client_cls:
            with pytest.raises(PaymentProviderError, match="not configured"):
                await unconfigured.create_charge(10, "USD")
        client_cls.assert_not_called()


class TestSignature:
    def test_valid_signature(self):
        body = b'{"provider_event_id": "E1"}'
        assert verify_signature("whsec", body, compute_signature("whsec", body)) is True

    def test_tampered_body(self):
        signature = compute_signature("whsec", b'{"outcome": "failed"}')
        assert verify_signature("whsec", b'{"outcome": "succeeded"}', signature) is False

    def test_missing_signature(self):
        assert verify_signature("whsec", b"{}", None) is False

    def test_no_secret_skips_check(self):
        assert verify_signature("", b"{}", None) is True
