"""Payment provider client for grant-access charges.

Endpoints used:
- POST {payment_provider_url}/charges: create a charge, returns {"id": ...}

Outcomes arrive later through the payment webhook; this client only starts
the charge and returns the provider reference.
"""

import hashlib
import hmac
import logging
from typing import Optional

import httpx

from premarket_platform.app.config import get_settings
from premarket_platform.domain.errors import PaymentProviderError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Provider-Signature"


class PaymentProviderClient:
    """Create charges at the external payment provider."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: float = 10.0):
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.payment_provider_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.payment_provider_api_key
        self.timeout = timeout

    @property
    def _configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def create_charge(self, amount: float, currency: str, metadata: Optional[dict] = None) -> str:
        """Start a charge and return the provider reference.

        Amounts go over the wire in the smallest currency unit (cents).
        Raises PaymentProviderError on transport errors, non-2xx responses
        or a missing reference.
        """
        if not self._configured:
            raise PaymentProviderError("Payment provider not configured")

        payload = {
            "amount": int(round(amount * 100)),
            "currency": currency.lower(),
            "metadata": metadata or {},
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/charges",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Accept": "application/json",
                        "Idempotency-Key": (metadata or {}).get("idempotency_key", ""),
                    },
                )
        except httpx.TimeoutException as e:
            logger.error("Payment provider timed out creating charge: %s", e)
            raise PaymentProviderError("Payment provider timed out") from e
        except httpx.HTTPError as e:
            logger.error("Payment provider transport error: %s", e)
            raise PaymentProviderError(str(e)) from e

        if not 200 <= resp.status_code < 300:
            logger.error("Payment provider rejected charge (%d): %s", resp.status_code, resp.text[:300])
            raise PaymentProviderError(f"Payment provider returned HTTP {resp.status_code}")

        reference = resp.json().get("id")
        if not reference:
            raise PaymentProviderError("Payment provider response missing charge id")

        logger.info("Charge created: reference=%s amount=%.2f %s", reference, amount, currency)
        return reference


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw webhook body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Constant-time check of a webhook signature. No secret configured means no check."""
    if not secret:
        return True
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(secret, body), signature)
