# stripe_client.py
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from errors import ProviderError, ValidationError
from settings import Settings

logger = logging.getLogger(__name__)

# ---- Stripe public API ----
STRIPE_API_BASE = "https://api.stripe.com/v1"
SIGNATURE_TOLERANCE_SEC = 300


def compute_signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def _parse_signature_header(header: str):
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t" and value.isdigit():
            timestamp = int(value)
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


class StripeCheckout:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None,
                 clock: Callable[[], float] = time.time):
        self.secret_key = settings.stripe_secret_key
        self.webhook_secret = settings.stripe_webhook_secret
        self.price_cents = settings.price_cents
        self.currency = settings.currency
        self._transport = transport
        self._clock = clock

    def _headers(self) -> Dict[str, str]:
        if not self.secret_key:
            raise ProviderError("STRIPE_SECRET_KEY not set")
        return {"Authorization": f"Bearer {self.secret_key}"}

    async def create_session(self, job_id: str, customer_email: Optional[str], success_url: str,
                             cancel_url: str) -> Dict[str, Any]:
        """
        Create a hosted Checkout Session for the full pack.
        The job id rides along as client_reference_id and metadata.jobId.
        """
        form = {
            "mode": "payment",
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]": self.currency,
            "line_items[0][price_data][unit_amount]": str(self.price_cents),
            "line_items[0][price_data][product_data][name]": "Expressr Full Pack (12 Expressions)",
            "line_items[0][price_data][product_data][description]": "Unlock 9 additional professional AI expressions.",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": job_id,
            "metadata[jobId]": job_id,
        }
        if customer_email:
            form["customer_email"] = customer_email

        try:
            async with httpx.AsyncClient(timeout=30.0, headers=self._headers(), transport=self._transport) as client:
                r = await client.post(f"{STRIPE_API_BASE}/checkout/sessions", data=form)
        except httpx.HTTPError as e:
            raise ProviderError(f"checkout session create failed: {e}") from e
        if r.status_code >= 300:
            raise ProviderError(f"checkout session create failed: {r.status_code} {r.text}")
        data = r.json()
        return {"id": data["id"], "url": data["url"]}

    def construct_event(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and return the decoded event."""
        if not self.webhook_secret:
            raise ProviderError("STRIPE_WEBHOOK_SECRET not set")
        if not signature_header:
            raise ValidationError("Missing signature")

        timestamp, signatures = _parse_signature_header(signature_header)
        if timestamp is None or not signatures:
            raise ValidationError("Invalid signature")

        expected = compute_signature(self.webhook_secret, timestamp, payload)
        if not any(hmac.compare_digest(expected, sig) for sig in signatures):
            logger.error("Webhook signature verification failed")
            raise ValidationError("Invalid signature")
        if abs(self._clock() - timestamp) > SIGNATURE_TOLERANCE_SEC:
            raise ValidationError("Signature timestamp outside tolerance")

        try:
            return json.loads(payload)
        except ValueError as e:
            raise ValidationError(f"Invalid payload: {e}") from e
