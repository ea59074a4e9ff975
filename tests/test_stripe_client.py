import json

import httpx
import pytest

from errors import ProviderError, ValidationError
from stripe_client import StripeCheckout, compute_signature

NOW = 1_760_000_000


def signed_header(payload: bytes, secret="whsec_test", timestamp=NOW) -> str:
    return f"t={timestamp},v1={compute_signature(secret, timestamp, payload)}"


@pytest.fixture
def checkout(test_settings):
    return StripeCheckout(test_settings, clock=lambda: NOW)


def test_valid_signature_returns_event(checkout):
    payload = json.dumps({"type": "checkout.session.completed"}).encode()

    event = checkout.construct_event(payload, signed_header(payload))

    assert event["type"] == "checkout.session.completed"


def test_any_matching_v1_signature_is_accepted(checkout):
    payload = b'{"type": "ping"}'
    header = f"t={NOW},v1=deadbeef,v1={compute_signature('whsec_test', NOW, payload)}"

    assert checkout.construct_event(payload, header)["type"] == "ping"


@pytest.mark.parametrize(
    "header",
    [None, "", "garbage", f"t={NOW},v1=deadbeef"],
)
def test_bad_signatures_are_rejected(checkout, header):
    with pytest.raises(ValidationError):
        checkout.construct_event(b"{}", header)


def test_tampered_payload_is_rejected(checkout):
    header = signed_header(b'{"amount": 1}')
    with pytest.raises(ValidationError):
        checkout.construct_event(b'{"amount": 1000}', header)


def test_stale_timestamp_is_rejected(checkout):
    payload = b"{}"
    with pytest.raises(ValidationError):
        checkout.construct_event(payload, signed_header(payload, timestamp=NOW - 301))


def test_missing_webhook_secret_is_provider_error(test_settings):
    settings = test_settings.model_copy(update={"stripe_webhook_secret": ""})
    with pytest.raises(ProviderError):
        StripeCheckout(settings).construct_event(b"{}", "t=1,v1=x")


@pytest.mark.asyncio
async def test_create_session_posts_job_metadata(test_settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["authorization"]
        seen["form"] = dict(httpx.QueryParams(request.content.decode()))
        return httpx.Response(200, json={"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"})

    checkout = StripeCheckout(test_settings, transport=httpx.MockTransport(handler))

    session = await checkout.create_session("job1", "ada@example.com", "https://s", "https://c")

    assert session == {"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"}
    assert seen["auth"] == "Bearer sk_test_123"
    assert seen["form"]["metadata[jobId]"] == "job1"
    assert seen["form"]["client_reference_id"] == "job1"
    assert seen["form"]["line_items[0][price_data][unit_amount]"] == "999"
    assert seen["form"]["customer_email"] == "ada@example.com"


@pytest.mark.asyncio
async def test_create_session_error_is_provider_error(test_settings):
    transport = httpx.MockTransport(lambda request: httpx.Response(402, json={"error": {"message": "card declined"}}))
    checkout = StripeCheckout(test_settings, transport=transport)

    with pytest.raises(ProviderError):
        await checkout.create_session("job1", None, "https://s", "https://c")
