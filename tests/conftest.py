# tests/conftest.py
import io
from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from models import utcnow
from services import build_services
from settings import Settings
from stripe_client import StripeCheckout

IMAGE_BYTES = b"\xff\xd8\xff\xe0fake-jpeg-bytes"
MODEL_REF = "tester/ada-expressr-model:abc123"


class FakeClock:
    """Controllable clock shared by the task queue and the dedup guard."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeStorage:
    def __init__(self):
        self.objects = {}

    def put(self, path, data, content_type="image/jpeg"):
        self.objects[path] = (data, content_type)

    def public_url(self, path):
        return f"https://cdn.test/{path}"


class FakeInference:
    """Returns scripted outputs in order, then fresh provider URLs. Exceptions in the script are raised."""

    def __init__(self):
        self.calls = []
        self.script = []

    async def run(self, model_ref, prompt, params=None):
        self.calls.append((model_ref, prompt))
        if self.script:
            out = self.script.pop(0)
            if isinstance(out, Exception):
                raise out
            return out
        return [f"https://replicate.delivery/out/{len(self.calls)}.jpg"]


class FakeTrainer:
    def __init__(self):
        self.calls = []

    async def submit(self, photos, submitter_email, trigger_word, webhook_url=None):
        self.calls.append((len(photos), submitter_email, trigger_word, webhook_url))
        return f"train-{len(self.calls)}"


class FakeEmailer:
    def __init__(self):
        self.sent = []

    async def send(self, to, subject, body_html):
        self.sent.append((to, subject))
        return True


class DummyS3:
    """In-memory stand-in for the boto3 S3 client."""

    def __init__(self):
        self.objects = {}

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[(Bucket, Key)] = (Body, ContentType)

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise KeyError(Key)
        body, content_type = self.objects[(Bucket, Key)]
        return {"Body": io.BytesIO(body), "ContentType": content_type}


class FakeFaceValidator:
    def __init__(self, faces=1):
        self.faces = faces

    async def count_faces(self, image, content_type="image/jpeg"):
        return self.faces


def _downloads(request: httpx.Request) -> httpx.Response:
    if "broken" in request.url.path:
        return httpx.Response(500)
    return httpx.Response(200, content=IMAGE_BYTES, headers={"content-type": "image/jpeg"})


def _stripe_api(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"})


def photos(n=12):
    return [(f"photo-{i}.jpg", IMAGE_BYTES) for i in range(n)]


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        database_url="sqlite:///:memory:",
        storage="local",
        local_storage_dir=str(tmp_path / "files"),
        public_base_url="http://testserver",
        generation_delay_sec=0,
        rate_limit_backoff=[0, 0],
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
        resend_api_key="",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def inference():
    return FakeInference()


@pytest.fixture
def trainer():
    return FakeTrainer()


@pytest.fixture
def emailer():
    return FakeEmailer()


@pytest.fixture
def face_validator():
    return FakeFaceValidator()


@pytest.fixture
def http_client():
    return httpx.AsyncClient(transport=httpx.MockTransport(_downloads))


@pytest.fixture
def services(test_settings, storage, inference, trainer, emailer, face_validator, http_client, clock):
    return build_services(
        test_settings,
        storage=storage,
        inference=inference,
        trainer=trainer,
        payment=StripeCheckout(test_settings, transport=httpx.MockTransport(_stripe_api)),
        emailer=emailer,
        face_validator=face_validator,
        http_client=http_client,
        clock=clock,
    )


@pytest.fixture
def machine(services):
    return services.machine


@pytest.fixture
def client(services):
    from main import app, get_services

    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()
