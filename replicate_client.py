# replicate_client.py
import asyncio
import base64
import io
import logging
import re
import zipfile
from typing import Any, Dict, List, Optional, Tuple

import httpx
import replicate
from replicate.exceptions import ReplicateException

from errors import ProviderError
from settings import Settings

logger = logging.getLogger(__name__)

# Inference defaults for the trained LoRA (one square JPEG per call)
GENERATION_PARAMS: Dict[str, Any] = {
    "num_inference_steps": 28,
    "guidance_scale": 3.5,
    "num_outputs": 1,
    "aspect_ratio": "1:1",
    "output_format": "jpg",
    "output_quality": 90,
}


def _provider_error(exc: Exception, what: str) -> ProviderError:
    text = str(exc)
    status = getattr(exc, "status", None)
    response = getattr(exc, "response", None)
    if status is None and response is not None:
        status = response.status_code
    rate_limited = status == 429 or "429" in text or "Too Many Requests" in text
    return ProviderError(f"{what} failed: {text}", rate_limited=rate_limited, retry_after=5 if rate_limited else None)


def _data_uri(data: bytes, content_type: str) -> str:
    return f"data:{content_type};base64,{base64.b64encode(data).decode('ascii')}"


def zip_photos(photos: List[Tuple[str, bytes]]) -> bytes:
    """Pack (filename, bytes) pairs into one in-memory zip archive."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for index, (name, data) in enumerate(photos):
            zf.writestr(name or f"photo-{index}.jpg", data)
    return buf.getvalue()


def _client(settings: Settings):
    if not settings.replicate_api_token:
        logger.warning("REPLICATE_API_TOKEN not set; provider calls will fail")
    return replicate.Client(api_token=settings.replicate_api_token or None)


class ReplicateInference:
    def __init__(self, settings: Settings, client=None):
        self._client = client or _client(settings)

    async def run(self, model_ref: str, prompt: str, params: Optional[Dict[str, Any]] = None) -> Any:
        payload = {**GENERATION_PARAMS, **(params or {}), "prompt": prompt}
        try:
            return await asyncio.to_thread(self._client.run, model_ref, input=payload)
        except (ReplicateException, httpx.HTTPError) as e:
            raise _provider_error(e, "inference") from e


class ReplicateTrainer:
    """Starts a LoRA fine-tune; the outcome arrives later on the training webhook."""

    def __init__(self, settings: Settings, client=None):
        self.settings = settings
        self._client = client or _client(settings)

    def _destination(self, submitter_email: str) -> str:
        owner = self.settings.replicate_destination_owner or self._client.accounts.current().username
        # URL-friendly model name per submitter
        name = re.sub(r"[^a-z0-9-]", "-", f"{submitter_email.split('@')[0]}-expressr-model".lower())
        try:
            self._client.models.get(f"{owner}/{name}")
        except ReplicateException:
            logger.info("Creating model %s/%s", owner, name)
            self._client.models.create(owner=owner, name=name, visibility="private", hardware="gpu-t4")
        return f"{owner}/{name}"

    def _submit(self, photos: List[Tuple[str, bytes]], submitter_email: str, trigger_word: str,
                webhook_url: Optional[str]) -> str:
        destination = self._destination(submitter_email)
        params: Dict[str, Any] = {}
        # Replicate only delivers webhooks to public HTTPS endpoints
        if webhook_url and webhook_url.startswith("https"):
            params = {"webhook": webhook_url, "webhook_events_filter": ["completed"]}
        training = self._client.trainings.create(
            version=f"{self.settings.replicate_trainer_model}:{self.settings.replicate_trainer_version}",
            input={
                "input_images": _data_uri(zip_photos(photos), "application/zip"),
                "trigger_word": trigger_word,
                "steps": self.settings.training_steps,
                "lora_rank": 32,
                "optimizer": "adamw8bit",
                "batch_size": 1,
                "resolution": "512,768,1024",
                "autocaption": True,
                "learning_rate": 0.0004,
            },
            destination=destination,
            **params,
        )
        logger.info("Training %s started -> %s", training.id, destination)
        return training.id

    async def submit(self, photos: List[Tuple[str, bytes]], submitter_email: str, trigger_word: str,
                     webhook_url: Optional[str] = None) -> str:
        try:
            return await asyncio.to_thread(self._submit, photos, submitter_email, trigger_word, webhook_url)
        except (ReplicateException, httpx.HTTPError) as e:
            raise _provider_error(e, "training submission") from e


class ReplicateFaceValidator:
    def __init__(self, settings: Settings, client=None):
        self.model = settings.replicate_face_model
        self._client = client or _client(settings)

    async def count_faces(self, image: bytes, content_type: str = "image/jpeg") -> int:
        try:
            output = await asyncio.to_thread(
                self._client.run,
                self.model,
                input={"images": _data_uri(image, content_type), "max_faces": 10, "min_confidence": 0.5},
            )
        except (ReplicateException, httpx.HTTPError) as e:
            raise _provider_error(e, "face validation") from e
        return len(output) if isinstance(output, list) else 0
