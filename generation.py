# generation.py
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

from errors import ProviderError
from normalizer import OutputNormalizer, placeholder_url
from storage import IMAGES_PREFIX
from styles import StyleDescriptor

logger = logging.getLogger(__name__)


@dataclass
class StyleResult:
    """Outcome of one style: a usable URL, or an error marker with a placeholder."""

    style: StyleDescriptor
    url: Optional[str] = None
    error: Optional[str] = None
    placeholder_url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.url is not None and self.error is None


def image_key(job_id: str, style_id: str) -> str:
    return f"{IMAGES_PREFIX}/{job_id}/{style_id}-{int(time.time() * 1000)}.jpg"


class GenerationDriver:
    """
    Calls the inference provider once per style and normalizes each output.

    Providers throttle aggressively, so the default is one call at a time with a fixed
    pause between calls. concurrency > 1 runs up to that many calls at once.
    A failing style never aborts the batch.
    """

    def __init__(
        self,
        inference,
        normalizer: OutputNormalizer,
        *,
        trigger_word: str = "TOK",
        delay_sec: float = 12.0,
        timeout_sec: float = 120.0,
        concurrency: int = 1,
        backoff: Sequence[float] = (5, 20, 50),
    ):
        self.inference = inference
        self.normalizer = normalizer
        self.trigger_word = trigger_word
        self.delay_sec = delay_sec
        self.timeout_sec = timeout_sec
        self.concurrency = max(1, concurrency)
        self.backoff = list(backoff)

    async def generate(self, job_id: str, model_ref: str, styles: Sequence[StyleDescriptor]) -> List[StyleResult]:
        if self.concurrency == 1:
            results = []
            for index, style in enumerate(styles):
                if index and self.delay_sec:
                    await asyncio.sleep(self.delay_sec)
                results.append(await self.generate_one(job_id, model_ref, style))
            return results

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(style: StyleDescriptor) -> StyleResult:
            async with semaphore:
                return await self.generate_one(job_id, model_ref, style)

        # gather preserves input order
        return list(await asyncio.gather(*(bounded(style) for style in styles)))

    async def generate_one(self, job_id: str, model_ref: str, style: StyleDescriptor) -> StyleResult:
        logger.info("Generating %s for job %s", style.label, job_id)
        try:
            raw = await self._run_with_backoff(model_ref, style.prompt_for(self.trigger_word))
        except ProviderError as e:
            logger.error("Failed to generate %s for job %s: %s", style.label, job_id, e)
            return StyleResult(style=style, error=e.message, placeholder_url=placeholder_url(style.label))
        except Exception as e:
            logger.exception("Unexpected error generating %s for job %s", style.label, job_id)
            return StyleResult(style=style, error=f"{type(e).__name__}: {e}", placeholder_url=placeholder_url(style.label))

        normalized = await self.normalizer.normalize(raw, image_key(job_id, style.id), style.label)
        if not normalized.ok:
            return StyleResult(style=style, error=normalized.error, placeholder_url=normalized.url)

        logger.info("Generated %s for job %s", style.label, job_id)
        return StyleResult(style=style, url=normalized.url)

    async def _run_once(self, model_ref: str, prompt: str):
        try:
            return await asyncio.wait_for(self.inference.run(model_ref, prompt), timeout=self.timeout_sec)
        except asyncio.TimeoutError as e:
            raise ProviderError(f"inference timed out after {self.timeout_sec:.0f}s") from e

    async def _run_with_backoff(self, model_ref: str, prompt: str):
        for attempt, delay in enumerate(self.backoff):
            try:
                return await self._run_once(model_ref, prompt)
            except ProviderError as e:
                if not e.rate_limited:
                    raise
                logger.warning(
                    "Rate limited (attempt %d/%d), retrying in %.0fs: %s",
                    attempt + 1, len(self.backoff), delay, e.message,
                )
                await asyncio.sleep(delay)
        # Final attempt
        return await self._run_once(model_ref, prompt)
