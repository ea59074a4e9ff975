# normalizer.py
# ------------------------------------------------------------------------------------
#  Turns whatever the inference provider hands back into one URL we own.
#
#  Provider output is classified once into a closed set of shapes:
#     UrlList | StreamList | Url | Stream | UrlObject | Unknown
#  URLs are downloaded and re-uploaded to our storage (third-party links expire);
#  streams are drained and uploaded; Unknown becomes an explicit error marker.
# ------------------------------------------------------------------------------------
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, Union

import httpx

logger = logging.getLogger(__name__)

PLACEHOLDER_BASE = "https://placehold.co/800x800"


@dataclass(frozen=True)
class UrlList:
    urls: List[str]


@dataclass(frozen=True)
class StreamList:
    streams: List[Any]


@dataclass(frozen=True)
class Url:
    url: str


@dataclass(frozen=True)
class Stream:
    stream: Any


@dataclass(frozen=True)
class UrlObject:
    url: str


@dataclass(frozen=True)
class Unknown:
    reason: str


RawOutput = Union[UrlList, StreamList, Url, Stream, UrlObject, Unknown]


@dataclass(frozen=True)
class NormalizedOutput:
    url: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def placeholder_url(label: str, kind: str = "Error") -> str:
    return f"{PLACEHOLDER_BASE}?text={label.replace(' ', '+')}+{kind}"


def _is_stream(value: Any) -> bool:
    if isinstance(value, (bytes, bytearray)):
        return True
    if isinstance(value, (str, dict, list, tuple)):
        return False
    return callable(getattr(value, "read", None)) or hasattr(value, "__iter__")


def _url_field(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        url = value.get("url")
    else:
        url = getattr(value, "url", None)
    return url if isinstance(url, str) and url else None


def classify(raw: Any) -> RawOutput:
    if isinstance(raw, (list, tuple)):
        if not raw:
            return Unknown("empty output list")
        first = raw[0]
        if isinstance(first, str):
            return UrlList(list(raw))
        if _is_stream(first):
            return StreamList(list(raw))
        url = _url_field(first)
        if url:
            return UrlObject(url)
        return Unknown(f"unsupported list item type {type(first).__name__}")
    if isinstance(raw, str):
        return Url(raw) if raw else Unknown("empty string output")
    if _is_stream(raw):
        return Stream(raw)
    url = _url_field(raw)
    if url:
        return UrlObject(url)
    return Unknown(f"unsupported output type {type(raw).__name__}")


def drain(stream: Any) -> bytes:
    if isinstance(stream, (bytes, bytearray)):
        return bytes(stream)
    if callable(getattr(stream, "read", None)):
        data = stream.read()
    else:
        data = b"".join(chunk for chunk in stream)
    if not isinstance(data, (bytes, bytearray)):
        raise TypeError(f"stream yielded {type(data).__name__}, expected bytes")
    return bytes(data)


class OutputNormalizer:
    def __init__(self, storage, http_client: Optional[httpx.AsyncClient] = None, download_timeout: float = 60.0):
        self.storage = storage
        self._http = http_client
        self._timeout = httpx.Timeout(download_timeout, connect=10.0)

    async def normalize(self, raw: Any, filename: str, label: str) -> NormalizedOutput:
        shape = classify(raw)

        if isinstance(shape, UrlList):
            return await self._rehost(shape.urls[0], filename)
        if isinstance(shape, (Url, UrlObject)):
            return await self._rehost(shape.url, filename)
        if isinstance(shape, StreamList):
            return await self._persist_stream(shape.streams[0], filename, label)
        if isinstance(shape, Stream):
            return await self._persist_stream(shape.stream, filename, label)

        logger.error("Unrecognized provider output for %s: %s", filename, shape.reason)
        return NormalizedOutput(url=placeholder_url(label, "FormatError"), error=shape.reason)

    async def _download(self, url: str) -> Tuple[bytes, str]:
        if self._http is not None:
            resp = await self._http.get(url)
        else:
            async with httpx.AsyncClient(follow_redirects=True, timeout=self._timeout) as client:
                resp = await client.get(url)
        resp.raise_for_status()
        content_type = resp.headers.get("content-type", "image/jpeg").split(";")[0]
        return resp.content, content_type

    async def _store(self, filename: str, data: bytes, content_type: str) -> str:
        await asyncio.to_thread(self.storage.put, filename, data, content_type)
        return self.storage.public_url(filename)

    async def _rehost(self, url: str, filename: str) -> NormalizedOutput:
        try:
            data, content_type = await self._download(url)
            return NormalizedOutput(url=await self._store(filename, data, content_type))
        except Exception as e:
            # Provider URL still resolves for a while; keep it rather than lose the image
            logger.warning("Re-upload of %s failed, keeping provider URL: %s", url, e)
            return NormalizedOutput(url=url)

    async def _persist_stream(self, stream: Any, filename: str, label: str) -> NormalizedOutput:
        try:
            # file handles from the SDK download on read()
            data = await asyncio.to_thread(drain, stream)
            return NormalizedOutput(url=await self._store(filename, data, "image/jpeg"))
        except Exception as e:
            logger.error("Upload of stream output %s failed: %s", filename, e)
            fallback = _url_field(stream)
            if fallback:
                return NormalizedOutput(url=fallback)
            return NormalizedOutput(url=placeholder_url(label, "UploadError"), error=f"upload failed: {e}")
