# storage.py
import logging
import os
from typing import Optional, Tuple

import boto3
from botocore.config import Config

from settings import Settings

logger = logging.getLogger(__name__)

IMAGES_PREFIX = "generated-images"


# --- R2 / S3 -------------------------------------------------------------------

class R2Storage:
    """
    Owned object storage on Cloudflare R2 (S3 API).

    NOTE:
    - endpoint_url MUST be the S3 API endpoint (the cloudflarestorage.com host),
      NOT the public/dev domain. Region must be "auto" and path-style is required.
    """

    def __init__(self, settings: Settings, client=None):
        self.bucket = settings.r2_bucket
        self.public_base = (settings.r2_public_base or "").rstrip("/")
        # served by GET /files/{key} when the bucket has no public domain
        self.files_base = f"{settings.app_url}/files"
        self._s3 = client or boto3.client(
            "s3",
            endpoint_url=self._normalize_endpoint(settings.r2_endpoint_url, self.bucket),
            aws_access_key_id=settings.r2_access_key_id or None,
            aws_secret_access_key=settings.r2_secret_access_key or None,
            region_name="auto",
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    @staticmethod
    def _normalize_endpoint(endpoint: Optional[str], bucket: Optional[str]) -> Optional[str]:
        if not endpoint:
            return None
        # Normalize accidental trailing slashes or bucket suffixes
        endpoint = endpoint.rstrip("/")
        if bucket and endpoint.endswith(f"/{bucket}"):
            endpoint = endpoint[: -(len(bucket) + 1)]
        return endpoint

    def put(self, path: str, data: bytes, content_type: str = "image/jpeg") -> None:
        self._s3.put_object(Bucket=self.bucket, Key=path, Body=data, ContentType=content_type)

    def public_url(self, path: str) -> str:
        """
        Prefer the configured public base (custom domain / r2.dev) for read URLs.
        Otherwise point at this app's /files route. Item URLs are stored, so they must not expire.
        """
        base = self.public_base or self.files_base
        return f"{base}/{path.lstrip('/')}"

    def open(self, path: str) -> Tuple[object, str]:
        """Returns (streaming_body, content_type) for the /files route."""
        obj = self._s3.get_object(Bucket=self.bucket, Key=path)
        return obj["Body"], obj.get("ContentType", "application/octet-stream")


# --- Local disk fallback ------------------------------------------------------

class LocalStorage:
    """Writes under a local directory and serves through GET /files/local/{path}."""

    def __init__(self, settings: Settings):
        self.root = settings.local_storage_dir
        self.public_base = f"{settings.app_url}/files/local"
        os.makedirs(self.root, exist_ok=True)

    def _resolve(self, path: str) -> str:
        full = os.path.abspath(os.path.join(self.root, path))
        if not full.startswith(os.path.abspath(self.root) + os.sep):
            raise ValueError(f"path escapes storage root: {path}")
        return full

    def put(self, path: str, data: bytes, content_type: str = "image/jpeg") -> None:
        full = self._resolve(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "wb") as f:
            f.write(data)

    def public_url(self, path: str) -> str:
        return f"{self.public_base}/{path.lstrip('/')}"

    def local_path(self, path: str) -> Optional[str]:
        full = self._resolve(path)
        return full if os.path.isfile(full) else None


def build_storage(settings: Settings):
    if settings.storage == "r2":
        logger.info("Using R2 storage bucket=%s", settings.r2_bucket)
        return R2Storage(settings)
    logger.info("Using local storage dir=%s", settings.local_storage_dir)
    return LocalStorage(settings)
