"""
Comicgen - Object storage.

Uploaders push panel and page images somewhere public and hand back a URL.
Uploads are idempotent by public id: re-uploading the same id overwrites.

- S3Uploader: boto3 put_object into COMIC_STORAGE_BUCKET
- LocalUploader: files under <data_dir>/assets, returned as file:// URLs

ImageFetcher is the read side, used by the page composer.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import boto3
import httpx

from comicgen.config import Settings

logger = logging.getLogger(__name__)


class Uploader(ABC):
    """Pushes image bytes to storage under a deterministic public id."""

    @abstractmethod
    async def upload(
        self,
        data: bytes,
        public_id: str,
        folder: str,
        content_type: str = "image/png",
    ) -> str:
        """Store the bytes and return their public URL."""


class S3Uploader(Uploader):
    """Uploads to an S3 bucket. boto3 is blocking, so calls run in a thread."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        public_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        self.access_key_id = access_key_id or None
        self.secret_access_key = secret_access_key or None
        self.region = region
        self.public_url = public_url.rstrip("/") if public_url else None
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                aws_access_key_id=self.access_key_id,
                aws_secret_access_key=self.secret_access_key,
                region_name=self.region,
            )
        return self._client

    def _url_for(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def upload(self, data, public_id, folder, content_type="image/png") -> str:
        extension = content_type.split("/")[-1]
        key = f"{folder.strip('/')}/{public_id}.{extension}"
        s3 = self._get_client()
        await asyncio.to_thread(
            s3.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        url = self._url_for(key)
        logger.info(f"Uploaded {key} ({len(data):,} bytes)")
        return url


class LocalUploader(Uploader):
    """Writes into a local directory. Used when no bucket is configured."""

    def __init__(self, root: str):
        self.root = Path(root)

    async def upload(self, data, public_id, folder, content_type="image/png") -> str:
        extension = content_type.split("/")[-1]
        path = self.root / folder.strip("/") / f"{public_id}.{extension}"
        await asyncio.to_thread(self._write, path, data)
        logger.info(f"Stored {path} ({len(data):,} bytes)")
        return path.resolve().as_uri()

    @staticmethod
    def _write(path: Path, data: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)


def build_uploader(settings: Settings) -> Uploader:
    """S3 when a bucket is configured, local directory otherwise."""
    if settings.storage_bucket:
        return S3Uploader(
            bucket=settings.storage_bucket,
            region=settings.aws_region,
            public_url=settings.storage_public_url,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
        )
    logger.info(f"COMIC_STORAGE_BUCKET not set - storing images under {settings.assets_dir}")
    return LocalUploader(settings.assets_dir)


class ImageFetcher:
    """Synchronous image download for the composer (runs in a worker thread)."""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def __call__(self, url: str) -> bytes:
        """Return image bytes. Raises on any failure; callers draw a placeholder."""
        parsed = urlparse(url)
        if parsed.scheme == "file":
            with open(unquote(parsed.path), "rb") as f:
                return f.read()

        response = self._get_client().get(url)
        if not response.is_success:
            raise RuntimeError(f"Image download failed ({response.status_code}): {url}")
        return response.content

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None
