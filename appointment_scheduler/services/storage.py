"""
Object storage for audio attachments.

Handles writing attachment bytes and handing back a durable URL, either on the
local filesystem (served under MEDIA_URL) or in an S3-compatible bucket.
"""
import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
from starlette.concurrency import run_in_threadpool

from ..core.config import settings
from ..core.errors import UploadError

logger = logging.getLogger(__name__)

AUDIO_PREFIX = "audio"


def generate_audio_key(filename: str, content_type: str) -> str:
    """
    Generate a unique object key for an audio attachment.

    Format: audio/{uuid4}{extension}
    """
    extension = Path(filename or "").suffix.lower()
    if not extension or not extension[1:].isalnum():
        extension = mimetypes.guess_extension(content_type) or ""
    return f"{AUDIO_PREFIX}/{uuid.uuid4()}{extension}"


class ObjectStore:
    """Write a blob, get back a durable URL."""

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError


class LocalObjectStore(ObjectStore):
    def __init__(self, root: str, base_url: str):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        try:
            await run_in_threadpool(self._write, key, data)
        except OSError as e:
            logger.error(f"Error writing {key} to {self.root}: {e}")
            raise UploadError() from e
        return f"{self.base_url}/{key}"

    def _write(self, key: str, data: bytes):
        path = self.root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)


class S3ObjectStore(ObjectStore):
    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        region: str = "auto",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client=None
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(signature_version="s3v4"),
            region_name=region,
        )

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        try:
            await run_in_threadpool(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Error uploading {key} to bucket {self.bucket}: {e}")
            raise UploadError() from e
        return self.url_for(key)

    def url_for(self, key: str) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"


def create_object_store() -> ObjectStore:
    """Object store for the configured backend."""
    if settings.OBJECT_STORE_BACKEND == "s3":
        if not settings.S3_BUCKET:
            raise RuntimeError("S3_BUCKET must be set when OBJECT_STORE_BACKEND is 's3'")
        return S3ObjectStore(
            bucket=settings.S3_BUCKET,
            endpoint_url=settings.S3_ENDPOINT_URL,
            region=settings.S3_REGION,
            access_key_id=settings.S3_ACCESS_KEY_ID,
            secret_access_key=settings.S3_SECRET_ACCESS_KEY,
        )
    return LocalObjectStore(settings.MEDIA_ROOT, settings.MEDIA_URL)
