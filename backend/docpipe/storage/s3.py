"""
S3 Object Storage — raw upload download

The pipeline only reads: uploads are written by the (external) upload
service, and the worker fetches them by key. Keys come from the Document
row, never from task arguments, so a forged task cannot read arbitrary
objects.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from docpipe.core.config import settings
from docpipe.core.errors import ExtractionError, NetworkError

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")


@dataclass(frozen=True)
class ObjectInfo:
    key:          str
    size_bytes:   int
    content_type: str
    etag:         str


class ObjectStorageService:
    """
    Async S3 reads for the ingestion worker.

    Usage:
        storage = ObjectStorageService()
        data = await storage.download(document.source_key)
    """

    def __init__(self, bucket: str | None = None) -> None:
        self._bucket  = bucket or settings.s3_bucket
        self._session = aioboto3.Session()

    def _client(self):
        """Return a scoped async S3 client context manager."""
        params: dict = {"region_name": settings.aws_region}
        if settings.s3_endpoint_url:
            params["endpoint_url"] = settings.s3_endpoint_url
        if settings.aws_access_key_id:
            params["aws_access_key_id"]     = settings.aws_access_key_id
            params["aws_secret_access_key"] = settings.aws_secret_access_key
        return self._session.client("s3", **params)

    async def download(self, key: str) -> bytes:
        """Download an object. Missing keys raise ExtractionError."""
        t0 = time.monotonic()
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                data = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in _NOT_FOUND_CODES:
                    raise ExtractionError(f"Object not found: {key}") from exc
                raise
            except BotoCoreError as exc:
                raise NetworkError(f"S3 download failed for {key}: {exc}") from exc

        logger.info(
            "S3 download ok | key=%s size=%d elapsed_ms=%.0f",
            key, len(data), (time.monotonic() - t0) * 1000,
        )
        return data

    async def head(self, key: str) -> ObjectInfo:
        """Return metadata for an object without downloading it."""
        async with self._client() as s3:
            try:
                resp = await s3.head_object(Bucket=self._bucket, Key=key)
            except ClientError as exc:
                if exc.response["Error"]["Code"] in _NOT_FOUND_CODES:
                    raise ExtractionError(f"Object not found: {key}") from exc
                raise
        return ObjectInfo(
            key=key,
            size_bytes=int(resp.get("ContentLength", 0)),
            content_type=resp.get("ContentType", "application/octet-stream"),
            etag=resp.get("ETag", "").strip('"'),
        )
