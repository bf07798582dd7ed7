"""S3 object storage for ingested documents.

All boto3 calls are wrapped with ``asyncio.to_thread()`` to avoid blocking.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from .config import S3Config
from .errors import UploadError

logger = structlog.get_logger()


@dataclass(frozen=True)
class StoredObject:
    """Identity of an uploaded document."""

    id: str
    url: str


class S3Store:
    """Uploads document bytes under a dated, collision-free key."""

    def __init__(self, config: S3Config) -> None:
        self._config = config
        self._client = None  # type: ignore[assignment]

    @property
    def is_configured(self) -> bool:
        return bool(self._config.bucket)

    async def start(self) -> None:
        """Create the boto3 S3 client."""
        kwargs: dict = {"region_name": self._config.region}
        if self._config.endpoint_url:
            kwargs["endpoint_url"] = self._config.endpoint_url
        self._client = await asyncio.to_thread(boto3.client, "s3", **kwargs)
        logger.info("s3_store_started", bucket=self._config.bucket)

    async def stop(self) -> None:
        """Clean up the boto3 client."""
        self._client = None
        logger.info("s3_store_stopped")

    async def upload_document(
        self,
        payload: bytes,
        content_type: str,
        suggested_name: str,
    ) -> StoredObject:
        """Upload one document.  Returns its id and ``s3://`` URI."""
        assert self._client is not None, "S3 client not started"
        document_id = uuid.uuid4().hex
        now = datetime.now(UTC)
        safe_name = _sanitize_filename(suggested_name) or "document"
        key = f"{self._config.prefix}/{now:%Y/%m}/{document_id}_{safe_name}"

        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self._config.bucket,
                Key=key,
                Body=payload,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise UploadError(f"S3 put_object failed: {exc}", key=key) from exc

        uri = f"s3://{self._config.bucket}/{key}"
        logger.debug("document_uploaded", document_id=document_id, uri=uri, size=len(payload))
        return StoredObject(id=document_id, url=uri)


def _sanitize_filename(name: str) -> str:
    """Remove characters unsafe for S3 keys."""
    return re.sub(r"[^\w.\-]", "_", name)
