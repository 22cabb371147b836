"""
Object storage access for uploaded source files.

The upload handler (not part of this service) writes each file to the
bucket and stores the object key on documents.file_path. The pipeline
only ever reads.
"""

from __future__ import annotations

import logging

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from kb_ingest.core.config import Settings
from kb_ingest.core.exceptions import StorageError

logger = logging.getLogger(__name__)


class ObjectStorage:
    """Async S3 reads from the documents bucket."""

    def __init__(self, *, bucket: str, region: str, endpoint_url: str = "") -> None:
        self._bucket = bucket
        self._region = region
        self._endpoint_url = endpoint_url or None
        self._session = aioboto3.Session()

    @classmethod
    def from_settings(cls, cfg: Settings) -> "ObjectStorage":
        return cls(bucket=cfg.s3_bucket, region=cfg.aws_region, endpoint_url=cfg.s3_endpoint_url)

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._region,
            endpoint_url=self._endpoint_url,
        )

    async def get_bytes(self, key: str) -> bytes:
        """Download one object. Missing keys and S3 errors raise StorageError."""
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                data = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code", "")
                if code in ("NoSuchKey", "404"):
                    raise StorageError(f"Object not found: {key}") from exc
                raise StorageError(f"S3 error {code}: {exc}") from exc
            except BotoCoreError as exc:
                raise StorageError(f"S3 unavailable: {exc}") from exc

        logger.debug("S3 download ok | bucket=%s key=%s size=%d", self._bucket, key, len(data))
        return data
