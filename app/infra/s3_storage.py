# app/infra/s3_storage.py
"""
S3-compatible storage for uploaded website images (favicons, logos).

Supports:
- AWS S3
- Cloudflare R2
- MinIO (for testing)
- Any S3-compatible storage

Configuration:

PRODUCTION (public cloud bucket):
    S3_ENDPOINT_URL=https://s3.amazonaws.com (or R2 endpoint)
    S3_PUBLIC_URL=https://cdn.example.com/bucket (public/CDN URL)
    S3_BUCKET_NAME=website-images
    S3_ACCESS_KEY=...
    S3_SECRET_KEY=...

TESTING (internal MinIO):
    S3_ENDPOINT_URL=http://minio:9000
    S3_PUBLIC_URL= (empty - URLs built from endpoint + bucket)
    S3_BUCKET_NAME=website-images
    S3_ACCESS_KEY=minioadmin
    S3_SECRET_KEY=minioadmin

Writes are conditional (If-None-Match: *) so an existing key is never
overwritten; the conflict surfaces as StorageKeyConflictError.
"""
from __future__ import annotations

import asyncio

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

# S3 error codes for a failed If-None-Match precondition
_CONFLICT_CODES = {"PreconditionFailed", "ConditionalRequestConflict", "412", "409"}


class StorageError(Exception):
    """Blob storage rejected or failed an operation"""
    pass


class StorageKeyConflictError(StorageError):
    """Target key already exists"""
    pass


def _client_error_message(e: ClientError) -> str:
    error = e.response.get("Error", {})
    return error.get("Message") or error.get("Code") or str(e)


class S3Storage:
    """S3-compatible blob storage bound to a single bucket."""

    def __init__(
        self,
        client,
        bucket: str,
        public_url: str | None = None,
        endpoint_url: str | None = None,
        cache_control: str = "max-age=3600",
    ):
        if not bucket:
            raise ValueError("bucket is required")
        self._client = client
        self._bucket = bucket
        self._public_url = public_url
        self._endpoint_url = endpoint_url
        self._cache_control = cache_control

    @classmethod
    def from_settings(cls, s=None) -> "S3Storage":
        """Create a storage client from application settings."""
        if s is None:
            from app.config import settings as s

        if not s.s3_enabled:
            raise RuntimeError("S3 storage not configured")

        client = boto3.client(
            "s3",
            endpoint_url=s.s3_endpoint_url,
            aws_access_key_id=s.s3_access_key,
            aws_secret_access_key=s.s3_secret_key,
            region_name=s.s3_region,
            config=Config(
                signature_version="s3v4",
                # The upload flow reports failures once; no SDK-level retries
                retries={"max_attempts": 1, "mode": "standard"},
                s3={"addressing_style": "path" if s.s3_force_path_style else "virtual"}
            ),
        )
        logger.info(
            f"S3 storage initialized: bucket={s.s3_bucket_name}, "
            f"endpoint={s.s3_endpoint_url}"
        )
        return cls(
            client=client,
            bucket=s.s3_bucket_name,
            public_url=s.s3_public_url,
            endpoint_url=s.s3_endpoint_url,
            cache_control=s.s3_cache_control,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def client(self):
        return self._client

    def _url_prefix(self) -> str:
        if self._public_url:
            return self._public_url.rstrip("/")
        return f"{(self._endpoint_url or '').rstrip('/')}/{self._bucket}"

    def public_url(self, path: str) -> str:
        """
        Public URL for a stored object.

        If S3_PUBLIC_URL is not set, falls back to endpoint/bucket/key,
        which only resolves when the bucket allows anonymous reads.
        """
        return f"{self._url_prefix()}/{path.lstrip('/')}"

    def path_from_url(self, url: str) -> str | None:
        prefix = f"{self._url_prefix()}/"
        if url and url.startswith(prefix) and len(url) > len(prefix):
            return url[len(prefix):]
        return None

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """
        Upload an object without overwriting.

        Returns:
            The storage path (the key)

        Raises:
            StorageKeyConflictError: key already exists
            StorageError: any other backend failure
        """
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl=self._cache_control,
                IfNoneMatch="*",
            )
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            message = _client_error_message(e)
            AppMetrics.storage_error("put")
            if code in _CONFLICT_CODES:
                logger.warning(f"S3 upload rejected, key exists: key={key}")
                raise StorageKeyConflictError(f"Upload failed: {message}") from e
            logger.error(f"S3 upload failed: key={key}, error={e}", exc_info=True)
            raise StorageError(f"Upload failed: {message}") from e
        except BotoCoreError as e:
            AppMetrics.storage_error("put")
            logger.error(f"S3 upload failed: key={key}, error={e}", exc_info=True)
            raise StorageError(f"Upload failed: {e}") from e

        logger.info(f"Object uploaded to S3: key={key}, size={len(data)}, type={content_type}")
        return key

    async def remove(self, path: str) -> None:
        """Delete an object. Backend errors are surfaced verbatim."""
        try:
            await asyncio.to_thread(
                self._client.delete_object,
                Bucket=self._bucket,
                Key=path,
            )
        except ClientError as e:
            AppMetrics.storage_error("remove")
            logger.error(f"S3 delete failed: key={path}, error={e}", exc_info=True)
            raise StorageError(f"Delete failed: {_client_error_message(e)}") from e
        except BotoCoreError as e:
            AppMetrics.storage_error("remove")
            logger.error(f"S3 delete failed: key={path}, error={e}", exc_info=True)
            raise StorageError(f"Delete failed: {e}") from e

        logger.info(f"Object deleted from S3: key={path}")


# Global instance (lazy initialization)
_s3_storage: S3Storage | None = None


def get_s3_storage() -> S3Storage:
    """Get the global S3 storage instance."""
    global _s3_storage
    if _s3_storage is None:
        _s3_storage = S3Storage.from_settings()
    return _s3_storage


def is_s3_available() -> bool:
    """Check if S3 storage is configured."""
    from app.config import settings
    return settings.s3_enabled
