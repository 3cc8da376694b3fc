# app/infra/image_upload.py
"""
Upload pipeline for website images.

    validate type -> compress (only if over budget) -> size guard
        -> sanitize key -> put (no overwrite) -> public URL

Strictly linear: every stage either passes or raises, nothing is retried
except the quality search inside compress_image(). Calls share no state,
so concurrent uploads of different files are independent.
"""
from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, asdict
from typing import Callable

from app.core.ports import BlobStorage
from app.infra.image_processor import (
    EXTENSION_BY_CONTENT_TYPE,
    ImageConfig,
    ImageError,
    SourceFile,
    check_size,
    compress_image,
    validate_content_type,
)
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics
from app.infra.s3_storage import StorageError

logger = get_logger(__name__)

ProgressCallback = Callable[[int], None]

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


@dataclass(frozen=True)
class UploadResult:
    """Where an upload ended up. The caller stores url/path on its own record."""
    url: str
    path: str
    compressed: bool

    def to_dict(self) -> dict:
        return asdict(self)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def sanitize_storage_key(
    filename: str | None,
    content_type: str | None = None,
    now_ms: int | None = None,
) -> str:
    """
    Build a storage key from an uploaded filename.

    ``"my logo (1).png"`` -> ``"my_logo__1__1718000000000.png"``

    The name keeps only ASCII letters and digits (everything else becomes
    ``_``), the original extension is kept, and a millisecond timestamp is
    appended so identical names uploaded at different times don't collide.
    A missing extension is derived from content_type.
    """
    filename = (filename or "").strip().replace("\\", "/").rsplit("/", 1)[-1]
    stem, dot, ext = filename.rpartition(".")
    if not dot:
        stem, ext = filename, ""

    ext = _NON_ALNUM.sub("", ext)
    if not ext:
        ext = EXTENSION_BY_CONTENT_TYPE.get((content_type or "").lower(), "bin")

    name = _NON_ALNUM.sub("_", stem) or "image"
    stamp = _now_ms() if now_ms is None else now_ms
    return f"{name}_{stamp}.{ext}"


class ImageUploadPipeline:
    """
    Validates, shrinks and stores one image per call.

    The storage backend and limits are injected so tests can point the
    pipeline at a fake store.
    """

    def __init__(
        self,
        storage: BlobStorage,
        config: ImageConfig | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._storage = storage
        self.config = config or ImageConfig.from_settings()
        self._clock = clock or _now_ms

    async def upload(
        self,
        source: SourceFile,
        on_progress: ProgressCallback | None = None,
    ) -> UploadResult:
        """
        Run the full pipeline for one file.

        Raises:
            ImageUnsupportedFormatError: content type not allowed (no decode attempted)
            ImageDecodeError / ImageCompressionError: oversized file could not be re-encoded
            ImageTooLargeError: still over budget after compression
            StorageError: backend rejected the write (including key conflicts)
        """
        with AppMetrics.track_upload_time():
            try:
                result = await self._run(source)
            except ImageError as e:
                AppMetrics.image_rejected(e.reason)
                logger.warning(f"Image upload rejected ({e.reason}): {e}")
                raise
            except StorageError:
                AppMetrics.image_rejected("storage_error")
                raise

        AppMetrics.image_uploaded(result.compressed)
        if on_progress is not None:
            on_progress(100)
        return result

    async def _run(self, source: SourceFile) -> UploadResult:
        content_type = validate_content_type(source.content_type, self.config)

        data = source.data
        upload_type = content_type
        compressed = False

        if source.size > self.config.max_file_size_bytes:
            candidate = await asyncio.to_thread(compress_image, source.data, self.config)
            AppMetrics.encode_attempts(candidate.attempts)
            data = candidate.data
            upload_type = candidate.content_type
            compressed = True

        check_size(data, self.config)

        key = sanitize_storage_key(source.filename, content_type, now_ms=self._clock())
        path = await self._storage.put(key, data, upload_type)
        url = self._storage.public_url(path)

        logger.info(
            f"Image uploaded: path={path}, size={len(data)}, compressed={compressed}",
            extra={"storage_key": path},
        )
        return UploadResult(url=url, path=path, compressed=compressed)

    async def delete(self, path: str) -> None:
        """Remove a stored image; storage errors propagate unchanged."""
        await self._storage.remove(path)
        logger.info(f"Image deleted: path={path}", extra={"storage_key": path})

    async def delete_by_url(self, url: str | None) -> bool:
        """
        Remove the object behind a public URL if it lives in our store.

        Returns False for empty or external URLs (nothing to delete).
        """
        if not url:
            return False
        path = self._storage.path_from_url(url)
        if path is None:
            return False
        await self.delete(path)
        return True


_pipeline: ImageUploadPipeline | None = None


def get_image_pipeline() -> ImageUploadPipeline:
    """Get the global pipeline bound to S3 storage."""
    global _pipeline
    if _pipeline is None:
        from app.infra.s3_storage import get_s3_storage
        _pipeline = ImageUploadPipeline(storage=get_s3_storage())
    return _pipeline
