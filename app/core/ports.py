# app/core/ports.py
from __future__ import annotations
from typing import Protocol


class BlobStorage(Protocol):
    """
    Object store holding uploaded images.

    put() must never overwrite: an existing key is reported as a
    StorageError, not retried.
    """

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store data under key, returning the storage path."""
        ...

    def public_url(self, path: str) -> str: ...

    async def remove(self, path: str) -> None: ...

    def path_from_url(self, url: str) -> str | None:
        """
        Reverse of public_url(): the storage path when url points into
        this store, else None.
        """
        ...
