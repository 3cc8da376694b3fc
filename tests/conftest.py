# tests/conftest.py
"""Pytest configuration and fixtures"""
import io
import sys
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from PIL import Image

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.infra.s3_storage import StorageError, StorageKeyConflictError  # noqa: E402

CDN = "https://cdn.test/images"


class FakeStorage:
    """In-memory BlobStorage with the same no-overwrite semantics as S3Storage."""

    def __init__(self, fail_put: Exception | None = None, fail_remove: Exception | None = None):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.put_calls: list[str] = []
        self.removed: list[str] = []
        self.fail_put = fail_put
        self.fail_remove = fail_remove

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        self.put_calls.append(key)
        if self.fail_put is not None:
            raise self.fail_put
        if key in self.objects:
            raise StorageKeyConflictError("Upload failed: The resource already exists")
        self.objects[key] = (data, content_type)
        return key

    def public_url(self, path: str) -> str:
        return f"{CDN}/{path}"

    async def remove(self, path: str) -> None:
        if self.fail_remove is not None:
            raise self.fail_remove
        self.objects.pop(path, None)
        self.removed.append(path)

    def path_from_url(self, url: str) -> str | None:
        prefix = f"{CDN}/"
        if url and url.startswith(prefix):
            return url[len(prefix):]
        return None


def make_image_bytes(width: int, height: int, fmt: str = "PNG", noise: bool = False, mode: str = "RGB") -> bytes:
    """Render an in-memory image. noise=True makes it compress poorly."""
    if noise:
        channel = Image.effect_noise((width, height), 64)
        img = Image.merge("RGB", (channel, channel.rotate(90, expand=False), channel.transpose(Image.Transpose.FLIP_LEFT_RIGHT)))
        if mode != "RGB":
            img = img.convert(mode)
    else:
        img = Image.new(mode, (width, height), (30, 120, 200) if mode == "RGB" else (30, 120, 200, 128))

    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def fake_safe_db_conn(conn):
    """Replacement for safe_db_conn that always yields ``conn``."""

    @asynccontextmanager
    async def _conn(autocommit: bool = True):
        yield conn

    return _conn


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def small_png():
    return make_image_bytes(64, 32)


@pytest.fixture(autouse=True)
def _reset_metrics():
    from app.infra.metrics import get_metrics_collector
    get_metrics_collector().reset()
    yield


@pytest.fixture
def image_factory():
    return make_image_bytes


@pytest.fixture
def storage_factory():
    return FakeStorage


@pytest.fixture
def db_conn_factory():
    return fake_safe_db_conn
