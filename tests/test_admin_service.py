# tests/test_admin_service.py
"""Tests for AdminApplicationService error mapping and image handling."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from app.admin.errors import (
    ConflictError,
    NotFoundError,
    PayloadTooLargeError,
    StorageUnavailableError,
    UnprocessableImageError,
    UnsupportedMediaTypeError,
    ValidationError,
)
from app.admin.models import (
    BatchDeleteWebsitesRequest,
    CreateCategoryRequest,
    CreateWebsiteRequest,
    UpdateCategoryRequest,
    UpdateRoleRequest,
    UpdateWebsiteRequest,
)
from app.admin.service import AdminApplicationService
from app.infra.image_processor import ImageConfig
from app.infra.image_upload import ImageUploadPipeline
from app.infra.pg_category_repo_async import CategoryNotFoundError, CategoryParentError, CategoryRecord
from app.infra.pg_profile_repo_async import ProfileNotFoundError
from app.infra.pg_website_repo_async import WebsiteCategoryError, WebsiteNotFoundError, WebsiteRecord
from app.infra.s3_storage import StorageError

CDN = "https://cdn.test/images"


def _website(**overrides) -> WebsiteRecord:
    fields = dict(id=uuid4(), category_id=uuid4(), title="Example", url="https://example.com")
    fields.update(overrides)
    return WebsiteRecord(**fields)


def _service(storage=None, config=None, **repos) -> AdminApplicationService:
    pipeline = None
    if storage is not None:
        pipeline = ImageUploadPipeline(storage, config=config or ImageConfig(), clock=lambda: 1)
    return AdminApplicationService(
        categories=repos.get("categories", AsyncMock()),
        websites=repos.get("websites", AsyncMock()),
        profiles=repos.get("profiles", AsyncMock()),
        site_settings=repos.get("site_settings", AsyncMock()),
        visits=repos.get("visits", AsyncMock()),
        pipeline=pipeline,
    )


class TestCategories:
    @pytest.mark.asyncio
    async def test_create(self):
        categories = AsyncMock()
        categories.create.return_value = CategoryRecord(id=uuid4(), name="Tools", icon="🔧")

        out = await _service(categories=categories).create_category(CreateCategoryRequest(name="Tools", icon="🔧"))

        assert out.name == "Tools"
        fields = categories.create.call_args.args[0]
        assert fields["name"] == "Tools"
        assert fields["parent_id"] is None

    @pytest.mark.asyncio
    async def test_create_unknown_parent(self):
        categories = AsyncMock()
        categories.create.side_effect = CategoryParentError("Parent category not found")

        with pytest.raises(ValidationError):
            await _service(categories=categories).create_category(CreateCategoryRequest(name="X", parent_id=uuid4()))

    @pytest.mark.asyncio
    async def test_update_requires_fields(self):
        with pytest.raises(ValidationError):
            await _service().update_category(uuid4(), UpdateCategoryRequest())

    @pytest.mark.asyncio
    async def test_update_self_parent(self):
        category_id = uuid4()
        with pytest.raises(ValidationError):
            await _service().update_category(category_id, UpdateCategoryRequest(parent_id=category_id))

    @pytest.mark.asyncio
    async def test_delete_missing(self):
        categories = AsyncMock()
        categories.delete.side_effect = CategoryNotFoundError("missing")

        with pytest.raises(NotFoundError) as exc_info:
            await _service(categories=categories).delete_category(uuid4())
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_tree_includes_children(self):
        root = CategoryRecord(id=uuid4(), name="Root")
        root.children = [CategoryRecord(id=uuid4(), name="Child", parent_id=root.id, is_visible=False)]
        categories = AsyncMock()
        categories.list_tree.return_value = [root]

        tree = await _service(categories=categories).list_categories()
        assert tree[0].children[0].name == "Child"


class TestWebsites:
    @pytest.mark.asyncio
    async def test_create_unknown_category(self):
        websites = AsyncMock()
        websites.create.side_effect = WebsiteCategoryError("Category not found")

        req = CreateWebsiteRequest(category_id=uuid4(), title="T", url="https://t.example")
        with pytest.raises(ValidationError):
            await _service(websites=websites).create_website(req)

    @pytest.mark.asyncio
    async def test_create_passes_creator(self):
        websites = AsyncMock()
        websites.create.return_value = _website()
        creator = uuid4()

        req = CreateWebsiteRequest(category_id=uuid4(), title="T", url="https://t.example")
        await _service(websites=websites).create_website(req, created_by=creator)
        assert websites.create.call_args.kwargs["created_by"] == creator

    def test_url_must_be_http(self):
        with pytest.raises(Exception):
            CreateWebsiteRequest(category_id=uuid4(), title="T", url="javascript:alert(1)")

    @pytest.mark.asyncio
    async def test_delete_removes_own_images_only(self, fake_storage):
        fake_storage.objects["fav_1.png"] = (b"x", "image/png")
        record = _website(favicon_url=f"{CDN}/fav_1.png", logo_url="https://elsewhere.example/logo.png")
        websites = AsyncMock()
        websites.delete.return_value = record

        await _service(storage=fake_storage, websites=websites).delete_website(record.id)

        assert fake_storage.removed == ["fav_1.png"]

    @pytest.mark.asyncio
    async def test_delete_survives_storage_failure(self, storage_factory):
        storage = storage_factory(fail_remove=StorageError("Delete failed: timeout"))
        websites = AsyncMock()
        websites.delete.return_value = _website(logo_url=f"{CDN}/logo_1.png")

        result = await _service(storage=storage, websites=websites).delete_website(uuid4())
        assert result.ok is True

    @pytest.mark.asyncio
    async def test_delete_missing(self):
        websites = AsyncMock()
        websites.delete.side_effect = WebsiteNotFoundError("missing")

        with pytest.raises(NotFoundError):
            await _service(websites=websites).delete_website(uuid4())

    @pytest.mark.asyncio
    async def test_batch_delete_cleans_images(self, fake_storage):
        records = [_website(favicon_url=f"{CDN}/a_1.png"), _website(logo_url=f"{CDN}/b_1.png")]
        websites = AsyncMock()
        websites.batch_delete.return_value = records

        result = await _service(storage=fake_storage, websites=websites).batch_delete_websites(
            BatchDeleteWebsitesRequest(ids=[r.id for r in records] + [uuid4()])
        )

        assert result.affected == 2
        assert sorted(fake_storage.removed) == ["a_1.png", "b_1.png"]

    @pytest.mark.asyncio
    async def test_update_replacing_favicon_removes_old(self, fake_storage):
        before = _website(favicon_url=f"{CDN}/old_1.png")
        after = _website(id=before.id, favicon_url=f"{CDN}/new_1.png")
        websites = AsyncMock()
        websites.get.return_value = before
        websites.update.return_value = after

        await _service(storage=fake_storage, websites=websites).update_website(
            before.id, UpdateWebsiteRequest(favicon_url=f"{CDN}/new_1.png")
        )
        assert fake_storage.removed == ["old_1.png"]

    @pytest.mark.asyncio
    async def test_stats(self):
        websites = AsyncMock()
        websites.get.return_value = _website()
        visits = AsyncMock()
        visits.count_visits.return_value = 12
        website_id = uuid4()

        stats = await _service(websites=websites, visits=visits).website_stats(website_id, days=7)

        assert stats.visits == 12
        visits.count_visits.assert_awaited_once_with(website_id, days=7)


class TestUsers:
    @pytest.mark.asyncio
    async def test_role_update_missing_user(self):
        profiles = AsyncMock()
        profiles.update_role.side_effect = ProfileNotFoundError("missing")

        with pytest.raises(NotFoundError):
            await _service(profiles=profiles).update_user_role(uuid4(), UpdateRoleRequest(role="admin"))

    def test_role_restricted(self):
        with pytest.raises(Exception):
            UpdateRoleRequest(role="superuser")


class TestImages:
    @pytest.mark.asyncio
    async def test_upload(self, fake_storage, small_png):
        result = await _service(storage=fake_storage).upload_image(small_png, "image/png", "logo.png")
        assert result.path == "logo_1.png"
        assert result.url == f"{CDN}/logo_1.png"
        assert result.compressed is False

    @pytest.mark.asyncio
    async def test_unsupported_type_415(self, fake_storage):
        with pytest.raises(UnsupportedMediaTypeError) as exc_info:
            await _service(storage=fake_storage).upload_image(b"x", "text/plain", "a.txt")
        assert exc_info.value.status_code == 415

    @pytest.mark.asyncio
    async def test_undecodable_422(self, fake_storage):
        svc = _service(storage=fake_storage, config=ImageConfig(max_file_size_bytes=10))
        with pytest.raises(UnprocessableImageError):
            await svc.upload_image(b"\x00" * 100, "image/png", "bad.png")

    @pytest.mark.asyncio
    async def test_too_large_413(self, fake_storage, image_factory):
        svc = _service(storage=fake_storage, config=ImageConfig(max_file_size_bytes=500))
        with pytest.raises(PayloadTooLargeError):
            await svc.upload_image(image_factory(600, 600, noise=True), "image/png", "big.png")

    @pytest.mark.asyncio
    async def test_duplicate_key_409(self, fake_storage, small_png):
        svc = _service(storage=fake_storage)
        await svc.upload_image(small_png, "image/png", "logo.png")
        with pytest.raises(ConflictError):
            await svc.upload_image(small_png, "image/png", "logo.png")

    @pytest.mark.asyncio
    async def test_storage_failure_502(self, storage_factory, small_png):
        storage = storage_factory(fail_put=StorageError("Upload failed: InternalError"))
        with pytest.raises(StorageUnavailableError) as exc_info:
            await _service(storage=storage).upload_image(small_png, "image/png", "logo.png")
        assert exc_info.value.detail == "Upload failed: InternalError"
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_upload_website_image_sets_field(self, fake_storage, small_png):
        before = _website(logo_url=f"{CDN}/old_1.png")
        websites = AsyncMock()
        websites.get.return_value = before
        websites.update.return_value = _website(id=before.id, logo_url=f"{CDN}/new_1.png")

        out = await _service(storage=fake_storage, websites=websites).upload_website_image(
            before.id, "logo_url", small_png, "image/png", "new.png"
        )

        websites.update.assert_awaited_once_with(before.id, {"logo_url": f"{CDN}/new_1.png"})
        assert out.logo_url == f"{CDN}/new_1.png"
        assert fake_storage.removed == ["old_1.png"]

    @pytest.mark.asyncio
    async def test_upload_website_image_unknown_field(self, fake_storage):
        with pytest.raises(ValidationError):
            await _service(storage=fake_storage).upload_website_image(uuid4(), "title", b"x", "image/png")

    @pytest.mark.asyncio
    async def test_delete_image_error_surfaced(self, storage_factory):
        storage = storage_factory(fail_remove=StorageError("Delete failed: AccessDenied"))
        with pytest.raises(StorageUnavailableError, match="AccessDenied"):
            await _service(storage=storage).delete_image("logo_1.png")

    @pytest.mark.asyncio
    async def test_storage_not_configured(self, monkeypatch):
        monkeypatch.setattr("app.admin.service.is_s3_available", MagicMock(return_value=False))
        with pytest.raises(StorageUnavailableError):
            await _service().upload_image(b"x", "image/png", "a.png")
