# app/admin/service.py
"""
Admin Application Service: the single orchestration point for all
directory-management operations.

Responsibilities:
    1. Validate requests (via Pydantic models)
    2. Call repositories for persistence
    3. Run image uploads through the upload pipeline
    4. Emit audit events
    5. Translate repository / pipeline errors into ``AdminError`` subtypes

The transport layer (http_app.py admin routes) is a thin adapter:
    parse request -> call service -> map AdminError -> return JSON.
"""
from __future__ import annotations

from typing import Any
from uuid import UUID

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
    BatchMoveWebsitesRequest,
    BatchResponse,
    CategoryOut,
    CreateCategoryRequest,
    CreateWebsiteRequest,
    OkResponse,
    ProfileOut,
    UpdateCategoryRequest,
    UpdateRoleRequest,
    UpdateSettingRequest,
    UpdateWebsiteRequest,
    UploadResponse,
    VisitStatsResponse,
    WebsiteOut,
)
from app.infra.audit_log import audit_event
from app.infra.image_processor import (
    ImageCompressionError,
    ImageDecodeError,
    ImageTooLargeError,
    ImageUnsupportedFormatError,
    SourceFile,
)
from app.infra.image_upload import ImageUploadPipeline, ProgressCallback, get_image_pipeline
from app.infra.logging_config import get_logger
from app.infra.pg_category_repo_async import (
    AsyncPostgresCategoryRepository,
    CategoryNotFoundError,
    CategoryParentError,
    get_category_repo,
)
from app.infra.pg_profile_repo_async import (
    AsyncPostgresProfileRepository,
    ProfileNotFoundError,
    get_profile_repo,
)
from app.infra.pg_settings_repo_async import AsyncPostgresSettingsRepository, get_settings_repo
from app.infra.pg_visit_repo_async import AsyncPostgresVisitRepository, get_visit_repo
from app.infra.pg_website_repo_async import (
    AsyncPostgresWebsiteRepository,
    WebsiteCategoryError,
    WebsiteNotFoundError,
    WebsiteRecord,
    get_website_repo,
)
from app.infra.s3_storage import StorageError, StorageKeyConflictError, is_s3_available

logger = get_logger(__name__)

# Website columns that may hold a URL of an uploaded image
IMAGE_FIELDS = ("favicon_url", "logo_url")


class AdminApplicationService:
    """
    Orchestrates all admin-facing directory operations.

    Thread-safety: stateless, safe to use as a singleton. Repositories and
    the pipeline are resolved lazily so tests can inject fakes.
    """

    def __init__(
        self,
        categories: AsyncPostgresCategoryRepository | None = None,
        websites: AsyncPostgresWebsiteRepository | None = None,
        profiles: AsyncPostgresProfileRepository | None = None,
        site_settings: AsyncPostgresSettingsRepository | None = None,
        visits: AsyncPostgresVisitRepository | None = None,
        pipeline: ImageUploadPipeline | None = None,
    ) -> None:
        self._categories = categories
        self._websites = websites
        self._profiles = profiles
        self._settings = site_settings
        self._visits = visits
        self._pipeline = pipeline

    @property
    def categories(self) -> AsyncPostgresCategoryRepository:
        if self._categories is None:
            self._categories = get_category_repo()
        return self._categories

    @property
    def websites(self) -> AsyncPostgresWebsiteRepository:
        if self._websites is None:
            self._websites = get_website_repo()
        return self._websites

    @property
    def profiles(self) -> AsyncPostgresProfileRepository:
        if self._profiles is None:
            self._profiles = get_profile_repo()
        return self._profiles

    @property
    def site_settings(self) -> AsyncPostgresSettingsRepository:
        if self._settings is None:
            self._settings = get_settings_repo()
        return self._settings

    @property
    def visits(self) -> AsyncPostgresVisitRepository:
        if self._visits is None:
            self._visits = get_visit_repo()
        return self._visits

    @property
    def pipeline(self) -> ImageUploadPipeline:
        if self._pipeline is None:
            if not is_s3_available():
                raise StorageUnavailableError("Image storage is not configured")
            self._pipeline = get_image_pipeline()
        return self._pipeline

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    async def list_categories(self) -> list[CategoryOut]:
        """Full category tree, hidden categories included."""
        tree = await self.categories.list_tree()
        return [CategoryOut.model_validate(c) for c in tree]

    async def create_category(self, req: CreateCategoryRequest) -> CategoryOut:
        try:
            record = await self.categories.create(req.model_dump())
        except CategoryParentError as exc:
            raise ValidationError(str(exc))

        audit_event("category.create", entity="category", entity_id=record.id, detail=f"name={record.name}")
        return CategoryOut.model_validate(record)

    async def update_category(self, category_id: UUID, req: UpdateCategoryRequest) -> CategoryOut:
        fields = req.to_fields()
        if not fields:
            raise ValidationError("No fields to update")
        if fields.get("parent_id") == category_id:
            raise ValidationError("A category cannot be its own parent")

        try:
            record = await self.categories.update(category_id, fields)
        except CategoryNotFoundError:
            raise NotFoundError(f"Category '{category_id}' not found")
        except CategoryParentError as exc:
            raise ValidationError(str(exc))

        audit_event("category.update", entity="category", entity_id=category_id, detail=f"fields={sorted(fields)}")
        return CategoryOut.model_validate(record)

    async def delete_category(self, category_id: UUID) -> OkResponse:
        """Delete a category; subcategories and their websites cascade."""
        try:
            await self.categories.delete(category_id)
        except CategoryNotFoundError:
            raise NotFoundError(f"Category '{category_id}' not found")

        audit_event("category.delete", entity="category", entity_id=category_id)
        return OkResponse()

    # ------------------------------------------------------------------
    # Websites
    # ------------------------------------------------------------------

    async def list_websites(self, category_id: UUID | None = None) -> list[WebsiteOut]:
        records = await self.websites.list_all(category_id)
        return [WebsiteOut.model_validate(w) for w in records]

    async def get_website(self, website_id: UUID) -> WebsiteOut:
        record = await self.websites.get(website_id)
        if record is None:
            raise NotFoundError(f"Website '{website_id}' not found")
        return WebsiteOut.model_validate(record)

    async def create_website(self, req: CreateWebsiteRequest, created_by: UUID | None = None) -> WebsiteOut:
        try:
            record = await self.websites.create(req.model_dump(), created_by=created_by)
        except WebsiteCategoryError as exc:
            raise ValidationError(str(exc))

        audit_event("website.create", entity="website", entity_id=record.id, detail=f"title={record.title}")
        return WebsiteOut.model_validate(record)

    async def update_website(self, website_id: UUID, req: UpdateWebsiteRequest) -> WebsiteOut:
        fields = req.to_fields()
        if not fields:
            raise ValidationError("No fields to update")

        before = await self.websites.get(website_id)
        if before is None:
            raise NotFoundError(f"Website '{website_id}' not found")

        try:
            record = await self.websites.update(website_id, fields)
        except WebsiteNotFoundError:
            raise NotFoundError(f"Website '{website_id}' not found")
        except WebsiteCategoryError as exc:
            raise ValidationError(str(exc))

        # Replaced images are no longer referenced
        stale = [
            getattr(before, f) for f in IMAGE_FIELDS
            if f in fields and getattr(before, f) != getattr(record, f)
        ]
        await self._remove_images(stale)

        audit_event("website.update", entity="website", entity_id=website_id, detail=f"fields={sorted(fields)}")
        return WebsiteOut.model_validate(record)

    async def delete_website(self, website_id: UUID) -> OkResponse:
        """Delete a website and the uploaded images it referenced."""
        try:
            record = await self.websites.delete(website_id)
        except WebsiteNotFoundError:
            raise NotFoundError(f"Website '{website_id}' not found")

        await self._remove_images(self._image_urls([record]))
        audit_event("website.delete", entity="website", entity_id=website_id)
        return OkResponse()

    async def batch_delete_websites(self, req: BatchDeleteWebsitesRequest) -> BatchResponse:
        records = await self.websites.batch_delete(req.ids)
        await self._remove_images(self._image_urls(records))

        audit_event(
            "website.batch_delete", entity="website",
            detail=f"requested={len(req.ids)} deleted={len(records)}",
        )
        return BatchResponse(affected=len(records))

    async def batch_move_websites(self, req: BatchMoveWebsitesRequest) -> BatchResponse:
        try:
            count = await self.websites.batch_update_category(req.ids, req.category_id)
        except WebsiteCategoryError as exc:
            raise ValidationError(str(exc))

        audit_event(
            "website.batch_move", entity="category", entity_id=req.category_id,
            detail=f"requested={len(req.ids)} moved={count}",
        )
        return BatchResponse(affected=count)

    async def website_stats(self, website_id: UUID, days: int = 30) -> VisitStatsResponse:
        if days < 1:
            raise ValidationError("days must be at least 1")
        if await self.websites.get(website_id) is None:
            raise NotFoundError(f"Website '{website_id}' not found")

        visits = await self.visits.count_visits(website_id, days=days)
        return VisitStatsResponse(website_id=website_id, days=days, visits=visits)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def list_users(self) -> list[ProfileOut]:
        records = await self.profiles.list_all()
        return [ProfileOut.model_validate(p) for p in records]

    async def update_user_role(self, user_id: UUID, req: UpdateRoleRequest) -> OkResponse:
        try:
            await self.profiles.update_role(user_id, req.role)
        except ProfileNotFoundError:
            raise NotFoundError(f"User '{user_id}' not found")

        audit_event("user.role", entity="user", entity_id=user_id, detail=f"role={req.role}")
        return OkResponse()

    # ------------------------------------------------------------------
    # Site settings
    # ------------------------------------------------------------------

    async def get_settings(self) -> dict[str, Any]:
        return await self.site_settings.get_all()

    async def get_setting(self, key: str) -> Any:
        value = await self.site_settings.get(key)
        if value is None:
            raise NotFoundError(f"Setting '{key}' not found")
        return value

    async def update_setting(self, key: str, req: UpdateSettingRequest) -> OkResponse:
        if not key.strip():
            raise ValidationError("Setting key must not be empty")

        await self.site_settings.upsert(key, req.value, req.description)
        audit_event("setting.update", entity="setting", entity_id=key)
        return OkResponse()

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def upload_image(
        self,
        data: bytes,
        content_type: str | None,
        filename: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> UploadResponse:
        """
        Validate, compress if needed, and store one image.

        Pipeline errors map to HTTP-level errors:
        unsupported type 415, undecodable 422, still too large 413,
        existing key 409, other storage failures 502.
        """
        source = SourceFile(data=data, content_type=content_type or "", filename=filename)
        try:
            result = await self.pipeline.upload(source, on_progress=on_progress)
        except ImageUnsupportedFormatError as exc:
            raise UnsupportedMediaTypeError(str(exc))
        except (ImageDecodeError, ImageCompressionError) as exc:
            raise UnprocessableImageError(str(exc))
        except ImageTooLargeError as exc:
            raise PayloadTooLargeError(str(exc))
        except StorageKeyConflictError as exc:
            raise ConflictError(str(exc))
        except StorageError as exc:
            raise StorageUnavailableError(str(exc))

        audit_event(
            "image.upload", entity="image", entity_id=result.path,
            detail=f"compressed={result.compressed}",
        )
        return UploadResponse(**result.to_dict())

    async def upload_website_image(
        self,
        website_id: UUID,
        field: str,
        data: bytes,
        content_type: str | None,
        filename: str | None = None,
    ) -> WebsiteOut:
        """Upload an image and store its URL on the website's favicon/logo field."""
        if field not in IMAGE_FIELDS:
            raise ValidationError(f"Unknown image field '{field}'")

        before = await self.websites.get(website_id)
        if before is None:
            raise NotFoundError(f"Website '{website_id}' not found")

        uploaded = await self.upload_image(data, content_type, filename)
        try:
            record = await self.websites.update(website_id, {field: uploaded.url})
        except WebsiteNotFoundError:
            # Deleted while uploading; don't leave the object orphaned
            await self._remove_images([uploaded.url])
            raise NotFoundError(f"Website '{website_id}' not found")

        previous = getattr(before, field)
        if previous and previous != uploaded.url:
            await self._remove_images([previous])
        return WebsiteOut.model_validate(record)

    async def delete_image(self, path: str) -> OkResponse:
        if not path or not path.strip():
            raise ValidationError("path is required")

        try:
            await self.pipeline.delete(path)
        except StorageError as exc:
            raise StorageUnavailableError(str(exc))

        audit_event("image.delete", entity="image", entity_id=path)
        return OkResponse()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _image_urls(records: list[WebsiteRecord]) -> list[str]:
        return [url for r in records for url in (r.favicon_url, r.logo_url) if url]

    async def _remove_images(self, urls: list[str | None]) -> None:
        """Best-effort delete of images we stored; failures are logged only."""
        urls = [u for u in urls if u]
        if not urls or (self._pipeline is None and not is_s3_available()):
            return

        for url in urls:
            try:
                await self.pipeline.delete_by_url(url)
            except StorageError as exc:
                logger.warning(f"Orphaned image left in storage: url={url}, error={exc}")


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_svc: AdminApplicationService | None = None


def get_admin_service() -> AdminApplicationService:
    """Get the global AdminApplicationService singleton."""
    global _svc
    if _svc is None:
        _svc = AdminApplicationService()
    return _svc


def reset_admin_service() -> None:
    """Reset the singleton (for testing)."""
    global _svc
    _svc = None
