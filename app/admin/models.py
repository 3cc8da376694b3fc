# app/admin/models.py
"""
Pydantic request/response models for the directory and admin APIs.

These live *outside* the transport layer so the services can
validate payloads without depending on FastAPI.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from urllib.parse import urlparse
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _check_http_url(v: str | None) -> str | None:
    if v is None or v == "":
        return v
    parsed = urlparse(v)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("must be an http(s) URL")
    return v


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class CreateCategoryRequest(BaseModel):
    """Create a category (root when parent_id is omitted)."""

    name: str = Field(..., min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=1024)
    icon: str | None = Field(default=None, max_length=64, description="Emoji or icon name")
    parent_id: UUID | None = None
    sort_order: int = 0
    is_visible: bool = True


class UpdateCategoryRequest(BaseModel):
    """Update an existing category (partial)."""

    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=1024)
    icon: str | None = Field(default=None, max_length=64)
    parent_id: UUID | None = None
    sort_order: int | None = None
    is_visible: bool | None = None

    def to_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class CreateWebsiteRequest(BaseModel):
    """Add a website to a category."""

    category_id: UUID
    title: str = Field(..., min_length=1, max_length=256)
    url: str = Field(..., max_length=2048)
    description: str | None = Field(default=None, max_length=2048)
    favicon_url: str | None = Field(default=None, max_length=2048)
    logo_url: str | None = Field(default=None, max_length=2048)
    sort_order: int = 0
    is_featured: bool = False
    is_visible: bool = True

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, v: str) -> str:
        return _check_http_url(v)

    @field_validator("favicon_url", "logo_url")
    @classmethod
    def image_url_must_be_http(cls, v: str | None) -> str | None:
        return _check_http_url(v)


class UpdateWebsiteRequest(BaseModel):
    """Update an existing website (partial)."""

    category_id: UUID | None = None
    title: str | None = Field(default=None, min_length=1, max_length=256)
    url: str | None = Field(default=None, max_length=2048)
    description: str | None = Field(default=None, max_length=2048)
    favicon_url: str | None = Field(default=None, max_length=2048)
    logo_url: str | None = Field(default=None, max_length=2048)
    sort_order: int | None = None
    is_featured: bool | None = None
    is_visible: bool | None = None

    @field_validator("url", "favicon_url", "logo_url")
    @classmethod
    def urls_must_be_http(cls, v: str | None) -> str | None:
        return _check_http_url(v)

    def to_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class BatchDeleteWebsitesRequest(BaseModel):
    ids: list[UUID] = Field(..., min_length=1, max_length=500)


class BatchMoveWebsitesRequest(BaseModel):
    ids: list[UUID] = Field(..., min_length=1, max_length=500)
    category_id: UUID


class UpdateRoleRequest(BaseModel):
    role: Literal["user", "admin"]


class UpdateSettingRequest(BaseModel):
    value: Any = None
    description: str | None = Field(default=None, max_length=1024)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None = None
    icon: str | None = None
    parent_id: UUID | None = None
    sort_order: int = 0
    is_visible: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None
    children: list["CategoryOut"] = Field(default_factory=list)


class WebsiteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    category_id: UUID
    title: str
    url: str
    description: str | None = None
    favicon_url: str | None = None
    logo_url: str | None = None
    sort_order: int = 0
    is_featured: bool = False
    is_visible: bool = True
    click_count: int = 0
    created_by: UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    category_name: str | None = None
    category_icon: str | None = None
    is_favorited: bool | None = None


class FavoriteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    website_id: UUID
    created_at: datetime | None = None
    website: WebsiteOut | None = None


class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str | None = None
    role: str
    avatar_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class UploadResponse(BaseModel):
    url: str
    path: str
    compressed: bool


class ClickResponse(BaseModel):
    ok: bool = True
    tier: str


class VisitStatsResponse(BaseModel):
    website_id: UUID
    days: int
    visits: int


class BatchResponse(BaseModel):
    ok: bool = True
    affected: int


class OkResponse(BaseModel):
    ok: bool = True
