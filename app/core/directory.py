# app/core/directory.py
"""
Public directory operations: browsing, search, click tracking, favorites.

Only visible categories and websites are exposed here; the admin service
sees everything.
"""
from __future__ import annotations

from uuid import UUID

from app.admin.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from app.admin.models import CategoryOut, ClickResponse, FavoriteOut, OkResponse, WebsiteOut
from app.infra.logging_config import get_logger
from app.infra.pg_category_repo_async import (
    AsyncPostgresCategoryRepository,
    CategoryRecord,
    get_category_repo,
)
from app.infra.pg_favorite_repo_async import (
    AsyncPostgresFavoriteRepository,
    FavoriteAlreadyExistsError,
    FavoriteNotFoundError,
    FavoriteTargetError,
    get_favorite_repo,
)
from app.infra.pg_visit_repo_async import (
    AsyncPostgresVisitRepository,
    VisitTargetError,
    get_visit_repo,
)
from app.infra.pg_website_repo_async import (
    CLICK_TIER_MISSING,
    AsyncPostgresWebsiteRepository,
    get_website_repo,
)

logger = get_logger(__name__)


def visible_tree(roots: list[CategoryRecord]) -> list[CategoryRecord]:
    """Drop hidden categories; a hidden parent hides its children too."""
    visible = []
    for c in roots:
        if not c.is_visible:
            continue
        c.children = visible_tree(c.children)
        visible.append(c)
    return visible


class DirectoryService:
    """Read paths and per-user actions behind the public routes."""

    def __init__(
        self,
        categories: AsyncPostgresCategoryRepository | None = None,
        websites: AsyncPostgresWebsiteRepository | None = None,
        favorites: AsyncPostgresFavoriteRepository | None = None,
        visits: AsyncPostgresVisitRepository | None = None,
        featured_limit: int | None = None,
        search_limit: int | None = None,
    ) -> None:
        if featured_limit is None or search_limit is None:
            from app.config import settings
            featured_limit = featured_limit or settings.featured_websites_limit
            search_limit = search_limit or settings.search_results_limit

        self.categories = categories or get_category_repo()
        self.websites = websites or get_website_repo()
        self.favorites = favorites or get_favorite_repo()
        self.visits = visits or get_visit_repo()
        self.featured_limit = featured_limit
        self.search_limit = search_limit

    async def list_categories(self) -> list[CategoryOut]:
        tree = visible_tree(await self.categories.list_tree())
        return [CategoryOut.model_validate(c) for c in tree]

    async def list_websites(self, category_id: UUID | None = None) -> list[WebsiteOut]:
        records = await self.websites.list_all(category_id)
        return [WebsiteOut.model_validate(w) for w in records if w.is_visible]

    async def featured_websites(self, limit: int | None = None) -> list[WebsiteOut]:
        records = await self.websites.list_featured(limit or self.featured_limit)
        return [WebsiteOut.model_validate(w) for w in records]

    async def search_websites(self, query: str, limit: int | None = None) -> list[WebsiteOut]:
        if len(query) > 200:
            raise ValidationError("Search query is too long")
        records = await self.websites.search(query, limit or self.search_limit)
        return [WebsiteOut.model_validate(w) for w in records]

    async def get_website(self, website_id: UUID, user_id: UUID | None = None) -> WebsiteOut:
        record = await self.websites.get(website_id)
        if record is None or not record.is_visible:
            raise NotFoundError(f"Website '{website_id}' not found")

        out = WebsiteOut.model_validate(record)
        if user_id is not None:
            out.is_favorited = await self.favorites.is_favorited(user_id, website_id)
        return out

    async def record_click(
        self,
        website_id: UUID,
        user_id: UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ClickResponse:
        """Count a click-through and log the visit."""
        record = await self.websites.get(website_id)
        if record is None or not record.is_visible:
            raise NotFoundError(f"Website '{website_id}' not found")

        tier = await self.websites.increment_click(website_id)
        if tier == CLICK_TIER_MISSING:
            # Deleted between the lookup and the increment
            raise NotFoundError(f"Website '{website_id}' not found")

        try:
            await self.visits.record_visit(website_id, user_id, ip_address, user_agent)
        except VisitTargetError as exc:
            raise NotFoundError(str(exc))
        return ClickResponse(tier=tier)

    # ------------------------------------------------------------------
    # Favorites
    # ------------------------------------------------------------------

    @staticmethod
    def _require_user(user_id: UUID | None) -> UUID:
        if user_id is None:
            raise UnauthorizedError("Not logged in")
        return user_id

    async def list_favorites(self, user_id: UUID | None) -> list[FavoriteOut]:
        records = await self.favorites.list_for_user(self._require_user(user_id))
        return [FavoriteOut.model_validate(f) for f in records]

    async def add_favorite(self, user_id: UUID | None, website_id: UUID) -> FavoriteOut:
        try:
            record = await self.favorites.add(self._require_user(user_id), website_id)
        except FavoriteAlreadyExistsError as exc:
            raise ConflictError(str(exc))
        except FavoriteTargetError as exc:
            raise NotFoundError(str(exc))
        return FavoriteOut.model_validate(record)

    async def remove_favorite(self, user_id: UUID | None, website_id: UUID) -> OkResponse:
        try:
            await self.favorites.remove(self._require_user(user_id), website_id)
        except FavoriteNotFoundError as exc:
            raise NotFoundError(str(exc))
        return OkResponse()

    async def is_favorited(self, user_id: UUID | None, website_id: UUID) -> bool:
        if user_id is None:
            return False
        return await self.favorites.is_favorited(user_id, website_id)


_svc: DirectoryService | None = None


def get_directory_service() -> DirectoryService:
    """Get the global DirectoryService singleton."""
    global _svc
    if _svc is None:
        _svc = DirectoryService()
    return _svc


def reset_directory_service() -> None:
    """Reset the singleton (for testing)."""
    global _svc
    _svc = None
