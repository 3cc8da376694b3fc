# app/transport/http_app.py
"""
HTTP application for the website directory.

Security layers:
1. Public: browsing, search, click-through, per-user favorites
   (user identity comes from the auth proxy header, never from the body)
2. Protected: admin endpoints (require admin bearer token)
3. No information leakage in production (sanitized errors, no docs)
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.admin.errors import AdminError
from app.admin.models import (
    BatchDeleteWebsitesRequest,
    BatchMoveWebsitesRequest,
    CreateCategoryRequest,
    CreateWebsiteRequest,
    UpdateCategoryRequest,
    UpdateRoleRequest,
    UpdateSettingRequest,
    UpdateWebsiteRequest,
)
from app.admin.service import AdminApplicationService, get_admin_service
from app.config import settings
from app.core.directory import DirectoryService, get_directory_service
from app.infra.db_async import close_pool, init_pool
from app.infra.health_checks_async import get_async_health_checker
from app.infra.logging_config import get_logger, setup_logging
from app.infra.metrics import get_metrics_collector
from app.infra.rate_limiter import InMemoryRateLimiter, RateLimitDependency, client_ip
from app.infra.schema_validator import validate_schema_version
from app.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from app.transport.security import (
    SecurityHeaders,
    check_configured_tokens,
    get_current_user_id,
    require_admin_auth,
    sanitize_error_message,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production,
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

click_rate_limit = RateLimitDependency(
    InMemoryRateLimiter(max_requests=settings.click_rate_limit_per_minute, window_seconds=60)
)

admin_only = [Depends(require_admin_auth)]


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""
    logger.info(f"Starting application: env={settings.app_env}")

    if settings.is_production:
        if not settings.admin_token or len(settings.admin_token) < 32:
            logger.critical("ADMIN_TOKEN must be at least 32 characters in production")
            raise RuntimeError("Weak ADMIN_TOKEN")
        if settings.log_level.upper() == "DEBUG":
            logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
            raise RuntimeError("LOG_LEVEL=DEBUG in production")

    check_configured_tokens()

    await init_pool()

    # Does NOT run migrations: python -m app.infra.migrate
    try:
        schema = await validate_schema_version()
    except Exception:
        await close_pool()
        raise
    logger.info(f"Schema validated: {schema['current_version']}")

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")
    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Navsite",
    description="Curated website directory with categories, favorites and image uploads",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization", settings.user_id_header],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(AdminError)
async def admin_error_handler(request: Request, exc: AdminError):
    """Service-layer errors carry their own status code"""
    if exc.status_code >= 500:
        logger.error(f"Service error: {exc.detail}", extra={"status_code": exc.status_code})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed payloads and parameters are a 400, like service-level validation"""
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", "")}
        for e in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": errors})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": sanitize_error_message(exc, settings.is_production)},
    )


# ============================================================================
# HEALTH
# ============================================================================

@app.get("/health")
def health():
    """Liveness probe. Returns minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness probe: database only (storage is non-critical)."""
    result = await get_async_health_checker().run_checks(include_non_critical=False, include_schema=False)
    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": result["status"]}


# ============================================================================
# PUBLIC DIRECTORY
# ============================================================================

@app.get("/categories")
async def list_categories(svc: DirectoryService = Depends(get_directory_service)):
    """Visible category tree (roots with nested children)."""
    tree = await svc.list_categories()
    return {"categories": [c.model_dump() for c in tree]}


@app.get("/websites")
async def list_websites(
    category_id: UUID | None = None,
    svc: DirectoryService = Depends(get_directory_service),
):
    websites = await svc.list_websites(category_id)
    return {"websites": [w.model_dump() for w in websites]}


@app.get("/websites/featured")
async def featured_websites(
    limit: int | None = Query(default=None, ge=1, le=100),
    svc: DirectoryService = Depends(get_directory_service),
):
    websites = await svc.featured_websites(limit)
    return {"websites": [w.model_dump() for w in websites]}


@app.get("/websites/search")
async def search_websites(
    q: str = Query(default="", max_length=200),
    limit: int | None = Query(default=None, ge=1, le=100),
    svc: DirectoryService = Depends(get_directory_service),
):
    """Case-insensitive search on title and description. Empty query returns nothing."""
    websites = await svc.search_websites(q, limit)
    return {"query": q, "websites": [w.model_dump() for w in websites]}


@app.get("/websites/{website_id}")
async def get_website(
    website_id: UUID,
    user_id: UUID | None = Depends(get_current_user_id),
    svc: DirectoryService = Depends(get_directory_service),
):
    website = await svc.get_website(website_id, user_id)
    return website.model_dump()


@app.post("/websites/{website_id}/click", dependencies=[Depends(click_rate_limit)])
async def click_website(
    website_id: UUID,
    request: Request,
    user_id: UUID | None = Depends(get_current_user_id),
    svc: DirectoryService = Depends(get_directory_service),
):
    """Count a click-through and record the visit."""
    result = await svc.record_click(
        website_id,
        user_id=user_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return result.model_dump()


@app.get("/settings")
async def public_settings(svc: AdminApplicationService = Depends(get_admin_service)):
    """Site settings (title, footer, ...) for rendering the public pages."""
    return {"settings": await svc.get_settings()}


# ============================================================================
# FAVORITES (signed-in users)
# ============================================================================

@app.get("/favorites")
async def list_favorites(
    user_id: UUID | None = Depends(get_current_user_id),
    svc: DirectoryService = Depends(get_directory_service),
):
    favorites = await svc.list_favorites(user_id)
    return {"favorites": [f.model_dump() for f in favorites]}


@app.get("/favorites/{website_id}")
async def favorite_status(
    website_id: UUID,
    user_id: UUID | None = Depends(get_current_user_id),
    svc: DirectoryService = Depends(get_directory_service),
):
    return {"website_id": website_id, "favorited": await svc.is_favorited(user_id, website_id)}


@app.post("/favorites/{website_id}", status_code=201)
async def add_favorite(
    website_id: UUID,
    user_id: UUID | None = Depends(get_current_user_id),
    svc: DirectoryService = Depends(get_directory_service),
):
    favorite = await svc.add_favorite(user_id, website_id)
    return favorite.model_dump()


@app.delete("/favorites/{website_id}")
async def remove_favorite(
    website_id: UUID,
    user_id: UUID | None = Depends(get_current_user_id),
    svc: DirectoryService = Depends(get_directory_service),
):
    result = await svc.remove_favorite(user_id, website_id)
    return result.model_dump()


# ============================================================================
# MONITORING (admin token)
# ============================================================================

@app.get("/health/detailed", dependencies=admin_only)
async def detailed_health():
    return await get_async_health_checker().run_checks(include_non_critical=True)


@app.get("/metrics", dependencies=admin_only)
def metrics():
    """In-process counters and histograms."""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not found")
    return get_metrics_collector().get_metrics()


@app.post("/admin/metrics/reset", dependencies=admin_only)
def reset_metrics():
    get_metrics_collector().reset()
    return {"ok": True}


# ============================================================================
# ADMIN: CATEGORIES
# ============================================================================

@app.get("/admin/categories", dependencies=admin_only)
async def admin_list_categories(svc: AdminApplicationService = Depends(get_admin_service)):
    """Full category tree including hidden categories."""
    tree = await svc.list_categories()
    return {"categories": [c.model_dump() for c in tree]}


@app.post("/admin/categories", dependencies=admin_only, status_code=201)
async def admin_create_category(
    req: CreateCategoryRequest,
    svc: AdminApplicationService = Depends(get_admin_service),
):
    category = await svc.create_category(req)
    return category.model_dump()


@app.put("/admin/categories/{category_id}", dependencies=admin_only)
async def admin_update_category(
    category_id: UUID,
    req: UpdateCategoryRequest,
    svc: AdminApplicationService = Depends(get_admin_service),
):
    category = await svc.update_category(category_id, req)
    return category.model_dump()


@app.delete("/admin/categories/{category_id}", dependencies=admin_only)
async def admin_delete_category(
    category_id: UUID,
    svc: AdminApplicationService = Depends(get_admin_service),
):
    result = await svc.delete_category(category_id)
    return result.model_dump()


# ============================================================================
# ADMIN: WEBSITES
# ============================================================================

@app.get("/admin/websites", dependencies=admin_only)
async def admin_list_websites(
    category_id: UUID | None = None,
    svc: AdminApplicationService = Depends(get_admin_service),
):
    websites = await svc.list_websites(category_id)
    return {"websites": [w.model_dump() for w in websites]}


@app.post("/admin/websites", dependencies=admin_only, status_code=201)
async def admin_create_website(
    req: CreateWebsiteRequest,
    user_id: UUID | None = Depends(get_current_user_id),
    svc: AdminApplicationService = Depends(get_admin_service),
):
    website = await svc.create_website(req, created_by=user_id)
    return website.model_dump()


@app.post("/admin/websites/batch-delete", dependencies=admin_only)
async def admin_batch_delete_websites(
    req: BatchDeleteWebsitesRequest,
    svc: AdminApplicationService = Depends(get_admin_service),
):
    result = await svc.batch_delete_websites(req)
    return result.model_dump()


@app.post("/admin/websites/batch-move", dependencies=admin_only)
async def admin_batch_move_websites(
    req: BatchMoveWebsitesRequest,
    svc: AdminApplicationService = Depends(get_admin_service),
):
    result = await svc.batch_move_websites(req)
    return result.model_dump()


@app.get("/admin/websites/{website_id}", dependencies=admin_only)
async def admin_get_website(
    website_id: UUID,
    svc: AdminApplicationService = Depends(get_admin_service),
):
    website = await svc.get_website(website_id)
    return website.model_dump()


@app.put("/admin/websites/{website_id}", dependencies=admin_only)
async def admin_update_website(
    website_id: UUID,
    req: UpdateWebsiteRequest,
    svc: AdminApplicationService = Depends(get_admin_service),
):
    website = await svc.update_website(website_id, req)
    return website.model_dump()


@app.delete("/admin/websites/{website_id}", dependencies=admin_only)
async def admin_delete_website(
    website_id: UUID,
    svc: AdminApplicationService = Depends(get_admin_service),
):
    """Delete a website; its uploaded favicon/logo are removed best-effort."""
    result = await svc.delete_website(website_id)
    return result.model_dump()


@app.get("/admin/websites/{website_id}/stats", dependencies=admin_only)
async def admin_website_stats(
    website_id: UUID,
    days: int = Query(default=settings.visit_stats_default_days, ge=1, le=3650),
    svc: AdminApplicationService = Depends(get_admin_service),
):
    stats = await svc.website_stats(website_id, days)
    return stats.model_dump()


@app.post("/admin/websites/{website_id}/images/{field}", dependencies=admin_only)
async def admin_upload_website_image(
    website_id: UUID,
    field: str,
    file: UploadFile = File(...),
    svc: AdminApplicationService = Depends(get_admin_service),
):
    """Upload a favicon/logo and store its URL on the website (field: favicon_url or logo_url)."""
    data = await _read_upload(file)
    website = await svc.upload_website_image(website_id, field, data, file.content_type, file.filename)
    return website.model_dump()


# ============================================================================
# ADMIN: IMAGES
# ============================================================================

async def _read_upload(file: UploadFile) -> bytes:
    data = await file.read(settings.image_max_upload_bytes + 1)
    if len(data) > settings.image_max_upload_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"Upload exceeds {settings.image_max_upload_bytes // (1024 * 1024)}MB",
        )
    if not data:
        raise HTTPException(status_code=400, detail="Empty file")
    return data


@app.post("/admin/images", dependencies=admin_only, status_code=201)
async def admin_upload_image(
    file: UploadFile = File(...),
    svc: AdminApplicationService = Depends(get_admin_service),
):
    """
    Upload an image (JPEG/PNG/GIF/WEBP/AVIF).

    Files over the size budget are resized and re-encoded before storage.
    Returns the public URL and storage path.
    """
    data = await _read_upload(file)
    result = await svc.upload_image(data, file.content_type, file.filename)
    return result.model_dump()


@app.delete("/admin/images", dependencies=admin_only)
async def admin_delete_image(
    path: str = Query(..., min_length=1),
    svc: AdminApplicationService = Depends(get_admin_service),
):
    result = await svc.delete_image(path)
    return result.model_dump()


# ============================================================================
# ADMIN: USERS & SETTINGS
# ============================================================================

@app.get("/admin/users", dependencies=admin_only)
async def admin_list_users(svc: AdminApplicationService = Depends(get_admin_service)):
    users = await svc.list_users()
    return {"users": [u.model_dump() for u in users]}


@app.put("/admin/users/{user_id}/role", dependencies=admin_only)
async def admin_update_user_role(
    user_id: UUID,
    req: UpdateRoleRequest,
    svc: AdminApplicationService = Depends(get_admin_service),
):
    result = await svc.update_user_role(user_id, req)
    return result.model_dump()


@app.get("/admin/settings", dependencies=admin_only)
async def admin_get_settings(svc: AdminApplicationService = Depends(get_admin_service)):
    return {"settings": await svc.get_settings()}


@app.get("/admin/settings/{key}", dependencies=admin_only)
async def admin_get_setting(key: str, svc: AdminApplicationService = Depends(get_admin_service)):
    value: Any = await svc.get_setting(key)
    return {"key": key, "value": value}


@app.put("/admin/settings/{key}", dependencies=admin_only)
async def admin_update_setting(
    key: str,
    req: UpdateSettingRequest,
    svc: AdminApplicationService = Depends(get_admin_service),
):
    result = await svc.update_setting(key, req)
    return result.model_dump()


# ============================================================================
# CATCH-ALL (Return 404 for unknown routes)
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"], include_in_schema=False)
async def catch_all(path: str):
    """Generic 404 without revealing information."""
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
