# tests/test_http_app.py
"""Route-level tests for app/transport/http_app.py (services mocked)."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from app.admin.errors import NotFoundError, StorageUnavailableError, UnauthorizedError, UnsupportedMediaTypeError
from app.admin.models import (
    CategoryOut,
    ClickResponse,
    OkResponse,
    UploadResponse,
    VisitStatsResponse,
    WebsiteOut,
)
from app.admin.service import get_admin_service
from app.config import settings
from app.core.directory import get_directory_service
from app.transport.http_app import app

TOKEN = "Xy7" * 12
AUTH = {"Authorization": f"Bearer {TOKEN}"}


def _website_out(**overrides) -> WebsiteOut:
    fields = dict(id=uuid4(), category_id=uuid4(), title="Example", url="https://example.com")
    fields.update(overrides)
    return WebsiteOut(**fields)


@pytest.fixture
def admin_svc():
    return MagicMock(
        list_categories=AsyncMock(return_value=[]),
        create_category=AsyncMock(),
        list_websites=AsyncMock(return_value=[]),
        delete_website=AsyncMock(return_value=OkResponse()),
        website_stats=AsyncMock(),
        upload_image=AsyncMock(),
        delete_image=AsyncMock(return_value=OkResponse()),
        update_user_role=AsyncMock(return_value=OkResponse()),
        get_settings=AsyncMock(return_value={"site_title": "Links"}),
    )


@pytest.fixture
def directory_svc():
    return MagicMock(
        list_categories=AsyncMock(return_value=[]),
        list_websites=AsyncMock(return_value=[]),
        featured_websites=AsyncMock(return_value=[]),
        search_websites=AsyncMock(return_value=[]),
        get_website=AsyncMock(),
        record_click=AsyncMock(return_value=ClickResponse(tier="atomic")),
        list_favorites=AsyncMock(return_value=[]),
        add_favorite=AsyncMock(),
        remove_favorite=AsyncMock(return_value=OkResponse()),
        is_favorited=AsyncMock(return_value=False),
    )


@pytest.fixture
def client(monkeypatch, admin_svc, directory_svc):
    monkeypatch.setattr(settings, "admin_token", TOKEN)
    app.dependency_overrides[get_admin_service] = lambda: admin_svc
    app.dependency_overrides[get_directory_service] = lambda: directory_svc
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestPublicRoutes:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert "X-Request-ID" in resp.headers

    def test_categories(self, client, directory_svc):
        directory_svc.list_categories.return_value = [
            CategoryOut(id=uuid4(), name="Tools", children=[CategoryOut(id=uuid4(), name="Dev")])
        ]
        resp = client.get("/categories")
        assert resp.status_code == 200
        assert resp.json()["categories"][0]["children"][0]["name"] == "Dev"

    def test_featured_not_shadowed_by_id_route(self, client, directory_svc):
        directory_svc.featured_websites.return_value = [_website_out(title="Top")]
        resp = client.get("/websites/featured?limit=3")
        assert resp.status_code == 200
        assert resp.json()["websites"][0]["title"] == "Top"
        directory_svc.featured_websites.assert_awaited_once_with(3)

    def test_search(self, client, directory_svc):
        resp = client.get("/websites/search", params={"q": "git"})
        assert resp.status_code == 200
        directory_svc.search_websites.assert_awaited_once_with("git", None)

    def test_invalid_id_is_400(self, client):
        resp = client.get("/websites/not-a-uuid")
        assert resp.status_code == 400

    def test_website_not_found(self, client, directory_svc):
        directory_svc.get_website.side_effect = NotFoundError("Website not found")
        resp = client.get(f"/websites/{uuid4()}")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Website not found"}

    def test_click_ignores_forwarded_for_by_default(self, client, directory_svc):
        website_id = uuid4()
        resp = client.post(f"/websites/{website_id}/click", headers={"X-Forwarded-For": "203.0.113.9"})
        assert resp.status_code == 200
        assert directory_svc.record_click.call_args.kwargs["ip_address"] == "testclient"

    def test_click_passes_identity_and_client(self, client, directory_svc, monkeypatch):
        monkeypatch.setattr(settings, "trust_proxy_headers", True)
        website_id, user_id = uuid4(), uuid4()
        resp = client.post(
            f"/websites/{website_id}/click",
            headers={"X-User-Id": str(user_id), "User-Agent": "pytest-agent", "X-Forwarded-For": "203.0.113.9"},
        )
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "tier": "atomic"}
        directory_svc.record_click.assert_awaited_once_with(
            website_id, user_id=user_id, ip_address="203.0.113.9", user_agent="pytest-agent"
        )

    def test_malformed_user_header(self, client):
        resp = client.get("/favorites", headers={"X-User-Id": "bob"})
        assert resp.status_code == 400

    def test_favorites_anonymous(self, client, directory_svc):
        directory_svc.list_favorites.side_effect = UnauthorizedError("Not logged in")
        resp = client.get("/favorites")
        assert resp.status_code == 401
        directory_svc.list_favorites.assert_awaited_once_with(None)

    def test_unknown_route(self, client):
        assert client.get("/nope").status_code == 404


class TestAdminAuth:
    def test_missing_token(self, client):
        resp = client.get("/admin/websites")
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_wrong_token(self, client):
        resp = client.get("/admin/websites", headers={"Authorization": "Bearer wrong"})
        assert resp.status_code == 401

    def test_not_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "admin_token", None)
        resp = client.get("/admin/websites", headers=AUTH)
        assert resp.status_code == 503

    def test_metrics_requires_admin(self, client):
        assert client.get("/metrics").status_code == 401
        resp = client.get("/metrics", headers=AUTH)
        assert resp.status_code == 200
        assert "counters" in resp.json()


class TestAdminRoutes:
    def test_create_category_validation(self, client, admin_svc):
        resp = client.post("/admin/categories", json={"name": ""}, headers=AUTH)
        assert resp.status_code == 400
        admin_svc.create_category.assert_not_called()

    def test_create_category(self, client, admin_svc):
        admin_svc.create_category.return_value = CategoryOut(id=uuid4(), name="Tools")
        resp = client.post("/admin/categories", json={"name": "Tools", "icon": "🔧"}, headers=AUTH)
        assert resp.status_code == 201
        assert resp.json()["name"] == "Tools"

    def test_delete_website(self, client, admin_svc):
        website_id = uuid4()
        resp = client.delete(f"/admin/websites/{website_id}", headers=AUTH)
        assert resp.status_code == 200
        admin_svc.delete_website.assert_awaited_once_with(website_id)

    def test_stats_default_days(self, client, admin_svc):
        website_id = uuid4()
        admin_svc.website_stats.return_value = VisitStatsResponse(website_id=website_id, days=30, visits=4)
        resp = client.get(f"/admin/websites/{website_id}/stats", headers=AUTH)
        assert resp.status_code == 200
        assert resp.json()["visits"] == 4
        admin_svc.website_stats.assert_awaited_once_with(website_id, settings.visit_stats_default_days)

    def test_role_update_validation(self, client):
        resp = client.put(f"/admin/users/{uuid4()}/role", json={"role": "root"}, headers=AUTH)
        assert resp.status_code == 400

    def test_upload_image(self, client, admin_svc, small_png):
        admin_svc.upload_image.return_value = UploadResponse(
            url="https://cdn.test/images/logo_1.png", path="logo_1.png", compressed=False
        )
        resp = client.post(
            "/admin/images",
            files={"file": ("logo.png", small_png, "image/png")},
            headers=AUTH,
        )
        assert resp.status_code == 201
        assert resp.json() == {"url": "https://cdn.test/images/logo_1.png", "path": "logo_1.png", "compressed": False}
        admin_svc.upload_image.assert_awaited_once_with(small_png, "image/png", "logo.png")

    def test_upload_error_status(self, client, admin_svc):
        admin_svc.upload_image.side_effect = UnsupportedMediaTypeError("Unsupported file format 'text/plain'")
        resp = client.post(
            "/admin/images",
            files={"file": ("a.txt", b"hello", "text/plain")},
            headers=AUTH,
        )
        assert resp.status_code == 415

    def test_upload_raw_cap(self, client, admin_svc, monkeypatch):
        monkeypatch.setattr(settings, "image_max_upload_bytes", 10)
        resp = client.post(
            "/admin/images",
            files={"file": ("big.png", b"x" * 11, "image/png")},
            headers=AUTH,
        )
        assert resp.status_code == 413
        admin_svc.upload_image.assert_not_called()

    def test_delete_image_storage_error(self, client, admin_svc):
        admin_svc.delete_image.side_effect = StorageUnavailableError("Delete failed: AccessDenied")
        resp = client.delete("/admin/images", params={"path": "logo_1.png"}, headers=AUTH)
        assert resp.status_code == 502
        assert resp.json() == {"error": "Delete failed: AccessDenied"}

    def test_delete_image_requires_path(self, client):
        assert client.delete("/admin/images", headers=AUTH).status_code == 400
