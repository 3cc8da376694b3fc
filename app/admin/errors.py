# app/admin/errors.py
"""
Typed domain errors for the application services.

Each error maps to a specific HTTP status code.  The transport layer
catches ``AdminError`` subtypes and converts them to ``HTTPException``
without embedding business logic in the route handlers.
"""
from __future__ import annotations


class AdminError(Exception):
    """Base class for all service-level errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(AdminError):
    """Invalid request payload (400)."""

    status_code = 400


class UnauthorizedError(AdminError):
    """No signed-in user (401)."""

    status_code = 401


class NotFoundError(AdminError):
    """Resource not found (404)."""

    status_code = 404


class ConflictError(AdminError):
    """Duplicate or conflicting resource (409)."""

    status_code = 409


class PayloadTooLargeError(AdminError):
    """Upload still over the size limit after compression (413)."""

    status_code = 413


class UnsupportedMediaTypeError(AdminError):
    """Upload content type not allowed (415)."""

    status_code = 415


class UnprocessableImageError(AdminError):
    """Upload could not be decoded or re-encoded (422)."""

    status_code = 422


class StorageUnavailableError(AdminError):
    """Blob storage rejected or failed the operation (502)."""

    status_code = 502
