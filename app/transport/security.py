# app/transport/security.py
"""
Security utilities for the directory API.

- Constant-time admin token comparison (timing attack prevention)
- Token strength checks at startup
- Caller identity from the upstream auth proxy header
- OWASP response headers
- Error message sanitization for production
"""
import hmac
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Minimum token length (32 chars)
MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

# Shows the "Authorize" button in the OpenAPI docs
bearer_scheme = HTTPBearer(
    scheme_name="Admin Token",
    description="Enter your admin token (without 'Bearer ' prefix)",
    auto_error=False,
)


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """
    Check a token against minimum requirements.
    Returns a list of warnings (empty if the token is strong).
    """
    warnings = []

    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars). "
            f"Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )

    token_lower = token.lower()
    for pattern in WEAK_TOKEN_PATTERNS:
        if pattern in token_lower:
            warnings.append(
                f"{token_name} contains weak pattern '{pattern}'. "
                "Use a cryptographically random token"
            )
            break

    has_upper = any(c.isupper() for c in token)
    has_lower = any(c.islower() for c in token)
    has_digit = any(c.isdigit() for c in token)
    if not (has_upper and has_lower and has_digit):
        warnings.append(
            f"{token_name} has low character diversity. "
            "Recommended: mix of uppercase, lowercase, and numbers"
        )

    return warnings


def check_configured_tokens() -> None:
    """Log a warning for each weakness of the configured admin token."""
    if settings.admin_token:
        for warning in validate_token_strength(settings.admin_token, "ADMIN_TOKEN"):
            logger.warning(f"SECURITY: {warning}")


async def require_admin_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    """
    Admin authentication with a static bearer token.

    Usage:
        @app.get("/admin/endpoint", dependencies=[Depends(require_admin_auth)])
        async def admin_endpoint():
            ...

    Client:
        curl -H "Authorization: Bearer $ADMIN_TOKEN" http://host/admin/websites
    """
    if not settings.admin_token:
        logger.critical("ADMIN_TOKEN not configured but admin endpoint accessed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable",
        )

    if not credentials:
        error = "Missing Authorization header"
    elif not hmac.compare_digest(credentials.credentials.encode(), settings.admin_token.encode()):
        error = "Invalid token"
    else:
        logger.debug(f"Admin auth successful for {request.method} {request.url.path}")
        return

    logger.warning(f"Admin auth failed: {error}", extra={"path": request.url.path})
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user_id(request: Request) -> UUID | None:
    """
    Signed-in user's id from the auth proxy header, or None for anonymous callers.

    A present but malformed header is rejected rather than treated as anonymous.
    """
    raw = request.headers.get(settings.user_id_header)
    if not raw:
        return None
    try:
        return UUID(raw.strip())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {settings.user_id_header} header",
        )


class SecurityHeaders:
    """OWASP recommended security headers for API responses."""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"

        # Endpoints can set their own caching
        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"

        response.headers["Cross-Origin-Opener-Policy"] = "same-origin"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """
    Sanitize error messages for external responses.
    In production: generic messages. In dev: the real message.
    """
    if not is_production:
        return str(error)

    generic_messages = {
        "ValueError": "Invalid input",
        "KeyError": "Invalid request",
        "PostgresError": "Service temporarily unavailable",
        "ConnectionError": "Service temporarily unavailable",
        "TimeoutError": "Request timeout",
    }
    return generic_messages.get(type(error).__name__, "An error occurred")
