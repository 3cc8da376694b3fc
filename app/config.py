# app/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5

    # Security
    admin_token: str | None = None
    allowed_origins: list[str] = ["*"]
    # Header set by the upstream auth proxy carrying the signed-in user's id
    user_id_header: str = "X-User-Id"
    # Honor X-Forwarded-For for client IPs (only behind a trusted reverse proxy)
    trust_proxy_headers: bool = False

    # S3/Bucket Storage (for uploaded favicons and logos)
    s3_endpoint_url: str | None = None  # e.g., https://s3.amazonaws.com or https://xyz.r2.cloudflarestorage.com
    s3_access_key: str | None = None
    s3_secret_key: str | None = None
    s3_bucket_name: str | None = None
    s3_region: str = "auto"
    s3_public_url: str | None = None  # Public URL prefix for serving files (e.g., https://cdn.example.com)
    s3_force_path_style: bool = True
    s3_cache_control: str = "max-age=3600"

    # Image Upload
    image_max_file_size_bytes: int = 1024 * 1024  # 1 MiB, applies after compression
    image_max_dimension: int = 1080  # Longest edge after resize
    image_initial_quality: float = 0.8
    image_quality_step: float = 0.1
    image_quality_floor: float = 0.1
    image_output_format: Literal["WEBP", "JPEG"] = "WEBP"
    image_allowed_types: str = "image/jpeg,image/png,image/gif,image/webp,image/avif"

    # Directory
    featured_websites_limit: int = 10
    search_results_limit: int = 20
    visit_stats_default_days: int = 30
    # Click-through limit per client IP (sliding one-minute window)
    click_rate_limit_per_minute: int = 60
    # Hard cap on raw upload bodies, before any compression is attempted
    image_max_upload_bytes: int = 20 * 1024 * 1024

    # Schema
    expected_schema_version: str = "001_init.sql"

    # Monitoring & Metrics
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def s3_enabled(self) -> bool:
        """Check if S3 storage is configured"""
        return bool(
            self.s3_endpoint_url
            and self.s3_access_key
            and self.s3_secret_key
            and self.s3_bucket_name
        )

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []
        if not self.database_url:
            missing.append("DATABASE_URL")
        if not self.admin_token:
            missing.append("ADMIN_TOKEN")
        if not self.s3_enabled:
            missing.append("S3_ENDPOINT_URL/S3_ACCESS_KEY/S3_SECRET_KEY/S3_BUCKET_NAME")
        return missing

    @property
    def image_allowed_type_set(self) -> frozenset[str]:
        return frozenset(
            t.strip().lower() for t in self.image_allowed_types.split(",") if t.strip()
        )


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # --- Admin / Security ---
    if s.is_production and not s.admin_token:
        warnings.append("prod: admin_token is missing (admin auth will be broken).")

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    # --- S3/R2 storage ---
    if not s.s3_enabled:
        warnings.append("S3 storage is not configured (image uploads will be rejected).")
    elif not s.s3_public_url:
        warnings.append("s3_enabled=True but s3_public_url is not set (public URLs fall back to the S3 endpoint).")

    # --- Image limits ---
    if not 0 < s.image_quality_floor <= s.image_initial_quality <= 1:
        warnings.append(
            f"image quality range is inconsistent: initial={s.image_initial_quality}, "
            f"floor={s.image_quality_floor} (expected 0 < floor <= initial <= 1)."
        )
    if s.image_quality_step <= 0:
        warnings.append("image_quality_step must be positive (compression loop would not advance).")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
