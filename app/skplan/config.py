"""
Environment-driven settings.

Everything is read once at startup into frozen dataclasses, then flattened into
Flask config keys so blueprints and helpers can use ``current_app.config``.
"""

import os
from dataclasses import dataclass

DEFAULT_SECRET = "change-me"


@dataclass(frozen=True)
class S3Settings:
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    timeout_seconds: int

    def missing(self) -> list[str]:
        required = {
            "S3_ENDPOINT": self.endpoint,
            "S3_BUCKET": self.bucket,
            "S3_ACCESS_KEY_ID": self.access_key_id,
            "S3_SECRET_ACCESS_KEY": self.secret_access_key,
        }
        return [name for name, value in required.items() if not value]


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    db_timeout_seconds: int
    storage_backend: str
    s3: S3Settings
    evidence_max_bytes: int
    autosave_debounce_seconds: float
    autosave_max_patch_attempts: int
    activity_page_max: int

    @property
    def is_production(self) -> bool:
        return self.env.lower() in ("prod", "production")

    def as_flask_config(self) -> dict:
        return {
            "SECRET_KEY": self.secret_key,
            "ENV": self.env,
            "DATABASE_URL": self.database_url,
            "DB_STATEMENT_TIMEOUT_SECONDS": self.db_timeout_seconds,
            "STORAGE_BACKEND": self.storage_backend,
            "S3_ENDPOINT": self.s3.endpoint,
            "S3_REGION": self.s3.region,
            "S3_BUCKET": self.s3.bucket,
            "S3_ACCESS_KEY_ID": self.s3.access_key_id,
            "S3_SECRET_ACCESS_KEY": self.s3.secret_access_key,
            "S3_TIMEOUT_SECONDS": self.s3.timeout_seconds,
            "EVIDENCE_MAX_BYTES": self.evidence_max_bytes,
            "AUTOSAVE_DEBOUNCE_SECONDS": self.autosave_debounce_seconds,
            "AUTOSAVE_MAX_PATCH_ATTEMPTS": self.autosave_max_patch_attempts,
            "ACTIVITY_PAGE_MAX": self.activity_page_max,
            # evidence plus multipart overhead
            "MAX_CONTENT_LENGTH": self.evidence_max_bytes + 1024 * 1024,
        }


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _positive(name: str, default, cast=int):
    raw = _env(name, str(default))
    try:
        value = cast(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number (got {raw!r}).") from None
    if value <= 0:
        raise RuntimeError(f"{name} must be greater than zero (got {raw!r}).")
    return value


def load_settings() -> Settings:
    return Settings(
        secret_key=_env("SECRET_KEY", DEFAULT_SECRET),
        env=_env("ENV", "development"),
        database_url=_env("DATABASE_URL", "sqlite:///skplan.db"),
        db_timeout_seconds=_positive("DB_STATEMENT_TIMEOUT_SECONDS", 10),
        storage_backend=_env("STORAGE_BACKEND", "local").lower(),
        s3=S3Settings(
            endpoint=_env("S3_ENDPOINT"),
            region=_env("S3_REGION", "nyc3"),
            bucket=_env("S3_BUCKET"),
            access_key_id=_env("S3_ACCESS_KEY_ID"),
            secret_access_key=_env("S3_SECRET_ACCESS_KEY"),
            timeout_seconds=_positive("S3_TIMEOUT_SECONDS", 10),
        ),
        # 5MB images
        evidence_max_bytes=_positive("EVIDENCE_MAX_BYTES", 5 * 1024 * 1024),
        autosave_debounce_seconds=_positive("AUTOSAVE_DEBOUNCE_SECONDS", 2.0, float),
        autosave_max_patch_attempts=_positive("AUTOSAVE_MAX_PATCH_ATTEMPTS", 5),
        activity_page_max=_positive("ACTIVITY_PAGE_MAX", 100),
    )


def check_production(settings: Settings) -> None:
    """Refuse to boot a production app on sqlite or with the placeholder secret."""
    if not settings.is_production:
        return
    if settings.database_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must point at Postgres in production.")
    if settings.secret_key in ("", DEFAULT_SECRET):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production.")
