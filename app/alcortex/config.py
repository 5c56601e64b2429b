"""Runtime settings for Alcortex services."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _as_int(value: str | None, *, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, *, default: float) -> float:
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_list(value: str | None, *, default: tuple[str, ...]) -> tuple[str, ...]:
    if not value:
        return default
    items = tuple(part.strip() for part in value.split(",") if part.strip())
    return items or default


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


@dataclass(frozen=True)
class Settings:
    app_name: str = field(default_factory=lambda: os.getenv("ALCORTEX_APP_NAME", "alcortex-api"))
    engine_label: str = field(
        default_factory=lambda: os.getenv("ALCORTEX_ENGINE_LABEL", "Alcortex AI v1 Active")
    )

    # Diagnostic provider.
    gemini_model: str = field(
        default_factory=lambda: os.getenv("ALCORTEX_GEMINI_MODEL", "gemini-3-pro-preview")
    )
    gemini_fallback_model: str | None = field(
        default_factory=lambda: os.getenv("ALCORTEX_GEMINI_FALLBACK_MODEL", "gemini-3-flash-preview")
    )
    gemini_api_key: str | None = field(
        default_factory=lambda: _first_env(
            "GEMINI_API_KEY",
            "API_KEY",
            "Gemini_API_Key",
            "gemini_api_key",
        )
    )
    gemini_base_url: str = field(
        default_factory=lambda: os.getenv(
            "ALCORTEX_GEMINI_BASE_URL",
            "https://generativelanguage.googleapis.com/v1beta",
        )
    )
    request_timeout_sec: float = field(
        default_factory=lambda: _as_float(os.getenv("ALCORTEX_REQUEST_TIMEOUT_SEC"), default=120.0)
    )
    default_language: str = field(
        default_factory=lambda: os.getenv("ALCORTEX_DEFAULT_LANGUAGE", "English")
    )

    # Remote record store. HTTP takes precedence over S3 when both are set.
    api_base_url: str | None = field(default_factory=lambda: os.getenv("ALCORTEX_API_BASE_URL"))
    remote_timeout_sec: float = field(
        default_factory=lambda: _as_float(os.getenv("ALCORTEX_REMOTE_TIMEOUT_SEC"), default=3.0)
    )
    s3_bucket: str | None = field(default_factory=lambda: os.getenv("ALCORTEX_S3_BUCKET"))
    s3_region: str = field(default_factory=lambda: os.getenv("ALCORTEX_S3_REGION", "us-east-1"))
    s3_prefix: str = field(default_factory=lambda: os.getenv("ALCORTEX_S3_PREFIX", "alcortex"))

    # Local fallback persistence.
    local_storage_dir: str = field(
        default_factory=lambda: os.getenv("ALCORTEX_LOCAL_STORAGE_DIR", ".alcortex_local_store")
    )
    local_record_capacity: int = field(
        default_factory=lambda: _as_int(os.getenv("ALCORTEX_LOCAL_RECORD_CAPACITY"), default=200)
    )
    activity_log_capacity: int = field(
        default_factory=lambda: _as_int(os.getenv("ALCORTEX_ACTIVITY_LOG_CAPACITY"), default=500)
    )

    # Intake wizard.
    autosave_debounce_sec: float = field(
        default_factory=lambda: _as_float(os.getenv("ALCORTEX_AUTOSAVE_DEBOUNCE_SEC"), default=2.0)
    )

    cors_origins: tuple[str, ...] = field(
        default_factory=lambda: _as_list(os.getenv("ALCORTEX_CORS_ORIGINS"), default=("*",))
    )


def get_settings() -> Settings:
    return Settings()
