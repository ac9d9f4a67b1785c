"""Runtime configuration helpers for mediavault."""
from __future__ import annotations

import os
from typing import Dict, Optional

OUTPUT_FORMATS = ("webp", "jpeg", "png")


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(name, default)


def _get_int(name: str, default: int) -> int:
    raw = _get_env(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw}") from exc


def _get_float(name: str, default: float) -> float:
    raw = _get_env(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw}") from exc


def get_env() -> str:
    return (_get_env("ENV") or _get_env("APP_ENV") or "dev").lower()


def is_debug() -> bool:
    """Development mode exposes technical error detail to callers."""
    flag = (_get_env("MEDIAVAULT_DEBUG") or "").lower()
    if flag in {"1", "true", "yes"}:
        return True
    return get_env() in {"dev", "local"}


def get_storage_backend() -> str:
    return (_get_env("STORAGE_BACKEND") or "memory").lower()


def get_storage_path() -> str:
    return _get_env("STORAGE_PATH") or "./data"


def get_storage_public_base_url() -> Optional[str]:
    return _get_env("STORAGE_PUBLIC_BASE_URL")


def get_gcs_bucket() -> Optional[str]:
    return _get_env("GCS_BUCKET") or _get_env("RAW_BUCKET")


def get_gcp_project() -> Optional[str]:
    return _get_env("GCP_PROJECT_ID") or _get_env("GCP_PROJECT")


def get_signed_url_ttl_seconds() -> int:
    return _get_int("GCS_SIGNED_URL_TTL_SECONDS", 3600)


def get_content_backend() -> str:
    return (_get_env("CONTENT_BACKEND") or "memory").lower()


def get_max_upload_bytes() -> int:
    return _get_int("MAX_UPLOAD_BYTES", 10 * 1024 * 1024)


def get_default_storage_limit_mb() -> int:
    return _get_int("DEFAULT_STORAGE_LIMIT_MB", 100)


def get_default_quality() -> int:
    return _get_int("DEFAULT_QUALITY", 80)


def get_default_max_width() -> int:
    return _get_int("DEFAULT_MAX_WIDTH", 1920)


def get_default_max_height() -> int:
    return _get_int("DEFAULT_MAX_HEIGHT", 1080)


def get_default_output_format() -> str:
    fmt = (_get_env("DEFAULT_OUTPUT_FORMAT") or "webp").lower()
    if fmt not in OUTPUT_FORMATS:
        raise ValueError(f"DEFAULT_OUTPUT_FORMAT must be one of {', '.join(OUTPUT_FORMATS)}, got: {fmt}")
    return fmt


def get_quota_estimate_factor() -> float:
    return _get_float("QUOTA_ESTIMATE_FACTOR", 0.8)


def get_url_cache_ttl_seconds() -> int:
    return _get_int("URL_CACHE_TTL_SECONDS", 3600)


def get_upload_session_ttl_seconds() -> int:
    return _get_int("UPLOAD_SESSION_TTL_SECONDS", 900)


def get_diagnostics_url_timeout() -> float:
    return _get_float("DIAGNOSTICS_URL_TIMEOUT_SECONDS", 5.0)


def get_jwt_secret() -> Optional[str]:
    return _get_env("AUTH_JWT_SIGNING")


def config_snapshot() -> Dict[str, object]:
    return {
        "env": get_env(),
        "debug": is_debug(),
        "storage_backend": get_storage_backend(),
        "storage_path": get_storage_path(),
        "gcs_bucket": get_gcs_bucket(),
        "content_backend": get_content_backend(),
        "max_upload_bytes": get_max_upload_bytes(),
        "default_storage_limit_mb": get_default_storage_limit_mb(),
        "default_quality": get_default_quality(),
        "default_max_width": get_default_max_width(),
        "default_max_height": get_default_max_height(),
        "default_output_format": get_default_output_format(),
        "quota_estimate_factor": get_quota_estimate_factor(),
        "upload_session_ttl_seconds": get_upload_session_ttl_seconds(),
    }
