"""Service configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from genflow.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_SESSION_STORE_PROVIDERS = {"memory", "firestore"}
_ASSET_QUALITIES = {"low", "medium", "high"}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the genflow service."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  skybox_api_base_url: str | None
  skybox_api_key: str | None
  skybox_timeout_seconds: float
  asset_api_base_url: str | None
  asset_api_key: str | None
  asset_timeout_seconds: float
  asset_quality: str
  asset_max_assets: int
  firebase_project_id: str | None
  firebase_service_account_json_path: str | None
  session_store_provider: str
  session_ttl_seconds: int
  session_clear_grace_seconds: float
  session_save_debounce_ms: int
  poll_base_interval_ms: int
  poll_max_attempts: int
  default_quota_limit: int | None


@dataclass(frozen=True)
class PollSettings:
  """Subset of settings consumed by the adaptive poller."""

  base_interval_ms: int
  max_attempts: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ("http://localhost:5173",)

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if "*" in origins:
    raise ValueError("GENFLOW_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  stripped = raw.strip()
  return stripped or None


def _parse_optional_int(raw: str | None) -> int | None:
  """Parse an optional int; empty or 'unlimited' means no limit."""
  value = _optional_str(raw)
  if value is None or value.lower() in {"unlimited", "none", "inf"}:
    return None
  return int(value)


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("GENFLOW_ENV", "development").lower()
  debug = _parse_bool(os.getenv("GENFLOW_DEBUG"))

  log_max_bytes = _positive_int("GENFLOW_LOG_MAX_BYTES", "5242880")
  log_backup_count = int(os.getenv("GENFLOW_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("GENFLOW_LOG_BACKUP_COUNT must be zero or a positive integer.")

  session_store_provider = (os.getenv("GENFLOW_SESSION_STORE") or "memory").strip().lower()
  if session_store_provider not in _SESSION_STORE_PROVIDERS:
    raise ValueError(f"GENFLOW_SESSION_STORE must be one of {sorted(_SESSION_STORE_PROVIDERS)}.")

  asset_quality = (os.getenv("GENFLOW_ASSET_QUALITY") or "medium").strip().lower()
  if asset_quality not in _ASSET_QUALITIES:
    raise ValueError(f"GENFLOW_ASSET_QUALITY must be one of {sorted(_ASSET_QUALITIES)}.")

  # Grace period lets clients render the completion state before the record is dropped.
  session_clear_grace_seconds = float(os.getenv("GENFLOW_SESSION_CLEAR_GRACE_SECONDS", "2"))
  if session_clear_grace_seconds < 0:
    raise ValueError("GENFLOW_SESSION_CLEAR_GRACE_SECONDS must not be negative.")

  skybox_timeout_seconds = float(os.getenv("GENFLOW_SKYBOX_TIMEOUT_SECONDS", "30"))
  asset_timeout_seconds = float(os.getenv("GENFLOW_ASSET_TIMEOUT_SECONDS", "600"))
  if skybox_timeout_seconds <= 0 or asset_timeout_seconds <= 0:
    raise ValueError("Remote API timeouts must be positive.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("GENFLOW_ALLOWED_ORIGINS")),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("GENFLOW_LOG_HTTP_4XX")),
    skybox_api_base_url=_optional_str(os.getenv("GENFLOW_SKYBOX_API_BASE_URL")),
    skybox_api_key=_optional_str(os.getenv("GENFLOW_SKYBOX_API_KEY")),
    skybox_timeout_seconds=skybox_timeout_seconds,
    asset_api_base_url=_optional_str(os.getenv("GENFLOW_ASSET_API_BASE_URL")),
    asset_api_key=_optional_str(os.getenv("GENFLOW_ASSET_API_KEY")),
    asset_timeout_seconds=asset_timeout_seconds,
    asset_quality=asset_quality,
    asset_max_assets=_positive_int("GENFLOW_ASSET_MAX_ASSETS", "1"),
    firebase_project_id=_optional_str(os.getenv("FIREBASE_PROJECT_ID")),
    firebase_service_account_json_path=_optional_str(os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON_PATH")),
    session_store_provider=session_store_provider,
    session_ttl_seconds=_positive_int("GENFLOW_SESSION_TTL_SECONDS", "7200"),
    session_clear_grace_seconds=session_clear_grace_seconds,
    session_save_debounce_ms=_positive_int("GENFLOW_SESSION_SAVE_DEBOUNCE_MS", "500"),
    poll_base_interval_ms=_positive_int("GENFLOW_POLL_BASE_INTERVAL_MS", "2000"),
    poll_max_attempts=_positive_int("GENFLOW_POLL_MAX_ATTEMPTS", "180"),
    default_quota_limit=_parse_optional_int(os.getenv("GENFLOW_DEFAULT_QUOTA_LIMIT", "10")),
  )


def get_poll_settings(settings: Settings) -> PollSettings:
  """Project poller-specific values out of the full settings."""
  return PollSettings(base_interval_ms=settings.poll_base_interval_ms, max_attempts=settings.poll_max_attempts)
