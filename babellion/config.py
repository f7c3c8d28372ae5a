"""Application configuration loaded from environment variables."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from babellion.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

DEFAULT_MODELS: tuple[dict[str, Any], ...] = (
  {"id": "gpt-4o", "provider": "openai", "identifier": "gpt-4o", "modes": ["text", "document"], "default": True},
  {"id": "gpt-5", "provider": "openai", "identifier": "gpt-5", "modes": ["text", "document"]},
  {"id": "gemini-2.5-flash", "provider": "gemini", "identifier": "gemini-2.5-flash", "modes": ["text", "document"]},
  {"id": "gemini-2.5-flash-image", "provider": "gemini", "identifier": "gemini-2.5-flash-image", "modes": ["image"]},
)

DEFAULT_LANGUAGES: dict[str, str] = {
  "ar": "Arabic",
  "de": "German",
  "en": "English",
  "es": "Spanish",
  "fr": "French",
  "it": "Italian",
  "ja": "Japanese",
  "ko": "Korean",
  "nl": "Dutch",
  "pt": "Portuguese",
  "ru": "Russian",
  "zh": "Chinese",
}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the Babellion service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  poll_interval_ms: int
  stall_timeout_ms: int
  max_targets: int
  supervisor_idle_ttl_ms: int
  models: tuple[dict[str, Any], ...] = field(hash=False)
  languages: dict[str, str] = field(hash=False)
  translation_system_prompt: str | None
  proofread_system_prompt: str | None
  rule_proofread_system_prompt: str | None
  image_translation_prompt: str | None
  openai_api_key: str | None
  openai_base_url: str | None
  gemini_api_key: str | None
  pg_dsn: str | None
  pg_connect_timeout: int

  @property
  def poll_interval_seconds(self) -> float:
    return self.poll_interval_ms / 1000

  @property
  def stall_timeout_seconds(self) -> float:
    return self.stall_timeout_ms / 1000

  @property
  def supervisor_idle_ttl_seconds(self) -> float:
    return self.supervisor_idle_ttl_ms / 1000


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("BABELLION_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("BABELLION_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("BABELLION_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_json(raw: str | None, default: Any) -> Any:
  if not raw:
    return default
  try:
    return json.loads(raw)
  except json.JSONDecodeError:
    return default


def _parse_models(raw: str | None) -> tuple[dict[str, Any], ...]:
  """Parse the model catalogue, falling back to the built-in list on malformed input."""
  parsed = _parse_json(raw, None)
  if not isinstance(parsed, list):
    return DEFAULT_MODELS
  models = tuple(entry for entry in parsed if isinstance(entry, dict) and entry.get("id"))
  return models or DEFAULT_MODELS


def _parse_languages(raw: str | None) -> dict[str, str]:
  parsed = _parse_json(raw, None)
  if not isinstance(parsed, dict) or not parsed:
    return dict(DEFAULT_LANGUAGES)
  return {str(code).strip(): str(name).strip() for code, name in parsed.items() if str(code).strip()}


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("BABELLION_ENV", "development").lower()
  debug = _parse_bool(os.getenv("BABELLION_DEBUG"))

  log_max_bytes = _positive_int("BABELLION_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("BABELLION_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("BABELLION_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Polling cadence and stall window are caller-facing knobs, not protocol constants.
  poll_interval_ms = _positive_int("BABELLION_POLL_INTERVAL_MS", "2000")
  stall_timeout_ms = _positive_int("BABELLION_STALL_TIMEOUT_MS", "120000")
  max_targets = _positive_int("BABELLION_MAX_TARGETS", "20")
  supervisor_idle_ttl_ms = _positive_int("BABELLION_SUPERVISOR_IDLE_TTL_MS", "3600000")

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("BABELLION_ALLOWED_ORIGINS")),
    debug=debug,
    log_dir=(os.getenv("BABELLION_LOG_DIR") or "./logs").strip(),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    poll_interval_ms=poll_interval_ms,
    stall_timeout_ms=stall_timeout_ms,
    max_targets=max_targets,
    supervisor_idle_ttl_ms=supervisor_idle_ttl_ms,
    models=_parse_models(os.getenv("BABELLION_MODELS")),
    languages=_parse_languages(os.getenv("BABELLION_LANGUAGES")),
    translation_system_prompt=_optional_str(os.getenv("BABELLION_TRANSLATION_SYSTEM_PROMPT")),
    proofread_system_prompt=_optional_str(os.getenv("BABELLION_PROOFREAD_SYSTEM_PROMPT")),
    rule_proofread_system_prompt=_optional_str(os.getenv("BABELLION_RULE_PROOFREAD_SYSTEM_PROMPT")),
    image_translation_prompt=_optional_str(os.getenv("BABELLION_IMAGE_TRANSLATION_PROMPT")),
    openai_api_key=_optional_str(os.getenv("OPENAI_API_KEY")),
    openai_base_url=_optional_str(os.getenv("BABELLION_OPENAI_BASE_URL")),
    gemini_api_key=_optional_str(os.getenv("GEMINI_API_KEY")),
    pg_dsn=_optional_str(os.getenv("BABELLION_PG_DSN") or os.getenv("DATABASE_URL")),
    pg_connect_timeout=_positive_int("BABELLION_PG_CONNECT_TIMEOUT", "5"),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  debug = _parse_bool(os.getenv("BABELLION_DEBUG"))
  pg_connect_timeout = _positive_int("BABELLION_PG_CONNECT_TIMEOUT", "5")
  pg_dsn = _optional_str(os.getenv("BABELLION_PG_DSN") or os.getenv("DATABASE_URL"))
  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
