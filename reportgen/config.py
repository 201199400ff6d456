"""Engine configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from reportgen.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


@dataclass(frozen=True)
class Settings:
  """Typed settings for the generation engine."""

  default_model: str
  aggregation_threshold: int
  generation_timeout_seconds: float
  local_generation_timeout_seconds: float
  quota_fallback_backoff_ms: int
  max_retry_after_ms: int
  estimated_generation_ms: int
  saved_badge_seconds: float
  rate_limits_path: Path | None
  adaptive_delays_path: Path | None
  log_dir: Path
  log_level: str
  log_max_bytes: int
  log_backup_count: int


def _parse_int(name: str, default: str, *, minimum: int = 0) -> int:
  raw = os.getenv(name, default).strip()
  try:
    value = int(raw)
  except ValueError as exc:
    raise ValueError(f"{name} must be an integer.") from exc
  if value < minimum:
    raise ValueError(f"{name} must be >= {minimum}.")
  return value


def _parse_seconds(name: str, default: str) -> float:
  raw = os.getenv(name, default).strip()
  try:
    value = float(raw)
  except ValueError as exc:
    raise ValueError(f"{name} must be a number of seconds.") from exc
  if value <= 0:
    raise ValueError(f"{name} must be a positive number of seconds.")
  return value


def _optional_path(raw: str | None) -> Path | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return Path(value).expanduser()


def build_settings() -> Settings:
  """Build settings from the current environment without caching."""

  # Thresholds below one would activate every tag, which the journal UI never allows.
  aggregation_threshold = _parse_int("REPORTGEN_AGGREGATION_THRESHOLD", "2", minimum=1)

  log_level = os.getenv("REPORTGEN_LOG_LEVEL", "INFO").strip().upper()
  if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
    raise ValueError("REPORTGEN_LOG_LEVEL must be a standard logging level name.")

  return Settings(
    default_model=(os.getenv("REPORTGEN_DEFAULT_MODEL") or "gemini-2.5-flash").strip(),
    aggregation_threshold=aggregation_threshold,
    generation_timeout_seconds=_parse_seconds("REPORTGEN_GENERATION_TIMEOUT_SECONDS", "60"),
    local_generation_timeout_seconds=_parse_seconds("REPORTGEN_LOCAL_GENERATION_TIMEOUT_SECONDS", "120"),
    quota_fallback_backoff_ms=_parse_int("REPORTGEN_QUOTA_FALLBACK_BACKOFF_MS", "5000"),
    max_retry_after_ms=_parse_int("REPORTGEN_MAX_RETRY_AFTER_MS", "120000", minimum=1),
    estimated_generation_ms=_parse_int("REPORTGEN_ESTIMATED_GENERATION_MS", "2000"),
    saved_badge_seconds=_parse_seconds("REPORTGEN_SAVED_BADGE_SECONDS", "2"),
    rate_limits_path=_optional_path(os.getenv("REPORTGEN_RATE_LIMITS_PATH")),
    adaptive_delays_path=_optional_path(os.getenv("REPORTGEN_ADAPTIVE_DELAYS_PATH")),
    log_dir=_optional_path(os.getenv("REPORTGEN_LOG_DIR")) or Path.cwd() / "logs",
    log_level=log_level,
    log_max_bytes=_parse_int("REPORTGEN_LOG_MAX_BYTES", "5242880", minimum=1),  # 5MB default
    log_backup_count=_parse_int("REPORTGEN_LOG_BACKUP_COUNT", "10"),
  )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  return build_settings()
