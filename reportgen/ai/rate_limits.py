"""Static per-model rate-limit table and JSON overrides."""

from __future__ import annotations

import logging
from pathlib import Path

import msgspec

logger = logging.getLogger(__name__)

DEFAULT_MODEL_KEY = "default"


class RateLimitConfig(msgspec.Struct, frozen=True):
  """Requests-per-minute ceiling and the spacing that respects it."""

  requests_per_minute: int
  base_delay_ms: int

  @property
  def max_delay_ms(self) -> int:
    """Ceiling for the adaptive delay (5x the base spacing)."""

    return max(self.base_delay_ms * 5, self.base_delay_ms)


# Free tiers enforce per-minute quotas; paid and local backends only need a small anti-spam gap.
DEFAULT_RATE_LIMITS: dict[str, RateLimitConfig] = {
  # Google Gemini (free tier)
  "gemini-2.5-flash": RateLimitConfig(requests_per_minute=10, base_delay_ms=6000),
  "gemini-3-flash-preview": RateLimitConfig(requests_per_minute=10, base_delay_ms=6000),
  "gemini-2.0-flash": RateLimitConfig(requests_per_minute=15, base_delay_ms=4000),
  "gemini-2.0-flash-lite": RateLimitConfig(requests_per_minute=30, base_delay_ms=2000),
  "gemini-2.5-pro": RateLimitConfig(requests_per_minute=5, base_delay_ms=12000),
  # OpenAI / OpenRouter paid
  "openai-gpt-4o-mini": RateLimitConfig(requests_per_minute=500, base_delay_ms=200),
  "openai-gpt-4o": RateLimitConfig(requests_per_minute=500, base_delay_ms=200),
  "openai-gpt-3.5-turbo": RateLimitConfig(requests_per_minute=500, base_delay_ms=200),
  "mistral-small": RateLimitConfig(requests_per_minute=100, base_delay_ms=600),
  "mistral-large": RateLimitConfig(requests_per_minute=100, base_delay_ms=600),
  "openrouter": RateLimitConfig(requests_per_minute=100, base_delay_ms=600),
  # OpenRouter free
  "devstral-free": RateLimitConfig(requests_per_minute=20, base_delay_ms=3000),
  "llama-3.3-70b-free": RateLimitConfig(requests_per_minute=15, base_delay_ms=4000),
  "deepseek-r1-free": RateLimitConfig(requests_per_minute=10, base_delay_ms=6000),
  # Local
  "ollama-qwen3:8b": RateLimitConfig(requests_per_minute=999, base_delay_ms=500),
  "ollama-mistral": RateLimitConfig(requests_per_minute=999, base_delay_ms=500),
  "ollama-gemma3:4b": RateLimitConfig(requests_per_minute=999, base_delay_ms=500),
  "ollama-deepseek-r1:8b": RateLimitConfig(requests_per_minute=999, base_delay_ms=1000),
  DEFAULT_MODEL_KEY: RateLimitConfig(requests_per_minute=10, base_delay_ms=6000),
}


def is_local_model(model_key: str) -> bool:
  """Local backends load weights lazily and get a longer call timeout."""
  return model_key.startswith("ollama-")


def load_rate_limits(path: Path | None = None) -> dict[str, RateLimitConfig]:
  """Return the default table merged with overrides from a JSON file, when present."""
  table = dict(DEFAULT_RATE_LIMITS)
  if path is None:
    return table
  if not path.is_file():
    logger.warning("Rate limit overrides not found at %s; using defaults", path)
    return table

  try:
    overrides = msgspec.json.decode(path.read_bytes(), type=dict[str, RateLimitConfig])
  except msgspec.DecodeError as exc:
    raise ValueError(f"Invalid rate limit table at {path}: {exc}") from exc

  table.update(overrides)
  logger.info("Loaded %d rate limit overrides from %s", len(overrides), path)
  return table
