"""Quota detection and retry-after parsing for provider error text."""

from __future__ import annotations

import math
import re

# Providers append this margin themselves in some SDKs but not all; adding it keeps the next call outside the window.
RETRY_AFTER_MARGIN_MS = 500

_QUOTA_MARKERS = ("quota", "resource exhausted", "resource_exhausted", "too many requests", "rate limit", "rate_limit", "ratelimit")
# Status code only as a standalone number, never inside ids or line numbers.
_QUOTA_STATUS = re.compile(r"(?<![\w.])429\b")

_RETRY_IN_SECONDS = re.compile(r"retry in (\d+(?:\.\d+)?)\s*s\b", re.IGNORECASE)
_RETRY_DELAY_FIELD = re.compile(r"\"?retryDelay\"?\s*[:=]\s*\"?(\d+(?:\.\d+)?)s\"?", re.IGNORECASE)
_RETRY_AFTER_HEADER = re.compile(r"retry[-_ ]after\W{0,3}(\d+(?:\.\d+)?)\s*(ms|milliseconds?|s|sec|seconds?)?\b", re.IGNORECASE)


def is_quota_error(error_text: str | None) -> bool:
  """Return True when provider error text signals throttling or quota exhaustion."""
  if not error_text:
    return False
  lowered = error_text.lower()
  return bool(_QUOTA_STATUS.search(error_text)) or any(marker in lowered for marker in _QUOTA_MARKERS)


def _seconds_to_ms(seconds: float) -> int:
  return math.ceil(seconds * 1000) + RETRY_AFTER_MARGIN_MS


def extract_retry_after_ms(error_text: str | None) -> int | None:
  """
  Parse a provider-suggested wait out of free-form error text.

  Recognised shapes:
    - "Please retry in 3.045s" (Gemini free tier)
    - "retryDelay": "7s" (Gemini JSON error details)
    - "Retry-After: 12" / "retry after 800ms" (HTTP header echoed in the message)

  Returns milliseconds including a safety margin, or None when nothing usable is found.
  """
  if not error_text:
    return None

  match = _RETRY_IN_SECONDS.search(error_text) or _RETRY_DELAY_FIELD.search(error_text)
  if match:
    seconds = float(match.group(1))
    return _seconds_to_ms(seconds) if seconds >= 0 else None

  match = _RETRY_AFTER_HEADER.search(error_text)
  if match:
    value = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    if unit.startswith("ms") or unit.startswith("milli"):
      return math.ceil(value) + RETRY_AFTER_MARGIN_MS
    return _seconds_to_ms(value)

  return None


def format_wait(ms: float) -> str:
  """Format a wait for display, e.g. ``2 min 30 sec`` or ``45 sec``."""
  total_seconds = max(0, math.ceil(ms / 1000))
  minutes, seconds = divmod(total_seconds, 60)
  if minutes > 0:
    return f"{minutes} min {seconds} sec" if seconds > 0 else f"{minutes} min"
  return f"{seconds} sec"
