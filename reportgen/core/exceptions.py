"""Generation failure taxonomy and classification."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from reportgen.ai.backoff import extract_retry_after_ms, is_quota_error


class GenerationError(RuntimeError):
  """Base class for failures raised by the orchestration layer."""


class GenerationCancelledError(GenerationError):
  """Raised when an attempt is superseded or its batch is stopped."""


class ProviderError(GenerationError):
  """Raised when the text-generation provider reports a failure."""

  def __init__(self, message: str, *, retry_after_ms: int | None = None) -> None:
    super().__init__(message)
    self.retry_after_ms = retry_after_ms


class QuotaExceededError(ProviderError):
  """Raised when the provider throttles the caller (HTTP 429 or quota exhaustion)."""


class GenerationTimeoutError(ProviderError):
  """Raised when a provider call exceeds the configured ceiling."""


@dataclass(frozen=True)
class GenerationFailureClassification:
  """Classification result for a failed generation attempt."""

  category: str
  retryable: bool
  reason: str
  retry_after_ms: int | None = None

  @property
  def is_cancelled(self) -> bool:
    return self.category == "cancelled"

  @property
  def is_quota(self) -> bool:
    return self.category == "quota"


def classify_generation_failure(exc: BaseException) -> GenerationFailureClassification:
  """
  Classify a failed attempt so coordinators can decide between stop, backoff and record.

  Primary signal: exception type
  Fallback: message patterns

  Categories:
    - cancelled: superseded attempt or stopped batch (never surfaced)
    - quota: provider throttling; the batch backs off before the next item
    - timeout: the call exceeded the configured ceiling
    - auth / network / overloaded / unknown: recorded as a failed item
  """
  if isinstance(exc, (GenerationCancelledError, asyncio.CancelledError)):
    return GenerationFailureClassification(category="cancelled", retryable=False, reason="Generation cancelled")

  message = str(exc)

  if isinstance(exc, QuotaExceededError):
    retry_after = exc.retry_after_ms if exc.retry_after_ms is not None else extract_retry_after_ms(message)
    return GenerationFailureClassification(category="quota", retryable=True, reason="Provider quota or rate limit reached", retry_after_ms=retry_after)

  if isinstance(exc, (GenerationTimeoutError, TimeoutError)):
    return GenerationFailureClassification(category="timeout", retryable=True, reason="Provider call timed out")

  # Providers often surface throttling as plain exceptions; fall back to the message.
  if is_quota_error(message):
    return GenerationFailureClassification(category="quota", retryable=True, reason="Provider quota or rate limit reached (detected by message)", retry_after_ms=extract_retry_after_ms(message))

  lowered = message.lower()
  if any(pattern in lowered for pattern in ("401", "403", "unauthorized", "api key", "api_key")):
    return GenerationFailureClassification(category="auth", retryable=False, reason="Authentication error")

  if isinstance(exc, ConnectionError) or any(pattern in lowered for pattern in ("connection", "failed to fetch", "network", "refused", "reset")):
    return GenerationFailureClassification(category="network", retryable=True, reason="Transient connection/network error")

  if "503" in lowered or "overloaded" in lowered:
    return GenerationFailureClassification(category="overloaded", retryable=True, reason="Provider overloaded")

  return GenerationFailureClassification(category="unknown", retryable=False, reason=f"Unknown error type: {type(exc).__name__}")


def translate_error_message(message: object) -> str:
  """Map raw provider error text to a short message the user can act on."""
  if not isinstance(message, str):
    return str(message)

  # Messages already produced by the fallback layer are user-facing as-is.
  if message.startswith("Quota reached") or message.startswith("Model unavailable"):
    return message

  lowered = message.lower()
  if "failed to fetch" in lowered or "connection" in lowered:
    return "Connection failed. Check your network."
  if "timed out" in lowered or "timeout" in lowered or "expired" in lowered:
    return "The request timed out. Try again."
  if "401" in message:
    return "Invalid API key."
  if "402" in message and "credits" in lowered:
    return "API credits exhausted."
  if "503" in message or "overloaded" in lowered:
    return "The AI service is overloaded. Please wait."
  if is_quota_error(message):
    return "Quota reached. Try again in about 60s."
  return message
