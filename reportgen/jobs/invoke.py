"""Invocation wrapper shared by the single and batch coordinators."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from pydantic import ValidationError

from reportgen.ai.backoff import extract_retry_after_ms, is_quota_error
from reportgen.ai.contracts import GenerationRequest, GenerationResult
from reportgen.ai.rate_limits import is_local_model
from reportgen.config import Settings
from reportgen.core.exceptions import GenerationCancelledError, GenerationTimeoutError, ProviderError, QuotaExceededError
from reportgen.jobs.cancellation import CancellationToken
from reportgen.jobs.models import EntityInputs
from reportgen.services.staleness import active_tags, normalize_context, normalize_grade

logger = logging.getLogger(__name__)

GenerateFn = Callable[[GenerationRequest], Awaitable[GenerationResult | Mapping[str, Any]]]


def build_request(entity_id: str, inputs: EntityInputs, *, period: str, model: str, threshold: int) -> GenerationRequest:
  """Project entity inputs onto the generation contract."""
  notes = [observation.note.strip() for observation in inputs.observations if observation.note and observation.note.strip()]
  return GenerationRequest(
    entity_id=entity_id,
    period=period,
    model=model,
    grade=normalize_grade(inputs.grade),
    context=normalize_context(inputs.context),
    statuses=sorted(inputs.statuses),
    notes=notes,
    active_tags=list(active_tags(inputs.observations, threshold)),
  )


def timeout_for(model: str, settings: Settings) -> float:
  """Local models are slower to answer, so they get the longer ceiling."""
  if is_local_model(model):
    return settings.local_generation_timeout_seconds
  return settings.generation_timeout_seconds


def provider_error_from_text(message: str) -> ProviderError:
  """Wrap an error returned in-band by the provider adapter."""
  retry_after = extract_retry_after_ms(message)
  if is_quota_error(message):
    return QuotaExceededError(message, retry_after_ms=retry_after)
  return ProviderError(message, retry_after_ms=retry_after)


def normalize_result(raw: GenerationResult | Mapping[str, Any]) -> GenerationResult:
  """Validate the adapter's return value and turn in-band errors into exceptions."""
  if isinstance(raw, GenerationResult):
    result = raw
  else:
    try:
      result = GenerationResult.model_validate(raw)
    except ValidationError as exc:
      raise ProviderError(f"Malformed generation result: {exc.error_count()} validation error(s)") from exc

  if result.error_message:
    raise provider_error_from_text(result.error_message)
  if not result.text.strip():
    raise ProviderError("Empty response from the model")
  return result


async def invoke_generation(generate_fn: GenerateFn, request: GenerationRequest, token: CancellationToken, *, timeout_seconds: float | None) -> GenerationResult:
  """
  Run one generation call raced against cancellation and a timeout.

  The provider call is not preempted from the provider's point of view; once
  the token fires its outcome is discarded and GenerationCancelledError raised.
  """
  token.raise_if_cancelled()

  call = asyncio.ensure_future(generate_fn(request))
  waiter = asyncio.ensure_future(token.wait())
  try:
    done, _ = await asyncio.wait({call, waiter}, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED)
  finally:
    for pending in (call, waiter):
      if not pending.done():
        pending.cancel()

  if token.is_cancelled():
    logger.debug("Discarding generation result entity=%s reason=%s", request.entity_id, token.reason)
    raise GenerationCancelledError(token.reason or "cancelled")

  if call not in done:
    raise GenerationTimeoutError(f"Generation timed out after {timeout_seconds:g}s")

  if call.cancelled():
    raise GenerationCancelledError("provider call cancelled")

  return normalize_result(call.result())
