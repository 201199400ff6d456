"""Write generation outcomes onto the live entity records."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from reportgen.ai.contracts import GenerationResult
from reportgen.jobs.models import GenerationOutput, GenerationSnapshot, StudentResult
from reportgen.storage.entity_store import EntityStore

logger = logging.getLogger(__name__)

SaveStateHook = Callable[[], Awaitable[None] | None]


def apply_result(store: EntityStore, entity_id: str, result: GenerationResult, snapshot: GenerationSnapshot, *, now: datetime | None = None) -> StudentResult | None:
  """
  Store a successful generation on the entity looked up by id.

  The write happens whether or not the entity is currently displayed. An
  entity deleted while its generation was in flight is skipped.
  """
  entity = store.get(entity_id)
  if entity is None:
    logger.warning("Entity %s disappeared before its generation could be applied", entity_id)
    return None

  entity.output = GenerationOutput(
    text=result.text,
    model=result.model,
    token_usage=dict(result.token_usage),
    period=snapshot.period,
    generated_at=now or datetime.now(UTC),
  )
  entity.was_generated = True
  entity.generation_snapshot = snapshot
  entity.manually_edited_at = None
  return entity


def apply_error(store: EntityStore, entity_id: str, message: str, *, period: str | None = None) -> StudentResult | None:
  """Replace the entity's comment with a user-facing error message."""
  entity = store.get(entity_id)
  if entity is None:
    logger.warning("Entity %s disappeared before its generation error could be recorded", entity_id)
    return None

  previous_model = entity.output.model if entity.output is not None else None
  entity.output = GenerationOutput(text="", model=previous_model, error_message=message, period=period)
  entity.was_generated = False
  entity.generation_snapshot = None
  return entity


async def save_state(hook: SaveStateHook | None) -> None:
  """Run the persistence hook, awaiting it when it is a coroutine function."""
  if hook is None:
    return
  try:
    outcome = hook()
    if inspect.isawaitable(outcome):
      await outcome
  except Exception:
    # A failed save leaves the in-memory state authoritative; the next save retries it.
    logger.exception("Persisting generation state failed")
