"""Freshness badge shown next to a student's comment."""

from __future__ import annotations

import enum
import logging
from datetime import UTC, datetime, timedelta

from reportgen.jobs.models import GenerationOutput, StudentResult

logger = logging.getLogger(__name__)


class FreshnessBadge(str, enum.Enum):
  """Closed set of states for the badge next to a comment."""

  NONE = "none"
  PENDING = "pending"
  GENERATED = "generated"
  MODIFIED = "modified"
  VALID = "valid"
  SAVED = "saved"
  ERROR = "error"


class FreshnessEvent(str, enum.Enum):
  STARTED = "started"
  SUCCEEDED = "succeeded"
  FAILED = "failed"
  CANCELLED = "cancelled"
  DRIFTED = "drifted"
  REALIGNED = "realigned"
  EDITED = "edited"
  SAVED_EXPIRED = "saved_expired"


def _resting(*, has_text: bool, was_generated: bool) -> FreshnessBadge:
  if not has_text:
    return FreshnessBadge.NONE
  return FreshnessBadge.GENERATED if was_generated else FreshnessBadge.VALID


def transition(state: FreshnessBadge, event: FreshnessEvent, *, has_text: bool = False, was_generated: bool = False) -> FreshnessBadge:
  """
  Advance the badge for one event.

  none -> pending -> generated | error
  generated -> modified on drift, modified -> pending on regeneration
  any -> saved on a manual edit, saved -> none | valid once the display interval ends
  Events that do not apply to ``state`` leave it unchanged.
  """
  if event is FreshnessEvent.STARTED:
    return FreshnessBadge.PENDING
  if event is FreshnessEvent.EDITED:
    return FreshnessBadge.SAVED

  if state is FreshnessBadge.PENDING:
    if event is FreshnessEvent.SUCCEEDED:
      return FreshnessBadge.GENERATED
    if event is FreshnessEvent.FAILED:
      return FreshnessBadge.ERROR
    if event is FreshnessEvent.CANCELLED:
      return _resting(has_text=has_text, was_generated=was_generated)
    return state

  if state is FreshnessBadge.GENERATED and event is FreshnessEvent.DRIFTED:
    return FreshnessBadge.MODIFIED
  if state is FreshnessBadge.MODIFIED and event is FreshnessEvent.REALIGNED:
    return FreshnessBadge.GENERATED
  if state is FreshnessBadge.SAVED and event is FreshnessEvent.SAVED_EXPIRED:
    return FreshnessBadge.VALID if has_text else FreshnessBadge.NONE
  return state


def derive_badge(entity: StudentResult, *, is_pending: bool, is_stale: bool, now: datetime | None = None, saved_badge_seconds: float = 2.0) -> FreshnessBadge:
  """Compute the badge from current state; a registered generation always shows as pending."""
  if is_pending:
    return FreshnessBadge.PENDING

  if entity.manually_edited_at is not None:
    current = now or datetime.now(UTC)
    if current - entity.manually_edited_at < timedelta(seconds=saved_badge_seconds):
      return FreshnessBadge.SAVED

  if entity.error_message:
    return FreshnessBadge.ERROR

  badge = _resting(has_text=entity.has_text, was_generated=entity.was_generated)
  if badge is FreshnessBadge.GENERATED and is_stale:
    return FreshnessBadge.MODIFIED
  return badge


def record_manual_edit(entity: StudentResult, text: str, *, now: datetime | None = None) -> StudentResult:
  """Store a hand-written comment; the entity is no longer machine-generated so it can never turn stale."""
  edited_at = now or datetime.now(UTC)
  previous = entity.output
  entity.output = GenerationOutput(
    text=text,
    model=previous.model if previous is not None else None,
    period=previous.period if previous is not None else None,
    generated_at=previous.generated_at if previous is not None else None,
  )
  entity.was_generated = False
  entity.generation_snapshot = None
  entity.manually_edited_at = edited_at
  logger.debug("Manual edit recorded entity=%s", entity.id)
  return entity
