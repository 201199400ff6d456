from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from reportgen.jobs.models import GenerationOutput, StudentResult
from reportgen.services.freshness import FreshnessBadge, FreshnessEvent, derive_badge, record_manual_edit, transition
from reportgen.services.staleness import capture_snapshot

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=UTC)


@pytest.mark.parametrize(
  ("state", "event", "expected"),
  [
    (FreshnessBadge.NONE, FreshnessEvent.STARTED, FreshnessBadge.PENDING),
    (FreshnessBadge.PENDING, FreshnessEvent.SUCCEEDED, FreshnessBadge.GENERATED),
    (FreshnessBadge.PENDING, FreshnessEvent.FAILED, FreshnessBadge.ERROR),
    (FreshnessBadge.GENERATED, FreshnessEvent.DRIFTED, FreshnessBadge.MODIFIED),
    (FreshnessBadge.MODIFIED, FreshnessEvent.STARTED, FreshnessBadge.PENDING),
    (FreshnessBadge.MODIFIED, FreshnessEvent.REALIGNED, FreshnessBadge.GENERATED),
    (FreshnessBadge.ERROR, FreshnessEvent.EDITED, FreshnessBadge.SAVED),
    (FreshnessBadge.NONE, FreshnessEvent.DRIFTED, FreshnessBadge.NONE),
    (FreshnessBadge.GENERATED, FreshnessEvent.SUCCEEDED, FreshnessBadge.GENERATED),
  ],
)
def test_transition(state: FreshnessBadge, event: FreshnessEvent, expected: FreshnessBadge) -> None:
  assert transition(state, event) is expected


def test_saved_reverts_to_valid_or_none() -> None:
  assert transition(FreshnessBadge.SAVED, FreshnessEvent.SAVED_EXPIRED, has_text=True) is FreshnessBadge.VALID
  assert transition(FreshnessBadge.SAVED, FreshnessEvent.SAVED_EXPIRED, has_text=False) is FreshnessBadge.NONE


def test_cancelled_pending_returns_to_resting_state() -> None:
  assert transition(FreshnessBadge.PENDING, FreshnessEvent.CANCELLED, has_text=True, was_generated=True) is FreshnessBadge.GENERATED
  assert transition(FreshnessBadge.PENDING, FreshnessEvent.CANCELLED) is FreshnessBadge.NONE


def _generated_entity() -> StudentResult:
  entity = StudentResult(id="s1", output=GenerationOutput(text="Good work.", period="T1"), was_generated=True)
  entity.generation_snapshot = capture_snapshot(entity.inputs, "T1", 2)
  return entity


def test_derive_badge_pending_takes_precedence() -> None:
  entity = _generated_entity()
  entity.manually_edited_at = NOW
  assert derive_badge(entity, is_pending=True, is_stale=True, now=NOW) is FreshnessBadge.PENDING


def test_derive_badge_generated_and_modified() -> None:
  entity = _generated_entity()
  assert derive_badge(entity, is_pending=False, is_stale=False, now=NOW) is FreshnessBadge.GENERATED
  assert derive_badge(entity, is_pending=False, is_stale=True, now=NOW) is FreshnessBadge.MODIFIED


def test_derive_badge_error_and_none() -> None:
  assert derive_badge(StudentResult(id="s1"), is_pending=False, is_stale=False, now=NOW) is FreshnessBadge.NONE
  failed = StudentResult(id="s2", output=GenerationOutput(error_message="Invalid API key."))
  assert derive_badge(failed, is_pending=False, is_stale=False, now=NOW) is FreshnessBadge.ERROR


def test_manual_edit_shows_saved_then_valid() -> None:
  entity = record_manual_edit(_generated_entity(), "Hand-written comment.", now=NOW)

  assert entity.was_generated is False
  assert entity.generation_snapshot is None
  assert entity.output is not None and entity.output.text == "Hand-written comment."
  assert derive_badge(entity, is_pending=False, is_stale=False, now=NOW + timedelta(seconds=1)) is FreshnessBadge.SAVED
  assert derive_badge(entity, is_pending=False, is_stale=False, now=NOW + timedelta(seconds=2)) is FreshnessBadge.VALID
