"""Snapshot capture and drift detection for generated comments."""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Iterable
from typing import Protocol

from reportgen.jobs.models import EntityInputs, GenerationSnapshot, Observation, ObservationSnapshot, StudentResult

NOTE_SEPARATOR = "||"


class _Tagged(Protocol):
  tags: Iterable[str]
  note: str


def normalize_grade(value: object) -> float | None:
  """Collapse absent, empty and non-numeric grades to None; accept comma decimals."""
  if value is None or isinstance(value, bool):
    return None
  if isinstance(value, str):
    cleaned = value.strip().replace(",", ".")
    if not cleaned:
      return None
    value = cleaned
  try:
    grade = float(value)  # type: ignore[arg-type]
  except (TypeError, ValueError):
    return None
  if math.isnan(grade):
    return None
  return grade


def normalize_context(value: str | None) -> str:
  return (value or "").strip()


def tag_counts(observations: Iterable[_Tagged]) -> Counter[str]:
  counts: Counter[str] = Counter()
  for observation in observations:
    counts.update(observation.tags)
  return counts


def active_tags(observations: Iterable[_Tagged], threshold: int) -> tuple[str, ...]:
  """Tags observed at least ``threshold`` times, sorted."""
  return tuple(sorted(tag for tag, count in tag_counts(observations).items() if count >= threshold))


def note_digest(observations: Iterable[_Tagged]) -> str:
  """Order-insensitive fingerprint of the non-empty observation notes."""
  notes = sorted(observation.note.strip() for observation in observations if observation.note and observation.note.strip())
  return NOTE_SEPARATOR.join(notes)


def capture_snapshot(inputs: EntityInputs, period: str, threshold: int) -> GenerationSnapshot:
  """Freeze the inputs a generation used."""
  return GenerationSnapshot(
    period=period,
    threshold=threshold,
    grade=normalize_grade(inputs.grade),
    context=normalize_context(inputs.context),
    statuses=tuple(sorted(inputs.statuses)),
    observations=tuple(ObservationSnapshot(tags=tuple(sorted(observation.tags)), note=observation.note) for observation in inputs.observations),
  )


def drifted_fields(snapshot: GenerationSnapshot, current_inputs: EntityInputs, current_threshold: int) -> list[str]:
  """Names of the compared fields whose current value differs from the snapshot."""
  drifted: list[str] = []
  current_observations: list[Observation] = list(current_inputs.observations)

  if tuple(sorted(current_inputs.statuses)) != tuple(sorted(snapshot.statuses)):
    drifted.append("statuses")

  if normalize_grade(current_inputs.grade) != normalize_grade(snapshot.grade):
    drifted.append("grade")

  if normalize_context(current_inputs.context) != normalize_context(snapshot.context):
    drifted.append("context")

  if note_digest(current_observations) != note_digest(snapshot.observations):
    drifted.append("notes")

  # A tag crossing the threshold counts as drift even when no single note changed:
  # either the threshold itself moved, or new observations pushed a tag over it.
  current_active = active_tags(current_observations, current_threshold)
  if active_tags(current_observations, snapshot.threshold) != current_active or active_tags(snapshot.observations, snapshot.threshold) != current_active:
    drifted.append("aggregated_tags")

  return drifted


def is_stale(entity: StudentResult, current_inputs: EntityInputs, current_period: str, current_threshold: int) -> bool:
  """
  True when a machine-generated comment no longer matches the inputs it was generated from.

  Only the period that was actually generated can be stale; browsing another
  period never reports drift.
  """
  snapshot = entity.generation_snapshot
  if not entity.was_generated or snapshot is None:
    return False
  if snapshot.period != current_period:
    return False
  return bool(drifted_fields(snapshot, current_inputs, current_threshold))
