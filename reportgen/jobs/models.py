"""Domain models for student comment generation."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import msgspec

GenerationStatus = Literal["applied", "cancelled", "error", "skipped"]

SNAPSHOT_VERSION = 1


@dataclass(frozen=True)
class Observation:
  """A dated journal entry tagged with behaviour/status tags."""

  tags: frozenset[str] = frozenset()
  note: str = ""
  created_at: datetime | None = None

  def __post_init__(self) -> None:
    # Accept any iterable of tags from importers.
    if not isinstance(self.tags, frozenset):
      object.__setattr__(self, "tags", frozenset(self.tags))

  @classmethod
  def of(cls, *tags: str, note: str = "", created_at: datetime | None = None) -> Observation:
    return cls(tags=frozenset(tags), note=note, created_at=created_at)


@dataclass
class EntityInputs:
  """Generation-relevant data for one student in the active period."""

  grade: float | str | None = None
  context: str = ""
  statuses: set[str] = field(default_factory=set)
  observations: list[Observation] = field(default_factory=list)

  def with_observations(self, observations: Iterable[Observation]) -> EntityInputs:
    return EntityInputs(grade=self.grade, context=self.context, statuses=set(self.statuses), observations=list(observations))


@dataclass
class GenerationOutput:
  """Generated comment, or the error that replaced it."""

  text: str = ""
  model: str | None = None
  token_usage: dict[str, Any] = field(default_factory=dict)
  error_message: str | None = None
  period: str | None = None
  generated_at: datetime | None = None

  @property
  def succeeded(self) -> bool:
    return self.error_message is None and bool(self.text.strip())


class ObservationSnapshot(msgspec.Struct, frozen=True):
  """Frozen subset of an observation that staleness compares."""

  tags: tuple[str, ...]
  note: str


class GenerationSnapshot(msgspec.Struct, frozen=True):
  """Inputs as they were when a comment was generated, plus the period and threshold used."""

  period: str
  threshold: int
  grade: float | None
  context: str
  statuses: tuple[str, ...]
  observations: tuple[ObservationSnapshot, ...]
  version: int = SNAPSHOT_VERSION


@dataclass
class StudentResult:
  """One student's comment record; the unit the orchestration engine generates for."""

  id: str
  label: str = ""
  inputs: EntityInputs = field(default_factory=EntityInputs)
  output: GenerationOutput | None = None
  was_generated: bool = False
  generation_snapshot: GenerationSnapshot | None = None
  manually_edited_at: datetime | None = None

  @property
  def has_text(self) -> bool:
    return self.output is not None and bool(self.output.text.strip())

  @property
  def error_message(self) -> str | None:
    return self.output.error_message if self.output is not None else None


@dataclass(frozen=True)
class GenerationOutcome:
  """Result of one coordinated attempt as seen by the caller."""

  entity_id: str
  status: GenerationStatus
  output: GenerationOutput | None = None
  error_message: str | None = None
  category: str | None = None
