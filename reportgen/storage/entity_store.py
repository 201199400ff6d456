"""Storage interface for student result records."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Protocol

from reportgen.jobs.models import StudentResult


class EntityStore(Protocol):
  """
  Contract for the collection that owns student results.

  Methods are synchronous so that lookups and writes happen between suspension
  points and never interleave with other orchestration steps.
  """

  def get(self, entity_id: str) -> StudentResult | None:
    """Fetch the live record by identifier."""

  def list_entities(self) -> list[StudentResult]:
    """Return live records in display order."""

  def put(self, entity: StudentResult) -> None:
    """Insert or replace a record."""

  def delete(self, entity_id: str) -> bool:
    """Remove a record; False when it did not exist."""


class InMemoryEntityStore:
  """Dict-backed store preserving insertion order."""

  def __init__(self, entities: Iterable[StudentResult] | None = None) -> None:
    self._entities: dict[str, StudentResult] = {}
    for entity in entities or []:
      self.put(entity)

  def __len__(self) -> int:
    return len(self._entities)

  def __iter__(self) -> Iterator[StudentResult]:
    return iter(list(self._entities.values()))

  def __contains__(self, entity_id: object) -> bool:
    return entity_id in self._entities

  def get(self, entity_id: str) -> StudentResult | None:
    return self._entities.get(entity_id)

  def list_entities(self) -> list[StudentResult]:
    return list(self._entities.values())

  def put(self, entity: StudentResult) -> None:
    self._entities[entity.id] = entity

  def delete(self, entity_id: str) -> bool:
    return self._entities.pop(entity_id, None) is not None
