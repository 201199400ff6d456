"""Progress reporting for generation runs."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressUpdate:
  """Snapshot of a run's progress for a presentation layer."""

  processed_count: int
  total: int
  current_label: str | None
  elapsed_seconds: float
  eta_minutes: float | None
  failed_count: int = 0
  waiting_ms: int | None = None

  @property
  def percent(self) -> float:
    if self.total <= 0:
      return 100.0
    return min(round(self.processed_count / self.total * 100, 2), 100.0)


ProgressObserver = Callable[[ProgressUpdate], None]


class ProgressReporter:
  """Track processed/failed counts and push updates to an optional observer."""

  def __init__(self, *, total: int, observer: ProgressObserver | None = None, per_item_ms: int | None = None, clock: Callable[[], float] = time.monotonic) -> None:
    self._total = max(total, 0)
    self._observer = observer
    self._per_item_ms = per_item_ms
    self._clock = clock
    self._started_at = clock()
    self._processed = 0
    self._failed = 0
    self._current_label: str | None = None

  @property
  def processed_count(self) -> int:
    return self._processed

  @property
  def failed_count(self) -> int:
    return self._failed

  def _elapsed_seconds(self) -> float:
    return max(0.0, self._clock() - self._started_at)

  def _eta_minutes(self) -> float | None:
    remaining = self._total - self._processed
    if remaining <= 0:
      return 0.0
    # Prefer the observed pace once at least one item finished; fall back to the limiter's projection.
    if self._processed > 0:
      per_item_seconds = self._elapsed_seconds() / self._processed
    elif self._per_item_ms is not None:
      per_item_seconds = self._per_item_ms / 1000
    else:
      return None
    return math.ceil(remaining * per_item_seconds / 60 * 10) / 10

  def snapshot(self, *, waiting_ms: int | None = None) -> ProgressUpdate:
    return ProgressUpdate(
      processed_count=self._processed,
      total=self._total,
      current_label=self._current_label,
      elapsed_seconds=round(self._elapsed_seconds(), 3),
      eta_minutes=self._eta_minutes(),
      failed_count=self._failed,
      waiting_ms=waiting_ms,
    )

  def _emit(self, *, waiting_ms: int | None = None) -> None:
    if self._observer is None:
      return
    self._observer(self.snapshot(waiting_ms=waiting_ms))

  def begin_item(self, label: str | None) -> None:
    """Announce the item about to be generated."""
    self._current_label = label
    self._emit()

  def waiting(self, wait_ms: int) -> None:
    """Announce a rate-limit or backoff pause before the next request."""
    self._emit(waiting_ms=wait_ms)

  def complete_item(self, *, failed: bool = False) -> None:
    self._processed = min(self._processed + 1, self._total) if self._total else self._processed + 1
    if failed:
      self._failed += 1
    self._emit()

  def finish(self) -> ProgressUpdate:
    """Emit the final state; the current label is cleared."""
    self._current_label = None
    update = self.snapshot()
    if self._observer is not None:
      self._observer(update)
    logger.info("Generation run finished processed=%d/%d failed=%d elapsed=%.1fs", update.processed_count, update.total, update.failed_count, update.elapsed_seconds)
    return update
