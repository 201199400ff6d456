"""Sequential batch generation across many entities."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from reportgen.ai.backoff import format_wait
from reportgen.ai.rate_limiter import RateLimiter
from reportgen.config import Settings, get_settings
from reportgen.core.exceptions import GenerationCancelledError, classify_generation_failure, translate_error_message
from reportgen.jobs.apply import SaveStateHook, apply_error, apply_result, save_state
from reportgen.jobs.cancellation import SUPERSEDED_REASON, CancellationRegistry, CancellationToken
from reportgen.jobs.invoke import GenerateFn, build_request, invoke_generation, timeout_for
from reportgen.jobs.models import EntityInputs, StudentResult
from reportgen.jobs.progress import ProgressObserver, ProgressReporter
from reportgen.services.staleness import capture_snapshot, is_stale
from reportgen.storage.entity_store import EntityStore
from reportgen.utils.ids import generate_batch_id

logger = logging.getLogger(__name__)

InputsFn = Callable[[StudentResult], EntityInputs]


@dataclass(frozen=True)
class BatchFailure:
  """One item that ended in an error during a batch."""

  entity_id: str
  label: str
  error_message: str
  category: str


@dataclass
class BatchOutcome:
  """Aggregate result of a batch run."""

  batch_id: str
  total: int
  processed_count: int = 0
  succeeded: list[str] = field(default_factory=list)
  failed: list[BatchFailure] = field(default_factory=list)
  skipped: list[str] = field(default_factory=list)
  aborted: bool = False

  @property
  def failed_count(self) -> int:
    return len(self.failed)

  @property
  def failed_ids(self) -> list[str]:
    return [failure.entity_id for failure in self.failed]


def select_pending(entities: Iterable[StudentResult], period: str) -> list[str]:
  """Ids that have no usable comment for ``period`` yet."""
  pending: list[str] = []
  for entity in entities:
    output = entity.output
    if output is None or not output.succeeded:
      pending.append(entity.id)
    elif output.period is not None and output.period != period:
      pending.append(entity.id)
  return pending


def select_failed(entities: Iterable[StudentResult], period: str) -> list[str]:
  """Ids whose last attempt for ``period`` left an error message."""
  return [entity.id for entity in entities if entity.error_message and (entity.output is None or entity.output.period in (None, period))]


def select_stale(entities: Iterable[StudentResult], period: str, threshold: int) -> list[str]:
  """Ids whose generated comment drifted from the current inputs."""
  return [entity.id for entity in entities if is_stale(entity, entity.inputs, period, threshold)]


class BatchGenerationCoordinator:
  """
  Runs generations one entity at a time in queue order.

  Non-quota failures are recorded and the batch moves on. Quota failures tune
  the rate limiter up and pause before the next item. Stopping the batch token
  ends the run at the next suspension point; finished items are kept.
  """

  def __init__(
    self,
    *,
    store: EntityStore,
    registry: CancellationRegistry | None = None,
    limiter: RateLimiter | None = None,
    settings: Settings | None = None,
    save_state_hook: SaveStateHook | None = None,
    observer: ProgressObserver | None = None,
    threshold_provider: Callable[[], int] | None = None,
  ) -> None:
    self._settings = settings or get_settings()
    self._store = store
    self.registry = registry if registry is not None else CancellationRegistry()
    self.limiter = limiter if limiter is not None else RateLimiter.from_settings(self._settings)
    self._save_state_hook = save_state_hook
    self._observer = observer
    self._threshold_provider = threshold_provider or (lambda: self._settings.aggregation_threshold)
    self._active_token: CancellationToken | None = None

  @property
  def is_running(self) -> bool:
    return self._active_token is not None and not self._active_token.is_cancelled()

  def stop(self, reason: str = "stopped by user") -> bool:
    """Cancel the running batch, if any."""
    if self._active_token is None or self._active_token.is_cancelled():
      return False
    self._active_token.cancel(reason=reason)
    return True

  async def run_batch(
    self,
    queue: Sequence[str | StudentResult],
    generate_fn: GenerateFn,
    *,
    period: str,
    token: CancellationToken | None = None,
    model: str | None = None,
    inputs_fn: InputsFn | None = None,
  ) -> BatchOutcome:
    """Generate comments for ``queue`` strictly in order and report what happened."""
    batch_id = generate_batch_id()
    model_key = model or self._settings.default_model
    entity_ids = [item if isinstance(item, str) else item.id for item in queue]
    batch_token = token if token is not None else CancellationToken(owner=batch_id)
    self._active_token = batch_token

    outcome = BatchOutcome(batch_id=batch_id, total=len(entity_ids))
    estimate = self.limiter.estimate_time(len(entity_ids), model_key)
    reporter = ProgressReporter(total=len(entity_ids), observer=self._observer, per_item_ms=estimate.per_item_ms)
    logger.info("Batch %s started items=%d model=%s estimate=%.1f min", batch_id, len(entity_ids), model_key, estimate.total_minutes)

    try:
      for entity_id in entity_ids:
        if batch_token.is_cancelled():
          outcome.aborted = True
          break
        if not await self._run_item(entity_id, generate_fn, batch_token, outcome, reporter, period=period, model_key=model_key, inputs_fn=inputs_fn):
          outcome.aborted = True
          break
    finally:
      if self._active_token is batch_token:
        self._active_token = None

    outcome.processed_count = reporter.processed_count
    reporter.finish()
    if outcome.aborted:
      logger.info("Batch %s aborted after %d/%d items (%s)", batch_id, outcome.processed_count, outcome.total, batch_token.reason)
    else:
      logger.info("Batch %s finished succeeded=%d failed=%d skipped=%d", batch_id, len(outcome.succeeded), outcome.failed_count, len(outcome.skipped))
    return outcome

  async def _run_item(
    self,
    entity_id: str,
    generate_fn: GenerateFn,
    batch_token: CancellationToken,
    outcome: BatchOutcome,
    reporter: ProgressReporter,
    *,
    period: str,
    model_key: str,
    inputs_fn: InputsFn | None,
  ) -> bool:
    """Process one queue slot; False when the batch must stop."""
    entity = self._store.get(entity_id)
    if entity is None:
      logger.warning("Batch item skipped; entity=%s no longer exists", entity_id)
      outcome.skipped.append(entity_id)
      reporter.complete_item()
      return True

    label = entity.label or entity_id
    reporter.begin_item(label)
    item_token = self.registry.start(entity_id, parent=batch_token)
    try:
      try:
        inputs = inputs_fn(entity) if inputs_fn is not None else entity.inputs
        threshold = self._threshold_provider()
        snapshot = capture_snapshot(inputs, period, threshold)
        request = build_request(entity_id, inputs, period=period, model=model_key, threshold=threshold)
        await self.limiter.wait_if_needed(model_key, on_wait=reporter.waiting, token=item_token)
        result = await invoke_generation(generate_fn, request, item_token, timeout_seconds=timeout_for(model_key, self._settings))
      except GenerationCancelledError as exc:
        self.registry.release(entity_id, item_token)
        if batch_token.is_cancelled() or not (item_token.is_cancelled() and item_token.reason == SUPERSEDED_REASON):
          # Stopped by the user or rejected as cancelled by the generation call: the whole batch stops.
          logger.info("Batch stopping at entity=%s: %s", entity_id, batch_token.reason or exc)
          return False
        # A single generation for the same entity took over; its result wins.
        logger.info("Batch item superseded entity=%s", entity_id)
        outcome.skipped.append(entity_id)
        reporter.complete_item()
        return True
      except Exception as exc:
        self.registry.release(entity_id, item_token)
        return await self._record_failure(entity_id, label, exc, batch_token, outcome, reporter, period=period, model_key=model_key)

      self.registry.release(entity_id, item_token)
      self.limiter.mark_success(model_key)
      if apply_result(self._store, entity_id, result, snapshot) is None:
        outcome.skipped.append(entity_id)
      else:
        outcome.succeeded.append(entity_id)
      reporter.complete_item()
      await save_state(self._save_state_hook)
      return True
    finally:
      self.registry.release(entity_id, item_token)

  async def _record_failure(
    self,
    entity_id: str,
    label: str,
    exc: Exception,
    batch_token: CancellationToken,
    outcome: BatchOutcome,
    reporter: ProgressReporter,
    *,
    period: str,
    model_key: str,
  ) -> bool:
    classification = classify_generation_failure(exc)
    message = translate_error_message(str(exc))
    backoff_ms = self.limiter.mark_error_429(model_key, str(exc)) if classification.is_quota else None

    logger.warning("Batch item failed entity=%s category=%s: %s", entity_id, classification.category, exc)
    apply_error(self._store, entity_id, message, period=period)
    outcome.failed.append(BatchFailure(entity_id=entity_id, label=label, error_message=message, category=classification.category))
    reporter.complete_item(failed=True)
    await save_state(self._save_state_hook)

    if backoff_ms is None:
      return True

    # The failed item is not retried in place; pause so the next item starts outside the quota window.
    logger.info("Quota backoff before next item: %s", format_wait(backoff_ms))
    reporter.waiting(backoff_ms)
    try:
      await self.limiter.sleep(backoff_ms, batch_token)
    except GenerationCancelledError:
      return False
    return True
