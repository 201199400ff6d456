"""Single-entity generation with restart semantics."""

from __future__ import annotations

import logging
from collections.abc import Callable

from reportgen.ai.rate_limiter import RateLimiter
from reportgen.config import Settings, get_settings
from reportgen.core.exceptions import GenerationCancelledError, classify_generation_failure, translate_error_message
from reportgen.jobs.apply import SaveStateHook, apply_error, apply_result, save_state
from reportgen.jobs.cancellation import CancellationRegistry
from reportgen.jobs.invoke import GenerateFn, build_request, invoke_generation, timeout_for
from reportgen.jobs.models import EntityInputs, GenerationOutcome, StudentResult
from reportgen.jobs.progress import ProgressObserver, ProgressReporter
from reportgen.services.staleness import capture_snapshot
from reportgen.storage.entity_store import EntityStore

logger = logging.getLogger(__name__)

InputsFn = Callable[[StudentResult], EntityInputs]


class SingleGenerationCoordinator:
  """
  Generates one entity's comment at a time per entity id.

  A newer request for the same entity always wins: the older attempt is
  cancelled and its eventual result discarded. Results are written to the live
  record in the store whether or not that entity is on screen.
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

  def is_pending(self, entity_id: str) -> bool:
    return self.registry.is_active(entity_id)

  def cancel(self, entity_id: str) -> bool:
    """Stop the entity's in-flight generation; its result will be discarded."""
    return self.registry.cancel(entity_id, reason="cancelled by user")

  async def start_generation(self, entity_id: str, period: str, generate_fn: GenerateFn, inputs_fn: InputsFn | None = None, *, model: str | None = None) -> GenerationOutcome:
    """
    Generate and apply a comment for ``entity_id``.

    Returns a ``cancelled`` outcome when a newer request or a user stop
    superseded this one. Provider failures are recorded on the entity and
    re-raised.
    """
    model_key = model or self._settings.default_model
    token = self.registry.start(entity_id)
    try:
      entity = self._store.get(entity_id)
      if entity is None:
        logger.warning("Generation requested for unknown entity=%s", entity_id)
        self.registry.release(entity_id, token)
        return GenerationOutcome(entity_id=entity_id, status="skipped", error_message="Entity not found")

      # The snapshot records exactly what is sent, so edits made while the call runs show up as drift.
      inputs = inputs_fn(entity) if inputs_fn is not None else entity.inputs
      threshold = self._threshold_provider()
      snapshot = capture_snapshot(inputs, period, threshold)
      request = build_request(entity_id, inputs, period=period, model=model_key, threshold=threshold)

      reporter = ProgressReporter(total=1, observer=self._observer, per_item_ms=self.limiter.estimate_time(1, model_key).per_item_ms)
      reporter.begin_item(entity.label or entity_id)

      try:
        await self.limiter.wait_if_needed(model_key, on_wait=reporter.waiting, token=token)
        result = await invoke_generation(generate_fn, request, token, timeout_seconds=timeout_for(model_key, self._settings))
      except GenerationCancelledError:
        self.registry.release(entity_id, token)
        logger.info("Generation discarded entity=%s attempt=%s reason=%s", entity_id, token.attempt_id, token.reason)
        return GenerationOutcome(entity_id=entity_id, status="cancelled")
      except Exception as exc:
        classification = classify_generation_failure(exc)
        self.registry.release(entity_id, token)
        if classification.is_quota:
          self.limiter.mark_error_429(model_key, str(exc))
        message = translate_error_message(str(exc))
        logger.warning("Generation failed entity=%s category=%s: %s", entity_id, classification.category, exc)
        apply_error(self._store, entity_id, message, period=period)
        reporter.complete_item(failed=True)
        reporter.finish()
        await save_state(self._save_state_hook)
        raise

      self.registry.release(entity_id, token)
      self.limiter.mark_success(model_key)
      applied = apply_result(self._store, entity_id, result, snapshot)
      reporter.complete_item()
      reporter.finish()
      await save_state(self._save_state_hook)
      if applied is None:
        return GenerationOutcome(entity_id=entity_id, status="skipped", error_message="Entity not found")
      logger.info("Generation applied entity=%s model=%s", entity_id, result.model or model_key)
      return GenerationOutcome(entity_id=entity_id, status="applied", output=applied.output)
    finally:
      # Identity-checked, so a newer attempt's token is never evicted here.
      self.registry.release(entity_id, token)
