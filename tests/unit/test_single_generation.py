from __future__ import annotations

import asyncio

import pytest

from reportgen.ai.contracts import GenerationRequest, GenerationResult
from reportgen.core.exceptions import GenerationTimeoutError, QuotaExceededError
from reportgen.jobs.single import SingleGenerationCoordinator
from reportgen.services.staleness import is_stale


@pytest.fixture
def coordinator(store, registry, limiter, settings, save_counter) -> SingleGenerationCoordinator:
  return SingleGenerationCoordinator(store=store, registry=registry, limiter=limiter, settings=settings, save_state_hook=save_counter)


async def _until(predicate) -> None:
  for _ in range(100):
    if predicate():
      return
    await asyncio.sleep(0)
  raise AssertionError("condition not reached")


@pytest.mark.anyio
async def test_successful_generation_is_applied_and_fresh(coordinator, store, registry, save_counter) -> None:
  requests: list[GenerationRequest] = []

  async def generate(request: GenerationRequest) -> GenerationResult:
    requests.append(request)
    return GenerationResult(text="Steady progress this term.", model="test-model", token_usage={"total": 42})

  outcome = await coordinator.start_generation("s1", "T1", generate)

  entity = store.get("s1")
  assert outcome.status == "applied"
  assert entity.output.text == "Steady progress this term."
  assert entity.output.token_usage == {"total": 42}
  assert entity.was_generated is True
  assert entity.generation_snapshot.period == "T1"
  assert is_stale(entity, entity.inputs, "T1", 2) is False
  assert requests[0].active_tags == ["participation"]
  assert requests[0].notes == ["Asks good questions", "Helps classmates"]
  assert "s1" not in registry
  assert save_counter.calls == 1


@pytest.mark.anyio
async def test_restart_discards_superseded_result(coordinator, store, registry) -> None:
  release_first = asyncio.Event()
  calls: list[str] = []

  async def generate(request: GenerationRequest) -> GenerationResult:
    calls.append(request.context)
    if len(calls) == 1:
      await release_first.wait()
      return GenerationResult(text="from first request")
    return GenerationResult(text="from second request")

  first = asyncio.ensure_future(coordinator.start_generation("s1", "T1", generate))
  await _until(lambda: len(calls) == 1)

  second = await coordinator.start_generation("s1", "T1", generate)
  release_first.set()
  first_outcome = await first

  assert first_outcome.status == "cancelled"
  assert second.status == "applied"
  assert store.get("s1").output.text == "from second request"
  assert len(registry) == 0


@pytest.mark.anyio
async def test_superseded_attempt_leaves_entity_unset_while_newer_runs(coordinator, store, registry) -> None:
  gates = [asyncio.Event(), asyncio.Event()]
  calls: list[int] = []

  async def generate(request: GenerationRequest) -> GenerationResult:
    index = len(calls)
    calls.append(index)
    await gates[index].wait()
    return GenerationResult(text=f"attempt {index}")

  first = asyncio.ensure_future(coordinator.start_generation("s1", "T1", generate))
  await _until(lambda: len(calls) == 1)
  second = asyncio.ensure_future(coordinator.start_generation("s1", "T1", generate))
  await _until(lambda: len(calls) == 2)

  gates[0].set()
  assert (await first).status == "cancelled"
  assert store.get("s1").output is None
  assert registry.is_active("s1")

  gates[1].set()
  assert (await second).status == "applied"
  assert store.get("s1").output.text == "attempt 1"


@pytest.mark.anyio
async def test_user_cancel_discards_result(coordinator, store) -> None:
  gate = asyncio.Event()
  started = asyncio.Event()

  async def generate(request: GenerationRequest) -> GenerationResult:
    started.set()
    await gate.wait()
    return GenerationResult(text="too late")

  task = asyncio.ensure_future(coordinator.start_generation("s1", "T1", generate))
  await started.wait()
  assert coordinator.is_pending("s1")
  assert coordinator.cancel("s1") is True

  outcome = await task
  assert outcome.status == "cancelled"
  assert store.get("s1").output is None
  assert coordinator.is_pending("s1") is False


@pytest.mark.anyio
async def test_result_applied_after_navigation_to_other_entity(coordinator, store) -> None:
  # Focus is a presentation concern; the write targets the record by id regardless.
  async def generate(request: GenerationRequest) -> dict:
    return {"text": "Written in the background.", "tokenUsage": {"total": 7}}

  await coordinator.start_generation("s4", "T1", generate)
  assert store.get("s4").output.text == "Written in the background."
  assert store.get("s4").output.token_usage == {"total": 7}


@pytest.mark.anyio
async def test_entity_deleted_mid_flight_is_a_noop(coordinator, store) -> None:
  async def generate(request: GenerationRequest) -> GenerationResult:
    store.delete(request.entity_id)
    return GenerationResult(text="orphan")

  outcome = await coordinator.start_generation("s2", "T1", generate)
  assert outcome.status == "skipped"
  assert store.get("s2") is None


@pytest.mark.anyio
async def test_provider_error_is_written_and_raised(coordinator, store, registry, save_counter) -> None:
  async def generate(request: GenerationRequest) -> GenerationResult:
    raise ConnectionError("TypeError: Failed to fetch")

  with pytest.raises(ConnectionError):
    await coordinator.start_generation("s1", "T1", generate)

  entity = store.get("s1")
  assert entity.error_message == "Connection failed. Check your network."
  assert entity.was_generated is False
  assert "s1" not in registry
  assert save_counter.calls == 1


@pytest.mark.anyio
async def test_in_band_quota_error_tunes_limiter(coordinator, store, limiter) -> None:
  async def generate(request: GenerationRequest) -> GenerationResult:
    return GenerationResult(error_message="429 RESOURCE_EXHAUSTED. Please retry in 1.5s.")

  with pytest.raises(QuotaExceededError):
    await coordinator.start_generation("s1", "T1", generate)

  assert store.get("s1").error_message == "Quota reached. Try again in about 60s."
  assert limiter.get_stats("test-model").pending_retry_after_ms == 2000


@pytest.mark.anyio
async def test_generation_call_is_bounded_by_timeout(store, registry, limiter, settings_factory) -> None:
  coordinator = SingleGenerationCoordinator(store=store, registry=registry, limiter=limiter, settings=settings_factory(generation_timeout_seconds=0.05))

  async def generate(request: GenerationRequest) -> GenerationResult:
    await asyncio.Event().wait()
    return GenerationResult(text="never")

  with pytest.raises(GenerationTimeoutError):
    await coordinator.start_generation("s1", "T1", generate)
  assert store.get("s1").error_message == "The request timed out. Try again."


@pytest.mark.anyio
async def test_async_save_hook_is_awaited(store, registry, limiter, settings) -> None:
  saved: list[str] = []

  async def persist() -> None:
    saved.append("saved")

  coordinator = SingleGenerationCoordinator(store=store, registry=registry, limiter=limiter, settings=settings, save_state_hook=persist)

  async def generate(request: GenerationRequest) -> GenerationResult:
    return GenerationResult(text="ok")

  await coordinator.start_generation("s1", "T1", generate)
  assert saved == ["saved"]


@pytest.mark.anyio
async def test_progress_is_reported(store, registry, limiter, settings) -> None:
  updates = []
  coordinator = SingleGenerationCoordinator(store=store, registry=registry, limiter=limiter, settings=settings, observer=updates.append)

  async def generate(request: GenerationRequest) -> GenerationResult:
    return GenerationResult(text="ok")

  await coordinator.start_generation("s1", "T1", generate)
  assert updates[0].current_label == "Student s1"
  assert updates[-1].processed_count == 1
  assert updates[-1].total == 1


@pytest.mark.anyio
async def test_nested_and_missing_token_usage_is_kept_opaque(coordinator, store) -> None:
  usage = {"appreciation": {"prompt_tokens": 10, "completion_tokens": 25, "total_tokens": 35}, "sw": None, "ns": None}

  async def generate(request: GenerationRequest) -> dict:
    if request.entity_id == "s1":
      return {"text": "Good term.", "tokenUsage": usage}
    return {"text": "Quiet but focused.", "tokenUsage": None}

  first = await coordinator.start_generation("s1", "T1", generate)
  second = await coordinator.start_generation("s2", "T1", generate)

  assert first.status == "applied"
  assert second.status == "applied"
  assert store.get("s1").output.token_usage == usage
  assert store.get("s1").error_message is None
  assert store.get("s2").output.text == "Quiet but focused."
  assert store.get("s2").output.token_usage == {}
