"""Shared fixtures: a controllable clock, a recording sleep and engine wiring."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from reportgen.ai.rate_limiter import RateLimiter
from reportgen.ai.rate_limits import RateLimitConfig
from reportgen.config import Settings
from reportgen.jobs.cancellation import CancellationRegistry
from reportgen.jobs.models import EntityInputs, Observation, StudentResult
from reportgen.storage.entity_store import InMemoryEntityStore

TEST_MODEL = "test-model"
TEST_LIMITS = {TEST_MODEL: RateLimitConfig(requests_per_minute=60, base_delay_ms=100)}


class FakeClock:
  """Millisecond clock that only moves when told to."""

  def __init__(self, start: float = 1_000_000.0) -> None:
    self.now = start

  def __call__(self) -> float:
    return self.now

  def advance(self, ms: float) -> None:
    self.now += ms


class RecordingSleep:
  """Sleep replacement that advances the fake clock and records requested durations in seconds."""

  def __init__(self, clock: FakeClock) -> None:
    self._clock = clock
    self.calls: list[float] = []

  async def __call__(self, seconds: float) -> None:
    self.calls.append(round(seconds, 3))
    self._clock.advance(seconds * 1000)
    await asyncio.sleep(0)


class SaveCounter:
  def __init__(self) -> None:
    self.calls = 0

  def __call__(self) -> None:
    self.calls += 1


def make_settings(log_dir: Path, **overrides: object) -> Settings:
  values: dict[str, object] = {
    "default_model": TEST_MODEL,
    "aggregation_threshold": 2,
    "generation_timeout_seconds": 5.0,
    "local_generation_timeout_seconds": 10.0,
    "quota_fallback_backoff_ms": 5000,
    "max_retry_after_ms": 120000,
    "estimated_generation_ms": 2000,
    "saved_badge_seconds": 2.0,
    "rate_limits_path": None,
    "adaptive_delays_path": None,
    "log_dir": log_dir,
    "log_level": "INFO",
    "log_max_bytes": 1024 * 1024,
    "log_backup_count": 2,
  }
  values.update(overrides)
  return Settings(**values)  # type: ignore[arg-type]


def make_entity(entity_id: str, *, label: str | None = None, context: str = "Works steadily", grade: float | str | None = 14.0) -> StudentResult:
  inputs = EntityInputs(
    grade=grade,
    context=context,
    statuses={"PPRE"},
    observations=[Observation.of("participation", note="Asks good questions"), Observation.of("participation", note="Helps classmates")],
  )
  return StudentResult(id=entity_id, label=label or f"Student {entity_id}", inputs=inputs)


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture
def sleeper(clock: FakeClock) -> RecordingSleep:
  return RecordingSleep(clock)


@pytest.fixture
def limiter(clock: FakeClock, sleeper: RecordingSleep) -> RateLimiter:
  return RateLimiter(limits=TEST_LIMITS, clock=clock, sleep_func=sleeper)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
  return make_settings(tmp_path / "logs")


@pytest.fixture
def registry() -> CancellationRegistry:
  return CancellationRegistry()


@pytest.fixture
def store() -> InMemoryEntityStore:
  return InMemoryEntityStore([make_entity(f"s{index}") for index in range(1, 6)])


@pytest.fixture
def save_counter() -> SaveCounter:
  return SaveCounter()


@pytest.fixture
def entity_factory():
  return make_entity


@pytest.fixture
def settings_factory(tmp_path: Path):
  def _factory(**overrides: object) -> Settings:
    return make_settings(tmp_path / "logs", **overrides)

  return _factory
