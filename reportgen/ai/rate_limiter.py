"""Adaptive per-model request spacing for rate-limited generation providers."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

import msgspec

from reportgen.ai.backoff import extract_retry_after_ms, format_wait
from reportgen.ai.rate_limits import DEFAULT_MODEL_KEY, RateLimitConfig, load_rate_limits
from reportgen.config import Settings
from reportgen.core.exceptions import GenerationCancelledError
from reportgen.jobs.cancellation import CancellationToken

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
SleepFunc = Callable[[float], Awaitable[None]]
WaitCallback = Callable[[int], None]


def monotonic_ms() -> float:
  return time.monotonic() * 1000


@dataclass(frozen=True)
class TimeEstimate:
  """Projected wall-clock time for a batch at the current spacing."""

  total_ms: int
  total_minutes: float
  per_item_ms: int
  delay_ms: int


@dataclass(frozen=True)
class RateLimiterStats:
  """Current tuning state for one model key."""

  model_key: str
  current_delay_ms: int
  base_delay_ms: int
  success_streak: int
  is_adapted: bool
  pending_retry_after_ms: int | None

  @property
  def adaptation_ratio(self) -> str:
    if self.base_delay_ms <= 0:
      return "100%"
    return f"{self.current_delay_ms / self.base_delay_ms * 100:.0f}%"


class AdaptiveDelayStore:
  """JSON file that keeps tuned delays across restarts."""

  def __init__(self, path: Path) -> None:
    self._path = path

  @property
  def path(self) -> Path:
    return self._path

  def load(self) -> dict[str, int]:
    if not self._path.is_file():
      return {}
    try:
      return msgspec.json.decode(self._path.read_bytes(), type=dict[str, int])
    except (msgspec.DecodeError, OSError) as exc:
      logger.warning("Could not load adaptive delays from %s: %s", self._path, exc)
      return {}

  def save(self, delays: Mapping[str, int]) -> None:
    try:
      self._path.parent.mkdir(parents=True, exist_ok=True)
      self._path.write_bytes(msgspec.json.encode(dict(delays)))
    except OSError as exc:
      logger.warning("Could not save adaptive delays to %s: %s", self._path, exc)


class RateLimiter:
  """
  Enforces a minimum spacing between generation calls per model key.

  The spacing starts at the configured base delay and self-tunes:
    - every SUCCESS_THRESHOLD consecutive successes shrink it by SUCCESS_REDUCTION_FACTOR,
      never below the base delay
    - every 429 grows it (doubling, or the provider suggestion plus a margin),
      never above RateLimitConfig.max_delay_ms
  A provider-suggested retry-after overrides the spacing for the next wait only.
  """

  SUCCESS_REDUCTION_FACTOR = 0.9
  ERROR_INCREASE_FACTOR = 2.0
  SUCCESS_THRESHOLD = 3
  SUGGESTION_MARGIN_MS = 1000

  def __init__(
    self,
    *,
    limits: Mapping[str, RateLimitConfig] | None = None,
    store: AdaptiveDelayStore | None = None,
    clock: Clock = monotonic_ms,
    sleep_func: SleepFunc = asyncio.sleep,
    quota_fallback_backoff_ms: int = 5000,
    max_retry_after_ms: int = 120000,
    estimated_generation_ms: int = 2000,
  ) -> None:
    self._limits = dict(limits) if limits is not None else load_rate_limits()
    if DEFAULT_MODEL_KEY not in self._limits:
      self._limits[DEFAULT_MODEL_KEY] = load_rate_limits()[DEFAULT_MODEL_KEY]
    self._store = store
    self._clock = clock
    self._sleep_func = sleep_func
    self.quota_fallback_backoff_ms = quota_fallback_backoff_ms
    self.max_retry_after_ms = max_retry_after_ms
    self.estimated_generation_ms = estimated_generation_ms
    self._last_request: dict[str, float] = {}
    self._adaptive_delays: dict[str, int] = {}
    self._success_streak: dict[str, int] = {}
    self._retry_after_override: dict[str, int] = {}
    if store is not None:
      self._adaptive_delays.update(self._bounded(model_key, delay) for model_key, delay in store.load().items())

  @classmethod
  def from_settings(cls, settings: Settings, **kwargs: object) -> RateLimiter:
    """Build a limiter wired to the configured table and persistence file."""
    store = AdaptiveDelayStore(settings.adaptive_delays_path) if settings.adaptive_delays_path else None
    return cls(
      limits=load_rate_limits(settings.rate_limits_path),
      store=store,
      quota_fallback_backoff_ms=settings.quota_fallback_backoff_ms,
      max_retry_after_ms=settings.max_retry_after_ms,
      estimated_generation_ms=settings.estimated_generation_ms,
      **kwargs,
    )

  def _bounded(self, model_key: str, delay: int) -> tuple[str, int]:
    config = self.config_for(model_key)
    return model_key, min(config.max_delay_ms, max(config.base_delay_ms, int(delay)))

  def _persist(self) -> None:
    if self._store is not None:
      self._store.save(self._adaptive_delays)

  def config_for(self, model_key: str) -> RateLimitConfig:
    """Return the model's configuration, or the conservative default entry."""
    return self._limits.get(model_key) or self._limits[DEFAULT_MODEL_KEY]

  def get_base_delay(self, model_key: str) -> int:
    return self.config_for(model_key).base_delay_ms

  def get_delay(self, model_key: str) -> int:
    """Current adaptive spacing (configured base when never tuned)."""
    return self._adaptive_delays.get(model_key, self.get_base_delay(model_key))

  def get_wait_time(self, model_key: str) -> int:
    """Milliseconds to wait before the next request; never negative."""
    last = self._last_request.get(model_key)
    if last is None:
      return 0
    delay = self._retry_after_override.get(model_key, self.get_delay(model_key))
    elapsed = self._clock() - last
    return max(0, math.ceil(delay - elapsed))

  async def wait_if_needed(self, model_key: str, on_wait: WaitCallback | None = None, token: CancellationToken | None = None) -> None:
    """Sleep until the model's spacing has elapsed, then record the request."""
    wait_ms = self.get_wait_time(model_key)
    if wait_ms > 0:
      if on_wait is not None:
        on_wait(wait_ms)
      logger.debug("Rate limit pause model=%s wait=%s", model_key, format_wait(wait_ms))
      await self.sleep(wait_ms, token)
    elif token is not None:
      token.raise_if_cancelled()

    self._retry_after_override.pop(model_key, None)
    self._last_request[model_key] = self._clock()

  def mark_success(self, model_key: str) -> None:
    """Reward a clean response; sustained success shrinks the spacing toward the base delay."""
    self._last_request[model_key] = self._clock()
    streak = self._success_streak.get(model_key, 0) + 1
    if streak < self.SUCCESS_THRESHOLD:
      self._success_streak[model_key] = streak
      return

    self._success_streak[model_key] = 0
    current = self.get_delay(model_key)
    base = self.get_base_delay(model_key)
    reduced = max(base, round(current * self.SUCCESS_REDUCTION_FACTOR))
    if reduced >= current:
      return
    if reduced == base:
      self._adaptive_delays.pop(model_key, None)
    else:
      self._adaptive_delays[model_key] = reduced
    logger.info("Rate limit relaxed model=%s delay_ms=%d->%d", model_key, current, reduced)
    self._persist()

  def extract_retry_after(self, error_text: str | None) -> int | None:
    """Parse a usable provider suggestion; suggestions beyond the ceiling are ignored."""
    suggested = extract_retry_after_ms(error_text)
    if suggested is None or suggested > self.max_retry_after_ms:
      return None
    return suggested

  def mark_error_429(self, model_key: str, raw_error_text: str = "") -> int:
    """
    Record a throttling response and grow the spacing.

    Returns the backoff the caller should sleep before the next request:
    the provider suggestion when one is parseable, otherwise the fallback constant.
    """
    self._success_streak[model_key] = 0
    self._last_request[model_key] = self._clock()
    suggested = self.extract_retry_after(raw_error_text)

    config = self.config_for(model_key)
    current = self.get_delay(model_key)
    if suggested is not None and suggested > current:
      grown = suggested + self.SUGGESTION_MARGIN_MS
    else:
      grown = round(max(current, 1) * self.ERROR_INCREASE_FACTOR)
    new_delay = min(config.max_delay_ms, max(config.base_delay_ms, grown))
    self._adaptive_delays[model_key] = new_delay

    if suggested is not None:
      self._retry_after_override[model_key] = suggested

    logger.warning("Rate limited model=%s delay_ms=%d->%d suggested_ms=%s", model_key, current, new_delay, suggested)
    self._persist()
    return suggested if suggested is not None else self.quota_fallback_backoff_ms

  async def wait_for_retry_after(self, error_text: str, on_wait: WaitCallback | None = None, token: CancellationToken | None = None) -> bool:
    """Sleep for the provider-suggested duration; False when the text carries none."""
    wait_ms = self.extract_retry_after(error_text)
    if wait_ms is None:
      return False
    if on_wait is not None:
      on_wait(wait_ms)
    await self.sleep(wait_ms, token)
    return True

  def estimate_time(self, item_count: int, model_key: str | None = None) -> TimeEstimate:
    """Project total time for ``item_count`` sequential generations at the current spacing."""
    delay = self.get_delay(model_key or DEFAULT_MODEL_KEY)
    per_item_ms = delay + self.estimated_generation_ms
    total_ms = max(0, item_count) * per_item_ms
    total_minutes = math.ceil(total_ms / 60000 * 10) / 10
    return TimeEstimate(total_ms=total_ms, total_minutes=total_minutes, per_item_ms=per_item_ms, delay_ms=delay)

  def get_stats(self, model_key: str) -> RateLimiterStats:
    return RateLimiterStats(
      model_key=model_key,
      current_delay_ms=self.get_delay(model_key),
      base_delay_ms=self.get_base_delay(model_key),
      success_streak=self._success_streak.get(model_key, 0),
      is_adapted=model_key in self._adaptive_delays,
      pending_retry_after_ms=self._retry_after_override.get(model_key),
    )

  def reset(self, model_key: str | None = None) -> None:
    """Forget request timestamps and streaks (tuned delays are kept)."""
    if model_key is None:
      self._last_request.clear()
      self._success_streak.clear()
      self._retry_after_override.clear()
      return
    self._last_request.pop(model_key, None)
    self._success_streak.pop(model_key, None)
    self._retry_after_override.pop(model_key, None)

  def reset_adaptive_delays(self, model_key: str | None = None) -> None:
    """Drop tuned delays so spacing returns to the configured base."""
    if model_key is None:
      self._adaptive_delays.clear()
    else:
      self._adaptive_delays.pop(model_key, None)
    self._success_streak.clear()
    self._persist()

  async def sleep(self, ms: float, token: CancellationToken | None = None) -> None:
    """Pause for ``ms`` milliseconds; raises GenerationCancelledError as soon as ``token`` fires."""
    if token is not None:
      token.raise_if_cancelled()
    if ms <= 0:
      return
    if token is None:
      await self._sleep_func(ms / 1000)
      return

    sleeper = asyncio.ensure_future(self._sleep_func(ms / 1000))
    waiter = asyncio.ensure_future(token.wait())
    try:
      await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
      for pending in (sleeper, waiter):
        if not pending.done():
          pending.cancel()
    if token.is_cancelled():
      raise GenerationCancelledError(token.reason or "cancelled")
