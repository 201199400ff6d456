"""Cancellation tokens and the per-entity registry of in-flight generations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator

from reportgen.core.exceptions import GenerationCancelledError
from reportgen.utils.ids import generate_attempt_id

logger = logging.getLogger(__name__)

SUPERSEDED_REASON = "superseded"


class CancellationToken:
  """
  Handle for one generation attempt.

  Cancellation is cooperative: the flag is checked at suspension points and
  ``wait()`` lets sleeps and provider calls race against it. A token linked
  to a parent (the batch token) is cancelled whenever the parent is.
  """

  def __init__(self, *, owner: str | None = None, parent: CancellationToken | None = None) -> None:
    self.attempt_id = generate_attempt_id()
    self.owner = owner
    self._event = asyncio.Event()
    self._reason: str | None = None
    self._callbacks: list[Callable[[], None]] = []
    self._parent = parent
    if parent is not None:
      parent.add_callback(self._cancel_from_parent)

  def __repr__(self) -> str:
    state = "cancelled" if self.is_cancelled() else "active"
    return f"CancellationToken(owner={self.owner!r}, attempt_id={self.attempt_id!r}, {state})"

  @property
  def reason(self) -> str | None:
    return self._reason

  def is_cancelled(self) -> bool:
    return self._event.is_set()

  def cancel(self, reason: str = "cancelled") -> None:
    """Mark the token cancelled and notify linked tokens; repeated calls are no-ops."""
    if self._event.is_set():
      return
    self._reason = reason
    self._event.set()
    callbacks, self._callbacks = self._callbacks, []
    for callback in callbacks:
      callback()

  def _cancel_from_parent(self) -> None:
    self.cancel(reason=self._parent.reason if self._parent is not None and self._parent.reason else "parent cancelled")

  def add_callback(self, callback: Callable[[], None]) -> None:
    """Run ``callback`` on cancellation, immediately if already cancelled."""
    if self._event.is_set():
      callback()
      return
    self._callbacks.append(callback)

  def remove_callback(self, callback: Callable[[], None]) -> None:
    try:
      self._callbacks.remove(callback)
    except ValueError:
      pass

  def detach(self) -> None:
    """Unlink from the parent once the attempt has finished."""
    if self._parent is not None:
      self._parent.remove_callback(self._cancel_from_parent)
      self._parent = None

  def raise_if_cancelled(self) -> None:
    if self._event.is_set():
      raise GenerationCancelledError(self._reason or "cancelled")

  async def wait(self) -> None:
    """Block until the token is cancelled."""
    await self._event.wait()


class CancellationRegistry:
  """Maps entity ids to the token of their single live generation."""

  def __init__(self) -> None:
    self._tokens: dict[str, CancellationToken] = {}

  def __len__(self) -> int:
    return len(self._tokens)

  def __contains__(self, entity_id: object) -> bool:
    return entity_id in self._tokens

  def __iter__(self) -> Iterator[str]:
    return iter(list(self._tokens))

  def get(self, entity_id: str) -> CancellationToken | None:
    return self._tokens.get(entity_id)

  def is_active(self, entity_id: str) -> bool:
    """True while a generation is registered for the entity (drives the pending badge)."""
    return entity_id in self._tokens

  def start(self, entity_id: str, *, parent: CancellationToken | None = None) -> CancellationToken:
    """Register a fresh token for ``entity_id``, cancelling whatever was running (restart semantics)."""
    previous = self._tokens.pop(entity_id, None)
    if previous is not None:
      previous.cancel(reason=SUPERSEDED_REASON)
      logger.info("Restarting generation for entity=%s; superseded attempt=%s", entity_id, previous.attempt_id)

    token = CancellationToken(owner=entity_id, parent=parent)
    self._tokens[entity_id] = token
    return token

  def is_current(self, entity_id: str, token: CancellationToken) -> bool:
    return self._tokens.get(entity_id) is token

  def release(self, entity_id: str, token: CancellationToken) -> bool:
    """Unregister ``token`` only if it is still the registered one for ``entity_id``."""
    token.detach()
    if self._tokens.get(entity_id) is not token:
      return False
    del self._tokens[entity_id]
    return True

  def cancel(self, entity_id: str, *, reason: str = "cancelled") -> bool:
    token = self._tokens.pop(entity_id, None)
    if token is None:
      return False
    token.cancel(reason=reason)
    return True

  def cancel_all(self, *, reason: str = "cancelled") -> int:
    tokens = list(self._tokens.values())
    self._tokens.clear()
    for token in tokens:
      token.cancel(reason=reason)
    return len(tokens)
