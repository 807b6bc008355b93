"""Cancellation token shared by the poller and coordinator of one run."""

from __future__ import annotations

import asyncio

from genflow.jobs.errors import GenerationCanceledError
from genflow.utils.clock import Clock


class CancellationToken:
  """Cooperative cancellation signal with an optional clock-based deadline.

  A token is cancelled explicitly (user reset) or implicitly once the clock passes the
  deadline (session expiry). Sleeping through `sleep` wakes early on explicit cancellation.
  """

  def __init__(self, *, clock: Clock, deadline: float | None = None) -> None:
    self._clock = clock
    self._deadline = deadline
    self._event = asyncio.Event()
    self._reason: str | None = None

  @property
  def reason(self) -> str | None:
    if self._reason is None and self._deadline_passed():
      return "Generation session expired."
    return self._reason

  @property
  def is_cancelled(self) -> bool:
    return self._event.is_set() or self._deadline_passed()

  def cancel(self, reason: str = "Generation was reset.") -> None:
    if self._event.is_set():
      return
    self._reason = reason
    self._event.set()

  def raise_if_cancelled(self) -> None:
    if self.is_cancelled:
      raise GenerationCanceledError(self.reason or "Generation was canceled.")

  def _deadline_passed(self) -> bool:
    return self._deadline is not None and self._clock.now() >= self._deadline

  async def sleep(self, seconds: float) -> None:
    """Sleep on the token's clock, returning early and raising if cancelled."""
    self.raise_if_cancelled()
    # Never sleep past the deadline; the check below turns that into a cancellation.
    if self._deadline is not None:
      seconds = min(seconds, max(self._deadline - self._clock.now(), 0.0))

    sleeper = asyncio.ensure_future(self._clock.sleep(seconds))
    waiter = asyncio.ensure_future(self._event.wait())
    try:
      await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
      for task in (sleeper, waiter):
        if not task.done():
          task.cancel()
    self.raise_if_cancelled()
