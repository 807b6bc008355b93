"""Injectable time source so polling and TTL logic can be driven by tests."""

from __future__ import annotations

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
  """Time source contract used by the orchestrator."""

  def now(self) -> float:
    """Return the current time in epoch seconds."""

  async def sleep(self, seconds: float) -> None:
    """Suspend the caller for `seconds`."""


class SystemClock:
  """Wall-clock implementation backed by `time.time` and `asyncio.sleep`."""

  def now(self) -> float:
    return time.time()

  async def sleep(self, seconds: float) -> None:
    await asyncio.sleep(max(seconds, 0.0))
