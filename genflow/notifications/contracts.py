"""Contracts for generation lifecycle events."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

EventKind = Literal["started", "progress", "environment_completed", "environment_failed", "asset_completed", "asset_failed", "warning", "completed", "reset"]
EventLevel = Literal["info", "success", "warning", "error"]


@dataclass(frozen=True)
class GenerationEvent:
  """Represents one user-facing notification about a generation run."""

  kind: EventKind
  user_id: str
  session_id: str
  level: EventLevel = "info"
  message: str | None = None
  data: dict[str, Any] = field(default_factory=dict)


class GenerationEventSink(Protocol):
  """Delivery contract for generation events."""

  def publish(self, event: GenerationEvent) -> None:
    """Deliver an event synchronously; implementations must not raise."""
