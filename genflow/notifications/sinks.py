"""Event sink implementations."""

from __future__ import annotations

import logging

from genflow.notifications.contracts import GenerationEvent

logger = logging.getLogger(__name__)

_LEVELS = {"info": logging.INFO, "success": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


class LoggingEventSink:
  """Writes events to the service log; progress events go to DEBUG to keep logs readable."""

  def publish(self, event: GenerationEvent) -> None:
    level = logging.DEBUG if event.kind == "progress" else _LEVELS.get(event.level, logging.INFO)
    logger.log(level, "Generation event kind=%s user_id=%s session_id=%s message=%s", event.kind, event.user_id, event.session_id, event.message)


class RecordingEventSink:
  """Keeps every published event in memory."""

  def __init__(self) -> None:
    self.events: list[GenerationEvent] = []

  def publish(self, event: GenerationEvent) -> None:
    self.events.append(event)

  def kinds(self) -> list[str]:
    return [event.kind for event in self.events]

