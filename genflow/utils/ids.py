"""Identifier utilities."""

from __future__ import annotations

import time
import uuid


def generate_session_id() -> str:
  """Return a new generation session identifier."""
  return str(uuid.uuid4())


def iso_timestamp(epoch_seconds: float | None = None) -> str:
  """Format epoch seconds as the UTC timestamp string stored on durable records."""
  seconds = time.time() if epoch_seconds is None else epoch_seconds
  return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(seconds))
