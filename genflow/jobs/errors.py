"""Error taxonomy for generation orchestration."""

from __future__ import annotations


class GenerationError(Exception):
  """Base class for all orchestration failures."""


class ValidationError(GenerationError):
  """Raised when a request is rejected before any remote call (bad prompt, style or count)."""


class QuotaExceededError(GenerationError):
  """Raised when the requested variations exceed the user's remaining allowance."""

  def __init__(self, requested: int, remaining: int) -> None:
    self.requested = requested
    self.remaining = remaining
    plural = "" if remaining == 1 else "s"
    super().__init__(f"Generation limit reached: requested {requested}, you can generate {remaining} more environment{plural}.")


class NetworkError(GenerationError):
  """Transient transport or upstream failure; retried during polling."""


class JobFailedError(GenerationError):
  """Terminal failure reported by the remote service; never retried."""

  def __init__(self, external_id: str, status: str, remote_message: str | None = None) -> None:
    self.external_id = external_id
    self.status = status
    self.remote_message = remote_message
    super().__init__(remote_message or f"Generation {external_id} ended with status '{status}'.")


class JobNotFoundError(GenerationError):
  """The remote service no longer knows the job (missing or expired); not retryable."""

  def __init__(self, external_id: str) -> None:
    self.external_id = external_id
    super().__init__(f"Generation {external_id} was not found. It may have expired.")


class PollTimeoutError(GenerationError, TimeoutError):
  """Raised when the polling attempt budget is exhausted before a terminal status."""

  def __init__(self, external_id: str, attempts: int, last_status: str) -> None:
    self.external_id = external_id
    self.attempts = attempts
    self.last_status = last_status
    super().__init__(f"Generation {external_id} timed out after {attempts} polls (last status: {last_status}).")


class PersistenceError(GenerationError):
  """Local or durable save/load failure; logged and degraded to a warning."""


class VerificationError(GenerationError):
  """A durable write did not read back as expected; reported as a warning."""


class GenerationCanceledError(GenerationError):
  """Raised when a run is reset or its session expires while work is in flight."""


class GenerationConflictError(GenerationError):
  """Raised when a user already has an active generation."""
