"""Adaptive polling of environment jobs until a terminal status."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from genflow.config import PollSettings
from genflow.jobs.cancellation import CancellationToken
from genflow.jobs.errors import JobFailedError, JobNotFoundError, NetworkError, PollTimeoutError
from genflow.jobs.models import EnvironmentJob, EnvironmentStatus
from genflow.services.skybox_client import EnvironmentApi, EnvironmentStatusReport
from genflow.utils.clock import Clock

logger = logging.getLogger(__name__)

JobUpdateCallback = Callable[[EnvironmentJob], None]

# Remote spellings observed from the skybox service.
_STATUS_ALIASES: dict[str, EnvironmentStatus] = {"complete": "completed", "abort": "aborted", "error": "failed"}
_REMOTE_STATUSES: frozenset[str] = frozenset({"pending", "dispatched", "processing", "completed", "failed", "aborted"})
# Non-terminal phases only move forward.
_PHASE_RANK: dict[str, int] = {"pending": 0, "dispatched": 1, "processing": 2}


@dataclass(frozen=True)
class PollPolicy:
  """Interval and attempt budget for polling one job."""

  base_interval_ms: float = 2000.0
  processing_interval_cap_ms: float = 5000.0
  max_interval_ms: float = 10000.0
  max_attempts: int = 180
  growth_factor: float = 1.1
  error_multiplier: float = 2.0

  def __post_init__(self) -> None:
    if self.base_interval_ms <= 0 or self.base_interval_ms > self.max_interval_ms:
      raise ValueError("base_interval_ms must be positive and not exceed max_interval_ms.")
    if self.max_attempts <= 0:
      raise ValueError("max_attempts must be positive.")

  @classmethod
  def from_settings(cls, settings: PollSettings) -> PollPolicy:
    return cls(base_interval_ms=float(settings.base_interval_ms), max_attempts=settings.max_attempts)


def phase_floor_ms(policy: PollPolicy, status: str) -> float:
  """Minimum interval for the job's current phase."""
  if status in ("dispatched", "processing"):
    return max(policy.base_interval_ms, min(policy.base_interval_ms * 2, policy.processing_interval_cap_ms))
  return policy.base_interval_ms


def next_interval(policy: PollPolicy, status: str, previous_ms: float | None, *, after_error: bool = False) -> float:
  """Compute the delay before the next poll.

  The first poll uses the phase floor. Later polls grow gently from the previous interval, and
  a retryable error doubles it, always capped at `max_interval_ms` and never below the floor.
  """
  floor = phase_floor_ms(policy, status)
  if previous_ms is None:
    return floor
  factor = policy.error_multiplier if after_error else policy.growth_factor
  return max(floor, min(previous_ms * factor, policy.max_interval_ms))


def estimate_progress(status: str, attempts: int, max_attempts: int) -> float:
  """Estimate 0-100 progress from the phase and the share of the attempt budget used."""
  ratio = attempts / max_attempts if max_attempts else 0.0
  if status == "completed":
    return 100.0
  if status == "pending":
    return 10.0 + min(ratio * 20.0, 20.0)
  if status in ("dispatched", "processing"):
    return 10.0 + min(ratio * 80.0, 80.0)
  return 0.0


def normalize_status(raw: str | None, current: EnvironmentStatus) -> EnvironmentStatus:
  """Map a remote status onto the job state machine; unknown values keep the current phase."""
  value = (raw or "").strip().lower()
  value = _STATUS_ALIASES.get(value, value)
  if value in _REMOTE_STATUSES:
    return value  # type: ignore[return-value]
  logger.debug("Ignoring unknown remote status=%r current=%s", raw, current)
  return current


def _advance_phase(job: EnvironmentJob, status: EnvironmentStatus) -> None:
  if _PHASE_RANK.get(status, -1) > _PHASE_RANK.get(job.status, -1):
    job.status = status


class AdaptivePoller:
  """Drive one EnvironmentJob to a terminal status with adaptive backoff."""

  def __init__(self, api: EnvironmentApi, *, clock: Clock, policy: PollPolicy | None = None) -> None:
    self._api = api
    self._clock = clock
    self._policy = policy or PollPolicy()

  @property
  def policy(self) -> PollPolicy:
    return self._policy

  async def poll(self, job: EnvironmentJob, token: CancellationToken, on_update: JobUpdateCallback | None = None) -> EnvironmentJob:
    """Poll until completed; raise JobFailedError, JobNotFoundError, PollTimeoutError or GenerationCanceledError."""

    def notify() -> None:
      if on_update is not None:
        on_update(job)

    policy = self._policy
    # Resumed jobs continue from their persisted interval.
    previous_interval = job.next_poll_interval_ms

    while job.attempts < policy.max_attempts:
      token.raise_if_cancelled()
      job.attempts += 1
      job.last_polled_at = self._clock.now()

      after_error = False
      try:
        report = await self._api.status(job.external_id)
      except JobNotFoundError as exc:
        job.status = "failed"
        job.error_message = str(exc)
        notify()
        logger.warning("Environment job not found external_id=%s attempts=%d", job.external_id, job.attempts)
        raise
      except NetworkError as exc:
        after_error = True
        logger.warning("Environment poll failed external_id=%s attempt=%d error=%s", job.external_id, job.attempts, exc)
      else:
        self._apply_report(job, report)
        if job.status == "completed":
          job.progress = 100.0
          notify()
          logger.info("Environment job completed external_id=%s attempts=%d", job.external_id, job.attempts)
          return job
        if job.status in ("failed", "aborted"):
          notify()
          logger.warning("Environment job ended external_id=%s status=%s error=%s", job.external_id, job.status, job.error_message)
          raise JobFailedError(job.external_id, job.status, job.error_message)

      job.progress = max(job.progress, estimate_progress(job.status, job.attempts, policy.max_attempts))
      if job.attempts >= policy.max_attempts:
        break

      interval = next_interval(policy, job.status, previous_interval, after_error=after_error)
      job.next_poll_interval_ms = interval
      previous_interval = interval
      notify()
      await token.sleep(interval / 1000.0)

    last_status = job.status
    job.status = "timeout"
    job.error_message = f"Generation timed out while {last_status}."
    notify()
    logger.warning("Environment job timed out external_id=%s attempts=%d last_status=%s", job.external_id, job.attempts, last_status)
    raise PollTimeoutError(job.external_id, job.attempts, last_status)

  def _apply_report(self, job: EnvironmentJob, report: EnvironmentStatusReport) -> None:
    status = normalize_status(report.status, job.status)
    if status == "completed":
      # A completion without a result URL is not usable yet; keep polling in the current phase.
      if report.file_url:
        job.status = "completed"
        job.result_url = report.file_url
        job.title = report.title or job.title
        job.thumbnail_url = report.thumbnail_url or job.thumbnail_url
      return
    if status in ("failed", "aborted"):
      job.status = status
      job.error_message = report.error_message
      return
    _advance_phase(job, status)
