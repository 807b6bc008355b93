"""Parallel coordination of environment polling and asset generation for one user action."""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any

from genflow.jobs.cancellation import CancellationToken
from genflow.jobs.errors import GenerationCanceledError, GenerationConflictError, GenerationError, JobFailedError, PersistenceError, ValidationError
from genflow.jobs.models import AssetJob, AssetResult, EnvironmentJob, GenerationOutcome, GenerationSession
from genflow.jobs.poller import AdaptivePoller, PollPolicy
from genflow.jobs.progress import build_snapshot, environment_progress
from genflow.jobs.reconciler import ResultReconciler, build_asset_result
from genflow.jobs.submitter import AssetCapabilities, check_asset_capability, check_quota, submit_asset_job, submit_environment_batch, validate_request
from genflow.notifications.contracts import EventKind, EventLevel, GenerationEvent, GenerationEventSink
from genflow.notifications.sinks import LoggingEventSink
from genflow.services.asset_client import AssetApi
from genflow.services.quotas import QuotaService
from genflow.services.skybox_client import EnvironmentApi
from genflow.storage.session_store import DebouncedSessionWriter
from genflow.utils.clock import Clock
from genflow.utils.ids import generate_session_id

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENT_ERROR = "Failed to generate environment"
NO_ASSETS_ERROR = "No generatable objects detected in the prompt."
INTERRUPTED_ASSET_ERROR = "3D asset generation was interrupted and cannot be resumed."
INCOMPLETE_BATCH_ERROR = "Generation was interrupted before all variations were submitted."


@dataclass(frozen=True)
class GenerationRequest:
  """User input for one generation action."""

  prompt: str
  style_id: int | str | None
  negative_prompt: str | None = None
  num_variations: int = 1
  generate_asset: bool = True
  asset_quality: str | None = None


@dataclass
class _ActiveRun:
  session: GenerationSession
  token: CancellationToken
  task: asyncio.Task[Any] | None = None
  finished: bool = False


class GenerationOrchestrator:
  """Runs at most one generation per user and keeps its session persisted and observable.

  Environment jobs are submitted sequentially and then polled concurrently next to the asset
  call. Environment failures fail the run; asset failures are carried on the outcome.
  """

  def __init__(
    self,
    *,
    environment_api: EnvironmentApi,
    asset_api: AssetApi,
    quotas: QuotaService,
    writer: DebouncedSessionWriter,
    reconciler: ResultReconciler,
    clock: Clock,
    events: GenerationEventSink | None = None,
    poll_policy: PollPolicy | None = None,
    session_ttl_seconds: float = 7200.0,
    clear_grace_seconds: float = 2.0,
    asset_quality: str = "medium",
    max_assets: int = 1,
    storage_available: bool = True,
  ) -> None:
    self._environment_api = environment_api
    self._asset_api = asset_api
    self._quotas = quotas
    self._writer = writer
    self._store = writer.store
    self._reconciler = reconciler
    self._clock = clock
    self._events = events or LoggingEventSink()
    self._poller = AdaptivePoller(environment_api, clock=clock, policy=poll_policy)
    self._session_ttl_seconds = session_ttl_seconds
    self._clear_grace_seconds = clear_grace_seconds
    self._asset_quality = asset_quality
    self._max_assets = max_assets
    self._storage_available = storage_available
    self._runs: dict[str, _ActiveRun] = {}
    self._background: set[asyncio.Task[Any]] = set()
    self._closing = False

  def asset_capabilities(self, *, user_authenticated: bool) -> AssetCapabilities:
    return AssetCapabilities(asset_service_configured=self._asset_api.is_configured(), storage_available=self._storage_available, user_authenticated=user_authenticated)

  def is_active(self, user_id: str) -> bool:
    run = self._runs.get(user_id)
    return run is not None and not run.finished

  async def start_generation(self, user_id: str, request: GenerationRequest, capabilities: AssetCapabilities) -> GenerationOutcome:
    """Run a full generation and return its outcome; environment failures raise."""
    run = await self._prepare(user_id, request)
    return await self._execute(run, capabilities, resumed=False)

  async def launch(self, user_id: str, request: GenerationRequest, capabilities: AssetCapabilities) -> GenerationSession:
    """Validate synchronously, then run the generation in the background."""
    run = await self._prepare(user_id, request)
    run.session.is_running_environment = True
    run.task = self._spawn(self._execute_in_background(run, capabilities, resumed=False))
    return copy.deepcopy(run.session)

  async def resume(self, user_id: str) -> GenerationSession | None:
    """Continue polling a persisted session without re-submitting jobs or debiting quota."""
    run = self._runs.get(user_id)
    if run is not None and not run.finished:
      return copy.deepcopy(run.session)

    try:
      session = await self._store.load(user_id)
    except PersistenceError:
      logger.warning("Unable to load generation state for resume user_id=%s", user_id, exc_info=True)
      return None
    if session is None or not session.is_active:
      return None
    if self._clock.now() >= session.expires_at:
      await self._safe_clear(user_id)
      return None

    # The asset call streams progress over one request; it cannot be re-attached after a restart.
    if session.is_running_asset or (session.asset_job is not None and session.asset_job.status == "running"):
      if session.asset_job is None:
        session.asset_job = AssetJob()
      session.asset_job.status = "failed"
      session.asset_job.error_message = INTERRUPTED_ASSET_ERROR
      session.asset_error = INTERRUPTED_ASSET_ERROR
      session.is_running_asset = False

    session.is_running_environment = any(not job.is_terminal for job in session.environment_jobs)
    run = self._register(session)
    logger.info("Resuming generation user_id=%s session_id=%s pending_jobs=%d", user_id, session.session_id, sum(1 for job in session.environment_jobs if not job.is_terminal))
    run.task = self._spawn(self._execute_in_background(run, None, resumed=True))
    return copy.deepcopy(session)

  async def reset(self, user_id: str) -> bool:
    """Stop any active run and clear persisted state immediately."""
    run = self._runs.pop(user_id, None)
    if run is not None:
      run.token.cancel("Generation was reset.")
      if run.task is not None and not run.task.done():
        run.task.cancel()
      self._publish(run.session, "reset", "info", "Generation was reset.")
    # Waits out a save already in flight so it cannot land after the clear.
    await self._writer.discard(user_id)
    await self._safe_clear(user_id)
    return run is not None

  async def snapshot(self, user_id: str) -> dict[str, Any] | None:
    """Presentation snapshot from the active run, falling back to the persisted session."""
    run = self._runs.get(user_id)
    if run is not None:
      return build_snapshot(run.session)
    try:
      session = await self._store.load(user_id)
    except PersistenceError:
      logger.warning("Unable to load generation state for snapshot user_id=%s", user_id, exc_info=True)
      return None
    return build_snapshot(session) if session is not None else None

  async def join(self) -> None:
    """Wait for background runs and scheduled clears to finish."""
    while self._background:
      await asyncio.gather(*list(self._background), return_exceptions=True)

  async def aclose(self) -> None:
    """Cancel background work and flush pending session writes; state stays resumable."""
    self._closing = True
    for run in list(self._runs.values()):
      if run.task is not None and not run.task.done():
        run.task.cancel()
    for task in list(self._background):
      task.cancel()
    await asyncio.gather(*list(self._background), return_exceptions=True)
    await self._writer.aclose()

  async def _prepare(self, user_id: str, request: GenerationRequest) -> _ActiveRun:
    if self.is_active(user_id):
      raise GenerationConflictError("A generation is already in progress.")

    # Reject bad input and exhausted quota before any session or remote job exists.
    prompt, style_id = validate_request(request.prompt, request.style_id, request.num_variations)
    await check_quota(self._quotas, user_id, request.num_variations)

    now = self._clock.now()
    session = GenerationSession(
      session_id=generate_session_id(),
      user_id=user_id,
      prompt=prompt,
      negative_prompt=(request.negative_prompt or "").strip() or None,
      style_id=style_id,
      num_variations=request.num_variations,
      started_at=now,
      expires_at=now + self._session_ttl_seconds,
      generate_asset=request.generate_asset,
      asset_quality=request.asset_quality or self._asset_quality,
    )
    return self._register(session)

  def _register(self, session: GenerationSession) -> _ActiveRun:
    if self.is_active(session.user_id):
      raise GenerationConflictError("A generation is already in progress.")
    run = _ActiveRun(session=session, token=CancellationToken(clock=self._clock, deadline=session.expires_at))
    self._runs[session.user_id] = run
    return run

  def _spawn(self, coro: Any) -> asyncio.Task[Any]:
    task = asyncio.create_task(coro)
    self._background.add(task)
    task.add_done_callback(self._background.discard)
    return task

  async def _execute_in_background(self, run: _ActiveRun, capabilities: AssetCapabilities | None, *, resumed: bool) -> None:
    try:
      await self._execute(run, capabilities, resumed=resumed)
    except GenerationCanceledError as exc:
      logger.info("Generation stopped user_id=%s session_id=%s reason=%s", run.session.user_id, run.session.session_id, exc)
    except GenerationError as exc:
      logger.warning("Generation failed user_id=%s session_id=%s error=%s", run.session.user_id, run.session.session_id, exc)
    except asyncio.CancelledError:
      logger.info("Generation task cancelled user_id=%s session_id=%s", run.session.user_id, run.session.session_id)
      raise
    except Exception:  # noqa: BLE001
      logger.error("Generation crashed user_id=%s session_id=%s", run.session.user_id, run.session.session_id, exc_info=True)

  async def _execute(self, run: _ActiveRun, capabilities: AssetCapabilities | None, *, resumed: bool) -> GenerationOutcome:
    try:
      return await self._drive(run, capabilities, resumed=resumed)
    finally:
      await self._finish(run)

  async def _drive(self, run: _ActiveRun, capabilities: AssetCapabilities | None, *, resumed: bool) -> GenerationOutcome:
    session = run.session
    token = run.token

    if not resumed:
      asset_eligible = session.generate_asset and capabilities is not None and check_asset_capability(capabilities) is None
      session.is_running_environment = True
      session.is_running_asset = asset_eligible
      self._persist(run)
      self._publish(session, "started", "info", "Generation started.", {"numVariations": session.num_variations})

      def on_created(job: EnvironmentJob, index: int) -> None:
        session.environment_jobs.append(job)
        self._persist(run)

      try:
        await submit_environment_batch(
          self._environment_api,
          self._quotas,
          user_id=session.user_id,
          prompt=session.prompt,
          style_id=session.style_id,
          negative_prompt=session.negative_prompt,
          num_variations=session.num_variations,
          on_created=on_created,
        )
      except Exception as exc:
        session.is_running_asset = False
        self._fail_environment(run, exc)
        raise
    token.raise_if_cancelled()

    # Settle both branches; the asset branch never raises into the environment branch.
    env_result, asset_result = await asyncio.gather(self._environment_branch(run), self._asset_branch(run, capabilities, resumed=resumed), return_exceptions=True)
    token.raise_if_cancelled()
    if isinstance(env_result, BaseException):
      raise env_result
    if isinstance(asset_result, BaseException):
      logger.warning("Asset branch ended unexpectedly session_id=%s error=%r", session.session_id, asset_result)
      asset_result = None

    report = await self._reconciler.reconcile(session, asset_result)
    session.record_id = report.record_id
    for warning in report.warnings:
      session.warnings.append(warning)
      self._publish(session, "warning", "warning", warning)
    self._persist(run)

    status = "success_with_warning" if session.asset_error or session.warnings else "success"
    outcome = GenerationOutcome(
      session_id=session.session_id,
      status=status,
      environment_results=report.environment_results,
      asset_result=asset_result,
      asset_error=session.asset_error,
      warnings=list(session.warnings),
      record_id=report.record_id,
    )
    self._publish(session, "completed", "success", "Generation complete.", {"status": status, "recordId": report.record_id})
    return outcome

  async def _environment_branch(self, run: _ActiveRun) -> list[EnvironmentJob]:
    session = run.session
    try:
      # A session saved mid-submission never got all of its jobs; the batch was aborted.
      if len(session.environment_jobs) < session.num_variations:
        raise GenerationError(INCOMPLETE_BATCH_ERROR)
      # Resumed sessions may already hold a failed job.
      for job in session.environment_jobs:
        if job.status in ("failed", "aborted", "timeout"):
          raise JobFailedError(job.external_id, job.status, job.error_message)

      pending = [job for job in session.environment_jobs if not job.is_terminal]
      tasks = [asyncio.create_task(self._poller.poll(job, run.token, on_update=lambda _job: self._on_job_update(run))) for job in pending]
      if tasks:
        try:
          done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
          # The first failure stops local polling of siblings; their remote jobs keep running.
          for task in tasks:
            if not task.done():
              task.cancel()
          await asyncio.gather(*tasks, return_exceptions=True)
        # Report the job that ended the wait, not whichever sibling failed while being cancelled.
        failed = [task for task in tasks if task in done and task.exception() is not None]
        if failed:
          raise failed[0].exception()  # type: ignore[misc]
    except Exception as exc:
      self._fail_environment(run, exc)
      raise

    session.is_running_environment = False
    self._persist(run)
    self._publish(session, "environment_completed", "success", "Environment generated.", {"jobs": [job.external_id for job in session.environment_jobs]})
    return session.environment_jobs

  async def _asset_branch(self, run: _ActiveRun, capabilities: AssetCapabilities | None, *, resumed: bool) -> AssetResult | None:
    session = run.session
    if resumed or not session.generate_asset:
      return None

    reason = check_asset_capability(capabilities) if capabilities is not None else "3D asset capabilities are unknown."
    if reason is not None:
      session.asset_error = reason
      session.is_running_asset = False
      self._persist(run)
      self._publish(session, "asset_failed", "warning", reason)
      return None

    job = AssetJob()
    session.asset_job = job
    session.is_running_asset = True
    self._persist(run)

    def on_progress(stage: str, progress: float, message: str) -> None:
      if job.status != "running":
        return
      job.stage = stage
      job.progress_percent = max(job.progress_percent, min(max(progress, 0.0), 100.0))
      job.message = message or None
      self._persist(run)
      self._publish(session, "progress", "info", message, {"assetStage": stage, "assetProgress": job.progress_percent})

    related_id = session.environment_jobs[0].external_id if session.environment_jobs else None
    try:
      result = await submit_asset_job(self._asset_api, prompt=session.prompt, user_id=session.user_id, related_skybox_id=related_id, quality=session.asset_quality, max_assets=self._max_assets, on_progress=on_progress)
      if not result.success:
        raise GenerationError(result.error or "3D asset generation failed.")
      if not result.assets:
        raise GenerationError(NO_ASSETS_ERROR)
      asset = build_asset_result(result.assets[0])
      if asset is None:
        raise GenerationError("3D asset generation did not return a downloadable model.")
    except Exception as exc:  # noqa: BLE001
      message = str(exc) or "3D asset generation failed."
      job.status = "failed"
      job.error_message = message
      session.asset_error = message
      session.is_running_asset = False
      self._persist(run)
      logger.warning("Asset branch failed session_id=%s error=%s", session.session_id, message)
      self._publish(session, "asset_failed", "warning", message)
      return None

    job.external_id = result.task_id or asset.asset_id
    job.status = "completed"
    job.stage = "completed"
    job.progress_percent = 100.0
    job.result_asset = {"id": asset.asset_id, "url": asset.url, "format": asset.format, "metadata": asset.metadata}
    session.is_running_asset = False
    self._persist(run)
    self._publish(session, "asset_completed", "success", "3D asset generated.", {"assetId": asset.asset_id})
    return asset

  def _fail_environment(self, run: _ActiveRun, exc: BaseException) -> None:
    session = run.session
    if isinstance(exc, (GenerationCanceledError, ValidationError)):
      message = str(exc)
    elif isinstance(exc, JobFailedError) and exc.remote_message:
      message = exc.remote_message
    else:
      message = DEFAULT_ENVIRONMENT_ERROR
    session.environment_error = message
    session.is_running_environment = False
    self._persist(run)
    self._publish(session, "environment_failed", "error", message, {"error": type(exc).__name__})

  def _on_job_update(self, run: _ActiveRun) -> None:
    self._persist(run)
    self._publish(run.session, "progress", "info", None, {"environmentProgress": environment_progress(run.session)})

  def _persist(self, run: _ActiveRun) -> None:
    # A reset run must not write its state back after the record was cleared.
    if run.token.is_cancelled:
      return
    self._writer.schedule(run.session)

  async def _finish(self, run: _ActiveRun) -> None:
    run.finished = True
    user_id = run.session.user_id
    if run.token.is_cancelled:
      # Expired runs are still registered; reset runs were already removed.
      if self._runs.get(user_id) is run:
        self._runs.pop(user_id, None)
        await self._writer.discard(user_id)
        await self._safe_clear(user_id)
      return
    await self._writer.flush(user_id)
    if self._closing:
      return
    self._spawn(self._clear_after_grace(run))

  async def _clear_after_grace(self, run: _ActiveRun) -> None:
    await self._clock.sleep(self._clear_grace_seconds)
    user_id = run.session.user_id
    # A newer session replaced this one; leave its record alone.
    current = self._runs.get(user_id)
    if current is not run:
      return
    self._runs.pop(user_id, None)
    await self._safe_clear(user_id)
    logger.info("Generation state cleared user_id=%s session_id=%s", user_id, run.session.session_id)

  async def _safe_clear(self, user_id: str) -> None:
    try:
      await self._store.clear(user_id)
    except PersistenceError:
      logger.warning("Unable to clear generation state user_id=%s", user_id, exc_info=True)

  def _publish(self, session: GenerationSession, kind: EventKind, level: EventLevel, message: str | None, data: dict[str, Any] | None = None) -> None:
    event = GenerationEvent(kind=kind, user_id=session.user_id, session_id=session.session_id, level=level, message=message, data=data or {})
    try:
      self._events.publish(event)
    except Exception:  # noqa: BLE001
      logger.error("Generation event sink failed kind=%s", kind, exc_info=True)
