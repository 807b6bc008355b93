"""Pure progress derivation for the three-step generation UI model."""

from __future__ import annotations

from typing import Any

from genflow.jobs.models import GenerationSession, Step, StepStatus

ENVIRONMENT_STEP = "environment"
ASSET_STEP = "asset"
MERGE_STEP = "merge"

_STEP_LABELS = {
  ENVIRONMENT_STEP: "Generating environment",
  ASSET_STEP: "Generating 3D asset",
  MERGE_STEP: "Merging results",
}


def environment_progress(session: GenerationSession) -> float:
  """Average the per-job estimates; completed jobs count as 100 and no jobs as 0."""
  jobs = session.environment_jobs
  if not jobs:
    return 0.0
  total = sum(100.0 if job.status == "completed" else job.progress for job in jobs)
  return min(total / len(jobs), 100.0)


def asset_progress(session: GenerationSession) -> float:
  if session.asset_job is None:
    return 0.0
  return min(max(session.asset_job.progress_percent, 0.0), 100.0)


def _phase_status(running: bool, progress: float) -> StepStatus:
  if running:
    return "active"
  if progress >= 100.0:
    return "completed"
  return "pending"


def derive_steps(session: GenerationSession) -> list[Step]:
  """Map a session onto environment, asset and merge steps without side effects."""

  env_progress = environment_progress(session)
  env_status = _phase_status(session.is_running_environment, env_progress)

  # An asset only counts as complete once its job reported success at full progress.
  current_asset_progress = asset_progress(session)
  asset_completed = session.asset_job is not None and session.asset_job.status == "completed"
  asset_status = _phase_status(session.is_running_asset, current_asset_progress if asset_completed else 0.0)

  if env_status == "completed" and asset_status == "active":
    merge_status: StepStatus = "active"
  elif env_status == "completed" and asset_status == "completed":
    merge_status = "completed"
  else:
    merge_status = "pending"

  return [
    Step(key=ENVIRONMENT_STEP, label=_STEP_LABELS[ENVIRONMENT_STEP], status=env_status, progress=env_progress),
    Step(key=ASSET_STEP, label=_STEP_LABELS[ASSET_STEP], status=asset_status, progress=current_asset_progress),
    Step(key=MERGE_STEP, label=_STEP_LABELS[MERGE_STEP], status=merge_status, progress=100.0 if merge_status == "completed" else 0.0),
  ]


def _current_job_id(session: GenerationSession) -> str | None:
  for job in session.environment_jobs:
    if not job.is_terminal:
      return job.external_id
  if session.environment_jobs:
    return session.environment_jobs[-1].external_id
  return None


def build_snapshot(session: GenerationSession) -> dict[str, Any]:
  """Read-only presentation snapshot of a session, including its derived steps."""

  asset_job = session.asset_job
  asset_state = None
  generated_asset = None
  if asset_job is not None:
    asset_state = {"stage": asset_job.stage, "progress": asset_job.progress_percent, "message": asset_job.message}
    if asset_job.status == "completed":
      generated_asset = asset_job.result_asset

  return {
    "sessionId": session.session_id,
    "isGenerating": session.is_running_environment,
    "isGenerating3DAsset": session.is_running_asset,
    "environmentProgress": environment_progress(session),
    "assetProgress": asset_state,
    "currentJobId": _current_job_id(session),
    "prompt": session.prompt,
    "negativePrompt": session.negative_prompt,
    "selectedStyle": session.style_id,
    "numVariations": session.num_variations,
    "generatedAsset": generated_asset,
    "environmentError": session.environment_error,
    "assetError": session.asset_error,
    "warnings": list(session.warnings),
    "steps": [{"key": step.key, "label": step.label, "status": step.status, "progress": step.progress} for step in derive_steps(session)],
  }
