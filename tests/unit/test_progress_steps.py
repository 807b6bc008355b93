import copy

from genflow.jobs.models import AssetJob, EnvironmentJob, GenerationSession
from genflow.jobs.progress import build_snapshot, derive_steps, environment_progress


def _session(**overrides) -> GenerationSession:
  values = {
    "session_id": "session-1",
    "user_id": "user-1",
    "prompt": "desert oasis",
    "negative_prompt": None,
    "style_id": 2,
    "num_variations": 2,
    "started_at": 1000.0,
    "expires_at": 8200.0,
  }
  values.update(overrides)
  return GenerationSession(**values)


def _statuses(session: GenerationSession) -> list[str]:
  return [step.status for step in derive_steps(session)]


def test_derive_steps_is_pure_and_idempotent():
  session = _session(is_running_environment=True, is_running_asset=True, environment_jobs=[EnvironmentJob(external_id="gen-1", status="processing", progress=40.0)], asset_job=AssetJob(progress_percent=30.0))
  before = copy.deepcopy(session)

  first = derive_steps(session)
  second = derive_steps(session)

  assert first == second
  assert session == before
  assert [step.key for step in first] == ["environment", "asset", "merge"]


def test_both_running_leaves_merge_pending():
  session = _session(is_running_environment=True, is_running_asset=True, asset_job=AssetJob())
  assert _statuses(session) == ["active", "active", "pending"]


def test_merge_active_when_environment_done_and_asset_running():
  jobs = [EnvironmentJob(external_id="gen-1", status="completed"), EnvironmentJob(external_id="gen-2", status="completed")]
  session = _session(is_running_environment=False, is_running_asset=True, environment_jobs=jobs, asset_job=AssetJob(progress_percent=60.0))
  assert _statuses(session) == ["completed", "active", "active"]


def test_merge_completed_when_both_done():
  jobs = [EnvironmentJob(external_id="gen-1", status="completed")]
  session = _session(num_variations=1, environment_jobs=jobs, asset_job=AssetJob(status="completed", progress_percent=100.0))
  assert _statuses(session) == ["completed", "completed", "completed"]
  assert derive_steps(session)[2].progress == 100


def test_failed_asset_never_completes_its_step():
  jobs = [EnvironmentJob(external_id="gen-1", status="completed")]
  session = _session(num_variations=1, environment_jobs=jobs, asset_job=AssetJob(status="failed", progress_percent=100.0))
  assert _statuses(session) == ["completed", "pending", "pending"]


def test_environment_progress_averages_jobs():
  jobs = [EnvironmentJob(external_id="gen-1", status="processing", progress=50.0), EnvironmentJob(external_id="gen-2", status="completed", progress=90.0)]
  assert environment_progress(_session(environment_jobs=jobs)) == 75
  assert environment_progress(_session()) == 0


def test_build_snapshot_exposes_presentation_fields():
  jobs = [EnvironmentJob(external_id="gen-1", status="completed"), EnvironmentJob(external_id="gen-2", status="processing", progress=50.0)]
  asset_job = AssetJob(stage="generating", progress_percent=40.0, message="Building mesh")
  session = _session(is_running_environment=True, is_running_asset=True, environment_jobs=jobs, asset_job=asset_job, negative_prompt="people")

  snapshot = build_snapshot(session)

  assert snapshot["isGenerating"] is True
  assert snapshot["isGenerating3DAsset"] is True
  assert snapshot["environmentProgress"] == 75
  assert snapshot["assetProgress"] == {"stage": "generating", "progress": 40.0, "message": "Building mesh"}
  assert snapshot["currentJobId"] == "gen-2"
  assert snapshot["selectedStyle"] == 2
  assert snapshot["negativePrompt"] == "people"
  assert snapshot["generatedAsset"] is None
  assert [step["status"] for step in snapshot["steps"]] == ["active", "active", "pending"]
