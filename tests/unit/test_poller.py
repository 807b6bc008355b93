import pytest
from fakes import FakeClock, ScriptedEnvironmentApi, report

from genflow.jobs.cancellation import CancellationToken
from genflow.jobs.errors import GenerationCanceledError, JobFailedError, JobNotFoundError, NetworkError, PollTimeoutError
from genflow.jobs.models import EnvironmentJob
from genflow.jobs.poller import AdaptivePoller, PollPolicy, estimate_progress, next_interval, normalize_status


def test_first_interval_uses_phase_floor():
  policy = PollPolicy()
  assert next_interval(policy, "pending", None) == 2000
  assert next_interval(policy, "processing", None) == 4000
  assert next_interval(policy, "dispatched", None) == 4000


def test_interval_grows_gently_and_caps():
  policy = PollPolicy()
  assert next_interval(policy, "processing", 4000) == pytest.approx(4400)
  assert next_interval(policy, "processing", 9500) == 10000
  # Growth never drops below the phase floor after a pending -> processing transition.
  assert next_interval(policy, "processing", 2000) == 4000


def test_error_backoff_doubles_up_to_cap():
  policy = PollPolicy()
  assert next_interval(policy, "pending", 3000, after_error=True) == 6000
  assert next_interval(policy, "processing", 8000, after_error=True) == 10000


def test_policy_rejects_base_above_cap():
  with pytest.raises(ValueError):
    PollPolicy(base_interval_ms=20000)


def test_estimate_progress_by_phase():
  assert estimate_progress("pending", 0, 180) == 10
  assert estimate_progress("pending", 360, 180) == 30
  assert estimate_progress("processing", 90, 180) == 50
  assert estimate_progress("dispatched", 180, 180) == 90
  assert estimate_progress("completed", 1, 180) == 100


def test_normalize_status_maps_remote_spellings():
  assert normalize_status("complete", "processing") == "completed"
  assert normalize_status("ERROR", "pending") == "failed"
  assert normalize_status("abort", "processing") == "aborted"
  assert normalize_status("queued-for-gpu", "processing") == "processing"
  assert normalize_status(None, "pending") == "pending"


@pytest.mark.anyio
async def test_poll_pending_processing_completed():
  clock = FakeClock()
  api = ScriptedEnvironmentApi({"gen-1": [report("pending"), report("processing"), report("completed", url="https://cdn.example.com/a.jpg", title="Oasis")]})
  poller = AdaptivePoller(api, clock=clock)
  job = EnvironmentJob(external_id="gen-1")
  seen: list[str] = []

  result = await poller.poll(job, CancellationToken(clock=clock), on_update=lambda item: seen.append(item.status))

  assert result.status == "completed"
  assert result.result_url == "https://cdn.example.com/a.jpg"
  assert result.title == "Oasis"
  assert result.progress == 100
  assert result.attempts == 3
  assert clock.sleeps == [2.0, 4.0]
  assert seen == ["pending", "processing", "completed"]


@pytest.mark.anyio
async def test_poll_times_out_with_last_status():
  clock = FakeClock()
  api = ScriptedEnvironmentApi({"gen-1": [report("processing")]})
  poller = AdaptivePoller(api, clock=clock)
  job = EnvironmentJob(external_id="gen-1")

  with pytest.raises(PollTimeoutError) as exc_info:
    await poller.poll(job, CancellationToken(clock=clock))

  assert isinstance(exc_info.value, TimeoutError)
  assert exc_info.value.last_status == "processing"
  assert exc_info.value.attempts == 180
  assert len(api.status_calls) == 180
  assert job.status == "timeout"
  # No sleep after the final attempt; every interval stays in bounds and never shrinks.
  assert len(clock.sleeps) == 179
  assert all(2.0 <= delay <= 10.0 for delay in clock.sleeps)
  assert clock.sleeps == sorted(clock.sleeps)


@pytest.mark.anyio
async def test_poll_raises_remote_failure_without_retry():
  clock = FakeClock()
  api = ScriptedEnvironmentApi({"gen-1": [report("error", error="Content policy violation")]})
  poller = AdaptivePoller(api, clock=clock)
  job = EnvironmentJob(external_id="gen-1")

  with pytest.raises(JobFailedError) as exc_info:
    await poller.poll(job, CancellationToken(clock=clock))

  assert str(exc_info.value) == "Content policy violation"
  assert exc_info.value.status == "failed"
  assert api.status_calls == ["gen-1"]
  assert clock.sleeps == []


@pytest.mark.anyio
async def test_poll_not_found_is_not_retried():
  clock = FakeClock()
  api = ScriptedEnvironmentApi({"gen-1": [JobNotFoundError("gen-1")]})
  poller = AdaptivePoller(api, clock=clock)
  job = EnvironmentJob(external_id="gen-1")

  with pytest.raises(JobNotFoundError):
    await poller.poll(job, CancellationToken(clock=clock))

  assert api.status_calls == ["gen-1"]
  assert job.status == "failed"


@pytest.mark.anyio
async def test_poll_backs_off_on_network_errors():
  clock = FakeClock()
  api = ScriptedEnvironmentApi({"gen-1": [NetworkError("boom"), NetworkError("boom"), report("completed", url="https://cdn.example.com/a.jpg")]})
  poller = AdaptivePoller(api, clock=clock)

  job = await poller.poll(EnvironmentJob(external_id="gen-1"), CancellationToken(clock=clock))

  assert job.status == "completed"
  assert clock.sleeps == [2.0, 4.0]


@pytest.mark.anyio
async def test_network_errors_until_budget_become_timeout():
  clock = FakeClock()
  api = ScriptedEnvironmentApi({"gen-1": [NetworkError("down")]})
  poller = AdaptivePoller(api, clock=clock, policy=PollPolicy(max_attempts=4))

  with pytest.raises(PollTimeoutError) as exc_info:
    await poller.poll(EnvironmentJob(external_id="gen-1"), CancellationToken(clock=clock))

  assert exc_info.value.last_status == "pending"
  assert clock.sleeps == [2.0, 4.0, 8.0]


@pytest.mark.anyio
async def test_completed_without_url_keeps_polling():
  clock = FakeClock()
  api = ScriptedEnvironmentApi({"gen-1": [report("processing"), report("completed"), report("completed", url="https://cdn.example.com/a.jpg")]})
  poller = AdaptivePoller(api, clock=clock)
  seen: list[str] = []

  job = await poller.poll(EnvironmentJob(external_id="gen-1"), CancellationToken(clock=clock), on_update=lambda item: seen.append(item.status))

  assert job.status == "completed"
  assert seen == ["processing", "processing", "completed"]
  assert len(api.status_calls) == 3


@pytest.mark.anyio
async def test_phase_never_moves_backwards():
  clock = FakeClock()
  api = ScriptedEnvironmentApi({"gen-1": [report("processing"), report("pending"), report("completed", url="https://cdn.example.com/a.jpg")]})
  poller = AdaptivePoller(api, clock=clock)
  seen: list[str] = []

  await poller.poll(EnvironmentJob(external_id="gen-1"), CancellationToken(clock=clock), on_update=lambda item: seen.append(item.status))

  assert seen == ["processing", "processing", "completed"]


@pytest.mark.anyio
async def test_cancelled_token_stops_polling():
  clock = FakeClock()
  api = ScriptedEnvironmentApi({"gen-1": [report("processing")]})
  poller = AdaptivePoller(api, clock=clock)
  token = CancellationToken(clock=clock)

  def cancel_after_first_poll(job: EnvironmentJob) -> None:
    token.cancel()

  with pytest.raises(GenerationCanceledError):
    await poller.poll(EnvironmentJob(external_id="gen-1"), token, on_update=cancel_after_first_poll)

  assert api.status_calls == ["gen-1"]


@pytest.mark.anyio
async def test_token_deadline_stops_polling():
  clock = FakeClock()
  api = ScriptedEnvironmentApi({"gen-1": [report("processing")]})
  poller = AdaptivePoller(api, clock=clock)
  token = CancellationToken(clock=clock, deadline=clock.now() + 10)

  with pytest.raises(GenerationCanceledError, match="expired"):
    await poller.poll(EnvironmentJob(external_id="gen-1"), token)

  assert len(api.status_calls) < 5
