import pytest

from genflow.config import get_poll_settings, get_settings
from genflow.jobs.poller import PollPolicy


@pytest.fixture(autouse=True)
def _fresh_settings():
  get_settings.cache_clear()
  yield
  get_settings.cache_clear()


def test_defaults(monkeypatch):
  for name in ("GENFLOW_ALLOWED_ORIGINS", "GENFLOW_SESSION_STORE", "GENFLOW_DEFAULT_QUOTA_LIMIT", "GENFLOW_POLL_BASE_INTERVAL_MS", "GENFLOW_POLL_MAX_ATTEMPTS"):
    monkeypatch.delenv(name, raising=False)

  settings = get_settings()

  assert settings.allowed_origins == ("http://localhost:5173",)
  assert settings.session_store_provider == "memory"
  assert settings.session_ttl_seconds == 7200
  assert settings.default_quota_limit == 10
  assert get_poll_settings(settings).max_attempts == 180


def test_overrides_flow_into_poll_policy(monkeypatch):
  monkeypatch.setenv("GENFLOW_POLL_BASE_INTERVAL_MS", "1500")
  monkeypatch.setenv("GENFLOW_POLL_MAX_ATTEMPTS", "60")
  monkeypatch.setenv("GENFLOW_ALLOWED_ORIGINS", "https://app.example.com, https://admin.example.com")

  settings = get_settings()
  policy = PollPolicy.from_settings(get_poll_settings(settings))

  assert settings.allowed_origins == ("https://app.example.com", "https://admin.example.com")
  assert policy.base_interval_ms == 1500
  assert policy.max_attempts == 60


def test_unlimited_quota(monkeypatch):
  monkeypatch.setenv("GENFLOW_DEFAULT_QUOTA_LIMIT", "unlimited")
  assert get_settings().default_quota_limit is None


@pytest.mark.parametrize(
  ("name", "value"),
  [
    ("GENFLOW_ALLOWED_ORIGINS", "*"),
    ("GENFLOW_SESSION_STORE", "redis"),
    ("GENFLOW_ASSET_QUALITY", "ultra"),
    ("GENFLOW_POLL_MAX_ATTEMPTS", "0"),
    ("GENFLOW_SESSION_CLEAR_GRACE_SECONDS", "-1"),
  ],
)
def test_invalid_values_raise(monkeypatch, name, value):
  monkeypatch.setenv(name, value)

  with pytest.raises(ValueError):
    get_settings()
