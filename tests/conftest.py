"""Shared fixtures for the genflow test suite."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from fakes import FakeAssetApi, FakeClock, ScriptedEnvironmentApi

from genflow.jobs.coordinator import GenerationOrchestrator
from genflow.jobs.poller import PollPolicy
from genflow.jobs.reconciler import ResultReconciler
from genflow.notifications.sinks import RecordingEventSink
from genflow.services.quotas import InMemoryQuotaService
from genflow.storage.documents import InMemoryDocumentStore
from genflow.storage.session_store import DebouncedSessionWriter, InMemoryCacheBackend, SessionStore


@pytest.fixture
def anyio_backend():
  return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture
def environment_api() -> ScriptedEnvironmentApi:
  return ScriptedEnvironmentApi()


@pytest.fixture
def asset_api() -> FakeAssetApi:
  return FakeAssetApi()


@pytest.fixture
def quotas() -> InMemoryQuotaService:
  return InMemoryQuotaService(default_limit=10)


@pytest.fixture
def cache_backend() -> InMemoryCacheBackend:
  return InMemoryCacheBackend()


@pytest.fixture
def session_store(cache_backend: InMemoryCacheBackend, clock: FakeClock) -> SessionStore:
  return SessionStore(cache_backend, clock=clock)


@pytest.fixture
def documents() -> InMemoryDocumentStore:
  return InMemoryDocumentStore()


@pytest.fixture
def events() -> RecordingEventSink:
  return RecordingEventSink()


@pytest.fixture
def make_orchestrator(environment_api, asset_api, quotas, session_store, documents, events, clock) -> Callable[..., GenerationOrchestrator]:
  def _build(**overrides: Any) -> GenerationOrchestrator:
    options: dict[str, Any] = {
      "environment_api": environment_api,
      "asset_api": asset_api,
      "quotas": quotas,
      "writer": DebouncedSessionWriter(session_store, clock=clock, delay_seconds=0.5),
      "reconciler": ResultReconciler(documents, clock=clock),
      "clock": clock,
      "events": events,
      "poll_policy": PollPolicy(),
    }
    options.update(overrides)
    return GenerationOrchestrator(**options)

  return _build
