"""Build the orchestrator and its collaborators from settings."""

from __future__ import annotations

import logging
from typing import Any

from genflow.config import Settings, get_poll_settings
from genflow.core.firebase import get_firestore_client
from genflow.jobs.coordinator import GenerationOrchestrator
from genflow.jobs.poller import PollPolicy
from genflow.jobs.reconciler import ResultReconciler
from genflow.notifications.contracts import GenerationEventSink
from genflow.services.asset_client import MeshAssetApiClient
from genflow.services.quotas import FirestoreQuotaService, InMemoryQuotaService, QuotaService
from genflow.services.skybox_client import SkyboxApiClient
from genflow.storage.documents import DocumentStore, FirestoreDocumentStore, InMemoryDocumentStore
from genflow.storage.session_store import CacheBackend, DebouncedSessionWriter, FirestoreCacheBackend, InMemoryCacheBackend, SessionStore
from genflow.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


def _build_cache_backend(settings: Settings, firestore_client: Any | None) -> CacheBackend:
  if settings.session_store_provider == "firestore":
    if firestore_client is None:
      raise RuntimeError("GENFLOW_SESSION_STORE=firestore requires a configured Firebase project.")
    return FirestoreCacheBackend(firestore_client)
  return InMemoryCacheBackend()


def build_orchestrator(settings: Settings, *, clock: Clock | None = None, events: GenerationEventSink | None = None, firestore_client: Any | None = None) -> GenerationOrchestrator:
  """Wire remote clients, stores and policies into a GenerationOrchestrator."""

  clock = clock or SystemClock()
  if firestore_client is None and settings.firebase_project_id:
    firestore_client = get_firestore_client()

  # Without Firestore the service still runs, with process-local stores.
  documents: DocumentStore
  quotas: QuotaService
  if firestore_client is not None:
    documents = FirestoreDocumentStore(firestore_client)
    quotas = FirestoreQuotaService(firestore_client, default_limit=settings.default_quota_limit)
  else:
    logger.warning("Firestore unavailable; using in-memory result store and quota ledger.")
    documents = InMemoryDocumentStore()
    quotas = InMemoryQuotaService(default_limit=settings.default_quota_limit)

  store = SessionStore(_build_cache_backend(settings, firestore_client), clock=clock, ttl_seconds=settings.session_ttl_seconds)
  writer = DebouncedSessionWriter(store, clock=clock, delay_seconds=settings.session_save_debounce_ms / 1000.0)

  environment_api = SkyboxApiClient(base_url=settings.skybox_api_base_url, api_key=settings.skybox_api_key, timeout_seconds=settings.skybox_timeout_seconds)
  asset_api = MeshAssetApiClient(base_url=settings.asset_api_base_url, api_key=settings.asset_api_key, timeout_seconds=settings.asset_timeout_seconds)
  if not asset_api.is_configured():
    logger.info("3D asset service not configured; asset generation will be skipped.")

  return GenerationOrchestrator(
    environment_api=environment_api,
    asset_api=asset_api,
    quotas=quotas,
    writer=writer,
    reconciler=ResultReconciler(documents, clock=clock),
    clock=clock,
    events=events,
    poll_policy=PollPolicy.from_settings(get_poll_settings(settings)),
    session_ttl_seconds=settings.session_ttl_seconds,
    clear_grace_seconds=settings.session_clear_grace_seconds,
    asset_quality=settings.asset_quality,
    max_assets=settings.asset_max_assets,
    storage_available=True,
  )
