import pytest
from fakes import FakeClock

from genflow.jobs.models import AssetResult, EnvironmentJob, GenerationSession
from genflow.jobs.reconciler import ResultReconciler, build_asset_result, extract_asset_url
from genflow.storage.documents import ASSETS_COLLECTION, SKYBOXES_COLLECTION, InMemoryDocumentStore


class _TamperingStore(InMemoryDocumentStore):
  """Reads back a different owner than was written."""

  async def get(self, collection, doc_id):
    document = await super().get(collection, doc_id)
    if document is not None:
      document["userId"] = "someone-else"
    return document


class _FailingStore:
  async def upsert(self, collection, doc_id, fields, *, merge=True):
    raise RuntimeError("firestore unavailable")

  async def get(self, collection, doc_id):
    return None


def _completed_session() -> GenerationSession:
  jobs = [
    EnvironmentJob(external_id="gen-1", status="completed", result_url="https://cdn.example.com/1.jpg", title="Dunes"),
    EnvironmentJob(external_id="gen-2", status="completed", result_url="https://cdn.example.com/2.jpg"),
  ]
  return GenerationSession(session_id="session-1", user_id="user-1", prompt="desert oasis", negative_prompt="people", style_id=2, num_variations=2, started_at=0.0, expires_at=7200.0, environment_jobs=jobs)


@pytest.mark.anyio
async def test_reconcile_writes_and_verifies_generation_record():
  documents = InMemoryDocumentStore()
  reconciler = ResultReconciler(documents, clock=FakeClock())

  report = await reconciler.reconcile(_completed_session())

  assert report.record_id == "gen-1"
  assert report.warnings == []
  record = await documents.get(SKYBOXES_COLLECTION, "gen-1")
  assert record["userId"] == "user-1"
  assert record["status"] == "completed"
  assert record["imageUrl"] == "https://cdn.example.com/1.jpg"
  assert record["styleId"] == 2
  assert record["negativePrompt"] == "people"
  assert [variation["id"] for variation in record["variations"]] == ["gen-1", "gen-2"]
  assert record["variations"][0]["title"] == "Dunes"
  assert record["variations"][1]["title"] == "desert oasis (Variation 2)"
  assert record["createdAt"] == "2023-11-14T22:13:20Z"


@pytest.mark.anyio
async def test_reconcile_keeps_original_creation_time():
  documents = InMemoryDocumentStore()
  clock = FakeClock()
  reconciler = ResultReconciler(documents, clock=clock)

  await reconciler.reconcile(_completed_session())
  created_at = (await documents.get(SKYBOXES_COLLECTION, "gen-1"))["createdAt"]
  clock.advance(3600)
  await reconciler.reconcile(_completed_session())

  record = await documents.get(SKYBOXES_COLLECTION, "gen-1")
  assert record["createdAt"] == created_at
  assert record["updatedAt"] != created_at


@pytest.mark.anyio
async def test_verification_mismatch_is_a_warning():
  reconciler = ResultReconciler(_TamperingStore(), clock=FakeClock())

  report = await reconciler.reconcile(_completed_session())

  assert report.record_id == "gen-1"
  assert len(report.warnings) == 1
  assert "different user" in report.warnings[0]


@pytest.mark.anyio
async def test_store_failure_is_a_warning():
  reconciler = ResultReconciler(_FailingStore(), clock=FakeClock())
  asset = AssetResult(asset_id="asset-1", url="https://cdn.example.com/a.glb", format="glb")

  report = await reconciler.reconcile(_completed_session(), asset)

  assert len(report.warnings) == 2
  assert report.asset_linked is False


@pytest.mark.anyio
async def test_asset_is_linked_to_generation_record():
  documents = InMemoryDocumentStore()
  reconciler = ResultReconciler(documents, clock=FakeClock())
  asset = build_asset_result({"id": "asset-1", "modelUrls": {"obj": "https://cdn.example.com/a.obj", "glb": "https://cdn.example.com/a.glb"}, "metadata": {"source": "mesh"}, "grounding": {"anchor": "floor"}})

  report = await reconciler.reconcile(_completed_session(), asset)

  assert report.asset_linked is True
  record = await documents.get(SKYBOXES_COLLECTION, "gen-1")
  assert record["has3DAsset"] is True
  assert record["assetId"] == "asset-1"
  assert record["assetUrl"] == "https://cdn.example.com/a.glb"
  assert record["assetFormat"] == "glb"
  # The link is merged; the environment fields are untouched.
  assert record["prompt"] == "desert oasis"
  asset_record = await documents.get(ASSETS_COLLECTION, "asset-1")
  assert asset_record["skyboxId"] == "gen-1"
  assert asset_record["metadata"] == {"source": "mesh", "grounding": {"anchor": "floor"}}


@pytest.mark.anyio
async def test_no_completed_jobs_writes_nothing():
  documents = InMemoryDocumentStore()
  session = _completed_session()
  for job in session.environment_jobs:
    job.status = "processing"

  report = await ResultReconciler(documents, clock=FakeClock()).reconcile(session)

  assert report.record_id is None
  assert await documents.get(SKYBOXES_COLLECTION, "gen-1") is None


def test_extract_asset_url_preference_order():
  assert extract_asset_url({"downloadUrl": "d", "previewUrl": "p", "format": "glb"}) == ("d", "glb")
  assert extract_asset_url({"previewUrl": "p", "modelUrls": {"glb": "g"}}) == ("p", None)
  assert extract_asset_url({"modelUrls": {"obj": "o", "fbx": "f"}}) == ("f", "fbx")
  assert extract_asset_url({"modelUrls": {"ply": "x"}}) == ("x", "ply")
  assert extract_asset_url({"format": "glb"}) == (None, "glb")


def test_build_asset_result_requires_id_and_url():
  assert build_asset_result({"downloadUrl": "https://cdn.example.com/a.glb"}) is None
  assert build_asset_result({"id": "asset-1"}) is None
