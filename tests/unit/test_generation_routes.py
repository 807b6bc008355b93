from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest
from fakes import FakeAssetApi, settle
from httpx import ASGITransport, AsyncClient

from genflow.core.middleware import resolve_request_id
from genflow.core.security import get_current_user_id
from genflow.main import app


@pytest.fixture
def orchestrator(make_orchestrator):
  return make_orchestrator()


@pytest.fixture
async def async_client(orchestrator):
  app.state.orchestrator = orchestrator
  app.dependency_overrides[get_current_user_id] = lambda: "user-1"
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
    yield client
  app.dependency_overrides.clear()
  app.state.orchestrator = None
  await orchestrator.join()


@pytest.mark.anyio
async def test_health(async_client: AsyncClient):
  response = await async_client.get("/health")

  assert response.status_code == 200
  assert response.json() == {"status": "ok", "version": "0.1.0"}
  assert response.headers["x-request-id"]


@pytest.mark.anyio
async def test_start_generation_is_accepted(async_client: AsyncClient, orchestrator):
  response = await async_client.post("/v1/generations", json={"prompt": "desert oasis", "style_id": 2, "num_variations": 2})

  assert response.status_code == 202
  body = response.json()
  assert body["prompt"] == "desert oasis"
  assert body["numVariations"] == 2
  assert body["isGenerating"] is True
  assert [step["key"] for step in body["steps"]] == ["environment", "asset", "merge"]

  await orchestrator.join()
  assert orchestrator.is_active("user-1") is False


@pytest.mark.anyio
async def test_unknown_fields_are_rejected(async_client: AsyncClient):
  response = await async_client.post("/v1/generations", json={"prompt": "desert oasis", "style_id": 2, "seed": 7})

  assert response.status_code == 422
  assert all("input" not in error for error in response.json()["detail"])


@pytest.mark.anyio
async def test_invalid_style_is_rejected(async_client: AsyncClient):
  response = await async_client.post("/v1/generations", json={"prompt": "desert oasis", "style_id": 0})

  assert response.status_code == 400
  body = response.json()
  assert body["code"] == "validation_error"
  assert body["requestId"] == response.headers["x-request-id"]


@pytest.mark.anyio
async def test_quota_exhausted_returns_402(async_client: AsyncClient, quotas):
  quotas.set_usage("user-1", 9)

  response = await async_client.post("/v1/generations", json={"prompt": "desert oasis", "style_id": 2, "num_variations": 3})

  assert response.status_code == 402
  body = response.json()
  assert body["code"] == "quota_exceeded"
  assert body["requested"] == 3
  assert body["remaining"] == 1


@pytest.mark.anyio
async def test_second_generation_conflicts(make_orchestrator):
  gate = asyncio.Event()
  orchestrator = make_orchestrator(asset_api=FakeAssetApi(gate=gate))
  app.state.orchestrator = orchestrator
  app.dependency_overrides[get_current_user_id] = lambda: "user-1"
  try:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
      first = await client.post("/v1/generations", json={"prompt": "desert oasis", "style_id": 2})
      await settle()
      second = await client.post("/v1/generations", json={"prompt": "ice cave", "style_id": 2})
      current = await client.get("/v1/generations/current")
  finally:
    app.dependency_overrides.clear()
    app.state.orchestrator = None
    gate.set()
    await orchestrator.join()

  assert first.status_code == 202
  assert second.status_code == 409
  assert second.json()["code"] == "generation_in_progress"
  assert current.status_code == 200
  assert current.json()["prompt"] == "desert oasis"
  assert current.json()["isGenerating3DAsset"] is True


@pytest.mark.anyio
async def test_current_without_generation_is_404(async_client: AsyncClient):
  response = await async_client.get("/v1/generations/current")

  assert response.status_code == 404
  assert response.json()["detail"] == "No generation in progress."


@pytest.mark.anyio
async def test_well_formed_client_request_id_is_echoed(async_client: AsyncClient):
  response = await async_client.get("/v1/generations/current", headers={"x-request-id": "client-req-12345"})

  assert response.headers["x-request-id"] == "client-req-12345"
  assert response.headers["x-content-type-options"] == "nosniff"
  assert response.headers["cache-control"] == "no-store"


@pytest.mark.anyio
async def test_malformed_client_request_id_is_replaced(async_client: AsyncClient):
  response = await async_client.get("/health", headers={"x-request-id": "bad id with spaces"})

  assert response.headers["x-request-id"] != "bad id with spaces"
  assert len(response.headers["x-request-id"]) == 36
  assert response.headers["x-content-type-options"] == "nosniff"
  assert "cache-control" not in response.headers


def test_resolve_request_id_rejects_short_tokens():
  assert resolve_request_id({"type": "http", "headers": [(b"x-request-id", b"abc")]}) != "abc"
  assert resolve_request_id({"type": "http", "headers": [(b"x-request-id", b"trace.0001-ab")]}) == "trace.0001-ab"


@pytest.mark.anyio
async def test_resume_without_state_is_404(async_client: AsyncClient):
  response = await async_client.post("/v1/generations/current/resume")

  assert response.status_code == 404
  assert response.json()["detail"] == "No resumable generation."


@pytest.mark.anyio
async def test_reset_reports_whether_a_run_was_stopped(async_client: AsyncClient):
  response = await async_client.delete("/v1/generations/current")

  assert response.status_code == 200
  assert response.json() == {"reset": False}


@pytest.mark.anyio
async def test_invalid_token_is_rejected(orchestrator):
  app.state.orchestrator = orchestrator
  try:
    with patch("genflow.core.security.verify_id_token", return_value=None):
      async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/generations/current", headers={"authorization": "Bearer not-a-token"})
  finally:
    app.state.orchestrator = None

  assert response.status_code == 401
