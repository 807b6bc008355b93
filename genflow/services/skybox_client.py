"""HTTP client for the environment (skybox) generation API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from genflow.jobs.errors import GenerationError, JobNotFoundError, NetworkError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnvironmentStatusReport:
  """One status response for a skybox generation, as reported by the remote API."""

  status: str
  file_url: str | None = None
  error_message: str | None = None
  title: str | None = None
  thumbnail_url: str | None = None


class EnvironmentApi(Protocol):
  """Contract for submitting and polling skybox generations."""

  async def submit(self, *, prompt: str, style_id: int, negative_prompt: str | None, user_id: str) -> str:
    """Create a remote generation and return its identifier."""

  async def status(self, generation_id: str) -> EnvironmentStatusReport:
    """Fetch the current status of a remote generation."""


class SkyboxApiClient:
  """httpx-backed client for the skybox generate/status endpoints."""

  def __init__(self, *, base_url: str | None, api_key: str | None = None, timeout_seconds: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._base_url = base_url.rstrip("/") if base_url else None
    self._api_key = api_key
    self._timeout_seconds = timeout_seconds
    self._transport = transport

  def _build_client(self) -> httpx.AsyncClient:
    headers = {"accept": "application/json"}
    if self._api_key:
      headers["authorization"] = f"Bearer {self._api_key}"
    return httpx.AsyncClient(base_url=self._base_url or "", headers=headers, timeout=self._timeout_seconds, transport=self._transport, trust_env=False)

  async def submit(self, *, prompt: str, style_id: int, negative_prompt: str | None, user_id: str) -> str:
    payload = {"prompt": prompt, "skybox_style_id": style_id, "negative_text": negative_prompt, "userId": user_id}
    body = await self._request("POST", "/skybox/generate", json=payload)
    data = body.get("data") or {}
    if not body.get("success", True) or not isinstance(data, dict):
      raise GenerationError(str(body.get("error") or "Failed to start skybox generation."))

    generation_id = data.get("generationId") or data.get("id")
    if generation_id in (None, ""):
      raise GenerationError("Skybox service did not return a generation id.")
    return str(generation_id)

  async def status(self, generation_id: str) -> EnvironmentStatusReport:
    body = await self._request("GET", f"/skybox/status/{generation_id}", not_found_id=generation_id)
    data = body.get("data")
    # A malformed or unsuccessful status payload is treated as a transient upstream hiccup.
    if not body.get("success", True) or not isinstance(data, dict):
      raise NetworkError(str(body.get("error") or f"Skybox status for {generation_id} was unavailable."))

    return EnvironmentStatusReport(
      status=str(data.get("status") or "pending"),
      file_url=data.get("file_url") or data.get("image") or None,
      error_message=data.get("error_message") or data.get("error") or None,
      title=data.get("title") or None,
      thumbnail_url=data.get("thumb_url") or data.get("thumbnail_url") or None,
    )

  async def _request(self, method: str, path: str, *, json: dict[str, Any] | None = None, not_found_id: str | None = None) -> dict[str, Any]:
    if not self._base_url:
      raise GenerationError("Skybox generation service is not configured properly. Please contact support.")
    try:
      async with self._build_client() as client:
        response = await client.request(method, path, json=json)
    except httpx.RequestError as exc:
      logger.warning("Skybox API request failed method=%s path=%s error=%s", method, path, exc)
      raise NetworkError(f"Skybox service request failed: {exc}") from exc

    _raise_for_status(response, not_found_id=not_found_id)

    try:
      body = response.json()
    except ValueError as exc:
      raise NetworkError("Skybox service returned a non-JSON response.") from exc
    if not isinstance(body, dict):
      raise NetworkError("Skybox service returned an unexpected payload.")
    return body


def _error_detail(response: httpx.Response) -> str | None:
  try:
    body = response.json()
  except ValueError:
    return None
  if isinstance(body, dict):
    detail = body.get("error") or body.get("message")
    return str(detail) if detail else None
  return None


def _raise_for_status(response: httpx.Response, *, not_found_id: str | None) -> None:
  """Translate HTTP failures into the orchestration error taxonomy."""
  status_code = response.status_code
  if status_code < 400:
    return

  detail = _error_detail(response)
  logger.warning("Skybox API returned status=%s detail=%s", status_code, detail)

  if status_code == 404 and not_found_id is not None:
    raise JobNotFoundError(not_found_id)
  if status_code == 400:
    raise ValidationError(detail or "Invalid request parameters. Please check your prompt and style selection.")
  if status_code == 403:
    raise GenerationError("Skybox generation service is not configured properly. Please contact support.")
  if status_code == 429 or status_code >= 500:
    raise NetworkError(detail or "Skybox generation service is temporarily unavailable.")
  raise GenerationError(detail or f"Skybox service rejected the request with status {status_code}.")
