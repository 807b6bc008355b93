"""HTTP client for the 3D asset generation API (streamed, push-style progress)."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from genflow.jobs.errors import GenerationError, NetworkError

logger = logging.getLogger(__name__)

AssetProgressCallback = Callable[[str, float, str], None]


@dataclass(frozen=True)
class AssetGenerationResult:
  """Final event of an asset generation call."""

  success: bool
  assets: list[dict[str, Any]] = field(default_factory=list)
  error: str | None = None
  task_id: str | None = None


class AssetApi(Protocol):
  """Contract for the asset generation service."""

  def is_configured(self) -> bool:
    """Return True when credentials and an endpoint are available."""

  async def generate(self, *, prompt: str, user_id: str, related_id: str | None, quality: str, max_assets: int, on_progress: AssetProgressCallback) -> AssetGenerationResult:
    """Run one asset generation, pushing progress through `on_progress`."""


class MeshAssetApiClient:
  """Client that reads newline-delimited JSON progress events from one streaming call."""

  def __init__(self, *, base_url: str | None, api_key: str | None, timeout_seconds: float = 600.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._base_url = base_url.rstrip("/") if base_url else None
    self._api_key = api_key
    self._timeout_seconds = timeout_seconds
    self._transport = transport

  def is_configured(self) -> bool:
    return bool(self._base_url and self._api_key)

  def _build_client(self) -> httpx.AsyncClient:
    headers = {"accept": "application/x-ndjson", "authorization": f"Bearer {self._api_key}"}
    return httpx.AsyncClient(base_url=self._base_url or "", headers=headers, timeout=self._timeout_seconds, transport=self._transport, trust_env=False)

  async def generate(self, *, prompt: str, user_id: str, related_id: str | None, quality: str, max_assets: int, on_progress: AssetProgressCallback) -> AssetGenerationResult:
    if not self.is_configured():
      raise GenerationError("3D asset service is not configured.")

    payload = {"prompt": prompt, "userId": user_id, "skyboxId": related_id, "quality": quality, "maxAssets": max_assets}
    result: AssetGenerationResult | None = None
    try:
      async with self._build_client() as client:
        async with client.stream("POST", "/assets/generate", json=payload) as response:
          if response.status_code >= 400:
            await response.aread()
            _raise_for_status(response)
          async for line in response.aiter_lines():
            event = _parse_event(line)
            if event is None:
              continue
            if event.get("type") == "progress":
              on_progress(str(event.get("stage") or "generating"), float(event.get("progress") or 0.0), str(event.get("message") or ""))
            elif event.get("type") == "result":
              result = AssetGenerationResult(success=bool(event.get("success")), assets=list(event.get("assets") or []), error=event.get("error"), task_id=event.get("taskId"))
    except httpx.RequestError as exc:
      logger.warning("Asset API stream failed: %s", exc)
      raise NetworkError(f"3D asset service request failed: {exc}") from exc

    if result is None:
      raise NetworkError("3D asset service closed the stream without a result.")
    return result


def _parse_event(line: str) -> dict[str, Any] | None:
  if not line.strip():
    return None
  try:
    event = json.loads(line)
  except json.JSONDecodeError:
    logger.debug("Skipping malformed asset progress line: %s", line[:200])
    return None
  return event if isinstance(event, dict) else None


def _raise_for_status(response: httpx.Response) -> None:
  status_code = response.status_code
  logger.warning("Asset API returned status=%s", status_code)
  if status_code == 429 or status_code >= 500:
    raise NetworkError("3D asset service is temporarily unavailable.")
  if status_code in {401, 403}:
    raise GenerationError("3D asset service rejected the configured credentials.")
  raise GenerationError(f"3D asset service rejected the request with status {status_code}.")
