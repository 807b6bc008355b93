"""Merge completed generation results into the durable document store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from genflow.jobs.errors import PersistenceError, VerificationError
from genflow.jobs.models import AssetResult, EnvironmentResult, GenerationSession
from genflow.storage.documents import ASSETS_COLLECTION, SKYBOXES_COLLECTION, DocumentStore
from genflow.utils.clock import Clock
from genflow.utils.ids import iso_timestamp

logger = logging.getLogger(__name__)

# Preferred download formats when the asset only exposes a per-format URL map.
MODEL_FORMAT_PREFERENCE = ("glb", "fbx", "obj", "usdz")


@dataclass
class ReconciliationReport:
  """What the reconciler wrote and which non-fatal problems it hit."""

  record_id: str | None
  environment_results: list[EnvironmentResult]
  asset_linked: bool = False
  warnings: list[str] = field(default_factory=list)


def build_environment_results(session: GenerationSession) -> list[EnvironmentResult]:
  """Collect completed variations in submission order."""
  results: list[EnvironmentResult] = []
  for index, job in enumerate(session.environment_jobs, start=1):
    if job.status != "completed" or not job.result_url:
      continue
    title = job.title or f"{session.prompt[:50]} (Variation {index})"
    results.append(EnvironmentResult(external_id=job.external_id, image_url=job.result_url, title=title, prompt=session.prompt, thumbnail_url=job.thumbnail_url))
  return results


def extract_asset_url(asset: dict[str, Any]) -> tuple[str | None, str | None]:
  """Return (url, format), preferring direct URLs over the per-format map."""

  declared_format = asset.get("format")
  for key in ("downloadUrl", "previewUrl"):
    value = asset.get(key)
    if isinstance(value, str) and value:
      return value, declared_format

  model_urls = asset.get("modelUrls")
  if isinstance(model_urls, dict):
    for model_format in MODEL_FORMAT_PREFERENCE:
      value = model_urls.get(model_format)
      if isinstance(value, str) and value:
        return value, model_format
    for model_format, value in model_urls.items():
      if isinstance(value, str) and value:
        return value, str(model_format)
  return None, declared_format


def build_asset_result(asset: dict[str, Any]) -> AssetResult | None:
  """Turn a raw asset payload into an AssetResult, or None when it has no usable URL."""
  url, asset_format = extract_asset_url(asset)
  asset_id = asset.get("id")
  if not url or not asset_id:
    return None

  metadata = dict(asset.get("metadata") or {})
  grounding = asset.get("grounding")
  if isinstance(grounding, dict):
    metadata["grounding"] = {**(metadata.get("grounding") or {}), **grounding}
  return AssetResult(asset_id=str(asset_id), url=url, format=asset_format, metadata=metadata)


class ResultReconciler:
  """Writes generation records with read-back verification.

  Store failures and verification mismatches are reported as warnings; they never fail a
  generation whose environment branch succeeded. Quota was already debited at submission.
  """

  def __init__(self, documents: DocumentStore, *, clock: Clock) -> None:
    self._documents = documents
    self._clock = clock

  async def reconcile(self, session: GenerationSession, asset_result: AssetResult | None = None) -> ReconciliationReport:
    results = build_environment_results(session)
    record_id = results[0].external_id if results else None
    report = ReconciliationReport(record_id=record_id, environment_results=results)
    if record_id is None:
      return report

    try:
      await self._write_environment_record(session, record_id, results)
    except (PersistenceError, VerificationError) as exc:
      logger.warning("Generation record reconciliation degraded record_id=%s: %s", record_id, exc)
      report.warnings.append(str(exc))

    if asset_result is not None:
      try:
        await self._link_asset(session, record_id, asset_result)
        report.asset_linked = True
      except PersistenceError as exc:
        logger.warning("Asset link degraded record_id=%s asset_id=%s: %s", record_id, asset_result.asset_id, exc)
        report.warnings.append(str(exc))
    return report

  async def _write_environment_record(self, session: GenerationSession, record_id: str, results: list[EnvironmentResult]) -> None:
    now = iso_timestamp(self._clock.now())
    fields: dict[str, Any] = {
      "userId": session.user_id,
      "prompt": session.prompt,
      "negativePrompt": session.negative_prompt,
      "styleId": session.style_id,
      "status": "completed",
      "variations": [{"id": item.external_id, "imageUrl": item.image_url, "title": item.title, "prompt": item.prompt} for item in results],
      "imageUrl": results[0].image_url,
      "sessionId": session.session_id,
      "updatedAt": now,
    }

    try:
      existing = await self._documents.get(SKYBOXES_COLLECTION, record_id)
      # Re-reconciling a resumed run keeps the original creation time.
      fields["createdAt"] = (existing or {}).get("createdAt") or now
      await self._documents.upsert(SKYBOXES_COLLECTION, record_id, fields, merge=True)
      stored = await self._documents.get(SKYBOXES_COLLECTION, record_id)
    except Exception as exc:  # noqa: BLE001
      raise PersistenceError(f"Failed to save generation record {record_id}.") from exc

    if stored is None:
      raise VerificationError(f"Generation record {record_id} was not found after saving.")
    if stored.get("userId") != session.user_id:
      raise VerificationError(f"Generation record {record_id} belongs to a different user after saving.")
    if not stored.get("createdAt"):
      raise VerificationError(f"Generation record {record_id} is missing its creation timestamp.")
    logger.info("Generation record saved record_id=%s variations=%d", record_id, len(results))

  async def _link_asset(self, session: GenerationSession, record_id: str, asset: AssetResult) -> None:
    now = iso_timestamp(self._clock.now())
    asset_fields = {
      "userId": session.user_id,
      "skyboxId": record_id,
      "prompt": session.prompt,
      "downloadUrl": asset.url,
      "format": asset.format,
      "status": "completed",
      "metadata": asset.metadata,
      "updatedAt": now,
    }
    link_fields = {"assetId": asset.asset_id, "assetUrl": asset.url, "assetFormat": asset.format, "has3DAsset": True, "updatedAt": now}

    try:
      await self._documents.upsert(ASSETS_COLLECTION, asset.asset_id, asset_fields, merge=True)
      await self._documents.upsert(SKYBOXES_COLLECTION, record_id, link_fields, merge=True)
    except Exception as exc:  # noqa: BLE001
      raise PersistenceError(f"Failed to link 3D asset {asset.asset_id} to generation record {record_id}.") from exc
    logger.info("Asset linked record_id=%s asset_id=%s format=%s", record_id, asset.asset_id, asset.format)
