"""Validation, quota checks and remote submission for generation jobs."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from genflow.jobs.errors import QuotaExceededError, ValidationError
from genflow.jobs.models import EnvironmentJob
from genflow.services.asset_client import AssetApi, AssetGenerationResult, AssetProgressCallback
from genflow.services.quotas import QuotaService
from genflow.services.skybox_client import EnvironmentApi

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 1000
MIN_VARIATIONS = 1
MAX_VARIATIONS = 10

JobCreatedCallback = Callable[[EnvironmentJob, int], None]


@dataclass(frozen=True)
class AssetCapabilities:
  """Preconditions for running the 3D asset pipeline."""

  asset_service_configured: bool
  storage_available: bool
  user_authenticated: bool


def _coerce_style_id(style_id: object) -> int:
  # Booleans are ints in Python but never a valid style selection.
  if isinstance(style_id, bool):
    raise ValidationError("Please select a valid style.")
  if isinstance(style_id, int):
    resolved = style_id
  elif isinstance(style_id, str) and style_id.strip().isdigit():
    resolved = int(style_id.strip())
  else:
    raise ValidationError("Please select a valid style.")
  if resolved <= 0:
    raise ValidationError("Please select a valid style.")
  return resolved


def validate_request(prompt: str | None, style_id: object, num_variations: int) -> tuple[str, int]:
  """Normalize a generation request or raise ValidationError before any remote call."""

  normalized_prompt = (prompt or "").strip()
  if not normalized_prompt:
    raise ValidationError("Please enter a prompt for your skybox.")
  if len(normalized_prompt) > MAX_PROMPT_LENGTH:
    raise ValidationError(f"Prompt must be {MAX_PROMPT_LENGTH} characters or fewer.")

  resolved_style = _coerce_style_id(style_id)

  if isinstance(num_variations, bool) or not isinstance(num_variations, int):
    raise ValidationError("Number of variations must be an integer.")
  if num_variations < MIN_VARIATIONS or num_variations > MAX_VARIATIONS:
    raise ValidationError(f"Number of variations must be between {MIN_VARIATIONS} and {MAX_VARIATIONS}.")

  return normalized_prompt, resolved_style


async def check_quota(quotas: QuotaService, user_id: str, num_variations: int) -> int | None:
  """Return the remaining allowance, raising QuotaExceededError when the request does not fit."""

  snapshot = await quotas.get_snapshot(user_id)
  remaining = snapshot.remaining
  if remaining is not None and num_variations > remaining:
    raise QuotaExceededError(requested=num_variations, remaining=remaining)
  return remaining


async def submit_environment_job(api: EnvironmentApi, quotas: QuotaService, *, user_id: str, prompt: str, style_id: int, negative_prompt: str | None) -> EnvironmentJob:
  """Create one remote environment job and debit quota once it exists."""

  generation_id = await api.submit(prompt=prompt, style_id=style_id, negative_prompt=negative_prompt, user_id=user_id)
  job = EnvironmentJob(external_id=generation_id)

  # Usage is counted per created job; a failed submission never reaches this point.
  try:
    await quotas.increment_usage(user_id, 1)
  except Exception:  # noqa: BLE001
    # A created remote job is always returned, even when the debit fails.
    logger.warning("Quota debit failed user_id=%s external_id=%s", user_id, generation_id, exc_info=True)
  logger.info("Environment job created user_id=%s external_id=%s", user_id, generation_id)
  return job


async def submit_environment_batch(
  api: EnvironmentApi,
  quotas: QuotaService,
  *,
  user_id: str,
  prompt: str,
  style_id: object,
  negative_prompt: str | None,
  num_variations: int,
  on_created: JobCreatedCallback | None = None,
) -> list[EnvironmentJob]:
  """Validate, check quota and submit `num_variations` jobs strictly in order.

  The first failing submission aborts the batch and propagates. Jobs created before it are
  left running remotely and stay debited; callers can still see them through `on_created`.
  """

  normalized_prompt, resolved_style = validate_request(prompt, style_id, num_variations)
  await check_quota(quotas, user_id, num_variations)

  jobs: list[EnvironmentJob] = []
  for index in range(num_variations):
    try:
      job = await submit_environment_job(api, quotas, user_id=user_id, prompt=normalized_prompt, style_id=resolved_style, negative_prompt=negative_prompt)
    except Exception:
      if jobs:
        logger.warning("Environment batch aborted after %d of %d jobs user_id=%s orphaned=%s", len(jobs), num_variations, user_id, [item.external_id for item in jobs])
      raise
    jobs.append(job)
    if on_created is not None:
      on_created(job, index)
  return jobs


def check_asset_capability(capabilities: AssetCapabilities) -> str | None:
  """Return why the asset pipeline cannot run, or None when it can."""

  if not capabilities.user_authenticated:
    return "3D asset generation requires a signed-in user."
  if not capabilities.asset_service_configured:
    return "3D asset generation service is not configured."
  if not capabilities.storage_available:
    return "3D asset storage is not available."
  return None


async def submit_asset_job(api: AssetApi, *, prompt: str, user_id: str, related_skybox_id: str | None, quality: str, max_assets: int, on_progress: AssetProgressCallback) -> AssetGenerationResult:
  """Run the asset generation call; progress arrives through `on_progress`."""

  logger.info("Asset job started user_id=%s related_id=%s quality=%s", user_id, related_skybox_id, quality)
  return await api.generate(prompt=prompt, user_id=user_id, related_id=related_skybox_id, quality=quality, max_assets=max_assets, on_progress=on_progress)
