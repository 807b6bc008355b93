import logging

from fastapi import APIRouter, Depends, HTTPException, status

from genflow.api.deps import get_orchestrator
from genflow.api.models import GenerationCreateRequest, GenerationSnapshotResponse, ResetResponse
from genflow.core.security import get_current_user_id
from genflow.jobs.coordinator import GenerationOrchestrator, GenerationRequest
from genflow.jobs.progress import build_snapshot

router = APIRouter()
logger = logging.getLogger("genflow.api.routes.generations")


@router.post("", response_model=GenerationSnapshotResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_generation(  # noqa: B008
  payload: GenerationCreateRequest,
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  orchestrator: GenerationOrchestrator = Depends(get_orchestrator),  # noqa: B008
) -> GenerationSnapshotResponse:
  """Validate the request, then run the generation in the background."""
  request = GenerationRequest(
    prompt=payload.prompt,
    style_id=payload.style_id,
    negative_prompt=payload.negative_prompt,
    num_variations=payload.num_variations,
    generate_asset=payload.generate_asset,
    asset_quality=payload.asset_quality,
  )
  session = await orchestrator.launch(user_id, request, orchestrator.asset_capabilities(user_authenticated=True))
  logger.info("Generation accepted user_id=%s session_id=%s variations=%d", user_id, session.session_id, session.num_variations)
  return GenerationSnapshotResponse.model_validate(build_snapshot(session))


@router.get("/current", response_model=GenerationSnapshotResponse)
async def get_current_generation(  # noqa: B008
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  orchestrator: GenerationOrchestrator = Depends(get_orchestrator),  # noqa: B008
) -> GenerationSnapshotResponse:
  """Return progress of the caller's active or recently finished generation."""
  snapshot = await orchestrator.snapshot(user_id)
  if snapshot is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No generation in progress.")
  return GenerationSnapshotResponse.model_validate(snapshot)


@router.post("/current/resume", response_model=GenerationSnapshotResponse, status_code=status.HTTP_202_ACCEPTED)
async def resume_generation(  # noqa: B008
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  orchestrator: GenerationOrchestrator = Depends(get_orchestrator),  # noqa: B008
) -> GenerationSnapshotResponse:
  """Continue polling a persisted generation after a restart or reconnect."""
  session = await orchestrator.resume(user_id)
  if session is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No resumable generation.")
  return GenerationSnapshotResponse.model_validate(build_snapshot(session))


@router.delete("/current", response_model=ResetResponse)
async def reset_generation(  # noqa: B008
  user_id: str = Depends(get_current_user_id),  # noqa: B008
  orchestrator: GenerationOrchestrator = Depends(get_orchestrator),  # noqa: B008
) -> ResetResponse:
  """Stop the caller's generation and discard its saved state."""
  was_active = await orchestrator.reset(user_id)
  return ResetResponse(reset=was_active)
