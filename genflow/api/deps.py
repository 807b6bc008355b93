"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from genflow.jobs.coordinator import GenerationOrchestrator


def get_orchestrator(request: Request) -> GenerationOrchestrator:
  """Return the process-wide orchestrator created during startup."""
  orchestrator = getattr(request.app.state, "orchestrator", None)
  if orchestrator is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Generation service is starting up.")
  return orchestrator
