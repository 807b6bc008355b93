import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from genflow.core.firebase import initialize_firebase
from genflow.core.logging import initialize_logging
from genflow.services.factory import build_orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Initialize logging, Firebase and the orchestrator; drain background work on shutdown."""
  from genflow.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("genflow.core.lifespan")

  try:
    initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
  except RuntimeError:
    # Keep serving with the default handlers when the log directory is not writable.
    logger.warning("Logging setup failed; continuing with default handlers.", exc_info=True)

  if settings.firebase_project_id:
    initialize_firebase()

  # Tests may pre-install an orchestrator with fakes.
  if getattr(app.state, "orchestrator", None) is None:
    app.state.orchestrator = build_orchestrator(settings)
  logger.info("Generation orchestrator ready environment=%s session_store=%s", settings.environment, settings.session_store_provider)

  try:
    yield
  finally:
    await app.state.orchestrator.aclose()
    logger.info("Generation orchestrator stopped.")
