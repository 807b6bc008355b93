from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from genflow.api.routes import generations
from genflow.config import get_settings
from genflow.core.exceptions import generation_exception_handler, global_exception_handler, http_exception_handler, request_validation_exception_handler
from genflow.core.lifespan import lifespan
from genflow.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from genflow.jobs.errors import GenerationError

VERSION = "0.1.0"


def create_app() -> FastAPI:
  """Build the FastAPI application."""
  settings = get_settings()
  app = FastAPI(title="genflow", version=VERSION, lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None if settings.environment == "production" else "/openapi.json")

  app.add_middleware(CORSMiddleware, allow_origins=list(settings.allowed_origins), allow_credentials=True, allow_methods=["GET", "POST", "DELETE", "OPTIONS"], allow_headers=["content-type", "authorization"], expose_headers=["content-length", "x-request-id"])

  # Add exception handlers
  app.add_exception_handler(Exception, global_exception_handler)
  app.add_exception_handler(HTTPException, http_exception_handler)
  app.add_exception_handler(GenerationError, generation_exception_handler)
  app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

  # Add middleware
  app.add_middleware(RequestLoggingMiddleware)
  app.add_middleware(SecurityHeadersMiddleware)

  @app.get("/health", include_in_schema=False)
  async def health_check() -> dict[str, str]:
    """Return a simple health status."""
    return {"status": "ok", "version": VERSION}

  app.include_router(generations.router, prefix="/v1/generations", tags=["generations"])
  return app


app = create_app()
