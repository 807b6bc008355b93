import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from genflow.jobs.errors import GenerationConflictError, GenerationError, NetworkError, QuotaExceededError, ValidationError


def _error_payload(detail: Any, *, request_id: str | None = None, code: str | None = None) -> dict[str, Any]:
  """Build a safe error payload that avoids leaking internal details to clients."""
  payload: dict[str, Any] = {"detail": detail}
  if code:
    payload["code"] = code
  # Attach a request id so support can correlate client reports to server logs.
  if request_id:
    payload["requestId"] = request_id
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key not in {"input", "ctx", "url"}}
    sanitized.append({key: (value if isinstance(value, str | int | float | bool | list | type(None)) else str(value)) for key, value in scrubbed.items()})
  return sanitized


def _status_for(exc: GenerationError) -> tuple[int, str]:
  if isinstance(exc, ValidationError):
    return status.HTTP_400_BAD_REQUEST, "validation_error"
  if isinstance(exc, QuotaExceededError):
    return status.HTTP_402_PAYMENT_REQUIRED, "quota_exceeded"
  if isinstance(exc, GenerationConflictError):
    return status.HTTP_409_CONFLICT, "generation_in_progress"
  if isinstance(exc, NetworkError):
    return status.HTTP_503_SERVICE_UNAVAILABLE, "upstream_unavailable"
  return status.HTTP_502_BAD_GATEWAY, "generation_failed"


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  logger = logging.getLogger("uvicorn.error")
  request_id = getattr(request.state, "request_id", None)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors without leaking payloads."""
  request_id = getattr(request.state, "request_id", None)
  sanitized_errors = _sanitize_validation_errors(list(exc.errors()))
  logger = logging.getLogger("uvicorn.error")
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle HTTPExceptions, hiding details of server-side failures."""
  from genflow.config import get_settings

  settings = get_settings()
  request_id = getattr(request.state, "request_id", None)
  if exc.status_code >= 500:
    logger = logging.getLogger("uvicorn.error")
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", request_id=request_id))

  if settings.log_http_4xx:
    logger = logging.getLogger("uvicorn.error")
    logger.warning("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)

  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id), headers=exc.headers)


async def generation_exception_handler(request: Request, exc: GenerationError) -> JSONResponse:
  """Map orchestration errors onto HTTP responses with user-facing messages."""
  request_id = getattr(request.state, "request_id", None)
  status_code, code = _status_for(exc)
  logger = logging.getLogger("uvicorn.error")
  if status_code >= 500:
    logger.warning("Generation failure request_id=%s path=%s error_type=%s error=%s", request_id, request.url.path, type(exc).__name__, exc)
  else:
    logger.info("Generation rejected request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__)

  payload = _error_payload(str(exc), request_id=request_id, code=code)
  if isinstance(exc, QuotaExceededError):
    payload["requested"] = exc.requested
    payload["remaining"] = exc.remaining
  return JSONResponse(status_code=status_code, content=payload)
