import logging
import re
import time
import uuid
from typing import Any

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger("genflow.core.middleware")

# Client-supplied ids are echoed into logs, so only short opaque tokens are accepted.
_CLIENT_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{8,64}$")
_QUIET_PATHS = frozenset({"/health"})
_GENERATION_PREFIX = "/v1/generations"


def resolve_request_id(scope: Scope) -> str:
  """Reuse a well-formed x-request-id from the client, else mint one."""
  candidate = Headers(scope=scope).get("x-request-id")
  if candidate and _CLIENT_REQUEST_ID.match(candidate):
    return candidate
  return str(uuid.uuid4())


class RequestLoggingMiddleware:
  """Tag each request with an id and log one access line per response."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    request_id = resolve_request_id(scope)
    scope.setdefault("state", {})["request_id"] = request_id
    method = scope.get("method", "UNKNOWN")
    path = scope.get("path", "")
    started = time.perf_counter()
    status_code = 0

    async def send_wrapper(message: Message) -> None:
      nonlocal status_code
      if message["type"] == "http.response.start":
        status_code = message["status"]
        MutableHeaders(scope=message)["x-request-id"] = request_id
      await send(message)

    try:
      await self.app(scope, receive, send_wrapper)
    finally:
      elapsed_ms = (time.perf_counter() - started) * 1000
      if status_code >= 500 or status_code == 0:
        level = logging.WARNING
      elif path in _QUIET_PATHS:
        level = logging.DEBUG
      else:
        level = logging.INFO
      logger.log(level, "request_id=%s method=%s path=%s status=%s duration_ms=%.1f", request_id, method, path, status_code, elapsed_ms)


class SecurityHeadersMiddleware:
  """Strip server banners; generation snapshots are per-user and must never be cached."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    private = scope.get("path", "").startswith(_GENERATION_PREFIX)

    async def send_wrapper(message: dict[str, Any]) -> None:
      if message["type"] == "http.response.start":
        headers = MutableHeaders(scope=message)
        for name in ("x-powered-by", "server"):
          if name in headers:
            del headers[name]
        headers["x-content-type-options"] = "nosniff"
        if private:
          headers["cache-control"] = "no-store"
      await send(message)

    await self.app(scope, receive, send_wrapper)
