"""Quota resolution and consumption for environment generations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

SKYBOX_GENERATIONS = "skyboxGenerations"
SUBSCRIPTIONS_COLLECTION = "subscriptions"

# Monthly environment allowance per plan; None means unlimited.
PLAN_LIMITS: dict[str, int | None] = {"free": 10, "pro": None, "enterprise": None}


@dataclass(frozen=True)
class QuotaSnapshot:
  """Current allowance for one user."""

  plan_id: str
  limit: int | None
  used: int

  @property
  def unlimited(self) -> bool:
    return self.limit is None

  @property
  def remaining(self) -> int | None:
    if self.limit is None:
      return None
    return max(self.limit - self.used, 0)


class QuotaService(Protocol):
  """Contract for reading and debiting environment generation quota."""

  async def get_snapshot(self, user_id: str) -> QuotaSnapshot:
    """Return the user's current plan limit and usage."""

  async def increment_usage(self, user_id: str, amount: int = 1) -> None:
    """Record `amount` successfully created generations."""


def resolve_plan_limit(plan_id: str | None, default_limit: int | None) -> int | None:
  """Map a plan id to its limit, falling back to the configured default for unknown plans."""
  if plan_id is None:
    return default_limit
  return PLAN_LIMITS.get(plan_id.lower(), default_limit)


class InMemoryQuotaService:
  """Process-local quota ledger used in tests and single-node development."""

  def __init__(self, *, default_limit: int | None = 10, plans: dict[str, str] | None = None) -> None:
    self._default_limit = default_limit
    self._plans = dict(plans or {})
    self._usage: dict[str, int] = {}

  def set_plan(self, user_id: str, plan_id: str) -> None:
    self._plans[user_id] = plan_id

  def set_usage(self, user_id: str, used: int) -> None:
    self._usage[user_id] = used

  async def get_snapshot(self, user_id: str) -> QuotaSnapshot:
    plan_id = self._plans.get(user_id)
    limit = resolve_plan_limit(plan_id, self._default_limit)
    return QuotaSnapshot(plan_id=plan_id or "free", limit=limit, used=self._usage.get(user_id, 0))

  async def increment_usage(self, user_id: str, amount: int = 1) -> None:
    self._usage[user_id] = self._usage.get(user_id, 0) + amount


class FirestoreQuotaService:
  """Quota ledger stored on the user's subscription document."""

  def __init__(self, client: Any, *, default_limit: int | None = 10) -> None:
    self._client = client
    self._default_limit = default_limit

  def _document(self, user_id: str) -> Any:
    return self._client.collection(SUBSCRIPTIONS_COLLECTION).document(user_id)

  async def get_snapshot(self, user_id: str) -> QuotaSnapshot:
    snapshot = await run_in_threadpool(self._document(user_id).get)
    data: dict[str, Any] = (snapshot.to_dict() or {}) if snapshot.exists else {}
    plan_id = str(data.get("planId") or "free")
    usage = data.get("usage") or {}
    # Legacy documents stored counters as strings.
    try:
      used = int(usage.get(SKYBOX_GENERATIONS) or 0)
    except (TypeError, ValueError):
      logger.warning("Ignoring malformed usage counter for user_id=%s value=%r", user_id, usage.get(SKYBOX_GENERATIONS))
      used = 0
    return QuotaSnapshot(plan_id=plan_id, limit=resolve_plan_limit(plan_id, self._default_limit), used=used)

  async def increment_usage(self, user_id: str, amount: int = 1) -> None:
    from google.cloud import firestore

    payload = {"usage": {SKYBOX_GENERATIONS: firestore.Increment(amount)}}
    await run_in_threadpool(self._document(user_id).set, payload, merge=True)
