"""Durable document store used for generation results and asset records."""

from __future__ import annotations

import copy
from typing import Any, Protocol

from starlette.concurrency import run_in_threadpool

SKYBOXES_COLLECTION = "skyboxes"
ASSETS_COLLECTION = "generated_assets"


class DocumentStore(Protocol):
  """Repository contract for the durable result store."""

  async def upsert(self, collection: str, doc_id: str, fields: dict[str, Any], *, merge: bool = True) -> None:
    """Create or update a document; with `merge` nested maps are merged instead of replaced."""

  async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
    """Fetch a document's fields, or None when it does not exist."""


def _deep_merge(target: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
  for key, value in updates.items():
    existing = target.get(key)
    if isinstance(existing, dict) and isinstance(value, dict):
      target[key] = _deep_merge(dict(existing), value)
    else:
      target[key] = copy.deepcopy(value)
  return target


class InMemoryDocumentStore:
  """Dictionary-backed store with Firestore-like merge semantics."""

  def __init__(self) -> None:
    self._collections: dict[str, dict[str, dict[str, Any]]] = {}

  async def upsert(self, collection: str, doc_id: str, fields: dict[str, Any], *, merge: bool = True) -> None:
    documents = self._collections.setdefault(collection, {})
    if merge and doc_id in documents:
      documents[doc_id] = _deep_merge(dict(documents[doc_id]), fields)
    else:
      documents[doc_id] = copy.deepcopy(fields)

  async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
    document = self._collections.get(collection, {}).get(doc_id)
    return copy.deepcopy(document) if document is not None else None


class FirestoreDocumentStore:
  """Firestore-backed store; blocking SDK calls run in the threadpool."""

  def __init__(self, client: Any) -> None:
    self._client = client

  async def upsert(self, collection: str, doc_id: str, fields: dict[str, Any], *, merge: bool = True) -> None:
    reference = self._client.collection(collection).document(doc_id)
    await run_in_threadpool(reference.set, fields, merge=merge)

  async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
    reference = self._client.collection(collection).document(doc_id)
    snapshot = await run_in_threadpool(reference.get)
    if not snapshot.exists:
      return None
    return snapshot.to_dict() or {}
