"""Per-user persistence of in-flight generation sessions with TTL and debounced writes."""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Protocol

import msgspec
from starlette.concurrency import run_in_threadpool

from genflow.jobs.errors import PersistenceError
from genflow.jobs.models import GenerationSession, PersistedRecord
from genflow.utils.clock import Clock

logger = logging.getLogger(__name__)

STORAGE_KEY_PREFIX = "create_generation_state"
DEFAULT_TTL_SECONDS = 2 * 60 * 60
CACHE_COLLECTION = "generation_state_cache"

_RECORD_ENCODER = msgspec.json.Encoder()
_RECORD_DECODER = msgspec.json.Decoder(PersistedRecord)


def storage_key(user_id: str) -> str:
  """Return the cache key holding a user's session record."""
  return f"{STORAGE_KEY_PREFIX}_{user_id}"


def encode_record(record: PersistedRecord) -> str:
  return _RECORD_ENCODER.encode(record).decode("utf-8")


def decode_record(raw: str | bytes) -> PersistedRecord:
  return _RECORD_DECODER.decode(raw)


class CacheBackend(Protocol):
  """Single-string-per-key persistent cache."""

  async def get(self, key: str) -> str | None:
    """Return the stored string or None."""

  async def set(self, key: str, value: str) -> None:
    """Store a string under `key`, replacing any previous value."""

  async def delete(self, key: str) -> None:
    """Remove `key` if present."""


class InMemoryCacheBackend:
  """Process-local cache backend."""

  def __init__(self) -> None:
    self.values: dict[str, str] = {}
    self.write_count = 0

  async def get(self, key: str) -> str | None:
    return self.values.get(key)

  async def set(self, key: str, value: str) -> None:
    self.write_count += 1
    self.values[key] = value

  async def delete(self, key: str) -> None:
    self.values.pop(key, None)


class FirestoreCacheBackend:
  """Cache backend storing each key as one Firestore document with a `value` field."""

  def __init__(self, client: Any, *, collection: str = CACHE_COLLECTION) -> None:
    self._client = client
    self._collection = collection

  def _document(self, key: str) -> Any:
    return self._client.collection(self._collection).document(key)

  async def get(self, key: str) -> str | None:
    snapshot = await run_in_threadpool(self._document(key).get)
    if not snapshot.exists:
      return None
    value = (snapshot.to_dict() or {}).get("value")
    return value if isinstance(value, str) else None

  async def set(self, key: str, value: str) -> None:
    await run_in_threadpool(self._document(key).set, {"value": value})

  async def delete(self, key: str) -> None:
    await run_in_threadpool(self._document(key).delete)


class SessionStore:
  """Load, save and clear the persisted session record for a user."""

  def __init__(self, backend: CacheBackend, *, clock: Clock, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
    self._backend = backend
    self._clock = clock
    self._ttl_seconds = ttl_seconds

  @property
  def ttl_seconds(self) -> float:
    return self._ttl_seconds

  async def load(self, user_id: str) -> GenerationSession | None:
    """Return the user's resumable session, discarding stale, inactive or unreadable records."""
    key = storage_key(user_id)
    try:
      raw = await self._backend.get(key)
    except Exception as exc:  # noqa: BLE001
      raise PersistenceError(f"Failed to load generation state for user {user_id}.") from exc
    if raw is None:
      return None

    try:
      record = decode_record(raw)
    except msgspec.DecodeError:
      logger.warning("Discarding unreadable generation state user_id=%s", user_id, exc_info=True)
      await self._discard(key)
      return None

    age = self._clock.now() - record.timestamp
    if age > self._ttl_seconds:
      logger.info("Discarding expired generation state user_id=%s age_seconds=%.0f", user_id, age)
      await self._discard(key)
      return None

    state = record.state
    if state.user_id != user_id:
      logger.warning("Discarding generation state stored under the wrong user user_id=%s owner=%s", user_id, state.user_id)
      await self._discard(key)
      return None

    # Keep the record only while it is running or still carries the user's in-flight selection.
    if not (state.is_active or state.has_resumable_selection):
      await self._discard(key)
      return None

    return state

  async def save(self, user_id: str, session: GenerationSession) -> None:
    record = PersistedRecord(state=session, timestamp=self._clock.now())
    try:
      await self._backend.set(storage_key(user_id), encode_record(record))
    except Exception as exc:  # noqa: BLE001
      raise PersistenceError(f"Failed to save generation state for user {user_id}.") from exc

  async def clear(self, user_id: str) -> None:
    try:
      await self._backend.delete(storage_key(user_id))
    except Exception as exc:  # noqa: BLE001
      raise PersistenceError(f"Failed to clear generation state for user {user_id}.") from exc

  async def _discard(self, key: str) -> None:
    try:
      await self._backend.delete(key)
    except Exception:  # noqa: BLE001
      logger.warning("Failed to delete stale generation state key=%s", key, exc_info=True)


class DebouncedSessionWriter:
  """Coalesce frequent session saves into at most one write per delay window per user.

  Persistence failures are logged and never reach the orchestration.
  """

  def __init__(self, store: SessionStore, *, clock: Clock, delay_seconds: float = 0.5) -> None:
    self._store = store
    self._clock = clock
    self._delay_seconds = delay_seconds
    self._pending: dict[str, GenerationSession] = {}
    self._timers: dict[str, asyncio.Task[None]] = {}
    # One save per user at a time; discard waits on it so a cleared record stays cleared.
    self._locks: dict[str, asyncio.Lock] = {}

  @property
  def store(self) -> SessionStore:
    return self._store

  def schedule(self, session: GenerationSession) -> None:
    """Queue a snapshot of `session`; the latest snapshot within the window wins."""
    user_id = session.user_id
    self._pending[user_id] = copy.deepcopy(session)
    timer = self._timers.get(user_id)
    if timer is None or timer.done():
      self._timers[user_id] = asyncio.create_task(self._write_after_delay(user_id))

  async def flush(self, user_id: str) -> None:
    """Write any pending snapshot now."""
    self._cancel_timer(user_id)
    await self._write(user_id)

  async def discard(self, user_id: str) -> None:
    """Drop pending writes and wait out a save already in flight, e.g. before a reset clears the record."""
    self._cancel_timer(user_id)
    self._pending.pop(user_id, None)
    async with self._lock(user_id):
      pass

  async def aclose(self) -> None:
    for user_id in list(self._pending):
      await self.flush(user_id)

  def _cancel_timer(self, user_id: str) -> None:
    timer = self._timers.pop(user_id, None)
    if timer is not None and not timer.done():
      timer.cancel()

  async def _write_after_delay(self, user_id: str) -> None:
    await self._clock.sleep(self._delay_seconds)
    # Detach before writing so a concurrent flush cannot cancel an in-progress save.
    if self._timers.get(user_id) is asyncio.current_task():
      self._timers.pop(user_id, None)
    await self._write(user_id)

  def _lock(self, user_id: str) -> asyncio.Lock:
    return self._locks.setdefault(user_id, asyncio.Lock())

  async def _write(self, user_id: str) -> None:
    async with self._lock(user_id):
      session = self._pending.pop(user_id, None)
      if session is None:
        return
      try:
        await self._store.save(user_id, session)
      except PersistenceError:
        logger.warning("Generation state save failed user_id=%s session_id=%s", user_id, session.session_id, exc_info=True)
