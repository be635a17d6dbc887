"""Durable key-value store with change subscription.

Values must be JSON-serializable and are stored serialized, so readers always
get an independent copy. Subscribers receive every change with the origin of
the writer; filtering out one's own writes is the subscriber's job.

``set_async`` runs the write in the threadpool and notifies subscribers back
on the calling loop, for callers that must not block it.
"""

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from leadflow.logging_config import get_logger
from leadflow.models.kv_entry import KeyValueEntry
from leadflow.services.timers import Clock, utc_now

logger = get_logger("kv_store")


@dataclass(frozen=True)
class KeyChange:
    key: str
    value: Optional[Any]  # None when deleted
    origin: Optional[str] = None


ChangeCallback = Callable[[KeyChange], None]


class KeyValueStore(ABC):
    # False only for stores whose calls never leave the process
    blocking_io = True

    def __init__(self) -> None:
        self._subscribers: list[ChangeCallback] = []

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    def _write(self, key: str, value: Any, origin: Optional[str]) -> Any:
        """Persist ``value`` and return the stored copy. Must not notify."""

    def set(self, key: str, value: Any, origin: Optional[str] = None) -> None:
        stored = self._write(key, value, origin)
        self._notify(KeyChange(key=key, value=stored, origin=origin))

    async def set_async(self, key: str, value: Any, origin: Optional[str] = None) -> None:
        stored = await run_in_threadpool(self._write, key, value, origin)
        self._notify(KeyChange(key=key, value=stored, origin=origin))

    @abstractmethod
    def delete(self, key: str, origin: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        pass

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register a change callback. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, change: KeyChange) -> None:
        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception as exc:
                logger.error(
                    "KV change subscriber failed",
                    extra={"context": {"key": change.key, "error": str(exc)}},
                )


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store. Share one instance between engines to simulate tabs."""

    blocking_io = False

    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def _write(self, key: str, value: Any, origin: Optional[str]) -> Any:
        raw = json.dumps(value)
        with self._lock:
            self._data[key] = raw
        return json.loads(raw)

    def delete(self, key: str, origin: Optional[str] = None) -> None:
        with self._lock:
            existed = self._data.pop(key, None) is not None
        if existed:
            self._notify(KeyChange(key=key, value=None, origin=origin))

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [key for key in self._data if key.startswith(prefix)]


class SqlKeyValueStore(KeyValueStore):
    """Store backed by the ``kv_entries`` table. Change callbacks are process-local."""

    def __init__(self, session_factory: Callable[[], Session], clock: Clock = utc_now):
        super().__init__()
        self.session_factory = session_factory
        self.clock = clock

    def get(self, key: str) -> Optional[Any]:
        db = self.session_factory()
        try:
            entry = db.get(KeyValueEntry, key)
            return json.loads(json.dumps(entry.value)) if entry is not None else None
        finally:
            db.close()

    def _write(self, key: str, value: Any, origin: Optional[str]) -> Any:
        stored = json.loads(json.dumps(value))
        db = self.session_factory()
        try:
            entry = db.get(KeyValueEntry, key)
            if entry is None:
                entry = KeyValueEntry(key=key)
                db.add(entry)
            entry.value = stored
            entry.origin = origin
            entry.updated_at = self.clock()
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return stored

    def delete(self, key: str, origin: Optional[str] = None) -> None:
        db = self.session_factory()
        try:
            deleted = db.query(KeyValueEntry).filter(KeyValueEntry.key == key).delete()
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        if deleted:
            self._notify(KeyChange(key=key, value=None, origin=origin))

    def keys(self, prefix: str = "") -> list[str]:
        db = self.session_factory()
        try:
            query = db.query(KeyValueEntry.key)
            if prefix:
                query = query.filter(KeyValueEntry.key.startswith(prefix, autoescape=True))
            return [row[0] for row in query.all()]
        finally:
            db.close()

