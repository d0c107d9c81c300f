"""Document store contract shared by the remote backends and the in-memory store."""

from __future__ import annotations

import copy
import enum
import logging
import random
import string
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from services.timestamps import Timestamp

LOGGER = logging.getLogger(__name__)

AUTO_ID_ALPHABET = string.ascii_letters + string.digits
AUTO_ID_LENGTH = 20
MAX_BATCH_WRITES = 500


class StoreErrorKind(enum.Enum):
    PERMISSION_DENIED = "permission_denied"
    MISSING_INDEX = "missing_index"
    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    OTHER = "other"


class StoreError(Exception):
    """Raised when the document store rejects or fails an operation."""

    def __init__(self, kind: StoreErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value

    def __repr__(self) -> str:
        return f"StoreError({self.kind.name}, {self.message!r})"


def classify_error_message(text: Optional[str]) -> StoreErrorKind:
    """Best-effort classification of a raw backend error message."""

    lowered = (text or "").lower()
    if "permission" in lowered or "insufficient permissions" in lowered or "unauthenticated" in lowered:
        return StoreErrorKind.PERMISSION_DENIED
    if "requires an index" in lowered or "create_composite" in lowered:
        return StoreErrorKind.MISSING_INDEX
    if "not found" in lowered or "no document to update" in lowered:
        return StoreErrorKind.NOT_FOUND
    if "unavailable" in lowered or "deadline" in lowered or "timed out" in lowered:
        return StoreErrorKind.TRANSPORT
    return StoreErrorKind.OTHER


class _ServerTimestamp:
    """Sentinel replaced by the store's own clock when a write is applied."""

    _instance: Optional["_ServerTimestamp"] = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    def __deepcopy__(self, memo: Dict[int, Any]) -> "_ServerTimestamp":
        return self


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass
class StoredDocument:
    id: str
    data: Dict[str, Any]


SnapshotCallback = Callable[[List[StoredDocument]], None]
ErrorCallback = Callable[[StoreError], None]


class ListenerHandle:
    """Owns the delivery side of a live query.

    Snapshots tagged with a version older than the last delivered one are
    dropped. ``on_error`` fires at most once and ends delivery. After
    :meth:`unsubscribe` returns no callback runs again; it may be called from
    inside a callback.
    """

    def __init__(self, on_snapshot: SnapshotCallback, on_error: Optional[ErrorCallback] = None):
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._lock = threading.RLock()
        self._active = True
        self._last_version: Any = None
        self._detach: Optional[Callable[[], None]] = None

    @property
    def active(self) -> bool:
        return self._active

    def bind(self, detach: Callable[[], None]) -> None:
        self._detach = detach

    def deliver(self, documents: List[StoredDocument], version: Any) -> bool:
        with self._lock:
            if not self._active:
                return False
            if self._last_version is not None and version is not None and version < self._last_version:
                LOGGER.debug("Dropping stale snapshot version %s (last %s)", version, self._last_version)
                return False
            self._last_version = version
            self._on_snapshot(documents)
            return True

    def fail(self, error: StoreError) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
            callback = self._on_error
            self._on_error = None
            try:
                if callback is not None:
                    callback(error)
            finally:
                self._release()

    def unsubscribe(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
            self._release()

    def __call__(self) -> None:
        self.unsubscribe()

    def _release(self) -> None:
        detach, self._detach = self._detach, None
        if detach is not None:
            detach()


class WriteBatch(Protocol):
    def create(self, collection: str, data: Dict[str, Any]) -> str:
        ...

    def commit(self) -> None:
        ...


class DocumentStore(Protocol):
    """Operations the collection and migration services need from a backend."""

    def query(self, collection: str, field: str, value: Any) -> List[StoredDocument]:
        ...

    def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        ...

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        ...

    def update(self, collection: str, doc_id: str, patch: Dict[str, Any]) -> None:
        ...

    def delete(self, collection: str, doc_id: str) -> None:
        ...

    def listen(
        self,
        collection: str,
        field: str,
        value: Any,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> ListenerHandle:
        ...

    def batch(self) -> WriteBatch:
        ...


# ----------------------------------------------------------------------
# In-memory backend
# ----------------------------------------------------------------------


def generate_auto_id(rng: Optional[random.Random] = None) -> str:
    chooser = rng or random.SystemRandom()
    return "".join(chooser.choice(AUTO_ID_ALPHABET) for _ in range(AUTO_ID_LENGTH))


def _resolve_sentinels(value: Any, stamp: Timestamp) -> Any:
    if value is SERVER_TIMESTAMP:
        return stamp
    if isinstance(value, dict):
        return {key: _resolve_sentinels(entry, stamp) for key, entry in value.items()}
    if isinstance(value, list):
        return [_resolve_sentinels(entry, stamp) for entry in value]
    return value


@dataclass
class _Listener:
    collection: str
    field: str
    value: Any
    handle: ListenerHandle
    last_state: Optional[List[Tuple[str, Dict[str, Any]]]] = None


class InMemoryBatch:
    def __init__(self, store: "InMemoryDocumentStore"):
        self._store = store
        self._writes: List[Tuple[str, str, Dict[str, Any]]] = []
        self._committed = False

    def create(self, collection: str, data: Dict[str, Any]) -> str:
        if self._committed:
            raise StoreError(StoreErrorKind.OTHER, "Batch already committed")
        doc_id = self._store.new_id()
        self._writes.append((collection, doc_id, copy.deepcopy(data)))
        return doc_id

    def __len__(self) -> int:
        return len(self._writes)

    def commit(self) -> None:
        if self._committed:
            raise StoreError(StoreErrorKind.OTHER, "Batch already committed")
        self._committed = True
        self._store._commit_batch(self._writes)


class InMemoryDocumentStore:
    """Thread-safe, process-local document store.

    Used for development, for the test-suite and as the reference
    implementation of :class:`DocumentStore` semantics.
    """

    def __init__(self, *, seed: Optional[int] = None, max_batch_writes: int = MAX_BATCH_WRITES):
        self._lock = threading.RLock()
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._listeners: List[_Listener] = []
        self._version = 0
        self._rng = random.Random(seed) if seed is not None else None
        self._failures: List[Dict[str, Any]] = []
        self.max_batch_writes = max_batch_writes

    # ------------------------------------------------------------------
    # Fault injection
    # ------------------------------------------------------------------
    def inject_failure(
        self,
        operation: str,
        error: StoreError,
        *,
        collection: Optional[str] = None,
        times: int = 1,
    ) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``.

        ``operation`` is one of query, get, add, update, delete, listen, commit.
        """
        with self._lock:
            self._failures.append(
                {"operation": operation, "collection": collection, "error": error, "remaining": times}
            )

    def clear_failures(self) -> None:
        with self._lock:
            self._failures.clear()

    def break_listeners(self, error: StoreError, *, collection: Optional[str] = None) -> int:
        """Terminate live listeners as a sustained transport failure would."""
        with self._lock:
            targets = [
                listener
                for listener in self._listeners
                if collection is None or listener.collection == collection
            ]
            self._listeners = [listener for listener in self._listeners if listener not in targets]
        for listener in targets:
            listener.handle.fail(error)
        return len(targets)

    def _check_failure(self, operation: str, collection: Optional[str]) -> None:
        with self._lock:
            for entry in self._failures:
                if entry["operation"] != operation:
                    continue
                if entry["collection"] is not None and entry["collection"] != collection:
                    continue
                entry["remaining"] -= 1
                if entry["remaining"] <= 0:
                    self._failures.remove(entry)
                raise entry["error"]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def new_id(self) -> str:
        with self._lock:
            existing = {doc_id for docs in self._collections.values() for doc_id in docs}
            while True:
                candidate = generate_auto_id(self._rng)
                if candidate not in existing:
                    return candidate

    def query(self, collection: str, field: str, value: Any) -> List[StoredDocument]:
        self._check_failure("query", collection)
        with self._lock:
            return [StoredDocument(doc_id, copy.deepcopy(data)) for doc_id, data in self._matching(collection, field, value)]

    def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        self._check_failure("get", collection)
        with self._lock:
            data = self._collections.get(collection, {}).get(doc_id)
            if data is None:
                return None
            return StoredDocument(doc_id, copy.deepcopy(data))

    def count(self, collection: Optional[str] = None) -> int:
        with self._lock:
            if collection is not None:
                return len(self._collections.get(collection, {}))
            return sum(len(docs) for docs in self._collections.values())

    def _matching(self, collection: str, field: str, value: Any) -> List[Tuple[str, Dict[str, Any]]]:
        documents = self._collections.get(collection, {})
        return [(doc_id, data) for doc_id, data in documents.items() if data.get(field) == value]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def add(self, collection: str, data: Dict[str, Any]) -> str:
        self._check_failure("add", collection)
        with self._lock:
            doc_id = self.new_id()
            stamp = Timestamp.now()
            self._collections.setdefault(collection, {})[doc_id] = _resolve_sentinels(copy.deepcopy(data), stamp)
            pending = self._advance({collection})
        self._dispatch(pending)
        return doc_id

    def update(self, collection: str, doc_id: str, patch: Dict[str, Any]) -> None:
        self._check_failure("update", collection)
        with self._lock:
            current = self._collections.get(collection, {}).get(doc_id)
            if current is None:
                raise StoreError(StoreErrorKind.NOT_FOUND, f"No document to update: {collection}/{doc_id}")
            stamp = Timestamp.now()
            current.update(_resolve_sentinels(copy.deepcopy(patch), stamp))
            pending = self._advance({collection})
        self._dispatch(pending)

    def delete(self, collection: str, doc_id: str) -> None:
        self._check_failure("delete", collection)
        with self._lock:
            removed = self._collections.get(collection, {}).pop(doc_id, None)
            if removed is None:
                return
            pending = self._advance({collection})
        self._dispatch(pending)

    def batch(self) -> InMemoryBatch:
        return InMemoryBatch(self)

    def _commit_batch(self, writes: List[Tuple[str, str, Dict[str, Any]]]) -> None:
        if len(writes) > self.max_batch_writes:
            raise StoreError(
                StoreErrorKind.OTHER,
                f"Batch of {len(writes)} writes exceeds the limit of {self.max_batch_writes}",
            )
        self._check_failure("commit", None)
        with self._lock:
            stamp = Timestamp.now()
            touched = set()
            for collection, doc_id, data in writes:
                self._collections.setdefault(collection, {})[doc_id] = _resolve_sentinels(data, stamp)
                touched.add(collection)
            pending = self._advance(touched)
        self._dispatch(pending)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def listen(
        self,
        collection: str,
        field: str,
        value: Any,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> ListenerHandle:
        self._check_failure("listen", collection)
        handle = ListenerHandle(on_snapshot, on_error)
        listener = _Listener(collection, field, value, handle)
        with self._lock:
            self._listeners.append(listener)
            listener.last_state = self._state_for(listener)
            initial = (handle, self._documents_for(listener), self._version)
        handle.bind(lambda: self._detach(listener))
        self._dispatch([initial])
        return handle

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _detach(self, listener: _Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _state_for(self, listener: _Listener) -> List[Tuple[str, Dict[str, Any]]]:
        return sorted(
            (doc_id, copy.deepcopy(data))
            for doc_id, data in self._matching(listener.collection, listener.field, listener.value)
        )

    def _documents_for(self, listener: _Listener) -> List[StoredDocument]:
        return [StoredDocument(doc_id, copy.deepcopy(data)) for doc_id, data in listener.last_state or []]

    def _advance(self, collections: set) -> List[Tuple[ListenerHandle, List[StoredDocument], int]]:
        self._version += 1
        pending = []
        for listener in self._listeners:
            if listener.collection not in collections:
                continue
            state = self._state_for(listener)
            if state == listener.last_state:
                continue
            listener.last_state = state
            pending.append((listener.handle, self._documents_for(listener), self._version))
        return pending

    def _dispatch(self, pending: List[Tuple[ListenerHandle, List[StoredDocument], int]]) -> None:
        for handle, documents, version in pending:
            handle.deliver(documents, version)


__all__ = [
    "DocumentStore",
    "InMemoryBatch",
    "InMemoryDocumentStore",
    "ListenerHandle",
    "MAX_BATCH_WRITES",
    "SERVER_TIMESTAMP",
    "StoreError",
    "StoreErrorKind",
    "StoredDocument",
    "WriteBatch",
    "classify_error_message",
    "generate_auto_id",
]
