"""Per-owner aggregation of the six entity collections behind one CRUD facade.

The hub owns the session state machine::

    uninitialized -> initializing -> ready | degraded-local | error

``initialize_data`` fetches every collection concurrently and then attaches
one live subscription per collection. Remote failures are classified and kept
as state (:class:`HubError`) instead of being raised, so callers can render
them and pick a recovery: ``use_local_mode()`` or another ``initialize_data()``.
In degraded-local mode the same facade mutates a private in-memory copy of the
local dataset and never contacts the store.
"""

from __future__ import annotations

import copy
import enum
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from services.analytics import AnalyticsReport, compute_analytics
from services.entities import EntityCollectionService, VendorProfileService, build_collection_services
from services.local_data import LIST_COLLECTIONS, LocalDataset, default_vendor_info, sample_dataset
from services.migration import MigrationResult, MigrationService
from services.records import (
    CONTACTS,
    ENTITY_COLLECTIONS,
    NOTES,
    ORDERS,
    PRODUCTS,
    REMINDERS,
    VENDOR_INFO,
    get_schema,
)
from services.store import DocumentStore, ListenerHandle, StoreError, StoreErrorKind

LOGGER = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local-"

HubListener = Callable[["DataHub"], None]


class HubState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED_LOCAL = "degraded-local"
    ERROR = "error"


class NotAuthenticated(Exception):
    """Raised when an operation needs an owner session and none is active."""


class HubStateError(RuntimeError):
    """Raised when a mutation is attempted while the hub cannot serve it."""


_ERROR_MESSAGES = {
    "permission_denied": (
        "Permission denied: the database security rules do not allow this account to read its data. "
        "Update the Firestore rules so authenticated users can access their own documents."
    ),
    "missing_index": (
        "Database setup required: a query needs an index that does not exist yet. "
        "Create the index linked in the server log from the Firebase console."
    ),
}


@dataclass(frozen=True)
class HubError:
    """Classified failure kept in hub state for the presentation layer."""

    kind: str
    message: str
    source: Optional[str] = None
    cause: Optional[BaseException] = field(default=None, compare=False, repr=False)
    recovery: Tuple[str, ...] = ("use_local_mode", "retry")

    @classmethod
    def from_exception(cls, exc: BaseException, source: Optional[str] = None) -> "HubError":
        kind = "other"
        if isinstance(exc, StoreError):
            if exc.kind is StoreErrorKind.PERMISSION_DENIED:
                kind = "permission_denied"
            elif exc.kind is StoreErrorKind.MISSING_INDEX:
                kind = "missing_index"
        message = _ERROR_MESSAGES.get(kind) or f"Error loading data: {exc}"
        return cls(kind=kind, message=message, source=source, cause=exc)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "source": self.source,
            "recovery": list(self.recovery),
            "detail": str(self.cause) if self.cause is not None else None,
        }


class CrudBackend(Protocol):
    """Mutation surface shared by the remote and local data sources."""

    def add(self, collection: str, data: Mapping[str, Any]) -> str:
        ...

    def update(self, collection: str, doc_id: str, patch: Mapping[str, Any]) -> None:
        ...

    def delete(self, collection: str, doc_id: str) -> None:
        ...

    def set_vendor_info(self, info: Mapping[str, Any]) -> str:
        ...

    def add_note(self, note: Mapping[str, Any]) -> str:
        ...


class RemoteBackend:
    """Delegates to the collection services; snapshots arrive via subscriptions."""

    def __init__(self, services: Dict[str, EntityCollectionService], owner_id: str):
        self._services = services
        self._owner_id = owner_id

    def add(self, collection: str, data: Mapping[str, Any]) -> str:
        return self._services[collection].add(data, self._owner_id)

    def update(self, collection: str, doc_id: str, patch: Mapping[str, Any]) -> None:
        self._services[collection].update(doc_id, patch, owner_id=self._owner_id)

    def delete(self, collection: str, doc_id: str) -> None:
        self._services[collection].delete(doc_id, owner_id=self._owner_id)

    def set_vendor_info(self, info: Mapping[str, Any]) -> str:
        service = self._services[VENDOR_INFO]
        if not isinstance(service, VendorProfileService):
            raise TypeError(f"{VENDOR_INFO} must be served by a VendorProfileService, got {type(service).__name__}")
        return service.set(info, self._owner_id)

    def add_note(self, note: Mapping[str, Any]) -> str:
        """Add a note and stamp its contact's ``lastContact``.

        Ownership of the contact is checked before anything is written.
        """
        contact_id = str(note.get("contactId"))
        contact_exists = self._services[CONTACTS].check_owner(contact_id, self._owner_id, missing_ok=True)
        note_id = self.add(NOTES, note)
        if not contact_exists:
            LOGGER.warning("Note %s references missing contact %s", note_id, contact_id)
            return note_id
        try:
            self.update(CONTACTS, contact_id, {"lastContact": datetime.now(timezone.utc)})
        except StoreError as exc:
            if exc.kind is not StoreErrorKind.NOT_FOUND:
                raise
            LOGGER.warning("Contact %s disappeared before note %s was linked", contact_id, note_id)
        return note_id


class LocalBackend:
    """CRUD over a private in-memory copy of a local dataset.

    Ids are fabricated here, prefixed with ``local-`` and never reused; they
    are placeholders and are discarded by migration. Not thread-safe on its
    own: the hub serialises access with its lock.
    """

    def __init__(self, dataset: LocalDataset):
        seed = dataset.copy()
        self._used_ids: set = set()
        self._records: Dict[str, List[Dict[str, Any]]] = {}
        for collection in LIST_COLLECTIONS:
            records = []
            for record in seed.records(collection):
                record = dict(record)
                if record.get("id") in (None, ""):
                    record["id"] = self.new_id()
                self._used_ids.add(str(record["id"]))
                records.append(record)
            self._records[collection] = records
        self.vendor_info: Dict[str, Any] = dict(seed.vendor_info or default_vendor_info())

    def new_id(self) -> str:
        while True:
            candidate = f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex[:12]}"
            if candidate not in self._used_ids:
                self._used_ids.add(candidate)
                return candidate

    def records(self, collection: str) -> List[Dict[str, Any]]:
        return get_schema(collection).sort_records(copy.deepcopy(self._records[collection]))

    def _find(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        for record in self._records[collection]:
            if str(record.get("id")) == str(doc_id):
                return record
        return None

    def add(self, collection: str, data: Mapping[str, Any]) -> str:
        cleaned = get_schema(collection).validate(data)
        cleaned["id"] = self.new_id()
        self._records[collection].append(cleaned)
        return cleaned["id"]

    def update(self, collection: str, doc_id: str, patch: Mapping[str, Any]) -> None:
        cleaned = get_schema(collection).validate(patch, partial=True)
        record = self._find(collection, doc_id)
        if record is None:
            raise StoreError(StoreErrorKind.NOT_FOUND, f"No local {collection} record {doc_id}")
        record.update(cleaned)

    def delete(self, collection: str, doc_id: str) -> None:
        self._records[collection] = [
            record for record in self._records[collection] if str(record.get("id")) != str(doc_id)
        ]

    def set_vendor_info(self, info: Mapping[str, Any]) -> str:
        self.vendor_info = get_schema(VENDOR_INFO).validate(info)
        return VENDOR_INFO

    def add_note(self, note: Mapping[str, Any]) -> str:
        note_id = self.add(NOTES, note)
        stored = self._find(NOTES, note_id)
        self.append_contact_note(str(stored["contactId"]), stored)
        return note_id

    def append_contact_note(self, contact_id: str, note: Dict[str, Any]) -> None:
        contact = self._find(CONTACTS, contact_id)
        if contact is None:
            return
        contact["lastContact"] = datetime.now(timezone.utc)
        contact["notes"] = list(contact.get("notes") or []) + [copy.deepcopy(note)]

    def to_dataset(self) -> LocalDataset:
        return LocalDataset(
            **{collection: copy.deepcopy(self._records[collection]) for collection in LIST_COLLECTIONS},
            vendor_info=dict(self.vendor_info),
        )


def _empty_snapshots() -> Dict[str, List[Dict[str, Any]]]:
    return {collection: [] for collection in LIST_COLLECTIONS}


class DataHub:
    """Single integration point between the presentation layer and the data layer."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        local_dataset: Optional[LocalDataset] = None,
        timezone_name: str = "UTC",
    ):
        self._store = store
        self._services = build_collection_services(store)
        self._migration = MigrationService(store)
        self._local_seed = (local_dataset if local_dataset is not None else sample_dataset()).copy()
        self._local = LocalBackend(self._local_seed)
        self.timezone_name = timezone_name
        self._lock = threading.RLock()
        self._state = HubState.UNINITIALIZED
        self._owner_id: Optional[str] = None
        self._error: Optional[HubError] = None
        self._generation = 0
        self._snapshots = _empty_snapshots()
        self._vendor_info: Dict[str, Any] = default_vendor_info()
        self._subscriptions: List[ListenerHandle] = []
        self._listeners: List[HubListener] = []

    # ------------------------------------------------------------------
    # Session and state
    # ------------------------------------------------------------------
    @property
    def state(self) -> HubState:
        return self._state

    @property
    def error(self) -> Optional[HubError]:
        return self._error

    @property
    def owner_id(self) -> Optional[str]:
        return self._owner_id

    def start_session(self, owner_id: str, *, auto_initialize: bool = True) -> HubState:
        if not owner_id:
            raise NotAuthenticated("An authenticated owner is required")
        with self._lock:
            switching = self._owner_id not in (None, owner_id)
        if switching:
            self.end_session()
        with self._lock:
            self._owner_id = owner_id
        LOGGER.info("Session started for %s", owner_id)
        if auto_initialize:
            return self.initialize_data()
        return self._state

    def end_session(self) -> None:
        """Detach from the store and forget the owner's data, including local edits."""
        with self._lock:
            self._generation += 1
            handles = self._take_subscriptions()
            owner_id, self._owner_id = self._owner_id, None
            self._state = HubState.UNINITIALIZED
            self._error = None
            self._snapshots = _empty_snapshots()
            self._vendor_info = default_vendor_info()
            self._local = LocalBackend(self._local_seed)
        self._release(handles)
        if owner_id is not None:
            LOGGER.info("Session ended for %s", owner_id)
        self._notify()

    close = end_session

    def _require_owner(self) -> str:
        if self._owner_id is None:
            raise NotAuthenticated("No active session; sign in first")
        return self._owner_id

    def _take_subscriptions(self) -> List[ListenerHandle]:
        handles, self._subscriptions = self._subscriptions, []
        return handles

    @staticmethod
    def _release(handles: List[ListenerHandle]) -> None:
        for handle in handles:
            handle.unsubscribe()

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------
    def initialize_data(self) -> HubState:
        """Fetch every collection for the owner and attach live subscriptions.

        Ends in ``ready`` or ``error``; it never raises for store failures.
        """
        with self._lock:
            owner_id = self._require_owner()
            self._generation += 1
            generation = self._generation
            stale = self._take_subscriptions()
            self._state = HubState.INITIALIZING
            self._error = None
        self._release(stale)
        self._notify()
        LOGGER.info("Loading data for %s", owner_id)

        try:
            fetched, failure = self._fetch_all(owner_id)
        except Exception as exc:
            self._fail(generation, exc, None)
            raise
        if failure is not None:
            source, exc = failure
            self._fail(generation, exc, source)
            return self._state

        with self._lock:
            if generation != self._generation:
                return self._state
            self._apply_records(fetched)

        handles: List[ListenerHandle] = []
        try:
            for collection, service in self._services.items():
                handles.append(
                    service.subscribe(
                        owner_id,
                        partial(self._on_snapshot, generation, collection),
                        partial(self._on_subscription_error, generation, collection),
                    )
                )
        except StoreError as exc:
            self._release(handles)
            self._fail(generation, exc, self._collection_at(len(handles)))
            return self._state

        with self._lock:
            current = generation == self._generation and self._state is HubState.INITIALIZING
            if current:
                self._subscriptions = handles
                self._state = HubState.READY
        if not current:
            self._release(handles)
            return self._state
        LOGGER.info(
            "Data ready for %s (%s)",
            owner_id,
            ", ".join(f"{len(records)} {collection}" for collection, records in fetched.items()),
        )
        self._notify()
        return self._state

    def _collection_at(self, index: int) -> str:
        return list(self._services)[index]

    def _fetch_all(
        self, owner_id: str
    ) -> Tuple[Dict[str, List[Dict[str, Any]]], Optional[Tuple[str, StoreError]]]:
        with ThreadPoolExecutor(max_workers=len(self._services), thread_name_prefix="hub-fetch") as executor:
            futures = {
                collection: executor.submit(service.get_all, owner_id)
                for collection, service in self._services.items()
            }
            wait(futures.values())
        fetched: Dict[str, List[Dict[str, Any]]] = {}
        for collection in ENTITY_COLLECTIONS:
            exc = futures[collection].exception()
            if isinstance(exc, StoreError):
                return fetched, (collection, exc)
            if exc is not None:
                raise exc
            fetched[collection] = futures[collection].result()
        return fetched, None

    def _apply_records(self, fetched: Mapping[str, List[Dict[str, Any]]]) -> None:
        for collection, records in fetched.items():
            if collection == VENDOR_INFO:
                self._vendor_info = records[0] if records else default_vendor_info()
            else:
                self._snapshots[collection] = records

    def _fail(self, generation: int, exc: BaseException, source: Optional[str]) -> None:
        error = HubError.from_exception(exc, source)
        with self._lock:
            if generation != self._generation:
                return
            self._generation += 1
            handles = self._take_subscriptions()
            self._state = HubState.ERROR
            self._error = error
        self._release(handles)
        LOGGER.error("Data layer failed on %s (%s): %s", source or "load", error.kind, exc)
        self._notify()

    def _on_snapshot(self, generation: int, collection: str, records: List[Dict[str, Any]]) -> None:
        with self._lock:
            if generation != self._generation or self._state not in (HubState.INITIALIZING, HubState.READY):
                return
            self._apply_records({collection: records})
        self._notify()

    def _on_subscription_error(self, generation: int, collection: str, error: StoreError) -> None:
        self._fail(generation, error, collection)

    def use_local_mode(self) -> HubState:
        """Serve the local dataset instead of the remote store."""
        with self._lock:
            self._generation += 1
            handles = self._take_subscriptions()
            self._state = HubState.DEGRADED_LOCAL
            self._error = None
        self._release(handles)
        LOGGER.warning("Switched to local mode for %s", self._owner_id or "anonymous session")
        self._notify()
        return self._state

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def add_listener(self, listener: HubListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(self)
            except Exception:  # pragma: no cover - listener bugs must not break delivery
                LOGGER.exception("Data hub listener %r failed", listener)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    def records(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            if self._state is HubState.DEGRADED_LOCAL:
                return self._local.records(collection)
            return copy.deepcopy(self._snapshots[collection])

    def vendor_info(self) -> Dict[str, Any]:
        with self._lock:
            if self._state is HubState.DEGRADED_LOCAL:
                return dict(self._local.vendor_info)
            return copy.deepcopy(self._vendor_info)

    @property
    def migration_recommended(self) -> bool:
        """True when the remote store is empty for the owner but local data exists."""
        with self._lock:
            if self._state is not HubState.READY:
                return False
            remote_empty = not any(self._snapshots[collection] for collection in (CONTACTS, PRODUCTS, ORDERS))
            return remote_empty and bool(self._local.records(CONTACTS))

    def analytics(self, now: Optional[datetime] = None) -> AnalyticsReport:
        return compute_analytics(
            self.records(CONTACTS),
            self.records(ORDERS),
            self.records(PRODUCTS),
            now=now,
            timezone_name=self.timezone_name,
        )

    def view(self) -> Dict[str, Any]:
        with self._lock:
            state = self._state
            payload: Dict[str, Any] = {collection: self.records(collection) for collection in LIST_COLLECTIONS}
            payload[VENDOR_INFO] = self.vendor_info()
            payload.update(
                {
                    "state": state.value,
                    "ownerId": self._owner_id,
                    "loading": state is HubState.INITIALIZING,
                    "initializing": state is HubState.INITIALIZING
                    or (state is HubState.UNINITIALIZED and self._owner_id is not None),
                    "error": self._error.as_dict() if self._error else None,
                    "migrationRecommended": self.migration_recommended,
                }
            )
        payload["analytics"] = compute_analytics(
            payload[CONTACTS], payload[ORDERS], payload[PRODUCTS], timezone_name=self.timezone_name
        ).as_dict()
        return payload

    # ------------------------------------------------------------------
    # CRUD facade
    # ------------------------------------------------------------------
    def _backend(self) -> Tuple[CrudBackend, bool]:
        with self._lock:
            if self._state is HubState.DEGRADED_LOCAL:
                return self._local, True
            owner_id = self._require_owner()
            if self._state is not HubState.READY:
                raise HubStateError(f"Data is not available while the hub is {self._state.value}")
            return RemoteBackend(self._services, owner_id), False

    def _mutate(self, action: Callable[[CrudBackend], Any]) -> Any:
        backend, local = self._backend()
        if not local:
            return action(backend)
        with self._lock:
            result = action(backend)
        self._notify()
        return result

    def _add(self, collection: str, data: Mapping[str, Any]) -> str:
        return self._mutate(lambda backend: backend.add(collection, data))

    def _update(self, collection: str, doc_id: str, patch: Mapping[str, Any]) -> None:
        self._mutate(lambda backend: backend.update(collection, doc_id, patch))

    def _delete(self, collection: str, doc_id: str) -> None:
        self._mutate(lambda backend: backend.delete(collection, doc_id))

    def add_contact(self, contact: Mapping[str, Any]) -> str:
        return self._add(CONTACTS, contact)

    def update_contact(self, contact_id: str, patch: Mapping[str, Any]) -> None:
        self._update(CONTACTS, contact_id, patch)

    def delete_contact(self, contact_id: str) -> None:
        self._delete(CONTACTS, contact_id)

    def add_product(self, product: Mapping[str, Any]) -> str:
        return self._add(PRODUCTS, product)

    def update_product(self, product_id: str, patch: Mapping[str, Any]) -> None:
        self._update(PRODUCTS, product_id, patch)

    def delete_product(self, product_id: str) -> None:
        self._delete(PRODUCTS, product_id)

    def add_order(self, order: Mapping[str, Any]) -> str:
        return self._add(ORDERS, order)

    def update_order(self, order_id: str, patch: Mapping[str, Any]) -> None:
        self._update(ORDERS, order_id, patch)

    def delete_order(self, order_id: str) -> None:
        self._delete(ORDERS, order_id)

    def add_note(self, note: Mapping[str, Any]) -> str:
        """Add a note and mark its contact as contacted now."""
        return self._mutate(lambda backend: backend.add_note(note))

    def update_note(self, note_id: str, patch: Mapping[str, Any]) -> None:
        self._update(NOTES, note_id, patch)

    def delete_note(self, note_id: str) -> None:
        self._delete(NOTES, note_id)

    def add_reminder(self, reminder: Mapping[str, Any]) -> str:
        return self._add(REMINDERS, reminder)

    def update_reminder(self, reminder_id: str, patch: Mapping[str, Any]) -> None:
        self._update(REMINDERS, reminder_id, patch)

    def delete_reminder(self, reminder_id: str) -> None:
        self._delete(REMINDERS, reminder_id)

    def set_vendor_info(self, info: Mapping[str, Any]) -> str:
        return self._mutate(lambda backend: backend.set_vendor_info(info))

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------
    def migrate_local_data(self, *, force: bool = False) -> MigrationResult:
        """Copy the local dataset into the store for the current owner.

        Without ``force`` the migration is refused when the owner already has
        remote documents. On success the hub reloads from the store.
        """
        with self._lock:
            owner_id = self._require_owner()
            dataset = self._local.to_dataset()
        if force:
            result = self._migration.migrate_all(dataset, owner_id)
        else:
            result = self._migration.migrate_once(dataset, owner_id)
        if self._state is not HubState.READY:
            self.initialize_data()
        return result


__all__ = [
    "CrudBackend",
    "DataHub",
    "HubError",
    "HubState",
    "HubStateError",
    "LocalBackend",
    "NotAuthenticated",
    "RemoteBackend",
]
