"""Cloud Firestore implementation of the document store contract."""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from services.store import (
    SERVER_TIMESTAMP,
    DocumentStore,
    ErrorCallback,
    InMemoryDocumentStore,
    ListenerHandle,
    SnapshotCallback,
    StoredDocument,
    StoreError,
    StoreErrorKind,
    classify_error_message,
)
from services.timestamps import Timestamp

LOGGER = logging.getLogger(__name__)

WATCHDOG_INTERVAL_SECONDS = 5.0

_PERMISSION_ERRORS = (
    google_exceptions.PermissionDenied,
    google_exceptions.Unauthenticated,
    google_exceptions.Forbidden,
)
_TRANSPORT_ERRORS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.RetryError,
    google_exceptions.ResourceExhausted,
    google_exceptions.InternalServerError,
)


def classify_exception(exc: BaseException) -> StoreError:
    """Translate a Firestore client exception into a :class:`StoreError`."""

    if isinstance(exc, StoreError):
        return exc
    message = str(exc)
    if isinstance(exc, _PERMISSION_ERRORS):
        return StoreError(StoreErrorKind.PERMISSION_DENIED, message)
    if isinstance(exc, google_exceptions.FailedPrecondition):
        if "index" in message.lower():
            return StoreError(StoreErrorKind.MISSING_INDEX, message)
        return StoreError(StoreErrorKind.OTHER, message)
    if isinstance(exc, google_exceptions.NotFound):
        return StoreError(StoreErrorKind.NOT_FOUND, message)
    if isinstance(exc, _TRANSPORT_ERRORS):
        return StoreError(StoreErrorKind.TRANSPORT, message)
    if isinstance(exc, google_exceptions.GoogleAPIError):
        return StoreError(classify_error_message(message), message)
    return StoreError(StoreErrorKind.OTHER, message)


def _encode_value(value: Any) -> Any:
    if value is SERVER_TIMESTAMP:
        return firestore.SERVER_TIMESTAMP
    if isinstance(value, Timestamp):
        return value.to_datetime()
    if isinstance(value, dict):
        return {key: _encode_value(entry) for key, entry in value.items()}
    if isinstance(value, list):
        return [_encode_value(entry) for entry in value]
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return Timestamp.from_datetime(value)
    if isinstance(value, dict):
        return {key: _decode_value(entry) for key, entry in value.items()}
    if isinstance(value, list):
        return [_decode_value(entry) for entry in value]
    return value


def _to_document(snapshot: Any) -> StoredDocument:
    return StoredDocument(snapshot.id, _decode_value(snapshot.to_dict() or {}))


class FirestoreBatch:
    def __init__(self, client: Any):
        self._client = client
        self._batch = client.batch()
        self._size = 0

    def create(self, collection: str, data: Dict[str, Any]) -> str:
        doc_ref = self._client.collection(collection).document()
        self._batch.set(doc_ref, _encode_value(data))
        self._size += 1
        return doc_ref.id

    def __len__(self) -> int:
        return self._size

    def commit(self) -> None:
        try:
            self._batch.commit()
        except Exception as exc:
            raise classify_exception(exc) from exc


class FirestoreDocumentStore:
    """Adapter over :class:`google.cloud.firestore.Client`."""

    def __init__(self, client: Any, *, watchdog_interval: float = WATCHDOG_INTERVAL_SECONDS):
        self._client = client
        self._watchdog_interval = watchdog_interval

    @classmethod
    def from_environment(cls, project_id: Optional[str] = None) -> "FirestoreDocumentStore":
        project = project_id or os.getenv("FIRESTORE_PROJECT_ID") or os.getenv("GOOGLE_CLOUD_PROJECT")
        LOGGER.info("Connecting to Firestore project %s", project or "<default>")
        return cls(firestore.Client(project=project))

    def _filtered(self, collection: str, field: str, value: Any) -> Any:
        return self._client.collection(collection).where(filter=FieldFilter(field, "==", value))

    def query(self, collection: str, field: str, value: Any) -> List[StoredDocument]:
        try:
            return [_to_document(snapshot) for snapshot in self._filtered(collection, field, value).stream()]
        except Exception as exc:
            raise classify_exception(exc) from exc

    def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        try:
            snapshot = self._client.collection(collection).document(doc_id).get()
        except Exception as exc:
            raise classify_exception(exc) from exc
        if not snapshot.exists:
            return None
        return _to_document(snapshot)

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        try:
            doc_ref = self._client.collection(collection).document()
            doc_ref.set(_encode_value(data))
        except Exception as exc:
            raise classify_exception(exc) from exc
        return doc_ref.id

    def update(self, collection: str, doc_id: str, patch: Dict[str, Any]) -> None:
        try:
            self._client.collection(collection).document(doc_id).update(_encode_value(patch))
        except Exception as exc:
            raise classify_exception(exc) from exc

    def delete(self, collection: str, doc_id: str) -> None:
        try:
            self._client.collection(collection).document(doc_id).delete()
        except Exception as exc:
            raise classify_exception(exc) from exc

    def batch(self) -> FirestoreBatch:
        return FirestoreBatch(self._client)

    def listen(
        self,
        collection: str,
        field: str,
        value: Any,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> ListenerHandle:
        handle = ListenerHandle(on_snapshot, on_error)

        def _callback(snapshots, _changes, read_time):
            handle.deliver([_to_document(snapshot) for snapshot in snapshots], read_time)

        try:
            watch = self._filtered(collection, field, value).on_snapshot(_callback)
        except Exception as exc:
            raise classify_exception(exc) from exc

        stopped = threading.Event()

        def _detach() -> None:
            stopped.set()
            watch.unsubscribe()

        handle.bind(_detach)
        watchdog = threading.Thread(
            target=self._watch_until_stopped,
            args=(watch, handle, stopped, collection),
            name=f"firestore-watchdog-{collection}",
            daemon=True,
        )
        watchdog.start()
        return handle

    def _watch_until_stopped(
        self,
        watch: Any,
        handle: ListenerHandle,
        stopped: threading.Event,
        collection: str,
    ) -> None:
        while not stopped.wait(self._watchdog_interval):
            if not handle.active:
                return
            if not watch.is_active:
                LOGGER.error("Firestore listener for %s stopped unexpectedly", collection)
                handle.fail(
                    StoreError(StoreErrorKind.TRANSPORT, f"Live listener for '{collection}' stopped unexpectedly")
                )
                return


def create_document_store(backend: Optional[str] = None, project_id: Optional[str] = None) -> DocumentStore:
    """Build the store selected by ``backend`` or the ``KEFIR_STORE_BACKEND`` setting."""
    selected = (backend or os.getenv("KEFIR_STORE_BACKEND") or "firestore").strip().lower()
    if selected == "memory":
        LOGGER.warning("Using the in-memory document store; data will not survive a restart")
        return InMemoryDocumentStore()
    if selected == "firestore":
        return FirestoreDocumentStore.from_environment(project_id)
    raise ValueError(f"Unknown store backend '{selected}' (expected firestore or memory)")


__all__ = ["FirestoreBatch", "FirestoreDocumentStore", "classify_exception", "create_document_store"]
