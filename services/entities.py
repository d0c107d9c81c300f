"""Owner-scoped CRUD and live subscriptions over one document collection."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional

from services.records import ENTITY_COLLECTIONS, VENDOR_INFO, RecordSchema, get_schema
from services.store import (
    SERVER_TIMESTAMP,
    DocumentStore,
    ListenerHandle,
    StoredDocument,
    StoreError,
    StoreErrorKind,
)
from services.timestamps import from_store, to_store

LOGGER = logging.getLogger(__name__)

OWNER_FIELD = "userId"

ChangeCallback = Callable[[List[Dict[str, Any]]], None]
ErrorCallback = Callable[[StoreError], None]


def document_to_record(document: StoredDocument) -> Dict[str, Any]:
    record = from_store(document.data)
    record["id"] = document.id
    return record


class EntityCollectionService:
    """CRUD and subscribe operations for a single entity kind."""

    def __init__(self, store: DocumentStore, schema: RecordSchema):
        self.store = store
        self.schema = schema

    @property
    def collection(self) -> str:
        return self.schema.entity_type

    def _records(self, documents: List[StoredDocument]) -> List[Dict[str, Any]]:
        return self.schema.sort_records(document_to_record(document) for document in documents)

    def get_all(self, owner_id: str) -> List[Dict[str, Any]]:
        try:
            documents = self.store.query(self.collection, OWNER_FIELD, owner_id)
        except StoreError as exc:
            LOGGER.warning("Fetching %s for %s failed: %s", self.collection, owner_id, exc)
            raise
        LOGGER.debug("Fetched %d %s for %s", len(documents), self.collection, owner_id)
        return self._records(documents)

    def get_by_id(self, doc_id: str) -> Optional[Dict[str, Any]]:
        document = self.store.get(self.collection, doc_id)
        if document is None:
            return None
        return document_to_record(document)

    def add(self, entity: Mapping[str, Any], owner_id: str) -> str:
        cleaned = self.schema.validate(entity)
        payload = to_store(cleaned)
        payload[OWNER_FIELD] = owner_id
        payload["createdAt"] = SERVER_TIMESTAMP
        payload["updatedAt"] = SERVER_TIMESTAMP
        try:
            doc_id = self.store.add(self.collection, payload)
        except StoreError as exc:
            LOGGER.warning("Adding to %s for %s failed: %s", self.collection, owner_id, exc)
            raise
        LOGGER.info(
            "Added %s/%s (%s) for %s", self.collection, doc_id, self.schema.resolve_display_value(cleaned), owner_id
        )
        return doc_id

    def update(self, doc_id: str, patch: Mapping[str, Any], owner_id: Optional[str] = None) -> None:
        """Apply ``patch`` to the document; fields not named in it keep their values."""
        cleaned = self.schema.validate(patch, partial=True)
        if owner_id is not None:
            self.check_owner(doc_id, owner_id, missing_ok=False)
        payload = to_store(cleaned)
        payload["updatedAt"] = SERVER_TIMESTAMP
        try:
            self.store.update(self.collection, doc_id, payload)
        except StoreError as exc:
            LOGGER.warning("Updating %s/%s failed: %s", self.collection, doc_id, exc)
            raise
        LOGGER.info("Updated %s/%s (%s)", self.collection, doc_id, ", ".join(sorted(cleaned)) or "timestamp only")

    def delete(self, doc_id: str, owner_id: Optional[str] = None) -> None:
        """Remove the document. Deleting a document that does not exist succeeds."""
        if owner_id is not None and not self.check_owner(doc_id, owner_id, missing_ok=True):
            return
        try:
            self.store.delete(self.collection, doc_id)
        except StoreError as exc:
            LOGGER.warning("Deleting %s/%s failed: %s", self.collection, doc_id, exc)
            raise
        LOGGER.info("Deleted %s/%s", self.collection, doc_id)

    def check_owner(self, doc_id: str, owner_id: str, *, missing_ok: bool) -> bool:
        """Return whether the document exists, raising if another owner holds it."""
        document = self.store.get(self.collection, doc_id)
        if document is None:
            if missing_ok:
                return False
            raise StoreError(StoreErrorKind.NOT_FOUND, f"No document to update: {self.collection}/{doc_id}")
        if document.data.get(OWNER_FIELD) != owner_id:
            LOGGER.warning("Refusing cross-owner access to %s/%s by %s", self.collection, doc_id, owner_id)
            raise StoreError(
                StoreErrorKind.PERMISSION_DENIED,
                f"Missing or insufficient permissions for {self.collection}/{doc_id}",
            )
        return True

    def subscribe(
        self,
        owner_id: str,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> ListenerHandle:
        """Stream the owner's complete sorted list to ``on_change`` on every change.

        The returned handle stops the feed when called; calling it again is a
        no-op.
        """

        def _on_snapshot(documents: List[StoredDocument]) -> None:
            on_change(self._records(documents))

        def _on_error(error: StoreError) -> None:
            LOGGER.error("Live feed for %s (%s) failed: %s", self.collection, owner_id, error)
            if on_error is not None:
                on_error(error)

        return self.store.listen(self.collection, OWNER_FIELD, owner_id, _on_snapshot, _on_error)


class VendorProfileService(EntityCollectionService):
    """The per-owner singleton vendor profile."""

    def __init__(self, store: DocumentStore, schema: Optional[RecordSchema] = None):
        super().__init__(store, schema or get_schema(VENDOR_INFO))
        self._lock = threading.Lock()

    def get(self, owner_id: str) -> Optional[Dict[str, Any]]:
        profiles = self.get_all(owner_id)
        return profiles[0] if profiles else None

    def set(self, profile: Mapping[str, Any], owner_id: str) -> str:
        """Create the owner's profile, or overwrite the existing one in place.

        Extra profile documents (a migration can add one) are deleted so the
        owner is left with exactly one.
        """
        cleaned = self.schema.validate(profile)
        with self._lock:
            profiles = self.get_all(owner_id)
            if not profiles:
                return self.add(cleaned, owner_id)
            kept, surplus = profiles[0], profiles[1:]
            payload = to_store(cleaned)
            payload["updatedAt"] = SERVER_TIMESTAMP
            self.store.update(self.collection, kept["id"], payload)
            for extra in surplus:
                self.store.delete(self.collection, extra["id"])
            if surplus:
                LOGGER.warning("Removed %d duplicate vendor profiles for %s", len(surplus), owner_id)
            LOGGER.info("Updated vendor profile %s for %s", kept["id"], owner_id)
            return kept["id"]


def build_collection_services(store: DocumentStore) -> Dict[str, EntityCollectionService]:
    services: Dict[str, EntityCollectionService] = {}
    for collection in ENTITY_COLLECTIONS:
        if collection == VENDOR_INFO:
            services[collection] = VendorProfileService(store)
        else:
            services[collection] = EntityCollectionService(store, get_schema(collection))
    return services


__all__ = [
    "EntityCollectionService",
    "OWNER_FIELD",
    "VendorProfileService",
    "build_collection_services",
    "document_to_record",
]
