"""One-shot bulk copy of a local dataset into the document store."""
from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from data_paths import local_dataset_file
from services.entities import OWNER_FIELD
from services.firestore_store import create_document_store
from services.local_data import LocalDataset, LocalDatasetError, load_local_dataset
from services.records import (
    CONTACTS,
    ENTITY_COLLECTIONS,
    NOTES,
    ORDERS,
    PRODUCTS,
    REMINDERS,
    VENDOR_INFO,
    RecordValidationError,
    get_schema,
)
from services.store import SERVER_TIMESTAMP, DocumentStore, StoreError
from services.timestamps import to_store

LOGGER = logging.getLogger(__name__)

# Referenced kinds first so their new ids are known when later records are relinked.
MIGRATION_ORDER = (PRODUCTS, CONTACTS, ORDERS, NOTES, REMINDERS)


class MigrationError(RuntimeError):
    """Raised when a migration did not complete; nothing was written."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


@dataclass(frozen=True)
class MigrationResult:
    """Structured results returned by :meth:`MigrationService.migrate_all`."""

    owner_id: str
    document_ids: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def counts(self) -> Dict[str, int]:
        return {collection: len(ids) for collection, ids in self.document_ids.items()}

    @property
    def total(self) -> int:
        return sum(len(ids) for ids in self.document_ids.values())


def prepare_documents(dataset: LocalDataset, owner_id: str) -> List[Tuple[str, Optional[str], Dict[str, Any]]]:
    """Validate every record and build the documents to write.

    Local ``id`` values and any other store-managed fields are dropped; the
    store assigns fresh ids on commit.
    """
    writes: List[Tuple[str, Optional[str], Dict[str, Any]]] = []
    sources: List[Tuple[str, Dict[str, Any]]] = [
        (collection, record) for collection in MIGRATION_ORDER for record in dataset.records(collection)
    ]
    if dataset.vendor_info:
        sources.append((VENDOR_INFO, dataset.vendor_info))
    for index, (collection, record) in enumerate(sources):
        schema = get_schema(collection)
        try:
            cleaned = schema.validate(schema.strip_store_fields(record))
        except RecordValidationError as exc:
            raise MigrationError(f"Invalid {collection} record {record.get('id', index)}: {exc}", cause=exc) from exc
        payload = to_store(cleaned)
        payload[OWNER_FIELD] = owner_id
        payload["createdAt"] = SERVER_TIMESTAMP
        payload["updatedAt"] = SERVER_TIMESTAMP
        local_id = record.get("id")
        writes.append((collection, None if local_id in (None, "") else str(local_id), payload))
    return writes


def _relink(collection: str, payload: Dict[str, Any], id_map: Dict[str, Dict[str, str]]) -> Dict[str, Any]:
    """Point references at the ids assigned in this migration; unknown ids are left as-is."""
    contacts = id_map[CONTACTS]
    products = id_map[PRODUCTS]
    if collection == CONTACTS and payload.get("preferredProducts"):
        payload["preferredProducts"] = [products.get(str(value), value) for value in payload["preferredProducts"]]
    elif collection == ORDERS:
        if payload.get("customerId") is not None:
            payload["customerId"] = contacts.get(str(payload["customerId"]), payload["customerId"])
        relinked_items = []
        for item in payload.get("items") or []:
            if isinstance(item, dict) and item.get("productId") is not None:
                item = dict(item, productId=products.get(str(item["productId"]), item["productId"]))
            relinked_items.append(item)
        payload["items"] = relinked_items
    elif collection in (NOTES, REMINDERS) and payload.get("contactId") is not None:
        payload["contactId"] = contacts.get(str(payload["contactId"]), payload["contactId"])
    return payload


class MigrationService:
    def __init__(self, store: DocumentStore):
        self.store = store

    def migrate_all(self, dataset: LocalDataset, owner_id: str) -> MigrationResult:
        """Write the whole dataset for ``owner_id`` in a single atomic batch.

        Not idempotent: running it twice with the same dataset duplicates every
        record. Use :meth:`migrate_once` to refuse when remote data exists.
        """
        if not owner_id:
            raise MigrationError("An owner id is required to migrate data")
        writes = prepare_documents(dataset, owner_id)
        batch = self.store.batch()
        document_ids: Dict[str, List[str]] = {collection: [] for collection in ENTITY_COLLECTIONS}
        id_map: Dict[str, Dict[str, str]] = {CONTACTS: {}, PRODUCTS: {}}
        for collection, local_id, payload in writes:
            new_id = batch.create(collection, _relink(collection, payload, id_map))
            document_ids[collection].append(new_id)
            if local_id is not None and collection in id_map:
                id_map[collection][local_id] = new_id
        LOGGER.info("Committing migration of %d records for %s", len(writes), owner_id)
        try:
            batch.commit()
        except StoreError as exc:
            LOGGER.error("Migration for %s failed: %s", owner_id, exc)
            raise MigrationError(f"Migration did not complete: {exc}", cause=exc) from exc
        result = MigrationResult(owner_id=owner_id, document_ids=document_ids)
        LOGGER.info("Migrated %d records for %s", result.total, owner_id)
        return result

    def existing_counts(self, owner_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for collection in ENTITY_COLLECTIONS:
            try:
                counts[collection] = len(self.store.query(collection, OWNER_FIELD, owner_id))
            except StoreError as exc:
                raise MigrationError(f"Could not inspect existing {collection}: {exc}", cause=exc) from exc
        return counts

    def migrate_once(self, dataset: LocalDataset, owner_id: str) -> MigrationResult:
        """Like :meth:`migrate_all`, but refuse when the owner already has remote documents."""
        if not owner_id:
            raise MigrationError("An owner id is required to migrate data")
        existing = {collection: count for collection, count in self.existing_counts(owner_id).items() if count}
        if existing:
            summary = ", ".join(f"{count} {collection}" for collection, count in sorted(existing.items()))
            raise MigrationError(f"Owner {owner_id} already has remote data ({summary}); refusing to migrate again")
        return self.migrate_all(dataset, owner_id)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry-point used by ``migrate.py`` for a small CLI."""
    parser = argparse.ArgumentParser(description="Copy a local dataset into the document store for one owner.")
    parser.add_argument("--owner", required=True, help="Owner (Firebase user id) that will own the migrated records")
    parser.add_argument(
        "--dataset",
        type=Path,
        default=None,
        help="JSON dataset to migrate (default: data/local_dataset.json, or the built-in sample data)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Validate and count records without writing")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Migrate even when the owner already has remote data (duplicates records)",
    )
    parser.add_argument(
        "--backend",
        choices=("firestore", "memory"),
        default=None,
        help="Document store backend (default: KEFIR_STORE_BACKEND or firestore)",
    )
    args = parser.parse_args(argv)

    try:
        dataset = load_local_dataset(args.dataset or local_dataset_file())
    except (LocalDatasetError, OSError) as exc:
        print(f"Could not read dataset: {exc}")
        return 1

    if args.dry_run:
        try:
            writes = prepare_documents(dataset, args.owner)
        except MigrationError as exc:
            print(f"Dataset is invalid: {exc}")
            return 1
        print(f"Dry run: {len(writes)} records would be migrated for {args.owner}.")
        for collection, count in dataset.counts().items():
            print(f"  {collection}: {count}")
        return 0

    service = MigrationService(create_document_store(args.backend))
    try:
        if args.force:
            result = service.migrate_all(dataset, args.owner)
        else:
            result = service.migrate_once(dataset, args.owner)
    except MigrationError as exc:
        print(f"Migration failed: {exc}")
        return 1

    print(f"Migration completed successfully: {result.total} records for {args.owner}.")
    for collection, count in result.counts.items():
        print(f"  {collection}: {count}")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI behavior
    raise SystemExit(main())
