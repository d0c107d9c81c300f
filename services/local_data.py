"""Local dataset bundle used for degraded-local mode and as migration input."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from data_paths import read_json_file

from services.records import (
    CONTACTS,
    NOTES,
    ORDERS,
    PRODUCTS,
    REMINDERS,
    VENDOR_INFO,
    RecordSchema,
    coerce_datetime,
    get_schema,
)

LOGGER = logging.getLogger(__name__)

LIST_COLLECTIONS = (CONTACTS, PRODUCTS, ORDERS, NOTES, REMINDERS)

DEFAULT_VENDOR_INFO: Dict[str, Any] = {
    "name": "Kéfir Madagascar SARL",
    "address": "Lot II M 15 Bis Antanimena, 101 Antananarivo, Madagascar",
    "phone": "+261 32 12 345 67",
    "email": "contact@kefir-madagascar.mg",
    "nif": "",
    "stat": "",
}


class LocalDatasetError(ValueError):
    """Raised when a local dataset file cannot be interpreted."""


def default_vendor_info() -> Dict[str, Any]:
    return dict(DEFAULT_VENDOR_INFO)


def _normalise_dates(schema: RecordSchema, record: Mapping[str, Any]) -> Dict[str, Any]:
    normalised = copy.deepcopy(dict(record))
    for name, definition in schema.fields.items():
        if definition.field_type != "datetime" or normalised.get(name) in (None, ""):
            continue
        try:
            normalised[name] = coerce_datetime(normalised[name])
        except (TypeError, ValueError, OverflowError) as exc:
            raise LocalDatasetError(f"{schema.entity_type}: invalid {name} {normalised[name]!r}") from exc
    return normalised


@dataclass
class LocalDataset:
    contacts: List[Dict[str, Any]] = field(default_factory=list)
    products: List[Dict[str, Any]] = field(default_factory=list)
    orders: List[Dict[str, Any]] = field(default_factory=list)
    notes: List[Dict[str, Any]] = field(default_factory=list)
    reminders: List[Dict[str, Any]] = field(default_factory=list)
    vendor_info: Optional[Dict[str, Any]] = None

    def records(self, collection: str) -> List[Dict[str, Any]]:
        if collection not in LIST_COLLECTIONS:
            raise KeyError(f"Unknown collection '{collection}'")
        return getattr(self, collection)

    def total_records(self) -> int:
        total = sum(len(self.records(collection)) for collection in LIST_COLLECTIONS)
        return total + (1 if self.vendor_info else 0)

    def counts(self) -> Dict[str, int]:
        counts = {collection: len(self.records(collection)) for collection in LIST_COLLECTIONS}
        counts[VENDOR_INFO] = 1 if self.vendor_info else 0
        return counts

    def copy(self) -> "LocalDataset":
        return copy.deepcopy(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "LocalDataset":
        if not isinstance(payload, Mapping):
            raise LocalDatasetError("Local dataset must be a JSON object")
        values: Dict[str, Any] = {}
        for collection in LIST_COLLECTIONS:
            entries = payload.get(collection) or []
            if not isinstance(entries, list) or not all(isinstance(entry, Mapping) for entry in entries):
                raise LocalDatasetError(f"'{collection}' must be a list of objects")
            schema = get_schema(collection)
            values[collection] = [_normalise_dates(schema, entry) for entry in entries]
        vendor_info = payload.get(VENDOR_INFO)
        if vendor_info is not None and not isinstance(vendor_info, Mapping):
            raise LocalDatasetError(f"'{VENDOR_INFO}' must be an object")
        values["vendor_info"] = dict(vendor_info) if vendor_info else None
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {collection: copy.deepcopy(self.records(collection)) for collection in LIST_COLLECTIONS}
        payload[VENDOR_INFO] = copy.deepcopy(self.vendor_info)
        return payload


def load_local_dataset(path: Path) -> LocalDataset:
    """Read a dataset from a JSON file; a missing file yields the sample dataset."""
    path = Path(path)
    if not path.exists():
        LOGGER.debug("No local dataset at %s; using the built-in sample data", path)
        return sample_dataset()
    dataset = LocalDataset.from_dict(read_json_file(path))
    LOGGER.info("Loaded local dataset from %s (%d records)", path, dataset.total_records())
    return dataset


def sample_dataset(now: Optional[datetime] = None) -> LocalDataset:
    """Demo data for a small kefir and kombucha business in Antananarivo."""
    reference = (now or datetime.now(timezone.utc)).replace(hour=9, minute=0, second=0, microsecond=0)

    def days(offset: int) -> datetime:
        return reference + timedelta(days=offset)

    contacts = [
        {
            "id": "1",
            "name": "Rasoa Andriamanana",
            "email": "rasoa.andriamanana@gmail.com",
            "phone": "+261 34 11 222 33",
            "company": "",
            "address": {"street": "Lot IVG 45 Behoririka", "city": "Antananarivo", "postalCode": "101"},
            "customerStatus": "active",
            "starred": True,
            "totalSpent": 185000.0,
            "averageOrderValue": 46250.0,
            "preferredProducts": ["p1", "p3"],
            "deliveryPreferences": {"preferredDay": "saturday", "preferredTime": "morning", "frequency": "weekly"},
            "notes": [],
            "tags": ["fidèle", "kéfir de lait"],
            "lastContact": days(-3),
        },
        {
            "id": "2",
            "name": "Hery Rakotomalala",
            "email": "hery.rakoto@yahoo.fr",
            "phone": "+261 33 45 678 90",
            "company": "Café Analakely",
            "address": {"street": "Rue Rainitovo", "city": "Antananarivo", "postalCode": "101"},
            "customerStatus": "active",
            "starred": False,
            "totalSpent": 320000.0,
            "averageOrderValue": 80000.0,
            "preferredProducts": ["p2", "p3"],
            "deliveryPreferences": {"preferredDay": "wednesday", "preferredTime": "afternoon", "frequency": "weekly"},
            "notes": [],
            "tags": ["professionnel"],
            "lastContact": days(-8),
        },
        {
            "id": "3",
            "name": "Voahirana Randria",
            "email": "voahirana.r@gmail.com",
            "phone": "+261 32 98 765 43",
            "company": "",
            "address": {"street": "Ambohijatovo", "city": "Antananarivo", "postalCode": "101"},
            "customerStatus": "prospect",
            "starred": False,
            "totalSpent": 0.0,
            "averageOrderValue": 0.0,
            "preferredProducts": [],
            "deliveryPreferences": {"preferredDay": "saturday", "preferredTime": "morning", "frequency": "monthly"},
            "notes": [],
            "tags": [],
            "lastContact": None,
        },
    ]
    products = [
        {
            "id": "p1",
            "name": "Kéfir de lait nature",
            "type": "milk-kefir",
            "description": "Kéfir de lait de vache fermenté 24 heures.",
            "price": 8000.0,
            "unit": "500ml",
            "inStock": 24,
            "minStock": 10,
        },
        {
            "id": "p2",
            "name": "Kéfir de fruits gingembre",
            "type": "water-kefir",
            "description": "Kéfir d'eau au gingembre et citron vert.",
            "price": 6000.0,
            "unit": "1L",
            "inStock": 8,
            "minStock": 12,
        },
        {
            "id": "p3",
            "name": "Kombucha hibiscus",
            "type": "kombucha",
            "description": "Kombucha au thé noir et fleurs d'hibiscus.",
            "price": 10000.0,
            "unit": "750ml",
            "inStock": 15,
            "minStock": 6,
        },
        {
            "id": "p4",
            "name": "Grains de kéfir de lait",
            "type": "accessories",
            "description": "Grains vivants pour préparer son kéfir à la maison.",
            "price": 15000.0,
            "unit": "sachet",
            "inStock": 5,
            "minStock": 2,
        },
    ]
    orders = [
        {
            "id": "o1",
            "customerId": "1",
            "customerName": "Rasoa Andriamanana",
            "orderDate": days(-10),
            "deliveryDate": days(-8),
            "deliveredAt": days(-8),
            "status": "delivered",
            "items": [
                {"productId": "p1", "productName": "Kéfir de lait nature", "quantity": 3, "unitPrice": 8000.0, "totalPrice": 24000.0},
                {"productId": "p3", "productName": "Kombucha hibiscus", "quantity": 2, "unitPrice": 10000.0, "totalPrice": 20000.0},
            ],
            "totalAmount": 44000.0,
            "paymentStatus": "paid",
            "paymentMethod": "mvola",
            "deliveryAddress": {"street": "Lot IVG 45 Behoririka", "city": "Antananarivo", "postalCode": "101"},
            "notes": "",
        },
        {
            "id": "o2",
            "customerId": "2",
            "customerName": "Hery Rakotomalala",
            "orderDate": days(-2),
            "deliveryDate": days(1),
            "deliveredAt": None,
            "status": "confirmed",
            "items": [
                {"productId": "p2", "productName": "Kéfir de fruits gingembre", "quantity": 10, "unitPrice": 6000.0, "totalPrice": 60000.0},
                {"productId": "p3", "productName": "Kombucha hibiscus", "quantity": 4, "unitPrice": 10000.0, "totalPrice": 40000.0},
            ],
            "totalAmount": 100000.0,
            "paymentStatus": "pending",
            "paymentMethod": "transfer",
            "deliveryAddress": {"street": "Rue Rainitovo", "city": "Antananarivo", "postalCode": "101"},
            "notes": "Livraison avant 14h.",
        },
        {
            "id": "o3",
            "customerId": "1",
            "customerName": "Rasoa Andriamanana",
            "orderDate": days(-1),
            "deliveryDate": days(2),
            "deliveredAt": None,
            "status": "pending",
            "items": [
                {"productId": "p1", "productName": "Kéfir de lait nature", "quantity": 2, "unitPrice": 8000.0, "totalPrice": 16000.0},
            ],
            "totalAmount": 16000.0,
            "paymentStatus": "pending",
            "paymentMethod": "cash",
            "deliveryAddress": {"street": "Lot IVG 45 Behoririka", "city": "Antananarivo", "postalCode": "101"},
            "notes": "",
        },
    ]
    reminders = [
        {
            "id": "r1",
            "title": "Relancer Café Analakely pour le paiement",
            "description": "Commande o2 payable par virement.",
            "dueDate": days(3),
            "completed": False,
            "contactId": "2",
            "priority": "high",
            "type": "payment",
        },
        {
            "id": "r2",
            "title": "Réactiver les grains de kéfir d'eau",
            "description": "",
            "dueDate": days(1),
            "completed": False,
            "contactId": None,
            "priority": "medium",
            "type": "production",
        },
    ]
    vendor_info = dict(DEFAULT_VENDOR_INFO, nif="1234567890123", stat="12345 12 2023 0 12345")
    return LocalDataset(
        contacts=contacts,
        products=products,
        orders=orders,
        notes=[],
        reminders=reminders,
        vendor_info=vendor_info,
    )


__all__ = [
    "DEFAULT_VENDOR_INFO",
    "LIST_COLLECTIONS",
    "LocalDataset",
    "LocalDatasetError",
    "default_vendor_info",
    "load_local_dataset",
    "sample_dataset",
]
