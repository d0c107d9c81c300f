"""Schema-driven record definitions for the six entity collections."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from dateutil.parser import isoparse
from dateutil.parser import parse as dateutil_parse

STORE_MANAGED_FIELDS = ("id", "userId", "createdAt", "updatedAt")

CONTACTS = "contacts"
PRODUCTS = "products"
ORDERS = "orders"
NOTES = "notes"
REMINDERS = "reminders"
VENDOR_INFO = "vendorInfo"

ENTITY_COLLECTIONS = (CONTACTS, PRODUCTS, ORDERS, NOTES, REMINDERS, VENDOR_INFO)


class RecordValidationError(Exception):
    """Raised when record validation fails."""

    def __init__(self, errors: Dict[str, str]):
        super().__init__("Record validation failed")
        self.errors = errors

    def __str__(self) -> str:
        details = ", ".join(f"{name}: {message}" for name, message in sorted(self.errors.items()))
        return f"Record validation failed ({details})"


def coerce_datetime(value: Any) -> datetime:
    """Normalise ``value`` to an aware UTC ``datetime``."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        text = value.strip()
        try:
            parsed = isoparse(text)
        except ValueError:
            parsed = dateutil_parse(text)
    else:
        raise TypeError(f"Expected a date or datetime, got {type(value).__name__}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class FieldDefinition:
    """Represents a single field inside a record schema."""

    name: str
    field_type: str = "string"
    required: bool = False
    default: Any = None
    description: str = ""
    choices: Optional[Sequence[Any]] = None

    def clean(self, value: Any) -> Any:
        """Normalise input data for this field."""
        if value is None:
            return None
        if self.field_type in {"string", "text"}:
            cleaned = str(value)
            if self.field_type == "string":
                cleaned = cleaned.strip()
            return self._check_choice(cleaned)
        if self.field_type == "integer":
            if isinstance(value, bool):
                raise TypeError("Expected an integer, got a boolean")
            if value == "":
                return None
            if isinstance(value, float) and not value.is_integer():
                raise ValueError(f"Expected a whole number, got {value}")
            return int(value)
        if self.field_type == "number":
            if isinstance(value, bool):
                raise TypeError("Expected a number, got a boolean")
            if value == "":
                return None
            return float(value)
        if self.field_type == "boolean":
            if isinstance(value, bool):
                return value
            if isinstance(value, (int, float)):
                return bool(value)
            if isinstance(value, str):
                return value.strip().lower() in {"true", "1", "yes", "y"}
            return bool(value)
        if self.field_type == "datetime":
            return coerce_datetime(value)
        if self.field_type == "list":
            if isinstance(value, (list, tuple)):
                return copy.deepcopy(list(value))
            raise TypeError(f"Expected a list, got {type(value).__name__}")
        if self.field_type == "map":
            if isinstance(value, Mapping):
                return copy.deepcopy(dict(value))
            raise TypeError(f"Expected an object, got {type(value).__name__}")
        return value

    def _check_choice(self, value: Any) -> Any:
        if self.choices is not None and value not in self.choices:
            allowed = ", ".join(str(choice) for choice in self.choices)
            raise ValueError(f"Must be one of: {allowed}")
        return value

    def default_value(self) -> Any:
        default_value = self.default() if callable(self.default) else self.default
        return copy.deepcopy(default_value)


@dataclass
class RecordSchema:
    """Describes one entity collection: its fields and canonical ordering."""

    entity_type: str
    fields: Dict[str, FieldDefinition]
    display_field: Optional[str] = None
    sort_field: Optional[str] = None
    sort_descending: bool = False
    singleton: bool = False
    description: str = ""

    def validate(self, payload: Mapping[str, Any], *, partial: bool = False) -> Dict[str, Any]:
        """Return a cleaned copy of ``payload``.

        A full validation applies defaults and enforces required fields; a
        ``partial`` validation only cleans the fields that are present.
        """
        if not isinstance(payload, Mapping):
            raise RecordValidationError({"__all__": "Payload must be an object"})
        errors: Dict[str, str] = {}
        normalised: Dict[str, Any] = {}
        for name in payload:
            if name in STORE_MANAGED_FIELDS:
                errors[name] = "Field is managed by the store"
            elif name not in self.fields:
                errors[name] = "Unknown field"
        for name, definition in self.fields.items():
            if name not in payload:
                if partial:
                    continue
                incoming = None
            else:
                incoming = payload[name]
            if incoming in (None, ""):
                if definition.required:
                    errors[name] = "Field is required"
                    continue
                default_value = definition.default_value()
                normalised[name] = default_value if default_value is not None else _empty_value(definition, incoming)
                continue
            try:
                normalised[name] = definition.clean(incoming)
            except (ValueError, TypeError, OverflowError) as exc:
                errors[name] = str(exc)
        if errors:
            raise RecordValidationError(errors)
        return normalised

    def strip_store_fields(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return {key: value for key, value in payload.items() if key not in STORE_MANAGED_FIELDS}

    def sort_records(self, records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Order records canonically without relying on store-native ordering."""
        ordered = sorted(records, key=lambda record: str(record.get("id") or ""))
        if not self.sort_field:
            return ordered
        definition = self.fields.get(self.sort_field)
        if definition is not None and definition.field_type == "datetime":
            return self._sort_by_datetime(ordered)
        ordered.sort(key=lambda record: _text_key(record.get(self.sort_field)), reverse=self.sort_descending)
        return ordered

    def _sort_by_datetime(self, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        dated: List[Dict[str, Any]] = []
        undated: List[Dict[str, Any]] = []
        for record in records:
            (dated if _datetime_key(record.get(self.sort_field)) is not None else undated).append(record)
        dated.sort(key=lambda record: _datetime_key(record.get(self.sort_field)), reverse=self.sort_descending)
        return dated + undated

    def resolve_display_value(self, data: Mapping[str, Any]) -> str:
        if self.display_field and data.get(self.display_field):
            return str(data[self.display_field])
        for candidate in ("name", "title", "customerName"):
            if data.get(candidate):
                return str(data[candidate])
        return self.entity_type


def _empty_value(definition: FieldDefinition, incoming: Any) -> Any:
    if incoming == "" and definition.field_type in {"string", "text"} and definition.choices is None:
        return ""
    return None


def _text_key(value: Any):
    text = "" if value is None else str(value)
    return (text.casefold(), text)


def _datetime_key(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return coerce_datetime(value)
    except (TypeError, ValueError, OverflowError):
        return None


class RecordRegistry:
    """In-memory registry of schemas."""

    def __init__(self) -> None:
        self._schemas: Dict[str, RecordSchema] = {}

    def register(self, schema: RecordSchema) -> None:
        self._schemas[schema.entity_type] = schema

    def get(self, entity_type: str) -> RecordSchema:
        if entity_type not in self._schemas:
            raise KeyError(f"Unknown record type '{entity_type}'")
        return self._schemas[entity_type]

    def all(self) -> List[RecordSchema]:
        return list(self._schemas.values())


# ----------------------------------------------------------------------
# Built-in schemas
# ----------------------------------------------------------------------


def _contact_schema() -> RecordSchema:
    return RecordSchema(
        entity_type=CONTACTS,
        fields={
            "name": FieldDefinition("name", required=True),
            "email": FieldDefinition("email"),
            "phone": FieldDefinition("phone"),
            "company": FieldDefinition("company"),
            "address": FieldDefinition("address", field_type="map"),
            "customerStatus": FieldDefinition(
                "customerStatus", default="active", choices=("active", "inactive", "prospect")
            ),
            "starred": FieldDefinition("starred", field_type="boolean", default=False),
            "totalSpent": FieldDefinition("totalSpent", field_type="number", default=0.0),
            "averageOrderValue": FieldDefinition("averageOrderValue", field_type="number", default=0.0),
            "preferredProducts": FieldDefinition("preferredProducts", field_type="list", default=list),
            "deliveryPreferences": FieldDefinition("deliveryPreferences", field_type="map"),
            "notes": FieldDefinition("notes", field_type="list", default=list),
            "tags": FieldDefinition("tags", field_type="list", default=list),
            "lastContact": FieldDefinition("lastContact", field_type="datetime"),
        },
        display_field="name",
        sort_field="name",
        description="Customers and prospects with purchase aggregates.",
    )


def _product_schema() -> RecordSchema:
    return RecordSchema(
        entity_type=PRODUCTS,
        fields={
            "name": FieldDefinition("name", required=True),
            "type": FieldDefinition("type"),
            "description": FieldDefinition("description", field_type="text"),
            "price": FieldDefinition("price", field_type="number", required=True),
            "unit": FieldDefinition("unit"),
            "inStock": FieldDefinition("inStock", field_type="integer", default=0),
            "minStock": FieldDefinition("minStock", field_type="integer", default=0),
        },
        display_field="name",
        sort_field="name",
        description="Catalog entries with stock levels.",
    )


def _order_schema() -> RecordSchema:
    return RecordSchema(
        entity_type=ORDERS,
        fields={
            "customerId": FieldDefinition("customerId", required=True),
            "customerName": FieldDefinition("customerName"),
            "orderDate": FieldDefinition("orderDate", field_type="datetime", required=True),
            "deliveryDate": FieldDefinition("deliveryDate", field_type="datetime"),
            "deliveredAt": FieldDefinition("deliveredAt", field_type="datetime"),
            "status": FieldDefinition(
                "status", default="pending", choices=("pending", "confirmed", "delivered", "cancelled")
            ),
            "items": FieldDefinition("items", field_type="list", default=list),
            "totalAmount": FieldDefinition("totalAmount", field_type="number", default=0.0),
            "paymentStatus": FieldDefinition("paymentStatus", default="pending", choices=("paid", "pending", "overdue")),
            "paymentMethod": FieldDefinition(
                "paymentMethod",
                default="cash",
                choices=("cash", "mvola", "orange-money", "airtel-money", "transfer", "check"),
            ),
            "deliveryAddress": FieldDefinition("deliveryAddress", field_type="map"),
            "notes": FieldDefinition("notes", field_type="text"),
        },
        display_field="customerName",
        sort_field="orderDate",
        sort_descending=True,
        description="Customer orders with line items and delivery details.",
    )


def _note_schema() -> RecordSchema:
    return RecordSchema(
        entity_type=NOTES,
        fields={
            "contactId": FieldDefinition("contactId", required=True),
            "content": FieldDefinition("content", field_type="text", required=True),
            "date": FieldDefinition("date", field_type="datetime", required=True),
            "type": FieldDefinition("type", default="note"),
        },
        sort_field="date",
        sort_descending=True,
        description="Free-form notes attached to a contact.",
    )


def _reminder_schema() -> RecordSchema:
    return RecordSchema(
        entity_type=REMINDERS,
        fields={
            "title": FieldDefinition("title", required=True),
            "description": FieldDefinition("description", field_type="text"),
            "dueDate": FieldDefinition("dueDate", field_type="datetime", required=True),
            "completed": FieldDefinition("completed", field_type="boolean", default=False),
            "contactId": FieldDefinition("contactId"),
            "priority": FieldDefinition("priority", default="medium", choices=("low", "medium", "high")),
            "type": FieldDefinition("type"),
        },
        display_field="title",
        sort_field="dueDate",
        description="Follow-ups with a due date and completion flag.",
    )


def _vendor_info_schema() -> RecordSchema:
    return RecordSchema(
        entity_type=VENDOR_INFO,
        fields={
            "name": FieldDefinition("name", required=True),
            "address": FieldDefinition("address"),
            "phone": FieldDefinition("phone"),
            "email": FieldDefinition("email"),
            "nif": FieldDefinition("nif"),
            "stat": FieldDefinition("stat"),
        },
        display_field="name",
        singleton=True,
        description="Business identity printed on receipts; one per owner.",
    )


def build_default_registry() -> RecordRegistry:
    registry = RecordRegistry()
    for factory in (
        _contact_schema,
        _product_schema,
        _order_schema,
        _note_schema,
        _reminder_schema,
        _vendor_info_schema,
    ):
        registry.register(factory())
    return registry


# ----------------------------------------------------------------------
# Module level singleton
# ----------------------------------------------------------------------

_registry = build_default_registry()


def get_record_registry() -> RecordRegistry:
    return _registry


def get_schema(entity_type: str) -> RecordSchema:
    return _registry.get(entity_type)


__all__ = [
    "CONTACTS",
    "ENTITY_COLLECTIONS",
    "FieldDefinition",
    "NOTES",
    "ORDERS",
    "PRODUCTS",
    "REMINDERS",
    "RecordRegistry",
    "RecordSchema",
    "RecordValidationError",
    "STORE_MANAGED_FIELDS",
    "VENDOR_INFO",
    "build_default_registry",
    "coerce_datetime",
    "get_record_registry",
    "get_schema",
]
