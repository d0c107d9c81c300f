"""Derived business analytics computed from the current entity snapshots."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pytz
from dateutil.parser import parse as dateutil_parse

DEFAULT_TOP_N = 5


# ---------------------------------------------------------------------------
# Helper utilities
# ---------------------------------------------------------------------------


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    try:
        parsed = dateutil_parse(str(value))
    except (TypeError, ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _float(value: Any) -> float:
    if value in (None, ""):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _int(value: Any) -> int:
    if value in (None, ""):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def resolve_timezone(tz_name: Optional[str]):
    """Return a pytz timezone for ``tz_name``, falling back to UTC."""
    try:
        return pytz.timezone((tz_name or "UTC").strip() or "UTC")
    except pytz.UnknownTimeZoneError:
        return pytz.utc


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeliveryStats:
    onTime: int = 0
    delayed: int = 0
    failed: int = 0


@dataclass(frozen=True)
class AnalyticsReport:
    totalRevenue: float
    monthlyRevenue: float
    totalCustomers: int
    activeCustomers: int
    averageOrderValue: float
    topProducts: List[Dict[str, Any]] = field(default_factory=list)
    topCustomers: List[Dict[str, Any]] = field(default_factory=list)
    deliveryStats: DeliveryStats = field(default_factory=DeliveryStats)
    lowStockProducts: List[Dict[str, Any]] = field(default_factory=list)
    orderCountsByCustomer: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _same_month(value: Optional[datetime], reference: datetime, tz) -> bool:
    if value is None:
        return False
    local = value.astimezone(tz)
    return (local.year, local.month) == (reference.year, reference.month)


def _product_rankings(
    products: Iterable[Mapping[str, Any]],
    orders: List[Mapping[str, Any]],
) -> List[Dict[str, Any]]:
    quantities: Counter = Counter()
    revenue: Dict[str, float] = defaultdict(float)
    for order in orders:
        for item in order.get("items") or []:
            if not isinstance(item, Mapping) or item.get("productId") in (None, ""):
                continue
            product_id = str(item["productId"])
            quantities[product_id] += _int(item.get("quantity"))
            revenue[product_id] += _float(item.get("totalPrice"))
    rankings = [
        {
            "productId": product.get("id"),
            "productName": product.get("name") or "",
            "quantity": quantities.get(str(product.get("id")), 0),
            "revenue": round(revenue.get(str(product.get("id")), 0.0), 2),
        }
        for product in products
    ]
    rankings.sort(key=lambda entry: (-entry["revenue"], entry["productName"].casefold(), str(entry["productId"])))
    return rankings


def _customer_rankings(
    contacts: Iterable[Mapping[str, Any]],
    order_counts: Mapping[str, int],
) -> List[Dict[str, Any]]:
    rankings = [
        {
            "customerId": contact.get("id"),
            "customerName": contact.get("name") or "",
            "totalSpent": round(_float(contact.get("totalSpent")), 2),
            "orderCount": order_counts.get(str(contact.get("id")), 0),
        }
        for contact in contacts
    ]
    rankings.sort(key=lambda entry: (-entry["totalSpent"], entry["customerName"].casefold(), str(entry["customerId"])))
    return rankings


def _delivery_stats(orders: Iterable[Mapping[str, Any]], now: datetime) -> DeliveryStats:
    on_time = delayed = failed = 0
    for order in orders:
        status = order.get("status")
        due = _parse_datetime(order.get("deliveryDate"))
        if status == "cancelled":
            failed += 1
        elif status == "delivered":
            delivered_at = _parse_datetime(order.get("deliveredAt"))
            if due is not None and delivered_at is not None and delivered_at > due:
                delayed += 1
            else:
                on_time += 1
        elif due is not None and due < now:
            delayed += 1
    return DeliveryStats(onTime=on_time, delayed=delayed, failed=failed)


def compute_analytics(
    contacts: Iterable[Mapping[str, Any]],
    orders: Iterable[Mapping[str, Any]],
    products: Iterable[Mapping[str, Any]],
    *,
    now: Optional[datetime] = None,
    timezone_name: str = "UTC",
    top_n: int = DEFAULT_TOP_N,
) -> AnalyticsReport:
    """Summarise the snapshots without modifying them.

    Revenue figures follow the dashboard's conventions: total revenue is the
    sum of each contact's ``totalSpent`` while monthly revenue and the average
    order value come from the orders themselves. The "current month" is
    evaluated in ``timezone_name``.
    """
    contacts = list(contacts)
    orders = list(orders)
    products = list(products)
    tz = resolve_timezone(timezone_name)
    current = _parse_datetime(now) or datetime.now(timezone.utc)
    local_now = current.astimezone(tz)

    order_totals = [_float(order.get("totalAmount")) for order in orders]
    monthly_revenue = sum(
        _float(order.get("totalAmount"))
        for order in orders
        if _same_month(_parse_datetime(order.get("orderDate")), local_now, tz)
    )
    order_counts: Counter = Counter(
        str(order.get("customerId")) for order in orders if order.get("customerId") not in (None, "")
    )
    low_stock = [
        {
            "productId": product.get("id"),
            "productName": product.get("name") or "",
            "inStock": _int(product.get("inStock")),
            "minStock": _int(product.get("minStock")),
        }
        for product in products
        if _int(product.get("inStock")) <= _int(product.get("minStock"))
    ]
    low_stock.sort(key=lambda entry: (entry["inStock"] - entry["minStock"], entry["productName"].casefold()))

    return AnalyticsReport(
        totalRevenue=round(sum(_float(contact.get("totalSpent")) for contact in contacts), 2),
        monthlyRevenue=round(monthly_revenue, 2),
        totalCustomers=len(contacts),
        activeCustomers=sum(1 for contact in contacts if contact.get("customerStatus") == "active"),
        averageOrderValue=round(sum(order_totals) / len(order_totals), 2) if order_totals else 0.0,
        topProducts=_product_rankings(products, orders)[:top_n],
        topCustomers=_customer_rankings(contacts, order_counts)[:top_n],
        deliveryStats=_delivery_stats(orders, current),
        lowStockProducts=low_stock,
        orderCountsByCustomer=dict(sorted(order_counts.items())),
    )


__all__ = ["AnalyticsReport", "DeliveryStats", "compute_analytics", "resolve_timezone"]
