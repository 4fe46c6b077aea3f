"""
Sales dashboard helpers: filtering, analytics and pagination over orders.
"""
import math
from datetime import date, datetime, time, timezone
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel

from reservations import parse_date
from schemas import Order, OrderStatus

# Only these count as revenue
SALE_STATUSES = (OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.DELIVERED)
DEFAULT_COLLECTION = "Blankets"
ORDERS_PER_PAGE = 10


class SalesSummary(BaseModel):
    total_revenue: float = 0
    total_orders: int = 0
    total_items: int = 0
    successful_orders: int = 0
    average_order_value: float = 0


def _matches_search(order: Order, search: str) -> bool:
    needle = search.lower()
    return (
        needle in order.customer_name.lower()
        or needle in order.customer_email.lower()
        or search in order.id
        or bool(order.customer_phone and search in order.customer_phone)
    )


def filter_orders(orders: Iterable[Order], search: str = "", status: str = "all", product: str = "all",
                  start: Optional[date] = None, end: Optional[date] = None) -> List[Order]:
    lower = datetime.combine(start, time.min, tzinfo=timezone.utc) if start else None
    upper = datetime.combine(end, time(23, 59, 59, 999000), tzinfo=timezone.utc) if end else None

    result = []
    for order in orders:
        if search and not _matches_search(order, search):
            continue
        if status != "all" and order.status.value != status:
            continue
        if product != "all" and not any(item.name == product for item in order.items):
            continue
        placed = parse_date(order.date)
        if lower and placed < lower:
            continue
        if upper and placed > upper:
            continue
        result.append(order)
    return result


def summarize(orders: Iterable[Order]) -> SalesSummary:
    summary = SalesSummary()
    for order in orders:
        summary.total_orders += 1
        if order.status in SALE_STATUSES:
            summary.total_revenue += order.total
            summary.total_items += order.units
            summary.successful_orders += 1
    summary.total_revenue = round(summary.total_revenue, 2)
    if summary.successful_orders:
        summary.average_order_value = round(summary.total_revenue / summary.successful_orders, 2)
    return summary


def paginate(orders: List[Order], page: int = 1, per_page: int = ORDERS_PER_PAGE) -> Tuple[List[Order], int]:
    """Return the requested page (clamped into range) and the page count."""
    total_pages = math.ceil(len(orders) / per_page) if orders else 0
    page = min(max(page, 1), max(total_pages, 1))
    start = (page - 1) * per_page
    return orders[start:start + per_page], total_pages


def product_names(orders: Iterable[Order]) -> List[str]:
    return sorted({item.name for order in orders for item in order.items})


def order_digest(orders: Iterable[Order]) -> str:
    entries = []
    for order in orders:
        lines = [f"ORDER #{order.id}"]
        lines += [f"{i.quantity} x {i.name} ({i.collection or DEFAULT_COLLECTION})" for i in order.items]
        entry = "\n".join(lines)
        if order.is_gift:
            entry += f"\n\n[GIFT MESSAGE]\nTo: {order.gift_to or ''}\nFrom: {order.gift_from or ''}"
        entries.append(entry)
    return "\n\n----------------------------------------\n\n".join(entries)
