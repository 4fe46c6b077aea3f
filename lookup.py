"""
Customer order tracking: find a shopper's orders by email, verified by phone.
"""
import re
from typing import List

from reservations import parse_date, to_order
from schemas import Order
from store import ORDERS, DocumentStore


def normalize_phone(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


def lookup_orders(store: DocumentStore, email: str, phone: str) -> List[Order]:
    """Orders placed with ``email`` whose phone number matches ``phone``.

    Phones are compared digits-only and either may contain the other, so
    "+60 12-345 6789" matches "0123456789". Newest first.
    """
    wanted = normalize_phone(phone)
    if not email or not wanted:
        raise ValueError("Please provide both email and phone number for verification.")

    orders = []
    for doc in store.find(ORDERS, customer_email=email.strip()):
        stored = normalize_phone(doc.get("customer_phone", ""))
        if stored and (wanted in stored or stored in wanted):
            orders.append(to_order(doc))
    return sorted(orders, key=lambda o: parse_date(o.date), reverse=True)
