"""
Payment gateway contract.

The storefront never talks to the gateway's HTTP API itself; it hands a
purchase payload to an injected ``PaymentGateway`` and later receives the
browser back on one of three redirect URLs.
"""
import os
from typing import Optional, Protocol

from schemas import Order, OrderStatus

CURRENCY = os.getenv("CURRENCY", "MYR")
PUBLIC_URL = os.getenv("PUBLIC_URL", "http://localhost:5173")
PAYMENT_BRAND_ID = os.getenv("PAYMENT_BRAND_ID")

SHIPPING_FEE = float(os.getenv("SHIPPING_FEE", "8"))
BULK_SHIPPING_FEE = float(os.getenv("BULK_SHIPPING_FEE", "10"))
BULK_SHIPPING_THRESHOLD = int(os.getenv("BULK_SHIPPING_THRESHOLD", "2"))

# Gateway field limits
CLIENT_NAME_LIMIT = 30
PRODUCT_NAME_LIMIT = 256

RESULT_STATUSES = {
    "success": OrderStatus.PAID,
    "failed": OrderStatus.FAILED,
    "cancelled": OrderStatus.CANCELLED,
}


class PaymentGateway(Protocol):
    def create_purchase(self, payload: dict) -> str:
        """Register the purchase and return the hosted checkout URL.

        Raises ``errors.PaymentGatewayError`` when the gateway refuses it.
        """
        ...


def shipping_fee(units: int) -> float:
    return BULK_SHIPPING_FEE if units > BULK_SHIPPING_THRESHOLD else SHIPPING_FEE


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def redirect_url(base_url: str, result: str, order_id: str) -> str:
    return f"{base_url.rstrip('/')}/#/payment/callback?result={result}&order={order_id}"


def build_purchase_payload(order: Order, base_url: str = PUBLIC_URL, currency: str = CURRENCY,
                           brand_id: Optional[str] = PAYMENT_BRAND_ID) -> dict:
    products = [
        {
            "name": item.name[:PRODUCT_NAME_LIMIT],
            "quantity": item.quantity,
            "price": to_minor_units(item.price),
        }
        for item in order.items
    ]
    if order.shipping > 0:
        products.append({"name": "Shipping", "quantity": 1, "price": to_minor_units(order.shipping)})

    return {
        "brand_id": brand_id,
        "client": {
            "email": order.customer_email,
            "phone": order.customer_phone,
            "full_name": order.customer_name[:CLIENT_NAME_LIMIT],
        },
        "purchase": {
            "currency": currency,
            "products": products,
        },
        "reference": order.id,
        "success_redirect": redirect_url(base_url, "success", order.id),
        "failure_redirect": redirect_url(base_url, "failed", order.id),
        "cancel_redirect": redirect_url(base_url, "cancelled", order.id),
    }


def status_for_result(result: str) -> OrderStatus:
    try:
        return RESULT_STATUSES[result.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown payment result: {result}")
