"""
Inventory reservation engine.

Creating an order reserves stock: inside one store transaction the product
stock is decremented, the next order number is minted and the order is
written as ``pending``. Moving an order to ``cancelled`` or ``failed`` hands
the stock back, exactly once, by re-reading the order in the same
transaction that restocks it. Pending orders older than the stale window are
presumed abandoned and released the same way.

Stock is allowed to go negative; a negative level is a back-order, not an
error.
"""
import logging
import os
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Union

from errors import EmptyOrder, InvalidTransition, OrderNotFound, ProductNotFound, TransactionConflict
from payments import shipping_fee
from schemas import TRANSITIONS, Order, OrderDraft, OrderItem, OrderStatus
from store import (COUNTER_SEED, COUNTERS, ORDER_COUNTER, ORDERS, PRODUCTS, DocumentStore, Transaction, next_order_id,
                   reset_counter)

logger = logging.getLogger(__name__)

STALE_ORDER_MINUTES = float(os.getenv("STALE_ORDER_MINUTES", "5"))

StatusLike = Union[OrderStatus, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_date(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def is_stale(order: Order, now: datetime, timeout: timedelta) -> bool:
    if order.status != OrderStatus.PENDING:
        return False
    return now - parse_date(order.date) > timeout


def to_order(doc: dict) -> Order:
    return Order(**doc)


def _quantities(items: Iterable) -> Dict[str, int]:
    totals: Dict[str, int] = OrderedDict()
    for item in items:
        product_id = item["product_id"] if isinstance(item, dict) else item.product_id
        quantity = item["quantity"] if isinstance(item, dict) else item.quantity
        totals[product_id] = totals.get(product_id, 0) + int(quantity)
    return totals


class ReservationEngine:
    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow,
                 stale_minutes: float = STALE_ORDER_MINUTES,
                 shipping: Callable[[int], float] = shipping_fee):
        self.store = store
        self.clock = clock
        self.stale_minutes = stale_minutes
        self.shipping = shipping

    # ----- Reads -----

    def get_order(self, order_id: str) -> Order:
        doc = self.store.get(ORDERS, order_id)
        if doc is None:
            raise OrderNotFound(order_id)
        return to_order(doc)

    def list_orders(self, status: Optional[StatusLike] = None) -> List[Order]:
        filters = {"status": OrderStatus(status).value} if status else {}
        return [to_order(d) for d in self.store.find(ORDERS, sort=("date", -1), **filters)]

    # ----- Creation -----

    def create_order(self, draft: OrderDraft) -> Order:
        """Reserve stock, mint an order number and persist a pending order.

        All of it happens in one transaction: if any referenced product is
        gone, ``ProductNotFound`` is raised and nothing is written. A
        best-effort stale release runs first and never blocks checkout.
        """
        if not draft.items:
            raise EmptyOrder()

        try:
            self.auto_release_stale()
        except Exception:
            logger.warning("Stale order release failed before checkout", exc_info=True)

        wanted = _quantities(draft.items)
        customer = draft.model_dump(mode="json", exclude={"items"})
        date = self.clock().isoformat()

        def create(txn: Transaction) -> Order:
            products = {}
            for product_id in wanted:
                product = txn.get(PRODUCTS, product_id)
                if product is None:
                    raise ProductNotFound(product_id)
                products[product_id] = product

            items = []
            for product_id, quantity in wanted.items():
                product = products[product_id]
                txn.update(PRODUCTS, product_id, {"stock": int(product.get("stock") or 0) - quantity})
                items.append(OrderItem(
                    product_id=product_id,
                    name=product.get("name", ""),
                    price=float(product.get("price") or 0),
                    quantity=quantity,
                    collection=product.get("collection"),
                    image=product.get("image"),
                ))

            number = next_order_id(txn)
            if txn.get(ORDERS, str(number)) is not None:
                logger.error("Order counter minted %d but that order already exists", number)
                raise TransactionConflict(f"Order number {number} is already taken")
            subtotal = round(sum(i.price * i.quantity for i in items), 2)
            shipping = self.shipping(sum(wanted.values()))
            order = Order(
                id=str(number),
                items=items,
                subtotal=subtotal,
                shipping=shipping,
                total=round(subtotal + shipping, 2),
                status=OrderStatus.PENDING,
                date=date,
                **customer,
            )
            txn.set(ORDERS, order.id, order.model_dump(mode="json", exclude={"id"}))
            return order

        order = self.store.run_transaction(create)
        logger.info("Order %s created: %d item(s), total %.2f", order.id, order.units, order.total)
        return order

    # ----- Stock movements (transaction bodies) -----

    def _adjust_stock(self, txn: Transaction, order_id: str, items: list, sign: int) -> None:
        for product_id, quantity in _quantities(items).items():
            product = txn.get(PRODUCTS, product_id)
            if product is None:
                logger.info("Product %s from order %s no longer exists, nothing to restock", product_id, order_id)
                continue
            txn.update(PRODUCTS, product_id, {"stock": int(product.get("stock") or 0) + sign * quantity})

    def _restore(self, txn: Transaction, doc: dict, status: OrderStatus) -> bool:
        if OrderStatus(doc["status"]).is_terminal:
            return False
        self._adjust_stock(txn, doc["id"], doc["items"], +1)
        txn.update(ORDERS, doc["id"], {"status": status.value})
        return True

    def _read_order(self, txn: Transaction, order_id: str) -> dict:
        doc = txn.get(ORDERS, order_id)
        if doc is None:
            raise OrderNotFound(order_id)
        return doc

    # ----- Status changes -----

    def restore_stock(self, order_id: str, status: StatusLike = OrderStatus.CANCELLED) -> bool:
        """Hand an order's stock back and mark it ``status`` (cancelled or failed).

        Returns False without touching anything if the order is already
        terminal, so racing callers restock at most once.
        """
        status = OrderStatus(status)
        if not status.is_terminal:
            raise ValueError(f"'{status.value}' does not release stock")

        restored = self.store.run_transaction(
            lambda txn: self._restore(txn, self._read_order(txn, order_id), status))
        if restored:
            logger.info("Stock restored for order %s (%s)", order_id, status.value)
        else:
            logger.debug("Order %s already terminal, nothing to restore", order_id)
        return restored

    def update_status(self, order_id: str, new_status: StatusLike,
                      current_status: Optional[StatusLike] = None, force: bool = False) -> Order:
        """Move an order to ``new_status``.

        The stored status is authoritative; ``current_status`` is what the
        caller last saw and only matters for logging. Transitions are checked
        against ``TRANSITIONS`` unless ``force`` is set (admin override).
        Entering cancelled/failed from a live state restocks; with ``force``,
        leaving cancelled/failed for a live state reserves the stock again.
        """
        new_status = OrderStatus(new_status)

        def apply(txn: Transaction):
            doc = self._read_order(txn, order_id)
            stored = OrderStatus(doc["status"])
            if current_status is not None and OrderStatus(current_status) != stored:
                logger.debug("Order %s is '%s', caller expected '%s'", order_id, stored.value, current_status)
            if stored == new_status:
                return doc, None
            if not force and new_status not in TRANSITIONS[stored]:
                raise InvalidTransition(order_id, stored.value, new_status.value)

            if new_status.is_terminal:
                if not self._restore(txn, doc, new_status):
                    txn.update(ORDERS, order_id, {"status": new_status.value})
            else:
                if stored.is_terminal:
                    self._adjust_stock(txn, order_id, doc["items"], -1)
                txn.update(ORDERS, order_id, {"status": new_status.value})
            return {**doc, "status": new_status.value}, stored

        doc, previous = self.store.run_transaction(apply)
        if previous is not None:
            logger.info("Order %s: %s -> %s%s", order_id, previous.value, new_status.value,
                        " (override)" if force else "")
        return to_order(doc)

    # ----- Stale reservations -----

    def auto_release_stale(self, timeout_minutes: Optional[float] = None) -> int:
        """Cancel pending orders older than the timeout and restock them.

        Returns how many orders this call actually released. A failure on
        one order is logged and the scan moves on.
        """
        minutes = self.stale_minutes if timeout_minutes is None else timeout_minutes
        timeout = timedelta(minutes=minutes)
        now = self.clock()
        released = 0
        for order in self.list_orders(OrderStatus.PENDING):
            if not is_stale(order, now, timeout):
                continue
            try:
                if self.restore_stock(order.id, OrderStatus.CANCELLED):
                    released += 1
            except Exception:
                logger.warning("Could not release stale order %s", order.id, exc_info=True)
        if released:
            logger.info("Released stock for %d stale order(s)", released)
        return released

    # ----- Admin -----

    def delete_order(self, order_id: str, restock: bool = True) -> bool:
        """Hard-delete an order; returns True if its stock went back on the shelf.

        Orders still holding stock (pending or paid) are restocked in the same
        transaction unless ``restock`` is False.
        """
        def remove(txn: Transaction) -> bool:
            doc = self._read_order(txn, order_id)
            returned = restock and OrderStatus(doc["status"]).holds_stock
            if returned:
                self._adjust_stock(txn, order_id, doc["items"], +1)
            txn.delete(ORDERS, order_id)
            return returned

        returned = self.store.run_transaction(remove)
        logger.info("Order %s deleted%s", order_id, " and restocked" if returned else "")
        return returned

    def reset_system(self) -> int:
        """Delete every order and rewind the counter so the next order is 1000.

        The wipe and the rewind commit together. A checkout racing the reset
        touches the counter too, so one of the two is re-run and no order
        number is handed out twice.
        """
        def wipe(txn: Transaction) -> int:
            txn.get(COUNTERS, ORDER_COUNTER)
            ids = [doc["id"] for doc in self.store.find(ORDERS)]
            for order_id in ids:
                txn.delete(ORDERS, order_id)
            reset_counter(txn, COUNTER_SEED)
            return len(ids)

        deleted = self.store.run_transaction(wipe)
        logger.warning("Order system reset: %d order(s) deleted, counter at %d", deleted, COUNTER_SEED)
        return deleted
