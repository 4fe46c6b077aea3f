from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

import main
from memory_store import MemoryStore
from reaper import StaleOrderReaper
from reservations import ReservationEngine
from schemas import CartLine, OrderDraft
from store import PRODUCTS

T0 = datetime(2024, 11, 2, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, minutes=0, seconds=0):
        self.now += timedelta(minutes=minutes, seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def engine(store, clock):
    return ReservationEngine(store, clock=clock, stale_minutes=5)


def add_product(store, product_id, stock=50, price=185.0, name=None, collection="Blankets"):
    store.insert(PRODUCTS, {
        "name": name or f"Product {product_id}",
        "price": price,
        "stock": stock,
        "collection": collection,
        "image": f"https://img.example/{product_id}.png",
    }, doc_id=product_id)
    return product_id


def make_draft(*lines, email="aisha@gmail.com", phone="012-345 6789", **extra):
    fields = dict(
        customer_name="Aisha Rahman",
        customer_email=email,
        customer_phone=phone,
        shipping_address="12 Jalan Ampang, 50450 Kuala Lumpur, Malaysia",
    )
    fields.update(extra)
    return OrderDraft(items=[CartLine(product_id=p, quantity=q) for p, q in lines], **fields)


def stock_of(store, product_id):
    return store.get(PRODUCTS, product_id)["stock"]


class RecordingGateway:
    def __init__(self, url="https://gate.example/checkout/abc", error=None):
        self.url = url
        self.error = error
        self.payloads = []

    def create_purchase(self, payload):
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return self.url


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def client(engine, gateway):
    reaper = StaleOrderReaper(engine, interval=3600)
    main.app.dependency_overrides[main.get_engine] = lambda: engine
    main.app.dependency_overrides[main.get_reaper] = lambda: reaper
    main.app.dependency_overrides[main.get_gateway] = lambda: gateway
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()
    reaper.stop()


ADMIN = {"X-Admin-Password": main.ADMIN_PASSWORD}
