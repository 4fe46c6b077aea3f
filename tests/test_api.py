import pytest
from fastapi.testclient import TestClient

import main
from conftest import ADMIN, add_product, stock_of
from errors import PaymentGatewayError
from reaper import StaleOrderReaper
from reservations import ReservationEngine
from store import MongoStore


def checkout_body(*lines, email="aisha@gmail.com", phone="012-345 6789"):
    return {
        "customer_name": "Aisha Rahman",
        "customer_email": email,
        "customer_phone": phone,
        "shipping_address": "12 Jalan Ampang, 50450 Kuala Lumpur, Malaysia",
        "items": [{"product_id": p, "quantity": q} for p, q in lines],
    }


def test_root(client):
    assert client.get("/").status_code == 200


def test_database_report(client):
    res = client.get("/test")
    assert res.status_code == 200
    body = res.json()
    assert body["backend"] == "✅ Running"
    assert body["store_backend"] == "MemoryStore"
    assert body["connection_status"] == "Connected"


class TestProducts:

    def test_crud(self, client):
        res = client.post("/api/products", json={"name": "The Dream Castle", "price": 185, "stock": 5}, headers=ADMIN)
        assert res.status_code == 200
        product = res.json()
        pid = product["id"]
        assert product["additional_images"] == []

        assert client.get(f"/api/products/{pid}").json()["name"] == "The Dream Castle"
        res = client.put(f"/api/products/{pid}", json={"stock": 12}, headers=ADMIN)
        assert res.json()["stock"] == 12
        assert res.json()["price"] == 185
        assert client.put(f"/api/products/{pid}", json={}, headers=ADMIN).status_code == 400
        assert client.delete(f"/api/products/{pid}", headers=ADMIN).json() == {"success": True}
        assert client.get(f"/api/products/{pid}").status_code == 404
        assert client.delete(f"/api/products/{pid}", headers=ADMIN).status_code == 404

    def test_writes_need_admin(self, client):
        assert client.post("/api/products", json={"name": "X", "price": 1}).status_code == 401
        bad = {"X-Admin-Password": "guess"}
        assert client.post("/api/products", json={"name": "X", "price": 1}, headers=bad).status_code == 401

    def test_list_search_and_collection(self, client, store):
        add_product(store, "p1", name="The Parisian Flight", collection="Blankets")
        add_product(store, "p2", name="The Dream Castle", collection="Scarves")
        names = [p["name"] for p in client.get("/api/products").json()]
        assert names == ["The Dream Castle", "The Parisian Flight"]
        assert [p["id"] for p in client.get("/api/products", params={"q": "paris"}).json()] == ["p1"]
        assert [p["id"] for p in client.get("/api/products", params={"collection": "Scarves"}).json()] == ["p2"]


class TestCheckout:

    def test_checkout_reserves_and_hands_off(self, client, store, gateway):
        add_product(store, "p1", stock=50, price=185)
        res = client.post("/api/checkout", json=checkout_body(("p1", 2)))
        assert res.status_code == 200
        body = res.json()
        assert body["order"]["id"] == "1000"
        assert body["order"]["status"] == "pending"
        assert body["order"]["total"] == 378
        assert body["checkout_url"] == gateway.url
        assert body["payment"]["reference"] == "1000"
        assert gateway.payloads[0]["purchase"]["products"][-1]["name"] == "Shipping"
        assert stock_of(store, "p1") == 48

    def test_missing_product(self, client, store):
        add_product(store, "p1", stock=50)
        res = client.post("/api/checkout", json=checkout_body(("p1", 2), ("p9", 1)))
        assert res.status_code == 400
        assert res.json()["detail"] == "Product not found: p9"
        assert stock_of(store, "p1") == 50

    def test_empty_cart(self, client):
        res = client.post("/api/checkout", json=checkout_body())
        assert res.status_code == 400

    def test_invalid_quantity(self, client, store):
        add_product(store, "p1")
        assert client.post("/api/checkout", json=checkout_body(("p1", 0))).status_code == 422

    def test_gateway_refusal(self, client, store, gateway, engine):
        gateway.error = PaymentGatewayError("Invalid brand", {"brand_id": ["unknown"]})
        add_product(store, "p1", stock=5)
        res = client.post("/api/checkout", json=checkout_body(("p1", 1)))
        assert res.status_code == 502
        assert res.json()["detail"] == "Invalid brand"
        # the reservation stays until released
        assert engine.get_order("1000").status.value == "pending"

    def test_without_gateway(self, client, store):
        main.app.dependency_overrides[main.get_gateway] = lambda: None
        add_product(store, "p1")
        body = client.post("/api/checkout", json=checkout_body(("p1", 1))).json()
        assert body["checkout_url"] is None
        assert body["payment"]["success_redirect"].endswith("result=success&order=1000")


class TestPaymentCallback:

    @pytest.fixture
    def order_id(self, client, store):
        add_product(store, "p1", stock=10)
        return client.post("/api/checkout", json=checkout_body(("p1", 3))).json()["order"]["id"]

    def test_success_marks_paid(self, client, store, order_id):
        res = client.get("/api/payment/callback", params={"result": "success", "order": order_id})
        assert res.status_code == 200
        assert res.json()["status"] == "paid"
        assert stock_of(store, "p1") == 7

    @pytest.mark.parametrize("result", ["failed", "cancelled"])
    def test_failure_restocks(self, client, store, order_id, result):
        res = client.get("/api/payment/callback", params={"result": result, "order": order_id})
        assert res.json()["status"] == result
        assert stock_of(store, "p1") == 10
        client.get("/api/payment/callback", params={"result": result, "order": order_id})
        assert stock_of(store, "p1") == 10

    def test_success_after_release_conflicts(self, client, order_id, clock):
        clock.advance(minutes=6)
        client.post("/api/admin/orders/release-stale", headers=ADMIN)
        res = client.get("/api/payment/callback", params={"result": "success", "order": order_id})
        assert res.status_code == 409

    def test_bad_result_and_unknown_order(self, client, order_id):
        assert client.get("/api/payment/callback", params={"result": "maybe", "order": order_id}).status_code == 400
        assert client.get("/api/payment/callback", params={"result": "success", "order": "77"}).status_code == 404


def test_order_lookup(client, store):
    add_product(store, "p1")
    client.post("/api/checkout", json=checkout_body(("p1", 1)))
    client.post("/api/checkout", json=checkout_body(("p1", 1), email="mei@yahoo.com"))
    res = client.post("/api/orders/lookup", json={"email": "aisha@gmail.com", "phone": "0123456789"})
    assert [o["id"] for o in res.json()] == ["1000"]
    res = client.post("/api/orders/lookup", json={"email": "aisha@gmail.com", "phone": "---"})
    assert res.status_code == 400


def test_subscribers(client):
    first = client.post("/api/subscribers", json={"email": "mum@gmail.com"}).json()
    again = client.post("/api/subscribers", json={"email": "mum@gmail.com"}).json()
    assert first["id"] == again["id"]
    assert client.post("/api/subscribers", json={"email": "not-an-email"}).status_code == 422
    assert client.get("/api/admin/subscribers").status_code == 401
    assert [s["email"] for s in client.get("/api/admin/subscribers", headers=ADMIN).json()] == ["mum@gmail.com"]


class TestAdminOrders:

    @pytest.fixture
    def orders(self, client, store, clock):
        add_product(store, "p1", stock=20, price=100, name="The Dream Castle")
        add_product(store, "p2", stock=20, price=50, name="The Parisian Flight")
        ids = []
        for lines in ((("p1", 1),), (("p2", 2),), (("p1", 1), ("p2", 1))):
            ids.append(client.post("/api/checkout", json=checkout_body(*lines)).json()["order"]["id"])
            clock.advance(minutes=1)
        return ids

    def test_list_with_analytics(self, client, orders):
        client.patch(f"/api/admin/orders/{orders[0]}/status", json={"status": "paid"}, headers=ADMIN)
        body = client.get("/api/admin/orders", params={"per_page": 2}, headers=ADMIN).json()
        assert [o["id"] for o in body["orders"]] == ["1002", "1001"]
        assert body["total_pages"] == 2
        assert body["total"] == 3
        assert body["analytics"]["successful_orders"] == 1
        assert body["analytics"]["total_revenue"] == 108
        assert body["products"] == ["The Dream Castle", "The Parisian Flight"]
        assert body["stale"] == []

        body = client.get("/api/admin/orders", params={"status": "pending", "product": "The Parisian Flight"},
                          headers=ADMIN).json()
        assert [o["id"] for o in body["orders"]] == ["1002", "1001"]

    def test_stale_flags_and_release(self, client, orders, clock, store):
        clock.advance(minutes=3, seconds=30)
        body = client.get("/api/admin/orders", headers=ADMIN).json()
        assert sorted(body["stale"]) == ["1000", "1001"]
        assert client.post("/api/admin/orders/release-stale", headers=ADMIN).json() == {"released": 2}
        assert client.post("/api/admin/orders/release-stale", headers=ADMIN).json() == {"released": 0}
        assert stock_of(store, "p1") == 19
        assert stock_of(store, "p2") == 19

    def test_status_transitions(self, client, orders, store):
        url = f"/api/admin/orders/{orders[0]}/status"
        assert client.patch(url, json={"status": "delivered"}, headers=ADMIN).status_code == 409
        res = client.patch(url, json={"status": "delivered", "force": True}, headers=ADMIN)
        assert res.json()["status"] == "delivered"
        assert client.patch(url, json={"status": "unknown"}, headers=ADMIN).status_code == 422
        res = client.patch(f"/api/admin/orders/{orders[1]}/status",
                           json={"status": "cancelled", "current_status": "pending"}, headers=ADMIN)
        assert res.json()["status"] == "cancelled"
        assert stock_of(store, "p2") == 19

    def test_delete(self, client, orders, store):
        assert client.delete(f"/api/admin/orders/{orders[1]}", headers=ADMIN).json() == {
            "deleted": True, "restocked": True}
        assert stock_of(store, "p2") == 19
        res = client.delete(f"/api/admin/orders/{orders[0]}", params={"restock": False}, headers=ADMIN)
        assert res.json()["restocked"] is False
        assert stock_of(store, "p1") == 18
        assert client.delete(f"/api/admin/orders/{orders[0]}", headers=ADMIN).status_code == 404

    def test_digest_and_slip(self, client, orders):
        text = client.post("/api/admin/orders/digest", json={"order_ids": ["1000", "1002"]}, headers=ADMIN).json()
        assert text["count"] == 2
        assert "ORDER #1000\n1 x The Dream Castle (Blankets)" in text["text"]
        res = client.get("/api/admin/orders/1001/slip", headers=ADMIN)
        assert res.status_code == 200
        assert res.headers["content-type"].startswith("text/html")
        assert "Packing Slip #1001" in res.text
        assert client.get("/api/admin/orders/4040/slip", headers=ADMIN).status_code == 404

    def test_packing_find_and_ship(self, client, orders):
        for order_id in orders[:2]:
            client.patch(f"/api/admin/orders/{order_id}/status", json={"status": "paid"}, headers=ADMIN)
        found = client.post("/api/admin/packing/find", json={"text": "1000, 1001, 1002 and 1234"},
                            headers=ADMIN).json()
        assert sorted(o["id"] for o in found["found"]) == ["1000", "1001", "1002"]
        assert found["missing"] == ["1234"]
        assert "Order No: 1000" in found["labels"]

        res = client.post("/api/admin/packing/ship", json={"order_ids": ["1000", "1001", "1002", "1234"]},
                          headers=ADMIN).json()
        assert res["shipped"] == ["1000", "1001"]
        assert set(res["failed"]) == {"1002", "1234"}
        assert res["failed"]["1234"] == "Order not found"

    def test_reset(self, client, orders, store):
        assert client.post("/api/admin/reset", headers=ADMIN).json() == {"deleted": 3, "next_order_id": 1000}
        assert client.get("/api/admin/orders", headers=ADMIN).json()["total"] == 0
        assert client.post("/api/checkout", json=checkout_body(("p1", 1))).json()["order"]["id"] == "1000"


def test_disconnected_store_degrades():
    engine = ReservationEngine(MongoStore(None, None))
    main.app.dependency_overrides[main.get_engine] = lambda: engine
    main.app.dependency_overrides[main.get_gateway] = lambda: None
    try:
        with TestClient(main.app) as c:
            assert c.get("/api/products").json() == []
            assert c.get("/api/products/abc").status_code == 404
            res = c.post("/api/checkout", json=checkout_body(("p1", 1)))
            assert res.status_code == 503
            assert res.json()["detail"] == "Database not connected"
            assert c.post("/api/products", json={"name": "X", "price": 1}, headers=ADMIN).status_code == 503
    finally:
        main.app.dependency_overrides.clear()


def test_unreachable_database_degrades():
    from pymongo import MongoClient

    client = MongoClient("mongodb://127.0.0.1:1", serverSelectionTimeoutMS=200)
    engine = ReservationEngine(MongoStore(client, client["storefront"]))
    main.app.dependency_overrides[main.get_engine] = lambda: engine
    main.app.dependency_overrides[main.get_gateway] = lambda: None
    try:
        with TestClient(main.app) as c:
            assert c.get("/api/products").json() == []
            assert c.get("/api/admin/orders", headers=ADMIN).json()["total"] == 0
            res = c.post("/api/checkout", json=checkout_body(("p1", 1)))
            assert res.status_code == 503
    finally:
        main.app.dependency_overrides.clear()
        client.close()


def test_shutdown_stops_the_reaper(monkeypatch, engine):
    reaper = StaleOrderReaper(engine, interval=3600)
    monkeypatch.setattr(main, "reaper", reaper)
    with TestClient(main.app):
        reaper.acquire()
        assert reaper.running
    assert not reaper.running
    assert reaper.watchers == 0
