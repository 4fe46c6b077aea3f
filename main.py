import json
import logging
import os
import queue
import hmac
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, EmailStr

from database import db, get_store
from errors import StoreError
from lookup import lookup_orders
from packing import find_orders, mark_shipped, render_packing_slip_html, shipping_labels
from payments import PAYMENT_BRAND_ID, PUBLIC_URL, PaymentGateway, build_purchase_payload, status_for_result
from reaper import StaleOrderReaper
from reservations import ReservationEngine, is_stale, to_order
from sales import ORDERS_PER_PAGE, filter_orders, order_digest, paginate, product_names, summarize
from schemas import Order, OrderDraft, OrderStatus, Product, ProductUpdate, Subscriber
from store import COUNTER_SEED, ORDERS, PRODUCTS, SUBSCRIBERS

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    reaper.stop()


app = FastAPI(title="Boutique Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "change-me")
STREAM_KEEPALIVE_SECONDS = 15

store = get_store()
engine = ReservationEngine(store)
reaper = StaleOrderReaper(engine)
payment_gateway: Optional[PaymentGateway] = None


# Dependencies
def get_engine() -> ReservationEngine:
    return engine


def get_reaper() -> StaleOrderReaper:
    return reaper


def get_gateway() -> Optional[PaymentGateway]:
    return payment_gateway


def require_admin(x_admin_password: Optional[str] = Header(None)):
    if not x_admin_password or not hmac.compare_digest(x_admin_password, ADMIN_PASSWORD):
        raise HTTPException(status_code=401, detail="Admin access denied")
    return True


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# Health and test
@app.get("/")
def read_root():
    return {"message": "Boutique Storefront Backend Running"}


@app.get("/test")
def test_database(engine: ReservationEngine = Depends(get_engine)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "store_backend": type(engine.store).__name__,
        "connection_status": "Connected" if engine.store.connected else "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected"
            try:
                response["collections"] = db.list_collection_names()
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# Product Endpoints
@app.get("/api/products")
def list_products(q: Optional[str] = Query(default=None, description="Search by name"),
                  collection: Optional[str] = None,
                  engine: ReservationEngine = Depends(get_engine)):
    filters = {"collection": collection} if collection else {}
    products = engine.store.find(PRODUCTS, sort=("name", 1), **filters)
    if q:
        products = [p for p in products if q.lower() in (p.get("name") or "").lower()]
    return products


@app.post("/api/products")
def create_product(product: Product, engine: ReservationEngine = Depends(get_engine),
                   admin=Depends(require_admin)):
    data = product.model_dump()
    now = now_iso()
    data.update({"created_at": now, "updated_at": now})
    product_id = engine.store.insert(PRODUCTS, data)
    return engine.store.get(PRODUCTS, product_id)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, engine: ReservationEngine = Depends(get_engine)):
    doc = engine.store.get(PRODUCTS, product_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return doc


@app.put("/api/products/{product_id}")
def update_product(product_id: str, product: ProductUpdate, engine: ReservationEngine = Depends(get_engine),
                   admin=Depends(require_admin)):
    updates = product.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    updates["updated_at"] = now_iso()
    if not engine.store.update(PRODUCTS, product_id, updates):
        raise HTTPException(status_code=404, detail="Product not found")
    return engine.store.get(PRODUCTS, product_id)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, engine: ReservationEngine = Depends(get_engine),
                   admin=Depends(require_admin)):
    if not engine.store.delete(PRODUCTS, product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True}


# Checkout and payment
class CheckoutResponse(BaseModel):
    order: Order
    payment: dict
    checkout_url: Optional[str] = None


@app.post("/api/checkout", response_model=CheckoutResponse)
def checkout(draft: OrderDraft, engine: ReservationEngine = Depends(get_engine),
             gateway: Optional[PaymentGateway] = Depends(get_gateway)):
    order = engine.create_order(draft)
    payload = build_purchase_payload(order, base_url=PUBLIC_URL, brand_id=PAYMENT_BRAND_ID)
    checkout_url = None
    if gateway is not None:
        # A refused payment leaves the order pending; the stale release frees its stock.
        checkout_url = gateway.create_purchase(payload)
    return {"order": order, "payment": payload, "checkout_url": checkout_url}


@app.get("/api/payment/callback", response_model=Order)
def payment_callback(result: str, order: str, engine: ReservationEngine = Depends(get_engine)):
    try:
        status = status_for_result(result)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return engine.update_status(order, status)


# Customer tracking
class LookupRequest(BaseModel):
    email: EmailStr
    phone: str


@app.post("/api/orders/lookup", response_model=List[Order])
def lookup(req: LookupRequest, engine: ReservationEngine = Depends(get_engine)):
    try:
        return lookup_orders(engine.store, req.email, req.phone)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# Newsletter
class SubscribeRequest(BaseModel):
    email: EmailStr


@app.post("/api/subscribers")
def subscribe(req: SubscribeRequest, engine: ReservationEngine = Depends(get_engine)):
    existing = engine.store.find(SUBSCRIBERS, email=req.email)
    if existing:
        return existing[0]
    subscriber = Subscriber(email=req.email, date=now_iso())
    sub_id = engine.store.insert(SUBSCRIBERS, subscriber.model_dump())
    return engine.store.get(SUBSCRIBERS, sub_id)


@app.get("/api/admin/subscribers")
def list_subscribers(engine: ReservationEngine = Depends(get_engine), admin=Depends(require_admin)):
    return engine.store.find(SUBSCRIBERS, sort=("date", -1))


# Admin: sales
@app.get("/api/admin/orders")
def list_orders(search: str = "", status: str = "all", product: str = "all",
                start_date: Optional[date] = None, end_date: Optional[date] = None,
                page: int = Query(1, ge=1), per_page: int = Query(ORDERS_PER_PAGE, ge=1, le=100),
                engine: ReservationEngine = Depends(get_engine), admin=Depends(require_admin)):
    orders = engine.list_orders()
    filtered = filter_orders(orders, search=search, status=status, product=product,
                             start=start_date, end=end_date)
    page_orders, total_pages = paginate(filtered, page, per_page)
    now = engine.clock()
    timeout = timedelta(minutes=engine.stale_minutes)
    return {
        "orders": page_orders,
        "page": page,
        "total_pages": total_pages,
        "total": len(filtered),
        "analytics": summarize(filtered),
        "products": product_names(orders),
        "stale": [o.id for o in filtered if is_stale(o, now, timeout)],
    }


@app.get("/api/admin/orders/stream")
def stream_orders(engine: ReservationEngine = Depends(get_engine), reaper: StaleOrderReaper = Depends(get_reaper),
                  admin=Depends(require_admin)):
    def events():
        updates = queue.Queue()
        unsubscribe = engine.store.subscribe(ORDERS, updates.put, sort=("date", -1))
        try:
            with reaper.watching():
                while True:
                    try:
                        docs = updates.get(timeout=STREAM_KEEPALIVE_SECONDS)
                    except queue.Empty:
                        yield ": keep-alive\n\n"
                        continue
                    orders = [to_order(d).model_dump(mode="json") for d in docs]
                    yield f"data: {json.dumps(orders)}\n\n"
        finally:
            unsubscribe()

    return StreamingResponse(events(), media_type="text/event-stream")


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    current_status: Optional[OrderStatus] = None
    force: bool = False


@app.patch("/api/admin/orders/{order_id}/status", response_model=Order)
def update_order_status(order_id: str, req: StatusUpdateRequest, engine: ReservationEngine = Depends(get_engine),
                        admin=Depends(require_admin)):
    return engine.update_status(order_id, req.status, req.current_status, force=req.force)


@app.delete("/api/admin/orders/{order_id}")
def delete_order(order_id: str, restock: bool = True, engine: ReservationEngine = Depends(get_engine),
                 admin=Depends(require_admin)):
    restocked = engine.delete_order(order_id, restock=restock)
    return {"deleted": True, "restocked": restocked}


@app.post("/api/admin/orders/release-stale")
def release_stale(timeout_minutes: Optional[float] = Query(default=None, gt=0),
                  engine: ReservationEngine = Depends(get_engine), admin=Depends(require_admin)):
    return {"released": engine.auto_release_stale(timeout_minutes)}


class OrderSelection(BaseModel):
    order_ids: List[str]


@app.post("/api/admin/orders/digest")
def digest(req: OrderSelection, engine: ReservationEngine = Depends(get_engine), admin=Depends(require_admin)):
    selected = [o for o in engine.list_orders() if o.id in req.order_ids]
    return {"count": len(selected), "text": order_digest(selected)}


@app.get("/api/admin/orders/{order_id}/slip", response_class=HTMLResponse)
def packing_slip(order_id: str, engine: ReservationEngine = Depends(get_engine), admin=Depends(require_admin)):
    return render_packing_slip_html(engine.get_order(order_id))


# Admin: packing
class PackingSearch(BaseModel):
    text: str


class ShipRequest(OrderSelection):
    force: bool = False


@app.post("/api/admin/packing/find")
def packing_find(req: PackingSearch, engine: ReservationEngine = Depends(get_engine), admin=Depends(require_admin)):
    found, missing = find_orders(engine.list_orders(), req.text)
    return {"found": found, "missing": missing, "labels": shipping_labels(found)}


@app.post("/api/admin/packing/ship")
def packing_ship(req: ShipRequest, engine: ReservationEngine = Depends(get_engine), admin=Depends(require_admin)):
    selected = [o for o in engine.list_orders() if o.id in req.order_ids]
    results: Dict[str, Optional[str]] = mark_shipped(engine, selected, force=req.force)
    known = {o.id for o in selected}
    results.update({i: "Order not found" for i in req.order_ids if i not in known})
    return {
        "shipped": sorted(i for i, err in results.items() if err is None),
        "failed": {i: err for i, err in results.items() if err is not None},
    }


# Admin: danger zone
@app.post("/api/admin/reset")
def reset_system(engine: ReservationEngine = Depends(get_engine), admin=Depends(require_admin)):
    deleted = engine.reset_system()
    return {"deleted": deleted, "next_order_id": COUNTER_SEED + 1}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
