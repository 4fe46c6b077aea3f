"""
Document store used by the catalog, the order book and the order counter.

Documents travel as plain dicts with their identifier under ``"id"``; the
backends translate to and from their own key field. ``MongoStore`` talks to
MongoDB through pymongo and runs multi-document work inside a client session
transaction. See ``memory_store.MemoryStore`` for the process-local backend.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from errors import NotConnected, TransactionConflict

logger = logging.getLogger(__name__)

PRODUCTS = "products"
ORDERS = "orders"
COUNTERS = "counters"
SUBSCRIBERS = "subscribers"

ORDER_COUNTER = "orders"
# The stored value is the last id handed out, so the first order gets 1000.
COUNTER_SEED = 999

Sort = Optional[Tuple[str, int]]
Listener = Callable[[List[Dict[str, Any]]], None]


def new_id() -> str:
    return str(ObjectId())


def to_str_id(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    d = dict(doc)
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    return d


class Transaction:
    """Reads and writes issued inside ``DocumentStore.run_transaction``."""

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        raise NotImplementedError

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        raise NotImplementedError

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        raise NotImplementedError

    def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError


class DocumentStore:
    """Collection-oriented store with atomic multi-document transactions.

    Reads on a disconnected store degrade to empty results; writes raise
    ``NotConnected``.
    """

    @property
    def connected(self) -> bool:
        return True

    def insert(self, collection: str, data: dict, doc_id: Optional[str] = None) -> str:
        raise NotImplementedError

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        raise NotImplementedError

    def update(self, collection: str, doc_id: str, fields: dict) -> bool:
        raise NotImplementedError

    def delete(self, collection: str, doc_id: str) -> bool:
        raise NotImplementedError

    def delete_all(self, collection: str) -> int:
        raise NotImplementedError

    def find(self, collection: str, sort: Sort = None, **equals) -> List[dict]:
        raise NotImplementedError

    def subscribe(self, collection: str, callback: Listener, sort: Sort = None) -> Callable[[], None]:
        """Call ``callback`` with the full result set now and after every change.

        Returns a function that cancels the subscription.
        """
        raise NotImplementedError

    def run_transaction(self, fn: Callable[[Transaction], Any]) -> Any:
        """Run ``fn`` atomically, re-running it if a document it read changed."""
        raise NotImplementedError


# ----- Order counter -----

def next_order_id(txn: Transaction) -> int:
    """Mint the next order number. Must run inside the order-creation transaction."""
    counter = txn.get(COUNTERS, ORDER_COUNTER)
    current = int(counter["current"]) if counter else COUNTER_SEED
    current += 1
    txn.set(COUNTERS, ORDER_COUNTER, {"current": current})
    return current


def reset_counter(txn: Transaction, to: int = COUNTER_SEED) -> None:
    """Rewind the counter so the next order number is ``to + 1``."""
    txn.set(COUNTERS, ORDER_COUNTER, {"current": int(to)})


def current_counter(store: DocumentStore) -> int:
    counter = store.get(COUNTERS, ORDER_COUNTER)
    return int(counter["current"]) if counter else COUNTER_SEED


# ----- MongoDB -----

class MongoTransaction(Transaction):
    def __init__(self, db, session):
        self.db = db
        self.session = session

    def get(self, collection, doc_id):
        return to_str_id(self.db[collection].find_one({"_id": doc_id}, session=self.session))

    def set(self, collection, doc_id, data):
        body = {k: v for k, v in data.items() if k not in ("id", "_id")}
        self.db[collection].replace_one({"_id": doc_id}, body, upsert=True, session=self.session)

    def update(self, collection, doc_id, fields):
        self.db[collection].update_one({"_id": doc_id}, {"$set": fields}, session=self.session)

    def delete(self, collection, doc_id):
        self.db[collection].delete_one({"_id": doc_id}, session=self.session)


class MongoStore(DocumentStore):
    """pymongo backend. Transactions need a replica set or sharded cluster."""

    def __init__(self, client, db, watch_poll_ms: int = 1000):
        self.client = client
        self.db = db
        self.watch_poll_ms = watch_poll_ms

    @property
    def connected(self) -> bool:
        return self.db is not None

    def _require(self):
        if self.db is None:
            raise NotConnected()
        return self.db

    def insert(self, collection, data, doc_id=None):
        db = self._require()
        body = {k: v for k, v in data.items() if k not in ("id", "_id")}
        body["_id"] = doc_id or new_id()
        try:
            db[collection].insert_one(body)
        except ConnectionFailure as exc:
            raise NotConnected(str(exc)) from exc
        return body["_id"]

    def get(self, collection, doc_id):
        if self.db is None:
            return None
        try:
            return to_str_id(self.db[collection].find_one({"_id": doc_id}))
        except ConnectionFailure as exc:
            logger.warning("Database unreachable, %s/%s reads as missing: %s", collection, doc_id, exc)
            return None

    def update(self, collection, doc_id, fields):
        db = self._require()
        try:
            res = db[collection].update_one({"_id": doc_id}, {"$set": fields})
        except ConnectionFailure as exc:
            raise NotConnected(str(exc)) from exc
        return res.matched_count > 0

    def delete(self, collection, doc_id):
        db = self._require()
        try:
            res = db[collection].delete_one({"_id": doc_id})
        except ConnectionFailure as exc:
            raise NotConnected(str(exc)) from exc
        return res.deleted_count > 0

    def delete_all(self, collection):
        db = self._require()
        try:
            return db[collection].delete_many({}).deleted_count
        except ConnectionFailure as exc:
            raise NotConnected(str(exc)) from exc

    def find(self, collection, sort=None, **equals):
        if self.db is None:
            return []
        cursor = self.db[collection].find(equals)
        if sort:
            field, direction = sort
            cursor = cursor.sort(field, ASCENDING if direction >= 0 else DESCENDING)
        try:
            return [to_str_id(d) for d in cursor]
        except ConnectionFailure as exc:
            logger.warning("Database unreachable, returning empty %s list: %s", collection, exc)
            return []

    def subscribe(self, collection, callback, sort=None):
        if self.db is None:
            logger.warning("Database not initialized. Returning empty %s list.", collection)
            callback([])
            return lambda: None

        stop = threading.Event()

        def watch():
            try:
                callback(self.find(collection, sort=sort))
                with self.db[collection].watch(max_await_time_ms=self.watch_poll_ms) as stream:
                    while stream.alive and not stop.is_set():
                        if stream.try_next() is not None:
                            callback(self.find(collection, sort=sort))
            except PyMongoError:
                logger.exception("%s subscription error", collection)

        threading.Thread(target=watch, name=f"watch-{collection}", daemon=True).start()
        return stop.set

    def run_transaction(self, fn):
        self._require()

        def body(session):
            # with_transaction keeps retrying transient errors for up to two
            # minutes; an unreachable server should fail now instead.
            try:
                return fn(MongoTransaction(self.db, session))
            except ConnectionFailure as exc:
                raise NotConnected(str(exc)) from exc

        try:
            with self.client.start_session() as session:
                return session.with_transaction(
                    body,
                    read_concern=ReadConcern("snapshot"),
                    write_concern=WriteConcern("majority"),
                )
        except ConnectionFailure as exc:
            raise NotConnected(str(exc)) from exc
        except PyMongoError as exc:
            if exc.has_error_label("TransientTransactionError") or exc.has_error_label("UnknownTransactionCommitResult"):
                raise TransactionConflict() from exc
            raise
