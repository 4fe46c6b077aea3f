"""
Process-local document store.

Transactions are optimistic: every document carries a version, a
transaction remembers the version of everything it read and buffers its
writes, and the commit is refused if any of those versions moved. The
transaction body is then run again from scratch, up to ``max_attempts``.
"""
import copy
import logging
import threading
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from errors import TransactionConflict
from store import DocumentStore, Transaction, new_id

logger = logging.getLogger(__name__)

Key = Tuple[str, str]


class MemoryTransaction(Transaction):
    def __init__(self, store: "MemoryStore"):
        self._store = store
        self.reads: Dict[Key, int] = {}
        # None marks a delete
        self.writes: Dict[Key, Optional[dict]] = {}

    def get(self, collection, doc_id):
        key = (collection, doc_id)
        if key in self.writes:
            doc = self.writes[key]
        else:
            version, doc = self._store._read(collection, doc_id)
            self.reads.setdefault(key, version)
        if doc is None:
            return None
        return {**copy.deepcopy(doc), "id": doc_id}

    def set(self, collection, doc_id, data):
        self.writes[(collection, doc_id)] = {k: copy.deepcopy(v) for k, v in data.items() if k != "id"}

    def update(self, collection, doc_id, fields):
        current = self.get(collection, doc_id)
        if current is None:
            return
        current.update(copy.deepcopy(fields))
        self.set(collection, doc_id, current)

    def delete(self, collection, doc_id):
        self.get(collection, doc_id)
        self.writes[(collection, doc_id)] = None


class MemoryStore(DocumentStore):
    def __init__(self, max_attempts: int = 30):
        self.max_attempts = max_attempts
        self._lock = threading.RLock()
        self._docs: Dict[str, Dict[str, dict]] = defaultdict(dict)
        self._versions: Dict[Key, int] = {}
        self._listeners = defaultdict(list)

    def _read(self, collection, doc_id):
        with self._lock:
            return self._versions.get((collection, doc_id), 0), self._docs[collection].get(doc_id)

    def _write(self, collection, doc_id, doc):
        key = (collection, doc_id)
        self._versions[key] = self._versions.get(key, 0) + 1
        if doc is None:
            self._docs[collection].pop(doc_id, None)
        else:
            self._docs[collection][doc_id] = doc

    def _notify(self, collections):
        for collection in collections:
            for callback, sort in list(self._listeners[collection]):
                callback(self.find(collection, sort=sort))

    def insert(self, collection, data, doc_id=None):
        doc_id = doc_id or new_id()
        with self._lock:
            self._write(collection, doc_id, {k: copy.deepcopy(v) for k, v in data.items() if k != "id"})
        self._notify([collection])
        return doc_id

    def get(self, collection, doc_id):
        _, doc = self._read(collection, doc_id)
        if doc is None:
            return None
        return {**copy.deepcopy(doc), "id": doc_id}

    def update(self, collection, doc_id, fields):
        with self._lock:
            doc = self._docs[collection].get(doc_id)
            if doc is None:
                return False
            self._write(collection, doc_id, {**doc, **copy.deepcopy(fields)})
        self._notify([collection])
        return True

    def delete(self, collection, doc_id):
        with self._lock:
            if doc_id not in self._docs[collection]:
                return False
            self._write(collection, doc_id, None)
        self._notify([collection])
        return True

    def delete_all(self, collection):
        with self._lock:
            ids = list(self._docs[collection])
            for doc_id in ids:
                self._write(collection, doc_id, None)
        if ids:
            self._notify([collection])
        return len(ids)

    def find(self, collection, sort=None, **equals) -> List[dict]:
        with self._lock:
            docs = [
                {**copy.deepcopy(doc), "id": doc_id}
                for doc_id, doc in self._docs[collection].items()
                if all(doc.get(k) == v for k, v in equals.items())
            ]
        if sort:
            field, direction = sort
            docs.sort(key=lambda d: (d.get(field) is None, d.get(field)), reverse=direction < 0)
        return docs

    def subscribe(self, collection, callback, sort=None):
        entry = (callback, sort)
        with self._lock:
            self._listeners[collection].append(entry)
        callback(self.find(collection, sort=sort))

        def unsubscribe():
            with self._lock:
                if entry in self._listeners[collection]:
                    self._listeners[collection].remove(entry)

        return unsubscribe

    def _commit(self, txn: MemoryTransaction) -> bool:
        with self._lock:
            for key, version in txn.reads.items():
                if self._versions.get(key, 0) != version:
                    return False
            for (collection, doc_id), doc in txn.writes.items():
                self._write(collection, doc_id, doc)
        return True

    def run_transaction(self, fn):
        for attempt in range(1, self.max_attempts + 1):
            txn = MemoryTransaction(self)
            result = fn(txn)
            if self._commit(txn):
                self._notify({collection for collection, _ in txn.writes})
                return result
            logger.debug("Transaction conflict on attempt %d, retrying", attempt)
        raise TransactionConflict()
