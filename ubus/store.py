"""
Directory store for users, routes and buses.

A small document store with the primitives the app needs from a hosted
document database: create / update / delete, equality queries, live
subscriptions that push a fresh snapshot of the matching documents after every
committed change, and all-or-nothing multi-document transactions.

Documents live in memory and every commit is written back to one JSON file
per collection (see ``ubus.utils.data_manager``). Commits are serialised by an
``asyncio.Lock``; subscribers are notified after the commit, in commit order.
"""

import asyncio
import copy
import inspect
import logging
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from ubus.errors import (
    DocumentNotFoundError,
    MissingIndexError,
    StoreWriteError,
    SubscriptionError,
    TransactionError,
    UBusError,
)
from ubus.models import BUSES, COLLECTIONS, ROUTES, USERS
from ubus.scope import Subscription
from ubus.utils import data_manager

logger = logging.getLogger(__name__)

Doc = Dict[str, Any]
Filters = Dict[str, Any]
Snapshot = List[Doc]
Update = Tuple[str, str, Dict[str, Any]]

# Equality filters a query may use, per collection. Filtering on "id" is always allowed.
DEFAULT_INDEXES: Dict[str, Tuple[str, ...]] = {
    USERS: ("role",),
    ROUTES: ("routeNumber",),
    BUSES: ("routeNumber", "driverId"),
}


class _Listener:
    def __init__(self, collection: str, filters: Filters,
                 on_change: Callable[[Snapshot], None],
                 on_error: Optional[Callable[[UBusError], None]]):
        self.collection = collection
        self.filters = dict(filters)
        self.on_change = on_change
        self.on_error = on_error
        self.last_snapshot: Optional[Snapshot] = None
        self.handle: Optional[Subscription] = None


class Transaction:
    """Read-then-write transaction handed to ``DirectoryStore.run_transaction``.

    Reads see committed state. Writes are staged and only applied when the
    transaction function returns without raising.
    """

    def __init__(self, store: "DirectoryStore"):
        self._store = store
        self.writes: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def get(self, collection: str, doc_id: str) -> Optional[Doc]:
        return copy.deepcopy(self._store._get(collection, doc_id))

    def query(self, collection: str, filters: Optional[Filters] = None) -> Snapshot:
        filters = filters or {}
        self._store._check_index(collection, filters)
        return copy.deepcopy(self._store._query(collection, filters))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        if self._store._get(collection, doc_id) is None:
            raise DocumentNotFoundError(collection, doc_id)
        self.writes.setdefault((collection, doc_id), {}).update(fields)


class DirectoryStore:
    def __init__(self, data_dir: Optional[Path] = None,
                 indexes: Optional[Dict[str, Iterable[str]]] = None):
        self.data_dir = Path(data_dir) if data_dir is not None else None
        self.indexes = {
            name: set(fields) for name, fields in (indexes if indexes is not None else DEFAULT_INDEXES).items()
        }
        self._collections: Dict[str, Dict[str, Doc]] = {}
        self._listeners: Dict[str, List[_Listener]] = {name: [] for name in COLLECTIONS}
        self._lock = asyncio.Lock()

        for name in COLLECTIONS:
            docs = data_manager.load_data(name, self.data_dir) if self.data_dir is not None else []
            self._collections[name] = {doc["id"]: doc for doc in docs}

    # --- point-in-time reads ---
    async def get(self, collection: str, doc_id: str) -> Optional[Doc]:
        doc = self._get(collection, doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def query(self, collection: str, filters: Optional[Filters] = None) -> Snapshot:
        filters = filters or {}
        self._check_index(collection, filters)
        return copy.deepcopy(self._query(collection, filters))

    # --- writes ---
    async def create(self, collection: str, record: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or uuid.uuid4().hex
        doc = copy.deepcopy(record)
        doc["id"] = doc_id
        await self._commit({(collection, doc_id): doc})
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        async with self._lock:
            current = self._get(collection, doc_id)
            if current is None:
                raise DocumentNotFoundError(collection, doc_id)
            merged = copy.deepcopy(current)
            merged.update(copy.deepcopy(fields))
            merged["id"] = doc_id
            self._apply({(collection, doc_id): merged})
        self._notify({collection})

    async def delete(self, collection: str, doc_id: str) -> None:
        async with self._lock:
            if self._get(collection, doc_id) is None:
                raise DocumentNotFoundError(collection, doc_id)
            self._apply({(collection, doc_id): None})
        self._notify({collection})

    async def transaction(self, updates: List[Update]) -> None:
        """Apply a batch of partial updates all-or-nothing."""
        async with self._lock:
            changes: Dict[Tuple[str, str], Optional[Doc]] = {}
            for collection, doc_id, fields in updates:
                key = (collection, doc_id)
                current = changes.get(key) or self._get(collection, doc_id)
                if current is None:
                    raise TransactionError(f"Transaction aborted: {collection}/{doc_id} not found")
                merged = copy.deepcopy(current)
                merged.update(copy.deepcopy(fields))
                changes[key] = merged
            self._apply(changes)
        self._notify({collection for collection, _ in changes})

    async def run_transaction(self, fn: Callable[[Transaction], Union[Any, Awaitable[Any]]]) -> Any:
        """Run ``fn`` against a consistent view and commit its staged writes atomically.

        No other commit can interleave between the reads ``fn`` performs and
        the writes it stages. If ``fn`` raises, nothing is written.
        """
        async with self._lock:
            txn = Transaction(self)
            result = fn(txn)
            if inspect.isawaitable(result):
                result = await result
            changes: Dict[Tuple[str, str], Optional[Doc]] = {}
            for (collection, doc_id), fields in txn.writes.items():
                merged = copy.deepcopy(self._get(collection, doc_id))
                merged.update(copy.deepcopy(fields))
                changes[(collection, doc_id)] = merged
            self._apply(changes)
        self._notify({collection for collection, _ in changes})
        return result

    # --- live subscriptions ---
    def subscribe(self, collection: str, filters: Optional[Filters],
                  on_change: Callable[[Snapshot], None],
                  on_error: Optional[Callable[[UBusError], None]] = None) -> Subscription:
        """Deliver the current matching snapshot now and again after every change to it."""
        filters = filters or {}
        listener = _Listener(collection, filters, on_change, on_error)
        handle = Subscription(lambda: self._remove_listener(listener),
                              name=f"{collection}{filters or ''}")
        listener.handle = handle

        try:
            self._check_index(collection, filters)
        except MissingIndexError as exc:
            logger.error("Subscription on %s rejected: %s", collection, exc)
            handle.active = False
            self._fail(listener, exc)
            return handle

        self._listeners[collection].append(listener)
        self._deliver(listener, self._query(collection, filters))
        return handle

    def listener_count(self, collection: Optional[str] = None) -> int:
        if collection is not None:
            return len(self._listeners[collection])
        return sum(len(listeners) for listeners in self._listeners.values())

    # --- internals ---
    def _get(self, collection: str, doc_id: str) -> Optional[Doc]:
        return self._collection(collection).get(doc_id)

    def _query(self, collection: str, filters: Filters) -> Snapshot:
        return [
            doc for doc in self._collection(collection).values()
            if all(doc.get(field) == value for field, value in filters.items())
        ]

    def _collection(self, collection: str) -> Dict[str, Doc]:
        if collection not in self._collections:
            raise DocumentNotFoundError(collection, "*")
        return self._collections[collection]

    def _check_index(self, collection: str, filters: Filters) -> None:
        indexed = self.indexes.get(collection, set())
        for field in filters:
            if field != "id" and field not in indexed:
                raise MissingIndexError(collection, field)

    async def _commit(self, changes: Dict[Tuple[str, str], Optional[Doc]]) -> None:
        async with self._lock:
            self._apply(changes)
        self._notify({collection for collection, _ in changes})

    def _apply(self, changes: Dict[Tuple[str, str], Optional[Doc]]) -> None:
        """Apply changes in memory and persist them; on a failed save roll everything back."""
        if not changes:
            return
        touched = {collection for collection, _ in changes}
        backup = {name: dict(self._collection(name)) for name in touched}

        for (collection, doc_id), doc in changes.items():
            if doc is None:
                self._collections[collection].pop(doc_id, None)
            else:
                self._collections[collection][doc_id] = doc

        if self.data_dir is None:
            return
        try:
            for name in touched:
                data_manager.save_data(name, list(self._collections[name].values()), self.data_dir)
        except Exception as exc:
            logger.error("Failed to persist %s, rolling back", sorted(touched), exc_info=True)
            self._collections.update(backup)
            for name in touched:
                try:
                    data_manager.save_data(name, list(self._collections[name].values()), self.data_dir)
                except Exception:
                    logger.exception("Could not restore %s on disk", name)
            raise StoreWriteError() from exc

    def _notify(self, collections: Iterable[str]) -> None:
        for collection in collections:
            for listener in list(self._listeners[collection]):
                if listener.handle is not None and not listener.handle.active:
                    continue
                snapshot = self._query(collection, listener.filters)
                if snapshot != listener.last_snapshot:
                    self._deliver(listener, snapshot)

    def _deliver(self, listener: _Listener, snapshot: Snapshot) -> None:
        listener.last_snapshot = copy.deepcopy(snapshot)
        try:
            listener.on_change(copy.deepcopy(snapshot))
        except Exception as exc:
            logger.error("Listener on %s failed, cancelling it", listener.collection, exc_info=True)
            if listener.handle is not None:
                listener.handle.cancel()
            error = SubscriptionError(f"Listener on {listener.collection} failed: {exc}")
            error.__cause__ = exc
            self._fail(listener, error)

    def _fail(self, listener: _Listener, error: UBusError) -> None:
        if listener.on_error is None:
            return
        try:
            listener.on_error(error)
        except Exception:
            logger.exception("Error handler on %s raised", listener.collection)

    def _remove_listener(self, listener: _Listener) -> None:
        listeners = self._listeners[listener.collection]
        if listener in listeners:
            listeners.remove(listener)
