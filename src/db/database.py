# document store: schemaless collections of JSON documents kept in sqlite
"""
Local backend for the hosted document store contract.

Documents are maps of JSON values plus datetimes, grouped by collection path
(sub-logs use paths such as ``chats/<id>/messages``). Reads, writes and
change-stream subscriptions are all asynchronous; subscribers receive a
ChangeBatch after every committed write that touches their collection.
"""
from __future__ import annotations

import asyncio
import json
import os.path
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import aiosqlite

from db.errors import NotFound, StoreError
from db.models import ChangeBatch, DocumentChange, DocumentSnapshot, Filter
from utils.logger import get_logger

_logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    doc_id     TEXT NOT NULL,
    data       TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (collection, doc_id)
);
"""

_DATE_TAG = "$date"


# ---------------------------
# JSON encoding
# ---------------------------


def _json_default(obj):
    if isinstance(obj, datetime):
        return {_DATE_TAG: obj.isoformat()}
    raise TypeError(f"Object of type {type(obj).__name__} is not storable")


def _json_hook(obj: Dict[str, Any]):
    if len(obj) == 1 and _DATE_TAG in obj and isinstance(obj[_DATE_TAG], str):
        try:
            return datetime.fromisoformat(obj[_DATE_TAG])
        except ValueError:
            return obj
    return obj


def dumps(data: Dict[str, Any]) -> str:
    return json.dumps(data, default=_json_default, sort_keys=True)


def loads(raw: str) -> Dict[str, Any]:
    return json.loads(raw, object_hook=_json_hook)


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    return loads(dumps(data))


# ---------------------------
# Query evaluation
# ---------------------------

_MISSING = object()


def field_value(data: Dict[str, Any], path: str):
    """Look up a (dotted) field path; returns _MISSING when absent."""
    cur: Any = data
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return _MISSING
        cur = cur[part]
    return cur


def _compare(a, op: str, b) -> bool:
    try:
        if op == "<":
            return a < b
        if op == "<=":
            return a <= b
        if op == ">":
            return a > b
        if op == ">=":
            return a >= b
    except TypeError:
        return False
    return False


def matches(data: Dict[str, Any], filters: Iterable[Filter]) -> bool:
    for flt in filters:
        val = field_value(data, flt.field)
        if flt.op == "==":
            ok = val is not _MISSING and val == flt.value
        elif flt.op == "!=":
            ok = val is not _MISSING and val != flt.value
        elif flt.op == "array_contains":
            ok = isinstance(val, list) and flt.value in val
        elif flt.op == "in":
            ok = val is not _MISSING and val in flt.value
        else:
            ok = val is not _MISSING and _compare(val, flt.op, flt.value)
        if not ok:
            return False
    return True


def _sort_key(snapshot: DocumentSnapshot, order_by: Optional[str]) -> Tuple:
    if order_by is None:
        return (snapshot.id,)
    return (field_value(snapshot.data, order_by), snapshot.id)


def evaluate_query(
    snapshots: Iterable[DocumentSnapshot],
    filters: Sequence[Filter] = (),
    order_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None,
    start_after: Optional[DocumentSnapshot] = None,
) -> List[DocumentSnapshot]:
    selected = [s for s in snapshots if matches(s.data, filters)]
    if order_by is not None:
        # documents lacking the order field never appear in an ordered query
        selected = [s for s in selected if field_value(s.data, order_by) is not _MISSING]
    try:
        selected.sort(key=lambda s: _sort_key(s, order_by), reverse=descending)
    except TypeError:
        _logger.warning(f"Mixed value types in order field {order_by!r}; ordering by id.")
        selected.sort(key=lambda s: s.id, reverse=descending)

    if start_after is not None:
        cursor = _sort_key(start_after, order_by)
        try:
            if descending:
                selected = [s for s in selected if _sort_key(s, order_by) < cursor]
            else:
                selected = [s for s in selected if _sort_key(s, order_by) > cursor]
        except TypeError:
            selected = []
    if limit is not None:
        selected = selected[: max(limit, 0)]
    return selected


# ---------------------------
# Subscriptions
# ---------------------------


class Subscription:
    """
    A live query. Iterate with ``async for batch in subscription``; the first
    batch lists every matching document as added, later batches carry only
    what changed. Call close() to release it.
    """

    def __init__(
        self,
        store: "DocumentStore",
        collection: str,
        filters: Sequence[Filter],
        order_by: Optional[str],
        descending: bool,
        limit: Optional[int],
    ):
        self.id = uuid.uuid4().hex
        self.collection = collection
        self.filters = tuple(filters)
        self.order_by = order_by
        self.descending = descending
        self.limit = limit
        self._store = store
        self._known: Dict[str, Dict[str, Any]] = {}
        self._queue: asyncio.Queue[Optional[ChangeBatch]] = asyncio.Queue()
        self.closed = False

    def _push(self, result: List[DocumentSnapshot], initial: bool = False) -> None:
        if self.closed:
            return
        if initial:
            self._known = {}
        changes: List[DocumentChange] = []
        current = {s.id: s for s in result}
        for snap in result:
            previous = self._known.get(snap.id)
            if previous is None:
                changes.append(DocumentChange("added", snap))
            elif previous != snap.data:
                changes.append(DocumentChange("modified", snap))
        for doc_id, data in self._known.items():
            if doc_id not in current:
                changes.append(
                    DocumentChange("removed", DocumentSnapshot(self.collection, doc_id, data))
                )
        self._known = {s.id: s.data for s in result}
        if changes or initial:
            self._queue.put_nowait(ChangeBatch(tuple(changes), tuple(result)))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._store._unregister(self)
        self._queue.put_nowait(None)
        _logger.debug(f"Subscription {self.id} on {self.collection} closed.")

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeBatch:
        batch = await self._queue.get()
        if batch is None:
            raise StopAsyncIteration
        return batch


# ---------------------------
# Transactions
# ---------------------------


class Transaction:
    """Reads and buffered writes committed atomically on one connection."""

    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn
        self.touched: Set[str] = set()

    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        return await _fetch_one(self._conn, collection, doc_id)

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        await _upsert(self._conn, collection, doc_id, data)
        self.touched.add(collection)

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        snap = await _fetch_one(self._conn, collection, doc_id)
        if snap is None:
            raise NotFound(f"{collection}/{doc_id} does not exist")
        merged = {**snap.data, **_copy(fields)}
        await _upsert(self._conn, collection, doc_id, merged)
        self.touched.add(collection)

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._conn.execute(
            "DELETE FROM documents WHERE collection = ? AND doc_id = ?;",
            (collection, doc_id),
        )
        self.touched.add(collection)


async def _fetch_one(
    conn: aiosqlite.Connection, collection: str, doc_id: str
) -> Optional[DocumentSnapshot]:
    cur = await conn.execute(
        "SELECT data FROM documents WHERE collection = ? AND doc_id = ?;",
        (collection, doc_id),
    )
    row = await cur.fetchone()
    await cur.close()
    if not row:
        return None
    return DocumentSnapshot(collection, doc_id, loads(row[0]))


async def _fetch_collection(
    conn: aiosqlite.Connection, collection: str
) -> List[DocumentSnapshot]:
    cur = await conn.execute(
        "SELECT doc_id, data FROM documents WHERE collection = ?;", (collection,)
    )
    rows = await cur.fetchall()
    await cur.close()
    return [DocumentSnapshot(collection, row[0], loads(row[1])) for row in rows]


async def _upsert(
    conn: aiosqlite.Connection, collection: str, doc_id: str, data: Dict[str, Any]
) -> None:
    await conn.execute(
        """
        INSERT INTO documents(collection, doc_id, data, updated_at)
        VALUES (?, ?, ?, datetime('now'))
        ON CONFLICT(collection, doc_id)
        DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at;
        """,
        (collection, doc_id, dumps(data)),
    )


# ---------------------------
# Store
# ---------------------------


class DocumentStore:
    """Async document store backed by a single sqlite file."""

    def __init__(self, path: str):
        self.path = path
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._subscriptions: Dict[str, Subscription] = {}

    async def _init_db(self, conn: aiosqlite.Connection) -> None:
        _logger.info(f"Initializing document store at {self.path}...")
        await conn.executescript(SCHEMA)
        await conn.commit()

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Async context manager yielding an aiosqlite connection.

        Ensures the documents table exists on first use.
        """
        try:
            directory = os.path.dirname(self.path)
            if directory and not os.path.isdir(directory):
                os.makedirs(directory, exist_ok=True)
            conn = await aiosqlite.connect(self.path)
        except (aiosqlite.Error, OSError) as exc:
            raise StoreError(f"Cannot open document store: {exc}") from exc

        try:
            if not self._initialized:
                async with self._init_lock:
                    if not self._initialized:
                        await self._init_db(conn)
                        self._initialized = True
            yield conn
        except aiosqlite.Error as exc:
            raise StoreError(str(exc)) from exc
        finally:
            await conn.close()

    # ---------- reads ----------

    async def get_document(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        async with self.connect() as conn:
            return await _fetch_one(conn, collection, doc_id)

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        start_after: Optional[DocumentSnapshot] = None,
    ) -> List[DocumentSnapshot]:
        async with self.connect() as conn:
            snapshots = await _fetch_collection(conn, collection)
        return evaluate_query(snapshots, filters, order_by, descending, limit, start_after)

    # ---------- writes ----------

    async def set_document(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        async with self.transaction() as txn:
            await txn.set(collection, doc_id, data)
        _logger.debug(f"set {collection}/{doc_id}")

    async def add_document(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        await self.set_document(collection, doc_id, data)
        return doc_id

    async def update_fields(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        async with self.transaction() as txn:
            await txn.update(collection, doc_id, fields)
        _logger.debug(f"update {collection}/{doc_id}: {sorted(fields)}")

    async def delete_document(self, collection: str, doc_id: str) -> None:
        async with self.transaction() as txn:
            await txn.delete(collection, doc_id)
        _logger.debug(f"delete {collection}/{doc_id}")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """
        Run reads and writes atomically. Writes are committed when the block
        exits cleanly and rolled back when it raises; subscribers are notified
        after the commit.

        The block must not issue other writes through the store itself.
        """
        async with self._write_lock:
            async with self.connect() as conn:
                await conn.execute("BEGIN IMMEDIATE;")
                txn = Transaction(conn)
                try:
                    yield txn
                except BaseException:
                    await conn.rollback()
                    raise
                await conn.commit()
        if txn.touched:
            await self._notify(txn.touched)

    # ---------- change streams ----------

    async def subscribe(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> Subscription:
        sub = Subscription(self, collection, filters, order_by, descending, limit)
        # registered before the initial read so no commit in between is missed
        self._subscriptions[sub.id] = sub
        try:
            result = await self.query(collection, filters, order_by, descending, limit)
        except BaseException:
            sub.close()
            raise
        sub._push(result, initial=True)
        _logger.debug(f"Subscription {sub.id} opened on {collection}.")
        return sub

    def _unregister(self, sub: Subscription) -> None:
        self._subscriptions.pop(sub.id, None)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def _notify(self, collections: Set[str]) -> None:
        interested = [s for s in self._subscriptions.values() if s.collection in collections]
        if not interested:
            return
        by_collection: Dict[str, List[DocumentSnapshot]] = {}
        async with self.connect() as conn:
            for name in {s.collection for s in interested}:
                by_collection[name] = await _fetch_collection(conn, name)
        for sub in interested:
            result = evaluate_query(
                by_collection[sub.collection],
                sub.filters,
                sub.order_by,
                sub.descending,
                sub.limit,
            )
            sub._push(result)
