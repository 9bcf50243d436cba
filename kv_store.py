"""
Key-value record store with atomic batches and change subscriptions.

Records are JSON-compatible dicts addressed by (collection, key). Every write
that has to keep two views in step (time entry + active session + site
personnel mirror) goes through a single `commit`, which either applies all
writes or none of them.
"""
import asyncio
import copy
import logging
import re
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure, PyMongoError

logger = logging.getLogger(__name__)

TIME_ENTRIES = "time_entries"
ACTIVE_SESSIONS = "active_sessions"
SITE_PERSONNEL = "site_personnel"
SUPERVISOR_ALERTS = "supervisor_alerts"
JOB_SITES = "job_sites"
WORKERS = "workers"

WRITE_CONFLICT = 112  # server error code for a transaction write conflict
TRANSACTION_ATTEMPTS = 3

Snapshot = Dict[str, dict]
Listener = Callable[[Snapshot], None]


class StoreUnavailableError(Exception):
    """The store could not be reached, the write was not applied"""


class DuplicateKeyConflict(Exception):
    def __init__(self, collection: str, key: str):
        self.collection = collection
        self.key = key
        super().__init__(f"{collection}/{key} already exists")


@dataclass
class Write:
    collection: str
    key: str
    doc: Optional[dict]  # None deletes the record
    create: bool = False  # fail the whole batch if the record already exists


def site_personnel_key(site_id: str, worker_id: str) -> str:
    return f"{site_id}/{worker_id}"


def _conflicting_write(writes: List[Write], error: DuplicateKeyError) -> Write:
    """Pick the create write a duplicate-key error refers to, from its message and key"""
    details = error.details or {}
    match = re.search(r"collection: [^.\s]+\.(\S+)", details.get("errmsg") or str(error))
    collection = match.group(1) if match else None
    key = (details.get("keyValue") or {}).get("_id")

    creates = [w for w in writes if w.create]
    for write in creates:
        if collection is not None and write.collection != collection:
            continue
        if key is not None and write.key != key:
            continue
        return write
    return creates[0] if creates else writes[0]


class Store(ABC):
    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def all(self, collection: str) -> Snapshot:
        ...

    @abstractmethod
    async def commit(self, writes: Iterable[Write]) -> None:
        ...

    @abstractmethod
    def subscribe(self, collection: str, listener: Listener) -> Callable[[], None]:
        """Call `listener` with the full collection now and after every change. Returns an unsubscribe function."""

    async def find(self, collection: str, **filters) -> List[dict]:
        docs = await self.all(collection)
        return [doc for doc in docs.values() if all(doc.get(k) == v for k, v in filters.items())]


class MemoryStore(Store):
    """In-process store. Commits swap in a fully staged copy, so a failed batch leaves nothing behind."""

    def __init__(self, initial: Optional[Dict[str, Snapshot]] = None):
        self._data: Dict[str, Snapshot] = copy.deepcopy(initial) if initial else {}
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    async def get(self, collection, key):
        doc = self._data.get(collection, {}).get(key)
        return copy.deepcopy(doc)

    async def all(self, collection):
        return copy.deepcopy(self._data.get(collection, {}))

    async def commit(self, writes):
        writes = list(writes)
        staged = {name: dict(docs) for name, docs in self._data.items()}
        for write in writes:
            docs = staged.setdefault(write.collection, {})
            if write.create and write.key in docs:
                raise DuplicateKeyConflict(write.collection, write.key)
            if write.doc is None:
                docs.pop(write.key, None)
            else:
                docs[write.key] = copy.deepcopy(write.doc)
        self._data = staged

        for collection in {w.collection for w in writes}:
            self._notify(collection)

    def subscribe(self, collection, listener):
        self._listeners[collection].append(listener)
        listener(copy.deepcopy(self._data.get(collection, {})))

        def unsubscribe():
            if listener in self._listeners[collection]:
                self._listeners[collection].remove(listener)

        return unsubscribe

    def _notify(self, collection: str) -> None:
        for listener in list(self._listeners.get(collection, [])):
            try:
                listener(copy.deepcopy(self._data.get(collection, {})))
            except Exception:
                logger.exception(f"Listener on {collection} failed")


class MongoStore(Store):
    """
    MongoDB-backed store.
    Batches run inside a multi-document transaction and subscriptions use
    change streams, both of which need a replica set (Atlas provides one).
    """

    def __init__(self, client: AsyncIOMotorClient, db_name: str, retry_delay: float = 5.0):
        self.client = client
        self.db = client[db_name]
        self.retry_delay = retry_delay
        self._watchers: Dict[int, asyncio.Task] = {}

    async def ensure_indexes(self) -> None:
        try:
            await self.db[TIME_ENTRIES].create_index([("worker_id", 1), ("clock_in_at", -1)])
            await self.db[TIME_ENTRIES].create_index([("site_id", 1), ("clock_in_at", -1)])
            await self.db[SITE_PERSONNEL].create_index([("site_id", 1)])
            await self.db[SUPERVISOR_ALERTS].create_index([("timestamp", -1)])
            logger.info("Database indexes created successfully")
        except PyMongoError as e:
            logger.warning(f"Index creation warning: {e}")

    async def get(self, collection, key):
        try:
            doc = await self.db[collection].find_one({"_id": key})
        except ConnectionFailure as e:
            raise StoreUnavailableError(str(e)) from e
        if doc is not None:
            doc.pop("_id", None)
        return doc

    async def all(self, collection):
        try:
            docs = await self.db[collection].find({}).to_list(None)
        except ConnectionFailure as e:
            raise StoreUnavailableError(str(e)) from e
        return {str(doc.pop("_id")): doc for doc in docs}

    async def find(self, collection, **filters):
        try:
            docs = await self.db[collection].find(filters, {"_id": 0}).to_list(None)
        except ConnectionFailure as e:
            raise StoreUnavailableError(str(e)) from e
        return docs

    async def _run_transaction(self, writes: List[Write]) -> None:
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                for write in writes:
                    coll = self.db[write.collection]
                    if write.doc is None:
                        await coll.delete_one({"_id": write.key}, session=session)
                    elif write.create:
                        await coll.insert_one({**write.doc, "_id": write.key}, session=session)
                    else:
                        await coll.replace_one(
                            {"_id": write.key},
                            {**write.doc, "_id": write.key},
                            upsert=True,
                            session=session,
                        )

    async def commit(self, writes):
        writes = list(writes)
        last_error = None
        for attempt in range(1, TRANSACTION_ATTEMPTS + 1):
            try:
                await self._run_transaction(writes)
                return
            except DuplicateKeyError as e:
                conflict = _conflicting_write(writes, e)
                raise DuplicateKeyConflict(conflict.collection, conflict.key) from e
            except OperationFailure as e:
                if e.code != WRITE_CONFLICT and not e.has_error_label("TransientTransactionError"):
                    raise
                logger.warning(f"Transaction write conflict (attempt {attempt}/{TRANSACTION_ATTEMPTS}): {e}")
                last_error = e
            except ConnectionFailure as e:
                raise StoreUnavailableError(str(e)) from e

        # Still contended: blame the create write whose key another writer now holds
        conflict = await self._taken_create_write(writes)
        raise DuplicateKeyConflict(conflict.collection, conflict.key) from last_error

    async def _taken_create_write(self, writes: List[Write]) -> Write:
        creates = [w for w in writes if w.create]
        for write in creates:
            try:
                taken = await self.db[write.collection].find_one({"_id": write.key}, {"_id": 1})
            except ConnectionFailure as e:
                raise StoreUnavailableError(str(e)) from e
            if taken is not None:
                return write
        return creates[0] if creates else writes[0]

    def subscribe(self, collection, listener):
        task = asyncio.create_task(self._watch(collection, listener))
        self._watchers[id(task)] = task

        def unsubscribe():
            self._watchers.pop(id(task), None)
            task.cancel()

        return unsubscribe

    async def _watch(self, collection: str, listener: Listener) -> None:
        while True:
            try:
                listener(await self.all(collection))
                async with self.db[collection].watch() as stream:
                    async for _change in stream:
                        listener(await self.all(collection))
            except (PyMongoError, StoreUnavailableError) as e:
                logger.warning(f"Change stream on {collection} interrupted: {e}")
                await asyncio.sleep(self.retry_delay)

    async def close(self) -> None:
        for task in list(self._watchers.values()):
            task.cancel()
        self._watchers.clear()
        self.client.close()
