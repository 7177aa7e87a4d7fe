#!/usr/bin/env python3
"""
Snapshot storage for per-tab aggregation results.

The orchestrator only talks to the CacheStore interface (get/set/clear keyed
by tab id). Snapshots are always written whole: a set() replaces whatever was
stored for the tab, never merges into it.
"""

import json
from abc import ABC, abstractmethod
from asyncio import CancelledError, Event, Queue, TimeoutError, create_task, wait_for
from os import path
from sqlite3 import Error, Row, connect
from time import time
from typing import Any, Dict, Optional
from uuid import uuid4

from config import config, get_logger
from models import CachedSnapshot
from telemetry import trace_span

logger = get_logger("cache")

SCHEMA = """
CREATE TABLE IF NOT EXISTS snapshots (
    tab_id TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    updated_at REAL NOT NULL
)
"""


class CacheStore(ABC):
    """Key-value store of CachedSnapshot values keyed by tab id."""

    @abstractmethod
    async def get(self, tab_id: str) -> Optional[CachedSnapshot]:
        ...

    @abstractmethod
    async def set(self, tab_id: str, snapshot: CachedSnapshot) -> None:
        ...

    @abstractmethod
    async def clear(self, tab_id: str) -> None:
        ...

    async def close(self) -> None:
        return None


class MemoryCacheStore(CacheStore):
    """In-process store; snapshots are immutable so sharing them is safe."""

    def __init__(self):
        self._snapshots: Dict[str, CachedSnapshot] = {}

    async def get(self, tab_id: str) -> Optional[CachedSnapshot]:
        return self._snapshots.get(tab_id)

    async def set(self, tab_id: str, snapshot: CachedSnapshot) -> None:
        self._snapshots[tab_id] = snapshot

    async def clear(self, tab_id: str) -> None:
        self._snapshots.pop(tab_id, None)


class SQLiteCacheStore(CacheStore):
    """SQLite-backed store.

    All statements run on one connection owned by a single worker task fed
    through an asyncio queue, so callers never share a cursor.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.CACHE_PATH
        self.queue: Queue = Queue()
        self.results: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Start the database worker."""
        if self.running:
            return
        if not path.isfile(self.db_path):
            logger.info(f"Cache database {self.db_path} does not exist. A new database will be created.")
        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        self.conn.execute(SCHEMA)
        self.conn.commit()
        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info(f"Snapshot cache worker started ({self.db_path})")

    async def close(self) -> None:
        """Stop the database worker and close the connection."""
        if not self.running:
            return
        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
        if self.conn:
            self.conn.close()
            self.conn = None
        # Release anyone still waiting on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()
        logger.info("Snapshot cache worker stopped")

    async def _worker(self) -> None:
        while self.running:
            try:
                operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
            except TimeoutError:
                continue
            try:
                method = getattr(self, operation_name)
                self.results[operation_id] = {"result": method(**params)}
            except Error as e:
                logger.error(f"Cache operation error in {operation_name}: {e}")
                self.results[operation_id] = {"error": e}
            finally:
                if operation_id in self.events:
                    self.events[operation_id].set()
                self.queue.task_done()

    @trace_span(
        "cache.execute",
        tracer_name="cache",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {"db.operation": operation_name},
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Queue a named operation for the worker and wait for its result."""
        if not self.running:
            await self.start()
        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event
        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, None)
            if result is None:
                raise RuntimeError(f"Cache closed before {operation_name} completed")
            if "error" in result:
                raise result["error"]
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Operations run on the worker's connection
    def load_snapshot(self, tab_id: str) -> Optional[str]:
        row = self.conn.execute("SELECT payload FROM snapshots WHERE tab_id = ?", (tab_id,)).fetchone()
        return row["payload"] if row else None

    def store_snapshot(self, tab_id: str, payload: str, updated_at: float) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO snapshots (tab_id, payload, updated_at) VALUES (?, ?, ?)",
                (tab_id, payload, updated_at),
            )

    def delete_snapshot(self, tab_id: str) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM snapshots WHERE tab_id = ?", (tab_id,))

    async def get(self, tab_id: str) -> Optional[CachedSnapshot]:
        payload = await self.execute("load_snapshot", tab_id=tab_id)
        if not payload:
            return None
        try:
            return CachedSnapshot.from_dict(json.loads(payload))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable snapshot for tab {tab_id}: {e}")
            await self.clear(tab_id)
            return None

    async def set(self, tab_id: str, snapshot: CachedSnapshot) -> None:
        payload = json.dumps(snapshot.to_dict(), ensure_ascii=False)
        await self.execute("store_snapshot", tab_id=tab_id, payload=payload, updated_at=snapshot.timestamp or time())

    async def clear(self, tab_id: str) -> None:
        await self.execute("delete_snapshot", tab_id=tab_id)
