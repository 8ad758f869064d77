"""
Register store using async SQLite, with durable and ephemeral writes.

Persisted registers live in a single key/value table in WAL mode and
survive process restarts.  Writes flagged ``persist=False`` are kept in
memory only, so high-frequency display values never reach the SD card.

Operations:
- get(key, default): last value written, ephemeral first.
- set(key, value, persist): write one register.
- set_many(items): write several registers in one transaction.
- add_listener(callback): observe every write (e.g. MQTT state mirror).
- close(): Close the underlying database connection.

Values are stored as JSON text so floats, strings and booleans round-trip.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)

RegisterListener = Callable[[str, Any, bool], None]
"""Callback ``(key, value, persisted)`` invoked after every write."""

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS registers (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_UPSERT_SQL = """\
INSERT INTO registers (key, value) VALUES (?, ?)
ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = datetime('now');
"""

_SELECT_SQL = "SELECT value FROM registers WHERE key = ?;"


class RegisterStore:
    """Key/value register store backed by a SQLite database.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.

    Usage::

        async with RegisterStore("/data/registers.db") as store:
            await store.set("meter.total_consumption", 10.0)
            await store.set("meter.current_watt", 230, persist=False)
            total = await store.get("meter.total_consumption", 0.0)
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None
        self._ephemeral: dict[str, Any] = {}
        self._listeners: list[RegisterListener] = []

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection.

        Ephemeral values are discarded.
        """
        if self._db is not None:
            await self._db.close()
            self._db = None
        self._ephemeral.clear()

    async def __aenter__(self) -> RegisterStore:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add_listener(self, listener: RegisterListener) -> None:
        """Register a callback invoked after every successful write."""
        self._listeners.append(listener)

    async def get(self, key: str, default: Any = None) -> Any:
        """Return the last value written to *key*, or *default*.

        An ephemeral value shadows the persisted one until the next
        persisted write to the same key.
        """
        if key in self._ephemeral:
            return self._ephemeral[key]
        assert self._db is not None, "Store not opened. Call open() or use async with."
        cursor = await self._db.execute(_SELECT_SQL, (key,))
        row = await cursor.fetchone()
        if row is None:
            return default
        return json.loads(row[0])

    async def set(self, key: str, value: Any, persist: bool = True) -> None:
        """Write one register.

        Args:
            key: Fully qualified register key.
            value: JSON-serializable value.
            persist: When False the value is held in memory only.
        """
        if not persist:
            self._ephemeral[key] = value
            self._notify(key, value, persist=False)
            return
        await self.set_many([(key, value)])

    async def set_many(self, items: Iterable[tuple[str, Any]]) -> None:
        """Persist several registers in a single transaction.

        Either every value is committed or none is.
        """
        assert self._db is not None, "Store not opened. Call open() or use async with."
        items = list(items)
        rows = [(key, json.dumps(value)) for key, value in items]
        if not rows:
            return
        try:
            await self._db.executemany(_UPSERT_SQL, rows)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
        for key, _ in rows:
            self._ephemeral.pop(key, None)
        for key, value in items:
            self._notify(key, value, persist=True)

    def _notify(self, key: str, value: Any, *, persist: bool) -> None:
        for listener in self._listeners:
            try:
                listener(key, value, persist)
            except Exception:
                logger.warning("Register listener failed for %s", key, exc_info=True)
