"""
Backup and restore of the full meter state as one snapshot.

A single register holds the latest BackupSnapshot as JSON and is
overwritten on every backup.  Restore is all-or-nothing: the snapshot is
fully parsed before anything is written, and both persisted registers are
replaced in one store transaction.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import ValidationError

from meter.src.errors import BackupCorruptError, BackupMissingError
from meter.src.integrator import coerce_reading
from meter.src.models import BackupSnapshot

if TYPE_CHECKING:
    from meter.src.integrator import AccumulatorState
    from meter.src.registers import RegisterKeys
    from meter.src.store import RegisterStore

logger = logging.getLogger(__name__)


class BackupManager:
    """Creates and restores snapshots of the accumulator and registers.

    Not locked: callers (the engine) serialize access.

    Args:
        store: Register store holding the daily, lifetime and backup slots.
        keys: Register key set of this meter.
        state: Shared in-memory accumulator state.
    """

    def __init__(
        self,
        store: RegisterStore,
        keys: RegisterKeys,
        state: AccumulatorState,
    ) -> None:
        self._store = store
        self._keys = keys
        self._state = state

    async def create_backup(self, now: datetime | None = None) -> BackupSnapshot:
        """Capture the current state and overwrite the backup register.

        Args:
            now: Backup timestamp. Defaults to the current UTC time.

        Returns:
            The snapshot that was written.
        """
        if now is None:
            now = datetime.now(tz=UTC)
        snapshot = BackupSnapshot(
            timestamp=now.isoformat(),
            daily_raw_kwh=coerce_reading(await self._store.get(self._keys.daily_raw, 0.0)),
            energy_ws=self._state.energy_ws,
            lifetime_kwh=coerce_reading(await self._store.get(self._keys.lifetime, 0.0)),
            last_tick_ms=self._state.last_tick_ms,
        )
        await self._store.set_many(
            [
                (self._keys.backup, snapshot.model_dump_json(by_alias=True)),
                (self._keys.last_backup_time, snapshot.timestamp),
            ]
        )
        logger.info("Backup created: %s", snapshot.model_dump_json(by_alias=True))
        return snapshot

    async def load_snapshot(self) -> BackupSnapshot:
        """Read and parse the backup register without changing any state.

        Raises:
            BackupMissingError: The register is empty or was never written.
            BackupCorruptError: The register content is not a valid snapshot.
        """
        raw = await self._store.get(self._keys.backup, "")
        if not raw:
            raise BackupMissingError("No backup available")
        if not isinstance(raw, str):
            raise BackupCorruptError(f"Backup register holds {type(raw).__name__}, not JSON text")
        try:
            return BackupSnapshot.model_validate_json(raw)
        except ValidationError as exc:
            raise BackupCorruptError(f"Could not read backup: {exc}") from exc

    async def restore_backup(self, now_ms: int | None = None) -> BackupSnapshot:
        """Replace registers and accumulator with the stored snapshot.

        Energy used between the snapshot and now is not reconstructed.

        Args:
            now_ms: Fallback tick time for snapshots without one.

        Returns:
            The snapshot that was restored.

        Raises:
            BackupMissingError: No snapshot exists. Nothing changed.
            BackupCorruptError: The snapshot cannot be parsed. Nothing changed.
        """
        snapshot = await self.load_snapshot()

        await self._store.set_many(
            [
                (self._keys.daily_raw, snapshot.daily_raw_kwh),
                (self._keys.lifetime, snapshot.lifetime_kwh),
            ]
        )
        self._state.energy_ws = snapshot.energy_ws
        if snapshot.last_tick_ms is not None:
            self._state.last_tick_ms = snapshot.last_tick_ms
        else:
            self._state.last_tick_ms = now_ms if now_ms is not None else int(time.time() * 1000)

        logger.info("Backup from %s restored", snapshot.timestamp or "unknown time")
        return snapshot
