"""
Health file writer for the meter daemon.

Writes a JSON health file at a configurable path with four fields:
- last_sample_ts: ISO timestamp of the most recent integration tick.
- last_flush_ts: ISO timestamp of the most recent checkpoint.
- last_rollover_ts: ISO timestamp of the most recent daily rollover.
- last_backup_ts: ISO timestamp of the most recent backup.

Sampling happens every second, so record_sample() only updates memory; the
file is rewritten on flush, rollover and backup events.  Health reporting
therefore adds no writes beyond the checkpoint cadence.

CHANGELOG:
- 2026-10-19: Keep sample timestamps in memory between checkpoints
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes meter health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_sample_ts: str | None = None
        self._last_flush_ts: str | None = None
        self._last_rollover_ts: str | None = None
        self._last_backup_ts: str | None = None

    def record_sample(self) -> None:
        """Record a sampling tick (in memory only)."""
        self._last_sample_ts = _now_iso()

    def record_flush(self) -> None:
        """Record a checkpoint and write health file."""
        self._last_flush_ts = _now_iso()
        self._write()

    def record_rollover(self) -> None:
        """Record a rollover (which includes a backup) and write health file."""
        self._last_rollover_ts = _now_iso()
        self._last_backup_ts = self._last_rollover_ts
        self._write()

    def record_backup(self) -> None:
        """Record a manual backup and write health file."""
        self._last_backup_ts = _now_iso()
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "last_sample_ts": self._last_sample_ts,
            "last_flush_ts": self._last_flush_ts,
            "last_rollover_ts": self._last_rollover_ts,
            "last_backup_ts": self._last_backup_ts,
        }
        self.path.write_text(json.dumps(data))


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()
