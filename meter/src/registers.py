"""
Register key map -- single source of truth for persisted slot names.

Every register the engine reads or writes is derived here from the
configured ``register_prefix``, so several meters (load output, PV, ...)
can share one store without colliding.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RegisterKeys:
    """Fully qualified register keys for one meter namespace.

    Attributes:
        daily_raw: Daily consumption in kWh (raw, offset applied).
        daily_filtered: Daily consumption held below the watt threshold.
        lifetime: Lifetime counter in kWh.
        current_watt: Smoothed instantaneous power in W (display).
        correction_offset: Operator-configurable offset in kWh.
        offset_applied_day: ISO date the once-per-day offset was captured.
        offset_frozen: Offset value captured for ``offset_applied_day``.
        backup: Serialized BackupSnapshot JSON.
        last_backup_time: ISO timestamp of the latest backup.
        last_rollover_day: ISO date of the latest completed rollover.
    """

    daily_raw: str
    daily_filtered: str
    lifetime: str
    current_watt: str
    correction_offset: str
    offset_applied_day: str
    offset_frozen: str
    backup: str
    last_backup_time: str
    last_rollover_day: str

    @classmethod
    def for_prefix(cls, prefix: str) -> RegisterKeys:
        """Build the key set for *prefix* (e.g. ``"victron.loadoutput."``)."""
        return cls(
            daily_raw=f"{prefix}current_consumption",
            daily_filtered=f"{prefix}current_consumption_filtered",
            lifetime=f"{prefix}total_consumption",
            current_watt=f"{prefix}current_watt",
            correction_offset=f"{prefix}correction_offset",
            offset_applied_day=f"{prefix}offset_applied_day",
            offset_frozen=f"{prefix}offset_frozen",
            backup=f"{prefix}backup",
            last_backup_time=f"{prefix}last_backup_time",
            last_rollover_day=f"{prefix}last_rollover_day",
        )
