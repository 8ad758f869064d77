"""
Meter engine: integration tick, checkpoint flush, daily rollover, operator actions.

Owns the in-memory AccumulatorState and is the only writer of the daily,
lifetime and backup registers.  Every public coroutine runs under one
asyncio.Lock, so the sampling, flush and rollover loops and the operator
channel never interleave their read-modify-write sequences.

Write budget: the sampling tick only touches memory (plus an ephemeral
display register unless ``persist_smoothed_value`` is set); durable writes
happen on flush, rollover, backup, restore and manual adjustment.

CHANGELOG:
- 2026-10-19: Guard rollover against a second run on the same date
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING

from meter.src.backup import BackupManager
from meter.src.errors import InvalidAdjustmentError
from meter.src.integrator import (
    WATT_SECONDS_PER_KWH,
    AccumulatorState,
    EmaFilter,
    PowerIntegrator,
    coerce_reading,
    make_sample,
)
from meter.src.offset import OffsetPolicy

if TYPE_CHECKING:
    from meter.src.models import BackupSnapshot, SensorSample
    from meter.src.registers import RegisterKeys
    from meter.src.sources import SampleSource
    from meter.src.store import RegisterStore

logger = logging.getLogger(__name__)

KWH_DECIMALS: int = 3
"""Registers hold kWh rounded to Wh resolution."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _local_now() -> datetime:
    return datetime.now().astimezone()


def filtered_kwh(raw_kwh: float, watts: float, previous: float, threshold: float) -> float:
    """Outlier filter for the filtered daily register.

    Follows *raw_kwh* only while the instantaneous power is at or above
    *threshold*; otherwise the previous value is held.
    """
    if watts < threshold:
        return previous
    return raw_kwh


@dataclass(frozen=True, slots=True)
class FlushResult:
    """Values written by one checkpoint."""

    raw_kwh: float
    filtered_kwh: float
    offset_kwh: float
    watts: float


@dataclass(frozen=True, slots=True)
class RolloverResult:
    """Outcome of one rollover attempt. ``applied`` is False for a repeat."""

    applied: bool
    day: date
    daily_kwh: float = 0.0
    lifetime_kwh: float = 0.0


class MeterEngine:
    """Energy accumulator with a write-minimizing checkpoint policy.

    Args:
        store: Opened register store.
        keys: Register keys for this meter's namespace.
        source: Sample source for current and voltage.
        offset_policy: Correction offset strategy.
        ema_alpha: Smoothing factor of the display value.
        min_watt_threshold: Outlier filter threshold in watts.
        persist_smoothed_value: Write the display register durably.
        reset_filtered_on_rollover: Zero the filtered register at rollover.
        now_ms: Initial tick time (epoch millis). Defaults to the clock.
    """

    def __init__(
        self,
        *,
        store: RegisterStore,
        keys: RegisterKeys,
        source: SampleSource,
        offset_policy: OffsetPolicy | None = None,
        ema_alpha: float = 0.3,
        min_watt_threshold: float = 0.1,
        persist_smoothed_value: bool = False,
        reset_filtered_on_rollover: bool = True,
        now_ms: int | None = None,
    ) -> None:
        self._store = store
        self._keys = keys
        self._source = source
        self._offset = offset_policy if offset_policy is not None else OffsetPolicy()
        self._min_watt_threshold = min_watt_threshold
        self._persist_smoothed = persist_smoothed_value
        self._reset_filtered = reset_filtered_on_rollover
        self._lock = asyncio.Lock()

        self.state = AccumulatorState(last_tick_ms=now_ms if now_ms is not None else _now_ms())
        self._integrator = PowerIntegrator(self.state)
        self._ema = EmaFilter(self.state, alpha=ema_alpha)
        self._backups = BackupManager(store, keys, self.state)

    # ------------------------------------------------------------------
    # Periodic activities
    # ------------------------------------------------------------------

    async def read_sample(self) -> SensorSample:
        """Read current and voltage, substituting 0.0 for anything unusable."""
        current = await self._source.read("current")
        voltage = await self._source.read("voltage")
        return make_sample(current, voltage)

    async def sample_tick(self, now_ms: int | None = None) -> float:
        """Integrate one sample and refresh the smoothed display register.

        Returns:
            The instantaneous power of this tick in watts.
        """
        if now_ms is None:
            now_ms = _now_ms()
        async with self._lock:
            sample = await self.read_sample()
            watts = self._integrator.integrate(sample, now_ms)
            self._ema.smooth(watts)
            await self._store.set(
                self._keys.current_watt,
                self._ema.display_watts,
                persist=self._persist_smoothed,
            )
            return watts

    async def flush(self, now: datetime | None = None) -> FlushResult:
        """Checkpoint the in-memory integral into the daily registers."""
        if now is None:
            now = _local_now()
        async with self._lock:
            offset = await self._offset.resolve(self._store, self._keys, now.date())
            raw = round(self.state.energy_kwh + offset, KWH_DECIMALS)
            await self._store.set(self._keys.daily_raw, raw)

            sample = await self.read_sample()
            previous = coerce_reading(await self._store.get(self._keys.daily_filtered, 0.0))
            filtered = filtered_kwh(raw, sample.watts, previous, self._min_watt_threshold)
            await self._store.set(self._keys.daily_filtered, filtered)

            logger.info(
                "Daily consumption saved: %s kWh (offset %s kWh, filtered %s kWh)",
                raw,
                offset,
                filtered,
            )
            return FlushResult(raw_kwh=raw, filtered_kwh=filtered, offset_kwh=offset, watts=sample.watts)

    async def rollover(self, now: datetime | None = None) -> RolloverResult:
        """Fold the daily total into the lifetime counter and start a new day.

        A second call on the same calendar day is ignored.
        """
        if now is None:
            now = _local_now()
        today = now.date()
        async with self._lock:
            if await self._store.get(self._keys.last_rollover_day, "") == today.isoformat():
                logger.warning("Rollover for %s already done, skipping", today)
                return RolloverResult(applied=False, day=today)

            lifetime = coerce_reading(await self._store.get(self._keys.lifetime, 0.0))
            daily = coerce_reading(await self._store.get(self._keys.daily_raw, 0.0))
            new_lifetime = round(lifetime + daily, KWH_DECIMALS)

            updates: list[tuple[str, object]] = [
                (self._keys.lifetime, new_lifetime),
                (self._keys.daily_raw, 0.0),
                (self._keys.last_rollover_day, today.isoformat()),
            ]
            if self._reset_filtered:
                updates.append((self._keys.daily_filtered, 0.0))
            await self._store.set_many(updates)
            self._integrator.reset()
            await self._offset.reset(self._store, self._keys)

            await self._backups.create_backup()
            logger.info(
                "Lifetime counter updated to %s kWh (+%s kWh) and daily backup created",
                new_lifetime,
                daily,
            )
            return RolloverResult(applied=True, day=today, daily_kwh=daily, lifetime_kwh=new_lifetime)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def create_backup(self) -> BackupSnapshot:
        async with self._lock:
            return await self._backups.create_backup()

    async def restore_backup(self) -> BackupSnapshot:
        """Restore the stored snapshot.

        Raises:
            BackupMissingError: No snapshot exists.
            BackupCorruptError: The snapshot cannot be parsed.
        """
        async with self._lock:
            return await self._backups.restore_backup(now_ms=_now_ms())

    async def set_daily_consumption(self, new_kwh: object) -> float:
        """Override today's consumption and resync the integral.

        Args:
            new_kwh: New daily total in kWh.

        Returns:
            The value applied.

        Raises:
            InvalidAdjustmentError: *new_kwh* is not a finite number >= 0.
        """
        if (
            isinstance(new_kwh, bool)
            or not isinstance(new_kwh, (int, float))
            or not math.isfinite(new_kwh)
            or new_kwh < 0
        ):
            logger.warning("Invalid value for manual adjustment: %r", new_kwh)
            raise InvalidAdjustmentError(f"Daily consumption must be a number >= 0, got {new_kwh!r}")

        value = float(new_kwh)
        async with self._lock:
            await self._store.set_many(
                [
                    (self._keys.daily_raw, value),
                    (self._keys.daily_filtered, value),
                ]
            )
            self.state.energy_ws = value * WATT_SECONDS_PER_KWH
        logger.info("Daily consumption manually set to %s kWh, internal counter adjusted", value)
        return value

    async def set_correction_offset(self, offset_kwh: object) -> float:
        """Write the configurable offset register used by live/once-per-day.

        Raises:
            InvalidAdjustmentError: *offset_kwh* is not a finite number.
        """
        if (
            isinstance(offset_kwh, bool)
            or not isinstance(offset_kwh, (int, float))
            or not math.isfinite(offset_kwh)
        ):
            logger.warning("Invalid correction offset: %r", offset_kwh)
            raise InvalidAdjustmentError(f"Correction offset must be a number, got {offset_kwh!r}")

        value = float(offset_kwh)
        async with self._lock:
            await self._store.set(self._keys.correction_offset, value)
        logger.info("Correction offset register set to %s kWh", value)
        return value
