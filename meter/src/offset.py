"""
Correction offset strategies applied to the measured daily kWh.

The measured load output drifts systematically against the reference meter
(around 0.020 kWh/day on the original installation).  One strategy is
selected by ``offset_mode``:

- none: no correction.
- fixed: a constant added at every flush.
- live: read from the ``correction_offset`` register at every flush.
- once-per-day: read from the ``correction_offset`` register at the first
  flush of a calendar day, then frozen until the next day.  The frozen value
  and its capture date are persisted so a restart does not recapture.

CHANGELOG:
- 2026-10-19: Capture value and day marker in one transaction
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from datetime import date
from typing import TYPE_CHECKING

from meter.src.integrator import coerce_reading
from meter.src.models import OffsetMode

if TYPE_CHECKING:
    from meter.src.registers import RegisterKeys
    from meter.src.store import RegisterStore

logger = logging.getLogger(__name__)


class OffsetPolicy:
    """Base strategy: no correction."""

    mode = OffsetMode.NONE

    async def resolve(self, store: RegisterStore, keys: RegisterKeys, today: date) -> float:
        """Return the offset (kWh) to add at this flush."""
        return 0.0

    async def reset(self, store: RegisterStore, keys: RegisterKeys) -> None:
        """Clear per-day state at rollover. No-op for stateless strategies."""


class FixedOffset(OffsetPolicy):
    mode = OffsetMode.FIXED

    def __init__(self, offset_kwh: float) -> None:
        self.offset_kwh = offset_kwh

    async def resolve(self, store: RegisterStore, keys: RegisterKeys, today: date) -> float:
        return self.offset_kwh


class LiveOffset(OffsetPolicy):
    """Reads the configuration register on every flush."""

    mode = OffsetMode.LIVE

    async def resolve(self, store: RegisterStore, keys: RegisterKeys, today: date) -> float:
        return coerce_reading(await store.get(keys.correction_offset, 0.0))


class OncePerDayOffset(OffsetPolicy):
    """Captures the configuration register once per calendar day.

    After rollover the frozen value is zeroed but the capture date is kept,
    so flushes between the rollover and midnight add nothing and the next
    day's first flush captures afresh.
    """

    mode = OffsetMode.ONCE_PER_DAY

    async def resolve(self, store: RegisterStore, keys: RegisterKeys, today: date) -> float:
        today_iso = today.isoformat()
        applied_day = await store.get(keys.offset_applied_day, "")
        if applied_day == today_iso:
            return coerce_reading(await store.get(keys.offset_frozen, 0.0))

        offset = coerce_reading(await store.get(keys.correction_offset, 0.0))
        # One transaction: the day marker never exists without its value.
        await store.set_many([(keys.offset_frozen, offset), (keys.offset_applied_day, today_iso)])
        logger.info("Offset of %s kWh captured for %s", offset, today_iso)
        return offset

    async def reset(self, store: RegisterStore, keys: RegisterKeys) -> None:
        await store.set(keys.offset_frozen, 0.0)


def build_offset_policy(mode: OffsetMode, fixed_offset_kwh: float = 0.0) -> OffsetPolicy:
    """Return the strategy instance for *mode*."""
    if mode is OffsetMode.FIXED:
        return FixedOffset(fixed_offset_kwh)
    if mode is OffsetMode.LIVE:
        return LiveOffset()
    if mode is OffsetMode.ONCE_PER_DAY:
        return OncePerDayOffset()
    return OffsetPolicy()
