"""
Pydantic models for sensor samples and the backup record.

Defines the SensorSample read on every integration tick, the OffsetMode
strategy selector, and the BackupSnapshot wire format stored in the single
backup register.

CHANGELOG:
- 2026-10-19: Reject non-finite and negative energy values in backups
- 2026-10-19: Accept legacy backup keys written by the ioBroker scripts
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class OffsetMode(StrEnum):
    """Correction offset strategy applied at every flush."""

    NONE = "none"
    FIXED = "fixed"
    LIVE = "live"
    ONCE_PER_DAY = "once-per-day"


class SensorSample(BaseModel):
    """A single current/voltage reading.

    Values are already coerced: the integrator never sees ``None`` or NaN.

    Attributes:
        current: Load current in amperes.
        voltage: Voltage in volts.
    """

    current: float = 0.0
    voltage: float = 0.0

    @property
    def watts(self) -> float:
        """Instantaneous power. Negative for reverse flow."""
        return self.current * self.voltage


class BackupSnapshot(BaseModel):
    """Serialized meter state kept in the single backup register.

    Serialized with camelCase keys::

        {"timestamp": "...", "dailyRawKWh": 1.234, "energyWattSeconds": 4442400.0,
         "lifetimeKWh": 10.0, "lastTickEpochMillis": 1760000000000}

    Records produced by the legacy ioBroker scripts (``current``/``aktuell``,
    ``wattSeconds``, ``total``/``gesamt``, ``lastCalculationTime``) are
    accepted on read.

    Attributes:
        timestamp: ISO-8601 creation time.
        daily_raw_kwh: Daily raw register at backup time. May be negative
            while a negative correction offset exceeds the measured energy.
        energy_ws: In-memory watt-second integral at backup time.
        lifetime_kwh: Lifetime counter at backup time.
        last_tick_ms: Epoch millis of the last integration tick, if known.
    """

    model_config = ConfigDict(populate_by_name=True)

    timestamp: str = ""
    daily_raw_kwh: float = Field(
        allow_inf_nan=False,
        validation_alias=AliasChoices("dailyRawKWh", "current", "aktuell", "daily_raw_kwh"),
        serialization_alias="dailyRawKWh",
    )
    energy_ws: float = Field(
        ge=0,
        allow_inf_nan=False,
        validation_alias=AliasChoices("energyWattSeconds", "wattSeconds", "energy_ws"),
        serialization_alias="energyWattSeconds",
    )
    lifetime_kwh: float = Field(
        ge=0,
        allow_inf_nan=False,
        validation_alias=AliasChoices("lifetimeKWh", "total", "gesamt", "lifetime_kwh"),
        serialization_alias="lifetimeKWh",
    )
    last_tick_ms: int | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "lastTickEpochMillis", "lastCalculationTime", "last_tick_ms"
        ),
        serialization_alias="lastTickEpochMillis",
    )
