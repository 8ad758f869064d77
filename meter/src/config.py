"""
Meter daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
one engine covers every register namespace and offset strategy.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from datetime import time
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from meter.src.models import OffsetMode

_SECONDS_PER_DAY = 86_400


class MeterSettings(BaseSettings):
    """Meter daemon configuration.

    Attributes:
        sample_source: Where current/voltage come from (``mqtt`` or ``modbus``).
        mqtt_host: MQTT broker hostname (sensor topics, operator commands).
        mqtt_port: MQTT broker port (default 1883).
        mqtt_username: Optional broker username.
        mqtt_password: Optional broker password. Never logged.
        mqtt_client_id: Client id presented to the broker.
        current_topic: Topic carrying the load current in amperes.
        voltage_topic: Topic carrying the voltage in volts.
        command_topic_prefix: Prefix for operator command topics.
        state_topic_prefix: Prefix for mirrored register state topics.
            Empty disables mirroring.
        modbus_host: Modbus TCP host when ``sample_source`` is ``modbus``.
        modbus_port: Modbus TCP port (default 502).
        modbus_slave_id: Modbus unit id.
        current_address: Holding register carrying the current.
        current_scale: Multiplier applied to the raw current register.
        voltage_address: Holding register carrying the voltage.
        voltage_scale: Multiplier applied to the raw voltage register.
        register_prefix: Namespace for every persisted register key.
        store_path: SQLite register store path.
        health_path: Health JSON file path.
        sample_interval_s: Seconds between integration ticks.
        flush_interval_s: Seconds between checkpoints; must divide a day.
        rollover_time: Local ``HH:MM`` of the daily rollover.
        offset_mode: Correction offset strategy.
        fixed_offset_kwh: Offset used by the ``fixed`` strategy.
        min_watt_threshold: Below this power the filtered register holds.
        ema_alpha: Smoothing factor of the display EMA, in (0, 1).
        persist_smoothed_value: Write the smoothed watt register durably.
        reset_filtered_on_rollover: Zero the filtered register at rollover.
    """

    sample_source: Literal["mqtt", "modbus"] = "mqtt"

    mqtt_host: str = "127.0.0.1"
    mqtt_port: int = 1883
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_client_id: str = "load-meter"
    current_topic: str = "Victron/Load_current"
    voltage_topic: str = "Victron/Voltage"
    command_topic_prefix: str = "meter/loadoutput"
    state_topic_prefix: str = "meter/loadoutput"

    modbus_host: str = ""
    modbus_port: int = 502
    modbus_slave_id: int = 100
    current_address: int | None = None
    current_scale: float = 0.1
    voltage_address: int | None = None
    voltage_scale: float = 0.01

    register_prefix: str = "victron.loadoutput."
    store_path: str = "/data/registers.db"
    health_path: str = "/data/health.json"

    sample_interval_s: float = 1.0
    flush_interval_s: int = 60
    rollover_time: str = "23:59"

    offset_mode: OffsetMode = OffsetMode.NONE
    fixed_offset_kwh: float = 0.020
    min_watt_threshold: float = 0.1
    ema_alpha: float = 0.3
    persist_smoothed_value: bool = False
    reset_filtered_on_rollover: bool = True

    @field_validator("ema_alpha")
    @classmethod
    def ema_alpha_must_be_open_unit_interval(cls, v: float) -> float:
        """EMA factor must lie strictly between 0 and 1."""
        if not 0.0 < v < 1.0:
            raise ValueError("EMA_ALPHA must be > 0 and < 1")
        return v

    @field_validator("sample_interval_s")
    @classmethod
    def sample_interval_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("SAMPLE_INTERVAL_S must be > 0")
        return v

    @field_validator("flush_interval_s")
    @classmethod
    def flush_interval_must_divide_day(cls, v: int) -> int:
        """Validate the checkpoint cadence.

        Flush ticks are aligned to wall-clock boundaries the way a cron
        schedule is, so the interval has to split a day evenly (60 for
        every minute, 600 for every ten minutes, 3600 for hourly).
        """
        if v < 1 or _SECONDS_PER_DAY % v != 0:
            raise ValueError("FLUSH_INTERVAL_S must be >= 1 and divide 86400 evenly")
        return v

    @field_validator("rollover_time")
    @classmethod
    def rollover_time_must_be_hh_mm(cls, v: str) -> str:
        """Validate ``HH:MM`` (24h clock)."""
        try:
            time.fromisoformat(v)
        except ValueError:
            raise ValueError("ROLLOVER_TIME must be HH:MM (got: " f"'{v}')") from None
        if len(v) != 5:
            raise ValueError("ROLLOVER_TIME must be HH:MM (got: " f"'{v}')")
        return v

    @field_validator("mqtt_port", "modbus_port")
    @classmethod
    def port_must_be_valid(cls, v: int) -> int:
        if v < 1 or v > 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("modbus_slave_id")
    @classmethod
    def modbus_slave_id_must_be_valid(cls, v: int) -> int:
        """Validate Modbus unit ID is in valid range (0-247)."""
        if v < 0 or v > 247:
            raise ValueError("MODBUS_SLAVE_ID must be between 0 and 247")
        return v

    @field_validator("min_watt_threshold")
    @classmethod
    def min_watt_threshold_must_be_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("MIN_WATT_THRESHOLD must be >= 0")
        return v

    @model_validator(mode="after")
    def _modbus_source_needs_addresses(self) -> "MeterSettings":
        """Modbus source requires a host and both register addresses."""
        if self.sample_source == "modbus":
            missing = [
                name
                for name in ("modbus_host", "current_address", "voltage_address")
                if getattr(self, name) in (None, "")
            ]
            if missing:
                raise ValueError(
                    "sample_source=modbus requires: " + ", ".join(missing)
                )
        return self

    @property
    def rollover_at(self) -> time:
        """Parsed rollover time of day."""
        return time.fromisoformat(self.rollover_time)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
