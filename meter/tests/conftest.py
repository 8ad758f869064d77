"""
Shared test fixtures for meter daemon tests.

Provides environment isolation for MeterSettings tests and a scripted
sample source for engine tests.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from collections.abc import Iterable

import pytest

# All MeterSettings environment variable names, used for cleanup.
_ALL_METER_ENV_VARS = (
    "SAMPLE_SOURCE",
    "MQTT_HOST",
    "MQTT_PORT",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
    "MQTT_CLIENT_ID",
    "CURRENT_TOPIC",
    "VOLTAGE_TOPIC",
    "COMMAND_TOPIC_PREFIX",
    "STATE_TOPIC_PREFIX",
    "MODBUS_HOST",
    "MODBUS_PORT",
    "MODBUS_SLAVE_ID",
    "CURRENT_ADDRESS",
    "CURRENT_SCALE",
    "VOLTAGE_ADDRESS",
    "VOLTAGE_SCALE",
    "REGISTER_PREFIX",
    "STORE_PATH",
    "HEALTH_PATH",
    "SAMPLE_INTERVAL_S",
    "FLUSH_INTERVAL_S",
    "ROLLOVER_TIME",
    "OFFSET_MODE",
    "FIXED_OFFSET_KWH",
    "MIN_WATT_THRESHOLD",
    "EMA_ALPHA",
    "PERSIST_SMOOTHED_VALUE",
    "RESET_FILTERED_ON_ROLLOVER",
)


@pytest.fixture(autouse=True)
def _clean_meter_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all meter env vars and isolate from .env files before each test."""
    for var in _ALL_METER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


class ScriptedSource:
    """Sample source returning fixed or scripted readings per channel.

    ``ScriptedSource(current=2.0, voltage=12.0)`` always returns those
    values; ``set()`` changes them between ticks.  A value may be any
    object (``None``, NaN, a string) to exercise the fallback rule.
    """

    def __init__(self, current: object = 0.0, voltage: object = 0.0) -> None:
        self.values: dict[str, object] = {"current": current, "voltage": voltage}
        self.reads: list[str] = []

    def set(self, current: object, voltage: object) -> None:
        self.values = {"current": current, "voltage": voltage}

    async def read(self, channel: str) -> object:
        self.reads.append(channel)
        return self.values.get(channel)


class SequenceSource(ScriptedSource):
    """Returns successive (current, voltage) pairs, one pair per tick."""

    def __init__(self, pairs: Iterable[tuple[object, object]]) -> None:
        super().__init__()
        self._pairs = list(pairs)

    async def read(self, channel: str) -> object:
        if channel == "current" and self._pairs:
            self.set(*self._pairs.pop(0))
        return await super().read(channel)


@pytest.fixture()
def source() -> ScriptedSource:
    return ScriptedSource(current=2.0, voltage=12.0)


@pytest.fixture()
def source_factory() -> type[ScriptedSource]:
    """The ScriptedSource class, for tests that need several readings."""
    return ScriptedSource


@pytest.fixture()
def sequence_source_factory() -> type[SequenceSource]:
    return SequenceSource
