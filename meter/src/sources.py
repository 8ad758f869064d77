"""
Sample sources supplying the latest current (A) and voltage (V) readings.

Both adapters implement ``read(channel) -> float | None`` for the channels
``"current"`` and ``"voltage"``.  ``None`` (or NaN) means "no usable value";
the engine substitutes 0.0.  Reads never raise and never wait on a dead
device for longer than one request timeout.

- MqttSampleSource: latest payload of a subscribed topic (Victron dbus-mqtt
  ``{"value": 12.3}`` or a bare number).
- ModbusSampleSource: one holding register per channel over Modbus TCP,
  with exponential backoff between reconnect attempts.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from pymodbus.client import AsyncModbusTcpClient

if TYPE_CHECKING:
    from meter.src.mqtt import MqttLink

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BASE_BACKOFF_S: float = 1.0
"""Initial backoff delay in seconds after the first connection failure."""

MAX_BACKOFF_S: float = 60.0
"""Maximum backoff delay in seconds (cap for exponential growth)."""

MODBUS_TIMEOUT_S: float = 0.5
"""Timeout per Modbus TCP request; must stay well below the sample interval."""

CHANNELS: tuple[str, ...] = ("current", "voltage")


class SampleSource(Protocol):
    """Anything that can report the latest reading of a channel."""

    async def read(self, channel: str) -> float | None: ...


# ---------------------------------------------------------------------------
# MQTT
# ---------------------------------------------------------------------------


def parse_payload(payload: str | None) -> float | None:
    """Extract a number from an MQTT payload.

    Accepts ``"12.3"``, ``12.3`` as JSON, and ``{"value": 12.3}``.
    Anything else yields ``None``.
    """
    if payload is None:
        return None
    text = payload.strip()
    try:
        return float(text)
    except ValueError:
        pass
    try:
        decoded = json.loads(text)
    except ValueError:
        return None
    if isinstance(decoded, dict):
        decoded = decoded.get("value")
    if isinstance(decoded, bool) or not isinstance(decoded, (int, float)):
        return None
    return float(decoded)


class MqttSampleSource:
    """Reads the cached latest values of the current and voltage topics.

    Args:
        link: Shared MQTT link.
        current_topic: Topic carrying the current in amperes.
        voltage_topic: Topic carrying the voltage in volts.
    """

    def __init__(self, link: MqttLink, *, current_topic: str, voltage_topic: str) -> None:
        self._link = link
        self._topics = {"current": current_topic, "voltage": voltage_topic}
        for topic in self._topics.values():
            link.subscribe(topic)

    async def read(self, channel: str) -> float | None:
        topic = self._topics.get(channel)
        if topic is None:
            return None
        return parse_payload(self._link.latest(topic))


# ---------------------------------------------------------------------------
# Modbus TCP
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ChannelRegister:
    """Holding register carrying one channel.

    Attributes:
        address: Modbus holding register address.
        scale: Multiplier from raw value to engineering units.
        signed: Interpret the raw word as two's complement S16.
    """

    address: int
    scale: float = 1.0
    signed: bool = False

    def decode(self, raw: int) -> float:
        val = raw & 0xFFFF
        if self.signed and val >= 0x8000:
            val -= 0x10000
        return val * self.scale


class ModbusSampleSource:
    """Modbus TCP reader with fail-fast exponential backoff.

    After a failure the source returns ``None`` without touching the
    network until the backoff delay has elapsed, so a dead device never
    slows the sampling tick down.

    Args:
        host: Device IP address or hostname.
        port: Modbus TCP port (default 502).
        slave_id: Modbus unit ID.
        registers: Mapping of channel name to ChannelRegister.
        clock: Monotonic clock used for the backoff deadline.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 502,
        slave_id: int = 100,
        registers: dict[str, ChannelRegister],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._host = host
        self._port = port
        self._slave_id = slave_id
        self._registers = registers
        self._clock = clock
        self._client: AsyncModbusTcpClient | None = None
        self._consecutive_failures: int = 0
        self._retry_at: float = 0.0

    async def read(self, channel: str) -> float | None:
        reg = self._registers.get(channel)
        if reg is None:
            return None
        if self._consecutive_failures > 0 and self._clock() < self._retry_at:
            return None

        try:
            value = await self._read_register(reg)
        except Exception:
            logger.warning(
                "Unexpected error reading %s from %s:%d",
                channel,
                self._host,
                self._port,
                exc_info=True,
            )
            value = None

        if value is None:
            self._record_failure()
        else:
            self._consecutive_failures = 0
        return value

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    async def _read_register(self, reg: ChannelRegister) -> float | None:
        if self._client is None:
            self._client = AsyncModbusTcpClient(
                self._host,
                port=self._port,
                timeout=MODBUS_TIMEOUT_S,
            )
        if not self._client.connected:
            ok = await self._client.connect()
            if not ok:
                logger.warning("Failed to connect to Modbus device (connect returned False)")
                return None

        response = await self._client.read_holding_registers(
            reg.address,
            count=1,
            device_id=self._slave_id,
        )
        if response.isError():
            logger.warning("Modbus error reading register %d", reg.address)
            return None
        return reg.decode(response.registers[0])

    def _record_failure(self) -> None:
        self._consecutive_failures += 1
        delay = min(
            BASE_BACKOFF_S * (2 ** (self._consecutive_failures - 1)),
            MAX_BACKOFF_S,
        )
        self._retry_at = self._clock() + delay
        self.close()
        logger.warning(
            "Backoff: next Modbus attempt in %.1fs (consecutive failures: %d)",
            delay,
            self._consecutive_failures,
        )
