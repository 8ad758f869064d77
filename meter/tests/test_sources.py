"""
Tests for the sample sources.

Verifies MQTT payload parsing and the cached MQTT source, and the Modbus
TCP source against a mocked AsyncModbusTcpClient: decoding, fail-fast
backoff after errors, and recovery.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import math
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from meter.src.sources import (
    ChannelRegister,
    ModbusSampleSource,
    MqttSampleSource,
    parse_payload,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_response(registers: list[int], is_error: bool = False) -> MagicMock:
    resp = MagicMock()
    resp.isError.return_value = is_error
    resp.registers = registers
    return resp


def _make_mock_client(
    values: dict[int, int] | None = None,
    connect_ok: bool = True,
    raise_on_read: bool = False,
) -> AsyncMock:
    """Mock AsyncModbusTcpClient answering holding register reads by address."""
    values = values or {}
    client = AsyncMock()
    client.connected = False
    client.close = MagicMock()

    async def _connect() -> bool:
        client.connected = connect_ok
        return connect_ok

    async def _read_holding_registers(address: int, *, count: int = 1, device_id: int = 1) -> MagicMock:
        if raise_on_read:
            raise Exception("Simulated Modbus transport error")
        if address not in values:
            return _make_response([], is_error=True)
        return _make_response([values[address]])

    client.connect = AsyncMock(side_effect=_connect)
    client.read_holding_registers = AsyncMock(side_effect=_read_holding_registers)
    return client


def _modbus_source(clock: Any = None) -> ModbusSampleSource:
    return ModbusSampleSource(
        clock=clock or (lambda: 0.0),
        host="192.168.1.20",
        port=502,
        slave_id=100,
        registers={
            "current": ChannelRegister(776, scale=0.1, signed=True),
            "voltage": ChannelRegister(771, scale=0.01),
        },
    )


class FakeLink:
    def __init__(self) -> None:
        self.payloads: dict[str, str] = {}
        self.subscribed: list[str] = []

    def subscribe(self, topic: str, handler: object = None) -> None:
        self.subscribed.append(topic)

    def latest(self, topic: str) -> str | None:
        return self.payloads.get(topic)


# ===========================================================================
# MQTT
# ===========================================================================


class TestParsePayload:
    @pytest.mark.parametrize(
        ("payload", "expected"),
        [
            ("12.5", 12.5),
            (" 3 ", 3.0),
            ('{"value": 13.21}', 13.21),
            ('{"value": -2}', -2.0),
            ("-0.4", -0.4),
        ],
    )
    def test_numbers(self, payload: str, expected: float) -> None:
        assert parse_payload(payload) == pytest.approx(expected)

    @pytest.mark.parametrize(
        "payload",
        [None, "", "abc", '{"value": null}', '{"value": "x"}', "true", "[1, 2]", '{"v": 1}'],
    )
    def test_unusable(self, payload: str | None) -> None:
        assert parse_payload(payload) is None

    def test_nan_passes_through_for_engine_fallback(self) -> None:
        assert math.isnan(parse_payload("nan"))


class TestMqttSampleSource:
    @pytest.mark.asyncio
    async def test_reads_latest_payload_per_channel(self) -> None:
        link = FakeLink()
        source = MqttSampleSource(link, current_topic="v/current", voltage_topic="v/voltage")
        link.payloads = {"v/current": "2.5", "v/voltage": '{"value": 13.1}'}

        assert link.subscribed == ["v/current", "v/voltage"]
        assert await source.read("current") == 2.5
        assert await source.read("voltage") == pytest.approx(13.1)

    @pytest.mark.asyncio
    async def test_nothing_received_yet_is_none(self) -> None:
        source = MqttSampleSource(FakeLink(), current_topic="a", voltage_topic="b")

        assert await source.read("current") is None
        assert await source.read("power") is None


# ===========================================================================
# Modbus
# ===========================================================================


class TestChannelRegister:
    def test_signed_decode(self) -> None:
        assert ChannelRegister(1, scale=0.1, signed=True).decode(0xFFF6) == pytest.approx(-1.0)

    def test_unsigned_decode(self) -> None:
        assert ChannelRegister(1, scale=0.01).decode(1320) == pytest.approx(13.2)


class TestModbusSampleSource:
    @pytest.mark.asyncio
    async def test_reads_and_scales_registers(self) -> None:
        mock_client = _make_mock_client({776: 25, 771: 1320})
        with patch("meter.src.sources.AsyncModbusTcpClient", return_value=mock_client) as mock_cls:
            source = _modbus_source()

            assert await source.read("current") == pytest.approx(2.5)
            assert await source.read("voltage") == pytest.approx(13.2)

        mock_cls.assert_called_once_with("192.168.1.20", port=502, timeout=0.5)
        mock_client.connect.assert_awaited_once()
        mock_client.read_holding_registers.assert_any_await(776, count=1, device_id=100)

    @pytest.mark.asyncio
    async def test_unknown_channel_is_none(self) -> None:
        assert await _modbus_source().read("frequency") is None

    @pytest.mark.asyncio
    async def test_connect_failure_returns_none_and_backs_off(self) -> None:
        mock_client = _make_mock_client(connect_ok=False)
        with patch("meter.src.sources.AsyncModbusTcpClient", return_value=mock_client):
            source = _modbus_source()

            assert await source.read("current") is None
            # Within the backoff window the device is not contacted again.
            assert await source.read("voltage") is None

        assert mock_client.connect.await_count == 1

    @pytest.mark.asyncio
    async def test_read_exception_returns_none(self) -> None:
        mock_client = _make_mock_client(raise_on_read=True)
        with patch("meter.src.sources.AsyncModbusTcpClient", return_value=mock_client):
            source = _modbus_source()

            assert await source.read("current") is None

        mock_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_modbus_error_response_returns_none(self) -> None:
        mock_client = _make_mock_client({771: 1320})
        with patch("meter.src.sources.AsyncModbusTcpClient", return_value=mock_client):
            source = _modbus_source()

            assert await source.read("current") is None

    @pytest.mark.asyncio
    async def test_recovers_after_backoff_elapsed(self) -> None:
        failing = _make_mock_client(connect_ok=False)
        healthy = _make_mock_client({776: 10, 771: 1200})
        with patch("meter.src.sources.AsyncModbusTcpClient", side_effect=[failing, healthy]):
            now = [0.0]
            source = _modbus_source(clock=lambda: now[0])
            assert await source.read("current") is None

            now[0] = 1.5
            assert await source.read("current") == pytest.approx(1.0)

            # Success resets the failure counter: no more backoff gating.
            assert await source.read("voltage") == pytest.approx(12.0)

    def test_backoff_grows_and_caps(self) -> None:
        source = _modbus_source()
        delays = []
        for _ in range(10):
            source._record_failure()
            delays.append(source._retry_at)

        assert delays[:4] == [1.0, 2.0, 4.0, 8.0]
        assert delays[-1] == 60.0
