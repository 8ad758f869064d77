"""
Unit tests for the meter daemon main loop module.

Tests verify:
- Single-iteration functions call the engine and never raise.
- Health file updated after flush, rollover and manual backup only.
- Flush loop fires on wall-clock boundaries.
- Action loop applies queued operator commands and acknowledges triggers.
- Shutdown stops all loops and attempts a final flush.
- Startup logs config summary without secrets.
- The configured sample source is built from settings.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, date, datetime, time
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from meter.src.actions import BACKUP_NOW, OperatorChannel, OperatorCommand
from meter.src.engine import FlushResult, RolloverResult
from meter.src.health import HealthWriter

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_engine() -> MagicMock:
    """Create a mock MeterEngine with sensible defaults."""
    engine = MagicMock()
    engine.sample_tick = AsyncMock(return_value=24.0)
    engine.flush = AsyncMock(return_value=FlushResult(0.343, 0.343, 0.0, 24.0))
    engine.rollover = AsyncMock(
        return_value=RolloverResult(applied=True, day=date(2026, 10, 19), daily_kwh=1.0, lifetime_kwh=2.0)
    )
    engine.create_backup = AsyncMock()
    engine.restore_backup = AsyncMock()
    engine.set_daily_consumption = AsyncMock()
    engine.set_correction_offset = AsyncMock()
    return engine


def _make_settings(**overrides: object) -> MagicMock:
    """Create a mock MeterSettings with sensible defaults."""
    defaults = {
        "sample_source": "mqtt",
        "mqtt_host": "127.0.0.1",
        "mqtt_port": 1883,
        "mqtt_password": "super-secret-pw",
        "current_topic": "Victron/Load_current",
        "voltage_topic": "Victron/Voltage",
        "register_prefix": "victron.loadoutput.",
        "sample_interval_s": 1.0,
        "flush_interval_s": 60,
        "rollover_time": "23:59",
        "offset_mode": "none",
        "persist_smoothed_value": False,
        "store_path": "/tmp/registers.db",
        "modbus_host": "192.168.1.20",
        "modbus_port": 502,
        "modbus_slave_id": 100,
        "current_address": 776,
        "current_scale": 0.1,
        "voltage_address": 771,
        "voltage_scale": 0.01,
    }
    defaults.update(overrides)
    settings = MagicMock()
    for key, value in defaults.items():
        setattr(settings, key, value)
    return settings


async def _run_until(shutdown_event: asyncio.Event, delay: float) -> None:
    await asyncio.sleep(delay)
    shutdown_event.set()


# ---------------------------------------------------------------------------
# Test: single iterations
# ---------------------------------------------------------------------------


class TestSampleOnce:
    @pytest.mark.asyncio
    async def test_calls_engine_and_records_in_memory(self, tmp_path: Path) -> None:
        from meter.src.main import _sample_once

        engine = _make_engine()
        health_path = tmp_path / "health.json"
        health = HealthWriter(health_path)

        await _sample_once(engine=engine, health=health)

        engine.sample_tick.assert_awaited_once()
        assert not health_path.exists()

    @pytest.mark.asyncio
    async def test_error_does_not_raise(self, caplog: pytest.LogCaptureFixture) -> None:
        from meter.src.main import _sample_once

        engine = _make_engine()
        engine.sample_tick = AsyncMock(side_effect=RuntimeError("boom"))

        with caplog.at_level(logging.ERROR, logger="meter.src.main"):
            await _sample_once(engine=engine, health=None)

        assert "Sample tick error" in caplog.text


class TestFlushOnce:
    @pytest.mark.asyncio
    async def test_flush_writes_health(self, tmp_path: Path) -> None:
        from meter.src.main import _flush_once

        health_path = tmp_path / "health.json"

        ok = await _flush_once(engine=_make_engine(), health=HealthWriter(health_path))

        assert ok is True
        assert json.loads(health_path.read_text())["last_flush_ts"] is not None

    @pytest.mark.asyncio
    async def test_flush_error_returns_false(self, tmp_path: Path) -> None:
        from meter.src.main import _flush_once

        engine = _make_engine()
        engine.flush = AsyncMock(side_effect=OSError("database is locked"))
        health_path = tmp_path / "health.json"

        ok = await _flush_once(engine=engine, health=HealthWriter(health_path))

        assert ok is False
        assert not health_path.exists()

    @pytest.mark.asyncio
    async def test_health_write_failure_is_not_fatal(self, tmp_path: Path) -> None:
        from meter.src.main import _flush_once

        health = HealthWriter(tmp_path / "missing-dir" / "health.json")

        assert await _flush_once(engine=_make_engine(), health=health) is True


class TestRolloverOnce:
    @pytest.mark.asyncio
    async def test_applied_rollover_records_health(self, tmp_path: Path) -> None:
        from meter.src.main import _rollover_once

        health_path = tmp_path / "health.json"

        assert await _rollover_once(engine=_make_engine(), health=HealthWriter(health_path))

        data = json.loads(health_path.read_text())
        assert data["last_rollover_ts"] is not None

    @pytest.mark.asyncio
    async def test_skipped_rollover_not_recorded(self, tmp_path: Path) -> None:
        from meter.src.main import _rollover_once

        engine = _make_engine()
        engine.rollover = AsyncMock(return_value=RolloverResult(applied=False, day=date(2026, 10, 19)))
        health_path = tmp_path / "health.json"

        assert await _rollover_once(engine=engine, health=HealthWriter(health_path)) is False
        assert not health_path.exists()

    @pytest.mark.asyncio
    async def test_rollover_error_does_not_raise(self) -> None:
        from meter.src.main import _rollover_once

        engine = _make_engine()
        engine.rollover = AsyncMock(side_effect=RuntimeError("boom"))

        assert await _rollover_once(engine=engine, health=None) is False


class TestActionOnce:
    @pytest.mark.asyncio
    async def test_manual_backup_records_health(self, tmp_path: Path) -> None:
        from meter.src.main import _action_once

        health_path = tmp_path / "health.json"
        acknowledge = MagicMock()

        ok = await _action_once(
            engine=_make_engine(),
            command=OperatorCommand(BACKUP_NOW),
            acknowledge=acknowledge,
            health=HealthWriter(health_path),
        )

        assert ok is True
        acknowledge.assert_called_once_with(BACKUP_NOW, False)
        assert json.loads(health_path.read_text())["last_backup_ts"] is not None

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_raise(self) -> None:
        from meter.src.main import _action_once

        engine = _make_engine()
        engine.create_backup = AsyncMock(side_effect=OSError("disk full"))

        ok = await _action_once(
            engine=engine,
            command=OperatorCommand(BACKUP_NOW),
            acknowledge=None,
            health=None,
        )

        assert ok is False


# ---------------------------------------------------------------------------
# Test: loops
# ---------------------------------------------------------------------------


class TestFlushLoop:
    @pytest.mark.asyncio
    async def test_fires_on_boundary(self) -> None:
        from meter.src.main import _flush_loop

        engine = _make_engine()
        shutdown_event = asyncio.Event()
        just_before_minute = datetime(2026, 10, 19, 12, 0, 59, 950_000, tzinfo=UTC)

        await asyncio.wait_for(
            asyncio.gather(
                _flush_loop(
                    engine=engine,
                    flush_interval_s=60,
                    shutdown_event=shutdown_event,
                    health=None,
                    clock=lambda: just_before_minute,
                ),
                _run_until(shutdown_event, 0.2),
            ),
            timeout=5.0,
        )

        assert engine.flush.await_count >= 1

    @pytest.mark.asyncio
    async def test_no_flush_before_boundary(self) -> None:
        from meter.src.main import _flush_loop

        engine = _make_engine()
        shutdown_event = asyncio.Event()
        start_of_minute = datetime(2026, 10, 19, 12, 0, 1, tzinfo=UTC)

        await asyncio.wait_for(
            asyncio.gather(
                _flush_loop(
                    engine=engine,
                    flush_interval_s=60,
                    shutdown_event=shutdown_event,
                    health=None,
                    clock=lambda: start_of_minute,
                ),
                _run_until(shutdown_event, 0.1),
            ),
            timeout=5.0,
        )

        engine.flush.assert_not_awaited()


class TestRolloverLoop:
    @pytest.mark.asyncio
    async def test_fires_at_configured_time(self) -> None:
        from meter.src.main import _rollover_loop

        engine = _make_engine()
        shutdown_event = asyncio.Event()
        just_before = datetime(2026, 10, 19, 23, 58, 59, 950_000).astimezone()

        await asyncio.wait_for(
            asyncio.gather(
                _rollover_loop(
                    engine=engine,
                    rollover_at=time(23, 59),
                    shutdown_event=shutdown_event,
                    health=None,
                    clock=lambda: just_before,
                ),
                _run_until(shutdown_event, 0.2),
            ),
            timeout=5.0,
        )

        assert engine.rollover.await_count >= 1


class TestGracefulShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_stops_loops_and_flushes(self) -> None:
        from meter.src.main import run_loops

        engine = _make_engine()
        shutdown_event = asyncio.Event()
        channel = OperatorChannel(asyncio.get_running_loop())

        await asyncio.wait_for(
            asyncio.gather(
                run_loops(
                    engine=engine,
                    channel=channel,
                    sample_interval_s=0.02,
                    flush_interval_s=3600,
                    rollover_at=time(23, 59),
                    shutdown_event=shutdown_event,
                ),
                _run_until(shutdown_event, 0.15),
            ),
            timeout=5.0,
        )

        assert engine.sample_tick.await_count >= 2
        # Final flush on exit
        assert engine.flush.await_count >= 1

    @pytest.mark.asyncio
    async def test_queued_command_applied(self) -> None:
        from meter.src.main import run_loops

        engine = _make_engine()
        shutdown_event = asyncio.Event()
        channel = OperatorChannel(asyncio.get_running_loop())
        acknowledge = MagicMock()
        channel.submit(OperatorCommand(BACKUP_NOW))

        await asyncio.wait_for(
            asyncio.gather(
                run_loops(
                    engine=engine,
                    channel=channel,
                    sample_interval_s=0.05,
                    flush_interval_s=3600,
                    rollover_at=time(23, 59),
                    shutdown_event=shutdown_event,
                    acknowledge=acknowledge,
                ),
                _run_until(shutdown_event, 0.1),
            ),
            timeout=5.0,
        )

        engine.create_backup.assert_awaited_once()
        acknowledge.assert_called_once_with(BACKUP_NOW, False)

    def test_handle_signal_sets_event(self) -> None:
        from meter.src.main import _handle_signal

        event = asyncio.Event()
        _handle_signal(event)

        assert event.is_set()


# ---------------------------------------------------------------------------
# Test: startup
# ---------------------------------------------------------------------------


class TestStartupLogging:
    def test_config_summary_masks_password(self, caplog: pytest.LogCaptureFixture) -> None:
        from meter.src.main import log_config_summary

        with caplog.at_level(logging.INFO, logger="meter.src.main"):
            log_config_summary(_make_settings())

        assert "super-secret-pw" not in caplog.text
        assert "mqtt_password_masked=len=15" in caplog.text
        assert "Victron/Load_current" in caplog.text

    def test_empty_password(self, caplog: pytest.LogCaptureFixture) -> None:
        from meter.src.main import log_config_summary

        with caplog.at_level(logging.INFO, logger="meter.src.main"):
            log_config_summary(_make_settings(mqtt_password=None))

        assert "mqtt_password_masked=empty" in caplog.text

    def test_json_formatter(self, capsys: pytest.CaptureFixture[str]) -> None:
        from meter.src.main import configure_logging

        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            configure_logging()
            logging.getLogger("meter.test").info("hello %s", "meter")
            line = capsys.readouterr().err.strip().splitlines()[-1]
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

        entry = json.loads(line)
        assert entry["msg"] == "hello meter"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "meter.test"


class TestBuildSource:
    def test_mqtt_source(self) -> None:
        from meter.src.main import build_source
        from meter.src.sources import MqttSampleSource

        link = MagicMock()
        source = build_source(_make_settings(), link)

        assert isinstance(source, MqttSampleSource)
        link.subscribe.assert_any_call("Victron/Load_current")
        link.subscribe.assert_any_call("Victron/Voltage")

    def test_modbus_source(self) -> None:
        from meter.src.main import build_source
        from meter.src.sources import ModbusSampleSource

        link = MagicMock()
        source = build_source(_make_settings(sample_source="modbus"), link)

        assert isinstance(source, ModbusSampleSource)
        link.subscribe.assert_not_called()

    def test_modbus_source_without_addresses_rejected(self) -> None:
        from meter.src.main import build_source

        settings = _make_settings(sample_source="modbus", voltage_address=None)

        with pytest.raises(ValueError, match="voltage_address"):
            build_source(settings, MagicMock())

    def test_acknowledge_publishes_retained(self) -> None:
        from meter.src.main import make_acknowledge

        link = MagicMock()
        make_acknowledge(link, "meter/loadoutput")(BACKUP_NOW, False)

        link.publish.assert_called_once_with("meter/loadoutput/backup_now", False, retain=True)
