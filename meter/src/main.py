"""
Meter daemon main loop.

Runs four concurrent asyncio loops against one MeterEngine:
1. **Sample loop**: fixed-rate integration tick (default 1 Hz), memory only.
2. **Flush loop**: checkpoints the integral to the daily registers on
   wall-clock aligned boundaries (default every minute).
3. **Rollover loop**: once a day at ``rollover_time`` folds the daily total
   into the lifetime counter and writes the daily backup.
4. **Action loop**: applies operator commands (backup, restore, manual
   adjustment, offset) received over MQTT.

All loops are resilient: an exception in one iteration is logged and does
not crash the loop or affect the others.  Graceful shutdown on
SIGTERM/SIGINT sets a shared asyncio.Event; the loops stop and one final
flush is attempted so at most one sample interval of energy is lost.

CHANGELOG:
- 2026-10-19: Replace config asserts in build_source with a ValueError
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
import time as _time
from collections.abc import Callable
from datetime import UTC, datetime, time
from typing import TYPE_CHECKING, Any

from meter.src.actions import BACKUP_NOW, OperatorChannel, OperatorCommand, handle_command
from meter.src.health import HealthWriter
from meter.src.schedule import seconds_until_daily, seconds_until_next_boundary

if TYPE_CHECKING:
    from meter.src.config import MeterSettings
    from meter.src.engine import MeterEngine
    from meter.src.mqtt import MqttLink
    from meter.src.sources import SampleSource

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _local_now() -> datetime:
    return datetime.now().astimezone()


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structured JSON logging for the meter daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _masked_secret(value: str | None) -> str:
    """Return a short non-reversible fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: object) -> None:
    """Log a config summary at startup, excluding secrets.

    Args:
        settings: A MeterSettings instance (or any object with the same attrs).
    """
    logger.info(
        "Meter daemon starting with config: "
        "sample_source=%s, mqtt_host=%s, mqtt_port=%s, "
        "current_topic=%s, voltage_topic=%s, register_prefix=%s, "
        "sample_interval_s=%s, flush_interval_s=%s, rollover_time=%s, "
        "offset_mode=%s, persist_smoothed_value=%s, store_path=%s, "
        "mqtt_password_masked=%s",
        settings.sample_source,  # type: ignore[attr-defined]
        settings.mqtt_host,  # type: ignore[attr-defined]
        settings.mqtt_port,  # type: ignore[attr-defined]
        settings.current_topic,  # type: ignore[attr-defined]
        settings.voltage_topic,  # type: ignore[attr-defined]
        settings.register_prefix,  # type: ignore[attr-defined]
        settings.sample_interval_s,  # type: ignore[attr-defined]
        settings.flush_interval_s,  # type: ignore[attr-defined]
        settings.rollover_time,  # type: ignore[attr-defined]
        settings.offset_mode,  # type: ignore[attr-defined]
        settings.persist_smoothed_value,  # type: ignore[attr-defined]
        settings.store_path,  # type: ignore[attr-defined]
        _masked_secret(settings.mqtt_password),  # type: ignore[attr-defined]
    )


# ---------------------------------------------------------------------------
# Single-iteration functions (easily testable)
# ---------------------------------------------------------------------------


async def _sample_once(*, engine: MeterEngine, health: HealthWriter | None) -> None:
    """Execute one integration tick. Never raises."""
    try:
        await engine.sample_tick()
    except Exception:
        logger.error("Sample tick error", exc_info=True)
        return
    if health is not None:
        health.record_sample()


async def _flush_once(*, engine: MeterEngine, health: HealthWriter | None) -> bool:
    """Execute one checkpoint. Never raises.

    Returns:
        True if the daily registers were written.
    """
    try:
        await engine.flush()
    except Exception:
        logger.error("Flush error", exc_info=True)
        return False
    if health is not None:
        try:
            health.record_flush()
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)
    return True


async def _rollover_once(*, engine: MeterEngine, health: HealthWriter | None) -> bool:
    """Execute the daily rollover. Never raises."""
    try:
        result = await engine.rollover()
    except Exception:
        logger.error("Rollover error", exc_info=True)
        return False
    if result.applied and health is not None:
        try:
            health.record_rollover()
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)
    return result.applied


async def _action_once(
    *,
    engine: MeterEngine,
    command: OperatorCommand,
    acknowledge: Callable[[str, Any], None] | None,
    health: HealthWriter | None,
) -> bool:
    """Apply one operator command. Never raises."""
    try:
        ok = await handle_command(engine, command, acknowledge)
    except Exception:
        logger.error("Operator action %s failed", command.action, exc_info=True)
        return False
    if ok and command.action == BACKUP_NOW and health is not None:
        try:
            health.record_backup()
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)
    return ok


async def _wait(shutdown_event: asyncio.Event, timeout: float) -> None:
    """Sleep for *timeout* seconds or until shutdown, whichever is first."""
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(shutdown_event.wait(), timeout=max(timeout, 0.0))


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _sample_loop(
    *,
    engine: MeterEngine,
    sample_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None,
) -> None:
    """Run the fixed-rate sample loop until shutdown_event is set.

    Deadlines advance by the interval rather than by "now + interval" so
    slow ticks do not accumulate drift; the integrator itself uses the real
    elapsed time either way.
    """
    logger.info("Sample loop started (interval=%ss)", sample_interval_s)
    deadline = _time.monotonic()
    while not shutdown_event.is_set():
        await _sample_once(engine=engine, health=health)
        deadline += sample_interval_s
        now = _time.monotonic()
        if deadline < now:
            deadline = now
        await _wait(shutdown_event, deadline - now)
    logger.info("Sample loop stopped")


async def _flush_loop(
    *,
    engine: MeterEngine,
    flush_interval_s: int,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None,
    clock: Clock = _local_now,
) -> None:
    """Run the checkpoint loop on wall-clock aligned boundaries."""
    logger.info("Flush loop started (interval=%ss)", flush_interval_s)
    while not shutdown_event.is_set():
        await _wait(shutdown_event, seconds_until_next_boundary(clock(), flush_interval_s))
        if shutdown_event.is_set():
            break
        await _flush_once(engine=engine, health=health)
    logger.info("Flush loop stopped")


async def _rollover_loop(
    *,
    engine: MeterEngine,
    rollover_at: time,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None,
    clock: Clock = _local_now,
) -> None:
    """Run the daily rollover at *rollover_at* local time."""
    logger.info("Rollover loop started (at=%s)", rollover_at.strftime("%H:%M"))
    while not shutdown_event.is_set():
        await _wait(shutdown_event, seconds_until_daily(clock(), rollover_at))
        if shutdown_event.is_set():
            break
        await _rollover_once(engine=engine, health=health)
    logger.info("Rollover loop stopped")


async def _action_loop(
    *,
    engine: MeterEngine,
    channel: OperatorChannel,
    shutdown_event: asyncio.Event,
    acknowledge: Callable[[str, Any], None] | None,
    health: HealthWriter | None,
) -> None:
    """Consume operator commands until shutdown_event is set."""
    logger.info("Action loop started")
    while not shutdown_event.is_set():
        try:
            command = await asyncio.wait_for(channel.queue.get(), timeout=1.0)
        except TimeoutError:
            continue
        await _action_once(engine=engine, command=command, acknowledge=acknowledge, health=health)
    logger.info("Action loop stopped")


# ---------------------------------------------------------------------------
# Concurrent runner with graceful shutdown
# ---------------------------------------------------------------------------


async def run_loops(
    *,
    engine: MeterEngine,
    channel: OperatorChannel,
    sample_interval_s: float,
    flush_interval_s: int,
    rollover_at: time,
    shutdown_event: asyncio.Event,
    acknowledge: Callable[[str, Any], None] | None = None,
    health: HealthWriter | None = None,
) -> None:
    """Run all loops concurrently until shutdown, then flush once more."""
    logger.info("Starting sample, flush, rollover and action loops")

    await asyncio.gather(
        _sample_loop(
            engine=engine,
            sample_interval_s=sample_interval_s,
            shutdown_event=shutdown_event,
            health=health,
        ),
        _flush_loop(
            engine=engine,
            flush_interval_s=flush_interval_s,
            shutdown_event=shutdown_event,
            health=health,
        ),
        _rollover_loop(
            engine=engine,
            rollover_at=rollover_at,
            shutdown_event=shutdown_event,
            health=health,
        ),
        _action_loop(
            engine=engine,
            channel=channel,
            shutdown_event=shutdown_event,
            acknowledge=acknowledge,
            health=health,
        ),
    )

    logger.info("Attempting final flush before exit")
    await _flush_once(engine=engine, health=health)
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def build_source(settings: MeterSettings, link: MqttLink) -> SampleSource:
    """Create the configured sample source."""
    from meter.src.sources import ChannelRegister, ModbusSampleSource, MqttSampleSource

    if settings.sample_source == "modbus":
        if settings.current_address is None or settings.voltage_address is None:
            raise ValueError("sample_source=modbus requires current_address and voltage_address")
        return ModbusSampleSource(
            host=settings.modbus_host,
            port=settings.modbus_port,
            slave_id=settings.modbus_slave_id,
            registers={
                "current": ChannelRegister(
                    settings.current_address, scale=settings.current_scale, signed=True
                ),
                "voltage": ChannelRegister(settings.voltage_address, scale=settings.voltage_scale),
            },
        )
    return MqttSampleSource(
        link,
        current_topic=settings.current_topic,
        voltage_topic=settings.voltage_topic,
    )


def make_acknowledge(link: MqttLink, command_topic_prefix: str) -> Callable[[str, Any], None]:
    """Acknowledge triggers by publishing the reset state (retained)."""

    def _acknowledge(action: str, value: Any) -> None:
        link.publish(f"{command_topic_prefix}/{action}", value, retain=True)

    return _acknowledge


async def async_main() -> None:
    """Async entrypoint: load config, build components, run loops.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    configure_logging()

    from meter.src.config import MeterSettings
    from meter.src.engine import MeterEngine
    from meter.src.mqtt import MqttLink, register_mirror
    from meter.src.offset import build_offset_policy
    from meter.src.registers import RegisterKeys
    from meter.src.store import RegisterStore

    settings = MeterSettings()
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    link = MqttLink(
        host=settings.mqtt_host,
        port=settings.mqtt_port,
        client_id=settings.mqtt_client_id,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
    )
    source = build_source(settings, link)
    channel = OperatorChannel(loop)
    channel.attach(link, settings.command_topic_prefix)

    health = HealthWriter(settings.health_path)
    keys = RegisterKeys.for_prefix(settings.register_prefix)

    async with RegisterStore(settings.store_path) as store:
        if settings.state_topic_prefix:
            store.add_listener(
                register_mirror(
                    link,
                    register_prefix=settings.register_prefix,
                    state_topic_prefix=settings.state_topic_prefix,
                )
            )
        engine = MeterEngine(
            store=store,
            keys=keys,
            source=source,
            offset_policy=build_offset_policy(settings.offset_mode, settings.fixed_offset_kwh),
            ema_alpha=settings.ema_alpha,
            min_watt_threshold=settings.min_watt_threshold,
            persist_smoothed_value=settings.persist_smoothed_value,
            reset_filtered_on_rollover=settings.reset_filtered_on_rollover,
        )
        link.start()
        try:
            await run_loops(
                engine=engine,
                channel=channel,
                sample_interval_s=settings.sample_interval_s,
                flush_interval_s=settings.flush_interval_s,
                rollover_at=settings.rollover_at,
                shutdown_event=shutdown_event,
                acknowledge=make_acknowledge(link, settings.command_topic_prefix),
                health=health,
            )
        finally:
            link.stop()
            close = getattr(source, "close", None)
            if close is not None:
                close()


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the meter daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
