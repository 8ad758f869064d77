"""
Operator action channel: backup-now, restore-now, manual adjustment, offset.

Commands arrive on MQTT ``<command_topic_prefix>/<action>/set`` topics, are
parsed on the paho thread and handed to the asyncio loop through a queue.
The operator loop applies each command to the engine and acknowledges
triggers by publishing ``false`` (retained) on ``<prefix>/<action>``.

Actions:
- backup_now: boolean trigger, creates a backup.
- restore_now: boolean trigger, restores the backup.
- adjust_daily_kwh: number, overrides today's consumption.
- correction_offset: number, sets the live offset register.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from meter.src.errors import MeterError

if TYPE_CHECKING:
    from meter.src.engine import MeterEngine
    from meter.src.mqtt import MqttLink

logger = logging.getLogger(__name__)

BACKUP_NOW = "backup_now"
RESTORE_NOW = "restore_now"
ADJUST_DAILY_KWH = "adjust_daily_kwh"
CORRECTION_OFFSET = "correction_offset"

TRIGGER_ACTIONS = frozenset({BACKUP_NOW, RESTORE_NOW})
VALUE_ACTIONS = frozenset({ADJUST_DAILY_KWH, CORRECTION_OFFSET})

_TRUE_WORDS = frozenset({"true", "1", "on", "yes"})

Acknowledge = Callable[[str, Any], None]


@dataclass(frozen=True, slots=True)
class OperatorCommand:
    """One operator action.

    Attributes:
        action: One of the action names above.
        value: Parsed number for value actions, the raw text when it could
            not be parsed (rejected later by the engine), ``True`` for triggers.
    """

    action: str
    value: Any = True


def parse_command(action: str, payload: str) -> OperatorCommand | None:
    """Turn an MQTT payload into a command, or None when nothing to do.

    Triggers only fire on a truthy payload; ``false`` (our own
    acknowledgement echoed back) is ignored.
    """
    text = payload.strip()
    if action in TRIGGER_ACTIONS:
        if text.lower() in _TRUE_WORDS:
            return OperatorCommand(action=action)
        return None
    if action in VALUE_ACTIONS:
        try:
            return OperatorCommand(action=action, value=float(text))
        except ValueError:
            return OperatorCommand(action=action, value=text)
    return None


class OperatorChannel:
    """Thread-safe queue of operator commands consumed by the asyncio loop.

    Args:
        loop: The event loop running the engine.
        maxsize: Queue bound; extra commands are dropped with a warning.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 32) -> None:
        self._loop = loop
        self.queue: asyncio.Queue[OperatorCommand] = asyncio.Queue(maxsize=maxsize)

    def submit(self, command: OperatorCommand) -> None:
        """Enqueue from the event loop thread."""
        try:
            self.queue.put_nowait(command)
        except asyncio.QueueFull:
            logger.warning("Operator queue full, dropping %s", command.action)

    def submit_threadsafe(self, command: OperatorCommand) -> None:
        """Enqueue from any other thread (paho network thread)."""
        self._loop.call_soon_threadsafe(self.submit, command)

    def attach(self, link: MqttLink, command_topic_prefix: str) -> None:
        """Subscribe to every ``<prefix>/<action>/set`` topic on *link*."""
        for action in sorted(TRIGGER_ACTIONS | VALUE_ACTIONS):

            def _handler(topic: str, payload: str, action: str = action) -> None:
                command = parse_command(action, payload)
                if command is not None:
                    self.submit_threadsafe(command)

            link.subscribe(f"{command_topic_prefix}/{action}/set", _handler)


async def handle_command(
    engine: MeterEngine,
    command: OperatorCommand,
    acknowledge: Acknowledge | None = None,
) -> bool:
    """Apply *command* to *engine*.

    Domain errors are logged, never raised.  Triggers are always
    acknowledged, even when the action failed.

    Returns:
        True if the action succeeded.
    """
    ok = False
    try:
        if command.action == BACKUP_NOW:
            await engine.create_backup()
            logger.info("Manual backup created")
        elif command.action == RESTORE_NOW:
            await engine.restore_backup()
            logger.info("Backup restored")
        elif command.action == ADJUST_DAILY_KWH:
            await engine.set_daily_consumption(command.value)
        elif command.action == CORRECTION_OFFSET:
            await engine.set_correction_offset(command.value)
        else:
            logger.warning("Unknown operator action %r", command.action)
            return False
        ok = True
    except MeterError as exc:
        logger.warning("Operator action %s rejected: %s", command.action, exc)
    finally:
        if acknowledge is not None and command.action in TRIGGER_ACTIONS:
            acknowledge(command.action, False)
    return ok
