"""
MQTT link shared by the sample source, the operator channel and the state mirror.

Wraps a paho-mqtt client running its network loop in a background thread.
Every received message is cached as the latest payload of its topic;
optional per-topic handlers are invoked from the paho thread, so handlers
must hand work over to the asyncio loop themselves (call_soon_threadsafe).

The client connects asynchronously and reconnects on its own, so a broker
that is down at startup only means missing readings (treated as 0).

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from typing import Any

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, str], None]
"""Callback ``(topic, payload_text)`` run on the paho network thread."""

KEEPALIVE_S: int = 30


class MqttLink:
    """Thread-backed MQTT connection with a latest-value cache.

    Args:
        host: Broker hostname.
        port: Broker port.
        client_id: Client id presented to the broker.
        username: Optional username.
        password: Optional password.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 1883,
        client_id: str = "load-meter",
        username: str | None = None,
        password: str | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._lock = threading.Lock()
        self._latest: dict[str, str] = {}
        self._handlers: dict[str, MessageHandler] = {}
        self.connected = False

        self.client = mqtt.Client(
            client_id=client_id,
            clean_session=True,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        if username:
            self.client.username_pw_set(username, password)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Connect in the background and start the network thread."""
        self.client.connect_async(self._host, self._port, keepalive=KEEPALIVE_S)
        self.client.loop_start()

    def stop(self) -> None:
        self.client.disconnect()
        self.client.loop_stop()

    # ------------------------------------------------------------------
    # Subscriptions and cache
    # ------------------------------------------------------------------

    def subscribe(self, topic: str, handler: MessageHandler | None = None) -> None:
        """Track *topic*; re-subscribed automatically after reconnects."""
        with self._lock:
            if handler is not None or topic not in self._handlers:
                self._handlers[topic] = handler or _ignore
        if self.connected:
            self.client.subscribe(topic)

    def latest(self, topic: str) -> str | None:
        """Return the last payload received on *topic*, if any."""
        with self._lock:
            return self._latest.get(topic)

    def publish(self, topic: str, payload: Any, retain: bool = False) -> None:
        """Publish when connected; dropped silently otherwise."""
        if not self.connected:
            return
        if not isinstance(payload, (str, bytes)):
            payload = json.dumps(payload)
        self.client.publish(topic, payload, retain=retain)

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:  # noqa: ANN001
        self.connected = not reason_code.is_failure
        logger.info("MQTT connected rc=%s", reason_code)
        with self._lock:
            topics = list(self._handlers)
        for topic in topics:
            client.subscribe(topic)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None) -> None:  # noqa: ANN001
        self.connected = False
        logger.warning("MQTT disconnected rc=%s", reason_code)

    def _on_message(self, client, userdata, message) -> None:  # noqa: ANN001
        payload = message.payload.decode("utf-8", errors="replace")
        with self._lock:
            self._latest[message.topic] = payload
            handler = self._handlers.get(message.topic)
        if handler is None:
            return
        try:
            handler(message.topic, payload)
        except Exception:
            logger.error("MQTT handler failed for %s", message.topic, exc_info=True)


def _ignore(topic: str, payload: str) -> None:
    return None


def register_mirror(
    link: MqttLink,
    *,
    register_prefix: str,
    state_topic_prefix: str,
) -> Callable[[str, Any, bool], None]:
    """Build a store listener publishing register writes as MQTT state.

    ``victron.loadoutput.total_consumption`` becomes
    ``<state_topic_prefix>/total_consumption``.  Persisted writes are
    retained, ephemeral ones are not.
    """

    def _listener(key: str, value: Any, persisted: bool) -> None:
        name = key[len(register_prefix) :] if key.startswith(register_prefix) else key
        link.publish(f"{state_topic_prefix}/{name}", value, retain=persisted)

    return _listener
