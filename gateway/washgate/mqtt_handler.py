# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""MQTT pub/sub handler: bay status out, wash commands in.

All bays share one MQTT connection. Commands arrive on the wildcard
subscription ``{prefix}/+/cmd`` and are handed to the registered command
callback on the asyncio loop (paho runs its network loop in its own
thread). Status goes out retained on ``{prefix}/{bay_id}/status``.
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable

import paho.mqtt.client as mqtt

from .config import AVAILABILITY_TOPIC_SEGMENT, Config

logger = logging.getLogger(__name__)

CommandCallback = Callable[[str, Any], Awaitable[None]]


class MQTTHandler:
    def __init__(self, config: Config):
        self.config = config
        self.prefix = config.topic_prefix
        self._command_callback: CommandCallback | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

        # Connection status tracking
        self._connected: bool = False
        self._reconnect_count: int = 0
        self._last_connect_time: float | None = None
        self._last_disconnect_time: float | None = None
        self._publish_errors: int = 0
        self._total_publishes: int = 0
        self._commands_received: int = 0
        self._bad_messages: int = 0

        # Retained publishes queued while disconnected (max 100)
        self._pending_publishes: list[tuple[str, str, bool, int]] = []
        self._max_pending = 100

        self.client = mqtt.Client(
            client_id=f"wash-{config.gateway_id}",
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        self.client.will_set(self.availability_topic, "offline", qos=1, retain=True)
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect
        # Auto-reconnect with backoff
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)

    @property
    def availability_topic(self) -> str:
        return f"{self.prefix}/{AVAILABILITY_TOPIC_SEGMENT}/status"

    @property
    def command_topic(self) -> str:
        return f"{self.prefix}/+/cmd"

    def status_topic(self, bay_id: str) -> str:
        return f"{self.prefix}/{bay_id}/status"

    def set_command_callback(self, callback: CommandCallback):
        """Set the coroutine called as ``callback(bay_id, payload)`` per command."""
        self._command_callback = callback

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self):
        logger.info("Connecting to MQTT broker %s:%d", self.config.mqtt_broker, self.config.mqtt_port)
        self._loop = asyncio.get_event_loop()

        if self.config.mqtt_username:
            self.client.username_pw_set(
                self.config.mqtt_username, self.config.mqtt_password
            )
            logger.info("MQTT authentication configured for user %s", self.config.mqtt_username)

        try:
            self.client.connect_async(self.config.mqtt_broker, self.config.mqtt_port, keepalive=60)
            self.client.loop_start()
        except Exception:
            logger.exception("Failed to connect to MQTT broker")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if getattr(reason_code, "is_failure", False):
            logger.error("MQTT connection refused (rc=%s)", reason_code)
            return
        logger.info("MQTT connected (rc=%s)", reason_code)
        if self._last_connect_time is not None:
            self._reconnect_count += 1
            logger.info("MQTT reconnected (count=%d)", self._reconnect_count)
        self._connected = True
        self._last_connect_time = time.time()

        client.publish(self.availability_topic, "online", qos=1, retain=True)

        client.subscribe(self.command_topic, qos=1)
        logger.info("Subscribed to %s", self.command_topic)

        # Drain pending publishes queued during disconnect
        if self._pending_publishes:
            drained = len(self._pending_publishes)
            for topic, payload, retain, qos in self._pending_publishes:
                try:
                    client.publish(topic, payload, qos=qos, retain=retain)
                except Exception:
                    logger.debug("Dropped pending publish to %s", topic, exc_info=True)
            self._pending_publishes.clear()
            logger.info("Drained %d pending publishes after reconnect", drained)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.warning("MQTT disconnected (rc=%s)", reason_code)
        self._connected = False
        self._last_disconnect_time = time.time()

    def get_status(self) -> dict:
        """Return MQTT connection health info."""
        return {
            "connected": self._connected,
            "reconnect_count": self._reconnect_count,
            "last_connect": self._last_connect_time,
            "last_disconnect": self._last_disconnect_time,
            "broker": self.config.mqtt_broker,
            "port": self.config.mqtt_port,
            "publish_errors": self._publish_errors,
            "total_publishes": self._total_publishes,
            "pending_publishes": len(self._pending_publishes),
            "commands_received": self._commands_received,
            "bad_messages": self._bad_messages,
        }

    def _publish(self, topic: str, payload, retain: bool = False, qos: int = 0):
        """Publish with error tracking. Queues retained messages on failure."""
        self._total_publishes += 1

        try:
            info = self.client.publish(topic, payload, qos=qos, retain=retain)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                self._publish_errors += 1
                if self._publish_errors % 100 == 1:
                    logger.warning("MQTT publish failed (rc=%s, topic=%s)", info.rc, topic)
                self._queue_pending(topic, payload, retain, qos)
        except Exception:
            self._publish_errors += 1
            if self._publish_errors % 100 == 1:
                logger.exception("MQTT publish exception (topic=%s)", topic)
            self._queue_pending(topic, payload, retain, qos)

    def _queue_pending(self, topic: str, payload, retain: bool, qos: int):
        if not retain:
            return
        # A newer retained value for the same topic supersedes the queued one
        self._pending_publishes = [p for p in self._pending_publishes if p[0] != topic]
        if len(self._pending_publishes) < self._max_pending:
            self._pending_publishes.append((topic, str(payload), retain, qos))

    # ------------------------------------------------------------------
    # Incoming message routing
    # ------------------------------------------------------------------

    def _on_message(self, client, userdata, msg: mqtt.MQTTMessage):
        """Handle an incoming command message for any bay."""
        try:
            # Parse topic: {prefix}/{bay_id}/cmd
            parts = msg.topic.split("/")
            if len(parts) != 3 or parts[0] != self.prefix or parts[2] != "cmd":
                return
            bay_id = parts[1]

            try:
                payload = json.loads(msg.payload.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                self._bad_messages += 1
                logger.warning("Ignoring malformed command on %s: %s", msg.topic, e)
                return

            self._commands_received += 1
            logger.info("Command received: bay=%s payload=%s", bay_id, payload)

            if not self._loop:
                logger.warning("Event loop not set, cannot dispatch command")
                return
            if not self._command_callback:
                logger.warning("No command callback registered, dropping command for %s", bay_id)
                return

            asyncio.run_coroutine_threadsafe(
                self._command_callback(bay_id, payload), self._loop
            )
        except Exception:
            logger.exception("Error handling MQTT message on %s", msg.topic)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish_status(self, bay_id: str, status: dict):
        """Publish a bay status message (retained)."""
        self._publish(self.status_topic(bay_id), json.dumps(status), retain=True)

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def disconnect(self):
        """Publish offline availability and disconnect."""
        try:
            self._publish(self.availability_topic, "offline", qos=1, retain=True)
        except Exception:
            logger.debug("Error publishing offline status", exc_info=True)

        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception:
            logger.debug("Error during MQTT disconnect", exc_info=True)
