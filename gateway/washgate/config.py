# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Configuration from environment variables with validation.

Durations are configured in milliseconds and exposed in seconds, which is
what asyncio timers take. Any invalid value raises ConfigError; that is the
only error the gateway treats as fatal.
"""

import logging
import os
from urllib.parse import urlparse

from .bay_model import BLOCK_SIZE, MAX_REGISTERS

logger = logging.getLogger(__name__)

UNSAFE_TOPIC_CHARS = "/#+ "

# wash/gateway/status carries availability, so no bay may use this id
AVAILABILITY_TOPIC_SEGMENT = "gateway"


class ConfigError(Exception):
    """Raised when configuration is invalid."""


class Config:
    def __init__(self):
        self.mqtt_port = self._int("MQTT_PORT", "1883", 1, 65535)
        self.mqtt_broker = os.environ.get("MQTT_BROKER", "localhost")
        self._parse_broker_url()
        self.mqtt_username = os.environ.get("MQTT_USERNAME", "")
        self.mqtt_password = os.environ.get("MQTT_PASSWORD", "")
        self.topic_prefix = os.environ.get("MQTT_TOPIC_PREFIX", "wash")
        self.gateway_id = os.environ.get("GATEWAY_ID", "gateway")

        self.bay_ids = self._bay_list("BAY_IDS", "bay1,bay2,bay3")

        self.modbus_host = os.environ.get("MODBUS_HOST", "127.0.0.1")
        self.modbus_port = self._int("MODBUS_PORT", "502", 1, 65535)
        self.modbus_unit_id = self._int("MODBUS_UNIT_ID", "1", 0, 255)
        self.modbus_timeout = self._ms("MODBUS_TIMEOUT_MS", "1000", 50, 30000)

        self.poll_interval = self._ms("POLL_INTERVAL_MS", "1000", 100, 60000)
        self.offline_interval = self._ms("OFFLINE_BROADCAST_MS", "3000", 100, 300000)
        self.heartbeat_interval = self._ms("STATUS_HEARTBEAT_MS", "5000", 100, 300000)
        self.reconnect_initial = self._ms("RECONNECT_INITIAL_MS", "2000", 100, 60000)
        self.reconnect_max = self._ms("RECONNECT_MAX_MS", "10000", 100, 600000)
        self.shutdown_timeout = self._ms("SHUTDOWN_TIMEOUT_MS", "2000", 0, 30000)

        self.db_path = os.environ.get("GATEWAY_DB_PATH", "wash_system.db")
        self.web_port = self._int("GATEWAY_WEB_PORT", "8080", 0, 65535)
        self.mock_mode = os.environ.get("GATEWAY_MOCK_MODE", "false").lower() in ("true", "1", "yes")
        self.log_level = os.environ.get("GATEWAY_LOG_LEVEL", "INFO").upper()

        if self.reconnect_max < self.reconnect_initial:
            raise ConfigError(
                f"RECONNECT_MAX_MS ({self.reconnect_max * 1000:.0f}) is below "
                f"RECONNECT_INITIAL_MS ({self.reconnect_initial * 1000:.0f})"
            )

        for name, value in (("MQTT_TOPIC_PREFIX", self.topic_prefix),
                            ("GATEWAY_ID", self.gateway_id)):
            if not value or any(c in value for c in UNSAFE_TOPIC_CHARS):
                raise ConfigError(f"{name} contains invalid characters: {value!r}")

        self._log_config()

    def _parse_broker_url(self):
        """Accept ``mqtt://host:port`` as well as a bare host name."""
        if "://" not in self.mqtt_broker:
            return
        parsed = urlparse(self.mqtt_broker)
        if parsed.scheme not in ("mqtt", "tcp") or not parsed.hostname:
            raise ConfigError(f"MQTT_BROKER={self.mqtt_broker!r} is not a valid mqtt:// URL")
        try:
            port = parsed.port
        except ValueError:
            raise ConfigError(f"MQTT_BROKER={self.mqtt_broker!r} has an invalid port")
        self.mqtt_broker = parsed.hostname
        if port is not None:
            self.mqtt_port = port

    @staticmethod
    def _bay_list(env: str, default: str) -> list[str]:
        raw = os.environ.get(env, default)
        bay_ids = [part.strip() for part in raw.split(",") if part.strip()]
        if not bay_ids:
            raise ConfigError(f"{env} is empty")
        if len(set(bay_ids)) != len(bay_ids):
            raise ConfigError(f"{env}={raw!r} contains duplicate bay ids")
        for bay_id in bay_ids:
            if any(c in bay_id for c in UNSAFE_TOPIC_CHARS):
                raise ConfigError(f"{env} bay id contains invalid characters: {bay_id!r}")
            if bay_id == AVAILABILITY_TOPIC_SEGMENT:
                raise ConfigError(f"{env} bay id {bay_id!r} is reserved for gateway availability")
        if len(bay_ids) * BLOCK_SIZE > MAX_REGISTERS:
            raise ConfigError(f"{env} lists {len(bay_ids)} bays, more than the register space holds")
        return bay_ids

    @staticmethod
    def _int(env: str, default: str, min_val: int, max_val: int) -> int:
        raw = os.environ.get(env, default)
        try:
            val = int(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid integer")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    @classmethod
    def _ms(cls, env: str, default: str, min_val: int, max_val: int) -> float:
        return cls._int(env, default, min_val, max_val) / 1000.0

    def _log_config(self):
        logger.info(
            "Config: bays=%s modbus=%s:%d unit=%d mock=%s poll=%.1fs mqtt=%s:%d prefix=%s",
            ",".join(self.bay_ids), self.modbus_host, self.modbus_port,
            self.modbus_unit_id, self.mock_mode, self.poll_interval,
            self.mqtt_broker, self.mqtt_port, self.topic_prefix,
        )
