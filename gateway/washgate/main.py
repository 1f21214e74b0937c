# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Entry point -- wash bay PLC <-> MQTT gateway.

Architecture
------------
GatewayManager       -- builds and owns every component, runs startup and
                        shutdown in order.
ConnectionSupervisor -- sole owner of the PLC driver; FIFO request worker,
                        reconnect backoff, offline broadcast.
BayPoller            -- reads all bays each interval while connected.
CommandDispatcher    -- START/STOP from MQTT to register writes.
BayTable             -- one BayStateMachine per configured bay.
"""

__version__ = "1.0.0"

import asyncio
import logging
import signal
import sys

from .bay_model import (
    ERROR_GATEWAY_RESTART,
    BayState,
    InvalidCommandError,
    RegisterMap,
    UnknownBayError,
    WashCommand,
    utc_now,
)
from .bay_state import BayTable
from .config import Config, ConfigError
from .connection import ConnectionDownError, ConnectionSupervisor
from .dispatcher import CommandDispatcher
from .mock_plc import MockPLC
from .modbus_driver import ModbusDriver
from .mqtt_handler import MQTTHandler
from .poller import BayPoller
from .status import StatusPublisher
from .transport import DriverError, RegisterDriver
from .wash_log import WashLogStore
from .web import HealthServer, RingBufferHandler

logger = logging.getLogger("washgate")


class GatewayManager:
    def __init__(self, config: Config | None = None, driver: RegisterDriver | None = None):
        self.config = config or Config()
        cfg = self.config

        self.store = WashLogStore(cfg.db_path)
        self.mqtt = MQTTHandler(cfg)
        self.publisher = StatusPublisher(self.mqtt, self.store)
        self.bays = BayTable(cfg.bay_ids, self.store, self.publisher)
        self.register_map = RegisterMap(cfg.bay_ids)

        if driver is None:
            if cfg.mock_mode:
                logger.info("Mock mode: using simulated PLC")
                driver = MockPLC(self.register_map.bay_ids)
            else:
                driver = ModbusDriver(
                    cfg.modbus_host, port=cfg.modbus_port,
                    unit_id=cfg.modbus_unit_id, timeout=cfg.modbus_timeout,
                )
        self.supervisor = ConnectionSupervisor(
            driver, self.bays,
            offline_interval=cfg.offline_interval,
            reconnect_initial=cfg.reconnect_initial,
            reconnect_max=cfg.reconnect_max,
            shutdown_timeout=cfg.shutdown_timeout,
        )
        self.poller = BayPoller(self.supervisor, self.bays, self.register_map, cfg.poll_interval)
        self.dispatcher = CommandDispatcher(self.supervisor, self.bays, self.register_map)
        self.supervisor.add_listener(
            on_connected=self.poller.start,
            on_disconnected=self.poller.stop,
        )

        self.web: HealthServer | None = None
        if cfg.web_port:
            self.web = HealthServer(
                port=cfg.web_port, bays=self.bays, supervisor=self.supervisor,
                poller=self.poller, dispatcher=self.dispatcher,
                publisher=self.publisher, mqtt=self.mqtt, store=self.store,
            )

        self.mqtt.set_command_callback(self._handle_command)

        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._heartbeat_task: asyncio.Task | None = None

    async def _handle_command(self, bay_id: str, payload):
        """Validate and dispatch one bus command. Errors are logged only."""
        if isinstance(payload, dict) and payload.get("bayId") not in (None, bay_id):
            logger.warning(
                "[%s] Command payload bayId %r differs from topic, using topic",
                bay_id, payload.get("bayId"),
            )
        try:
            command = WashCommand.from_payload(bay_id, payload)
            await self.dispatcher.dispatch(command)
        except InvalidCommandError as e:
            logger.warning("[%s] Invalid command: %s", bay_id, e)
        except UnknownBayError as e:
            logger.warning("Command rejected: %s", e)
        except ConnectionDownError as e:
            logger.warning("[%s] Command dropped: %s", bay_id, e)
        except DriverError as e:
            logger.error("[%s] Command write failed: %s", bay_id, e)

    async def run(self):
        """Start every component and block until stop() is requested."""
        self._running = True
        self._stop_event = asyncio.Event()

        self.store.close_orphaned_logs(BayState.OFFLINE.value, ERROR_GATEWAY_RESTART, utc_now())

        self.mqtt.connect()

        if self.web:
            await self.web.start()

        self._heartbeat_task = asyncio.get_event_loop().create_task(
            self.publisher.run_heartbeat(self.bays, self.config.heartbeat_interval),
            name="status-heartbeat",
        )

        await self.supervisor.start()
        logger.info("Gateway running (%d bays)", len(self.bays))

        await self._stop_event.wait()

    def stop(self):
        """Request shutdown. Safe to call from a signal handler."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def shutdown(self):
        if not self._running:
            return
        self._running = False

        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        self._heartbeat_task = None

        self.poller.stop()
        await self.supervisor.stop()

        if self.web:
            await self.web.stop()

        self.mqtt.disconnect()
        self.store.close()
        logger.info("Gateway stopped")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    try:
        config = Config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    # Set up ring buffer for the /api/logs endpoint
    log_buffer = RingBufferHandler(1000)
    log_buffer.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    logging.getLogger().addHandler(log_buffer)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    manager = GatewayManager(config)
    if manager.web:
        manager.web.set_log_buffer(log_buffer)

    def _shutdown(sig, frame):
        logger.info("Received signal %s, shutting down...", sig)
        loop.call_soon_threadsafe(manager.stop)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    try:
        loop.run_until_complete(manager.run())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(manager.shutdown())
        loop.close()
        logger.info("Gateway exited.")


if __name__ == "__main__":
    main()
