# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""PLC connection supervision: request queue, reconnect and offline mode.

The supervisor is the only owner of the RegisterDriver. Poller and
dispatcher hand it operations (``op(driver) -> awaitable``) through
``submit()``; a single worker task runs them one at a time in arrival
order, so at most one request is ever outstanding on the connection and
a multi-write job is never split by a poll read.

Any DriverError is connection-level: all bays share one socket. The
supervisor then drops to DISCONNECTED, fails everything still queued,
stops polling, marks every bay OFFLINE (repeated on a timer while the
outage lasts) and reconnects with exponential backoff.
"""

import asyncio
import enum
import logging
import time
from typing import Any, Awaitable, Callable

from .bay_model import ERROR_PROTOCOL_OFFLINE
from .bay_state import BayTable
from .transport import DriverError, RegisterDriver

logger = logging.getLogger(__name__)

Operation = Callable[[RegisterDriver], Awaitable[Any]]


class ConnectionDownError(Exception):
    """Request refused or abandoned because the PLC connection is down."""


class ConnectionState(enum.Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class ConnectionSupervisor:
    def __init__(self, driver: RegisterDriver, bays: BayTable,
                 offline_interval: float = 3.0,
                 reconnect_initial: float = 2.0,
                 reconnect_max: float = 10.0,
                 shutdown_timeout: float = 2.0):
        self._driver = driver
        self._bays = bays
        self._offline_interval = offline_interval
        self._reconnect_initial = reconnect_initial
        self._reconnect_max = reconnect_max
        self._shutdown_timeout = shutdown_timeout

        self.state = ConnectionState.DISCONNECTED
        self._backoff = reconnect_initial
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._offline_task: asyncio.Task | None = None
        self._stopping = False

        self._on_connected: list[Callable[[], None]] = []
        self._on_disconnected: list[Callable[[], None]] = []

        # Health tracking
        self._connect_attempts = 0
        self._disconnects = 0
        self._ops_completed = 0
        self._ops_failed = 0
        self._offline_broadcasts = 0
        self._last_error: str | None = None
        self._last_connect_time: float | None = None
        self._last_disconnect_time: float | None = None

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def backoff(self) -> float:
        """Delay that will be used for the next scheduled reconnect."""
        return self._backoff

    @property
    def driver(self) -> RegisterDriver:
        return self._driver

    def add_listener(self, on_connected: Callable[[], None] | None = None,
                     on_disconnected: Callable[[], None] | None = None):
        """Register plain callables run on every connect / connection loss."""
        if on_connected:
            self._on_connected.append(on_connected)
        if on_disconnected:
            self._on_disconnected.append(on_disconnected)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start the request worker and make the first connect attempt."""
        self._stopping = False
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.get_event_loop().create_task(
                self._worker(), name="plc-worker",
            )
        if not await self._connect():
            self._schedule_reconnect()

    async def stop(self):
        """Cancel timers, let the in-flight request finish, close the driver."""
        self._stopping = True
        self.state = ConnectionState.DISCONNECTED

        for task in (self._reconnect_task, self._offline_task):
            if task is not None and not task.done():
                task.cancel()
        self._reconnect_task = None
        self._offline_task = None

        self._fail_pending()
        if self._worker_task is not None and not self._worker_task.done():
            # Sentinel: the worker exits once the current request is done
            self._queue.put_nowait(None)
            try:
                await asyncio.wait_for(self._worker_task, timeout=self._shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning("PLC request still running at shutdown, abandoning it")
            except asyncio.CancelledError:
                pass
        self._worker_task = None

        await self._close_driver()
        logger.info("PLC connection supervisor stopped")

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def submit(self, op: Operation) -> Any:
        """Queue ``op`` behind any earlier request and wait for its result.

        Raises ConnectionDownError if not connected (the request is not
        queued) or if the connection is lost before ``op`` runs. A
        DriverError raised by ``op`` itself is re-raised to the caller
        after the supervisor has handled the connection loss.
        """
        if self.state is not ConnectionState.CONNECTED:
            raise ConnectionDownError(f"PLC connection is {self.state.value}")
        fut = asyncio.get_event_loop().create_future()
        self._queue.put_nowait((op, fut))
        return await fut

    async def _worker(self):
        while True:
            item = await self._queue.get()
            if item is None:
                return
            op, fut = item
            if fut.done():
                continue
            if self.state is not ConnectionState.CONNECTED:
                fut.set_exception(ConnectionDownError("PLC connection lost"))
                continue

            try:
                result = await op(self._driver)
            except DriverError as e:
                self._ops_failed += 1
                if not fut.done():
                    fut.set_exception(e)
                await self._handle_failure(e)
            except Exception as e:
                # Not a connection fault; only this request fails
                self._ops_failed += 1
                if not fut.done():
                    fut.set_exception(e)
            else:
                self._ops_completed += 1
                if not fut.done():
                    fut.set_result(result)

    def _fail_pending(self):
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            if item is None:
                continue
            _, fut = item
            if not fut.done():
                fut.set_exception(ConnectionDownError("PLC connection lost"))

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def _connect(self) -> bool:
        self.state = ConnectionState.CONNECTING
        self._connect_attempts += 1
        try:
            await self._driver.connect()
        except DriverError as e:
            self.state = ConnectionState.DISCONNECTED
            self._last_error = str(e)
            if self._stopping:
                return False
            if self._connect_attempts <= 3 or self._connect_attempts % 10 == 0:
                logger.warning(
                    "PLC connect failed (attempt %d): %s", self._connect_attempts, e,
                )
            self._enter_degraded()
            return False

        if self._stopping:
            await self._close_driver()
            return False

        self.state = ConnectionState.CONNECTED
        self._backoff = self._reconnect_initial
        self._last_connect_time = time.time()
        self._stop_offline_broadcast()
        logger.info("PLC connected (attempt %d)", self._connect_attempts)

        # State is left alone; the next poll re-derives it
        for machine in self._bays:
            machine.clear_error(ERROR_PROTOCOL_OFFLINE)
        for callback in self._on_connected:
            try:
                callback()
            except Exception:
                logger.exception("on_connected listener failed")
        return True

    async def _handle_failure(self, exc: DriverError):
        if self.state is not ConnectionState.CONNECTED or self._stopping:
            return
        self.state = ConnectionState.DISCONNECTED
        self._disconnects += 1
        self._last_error = str(exc)
        self._last_disconnect_time = time.time()
        logger.error("PLC connection lost: %s", exc)

        for callback in self._on_disconnected:
            try:
                callback()
            except Exception:
                logger.exception("on_disconnected listener failed")
        self._fail_pending()
        self._enter_degraded()

        await self._close_driver()
        if not self._stopping:
            self._schedule_reconnect()

    async def _close_driver(self):
        try:
            await asyncio.wait_for(self._driver.close(), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning("PLC close timed out after %.1fs", self._shutdown_timeout)
        except DriverError as e:
            logger.debug("PLC close error: %s", e)

    def _schedule_reconnect(self):
        if self._stopping:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        delay = self._backoff
        self._backoff = min(self._backoff * 2, self._reconnect_max)
        logger.info("PLC reconnect in %.1fs", delay)
        self._reconnect_task = asyncio.get_event_loop().create_task(
            self._reconnect_after(delay), name="plc-reconnect",
        )

    async def _reconnect_after(self, delay: float):
        # Stays registered in _reconnect_task while connecting; stop() cancels it
        await asyncio.sleep(delay)
        connected = await self._connect()
        self._reconnect_task = None
        if not connected:
            self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Degraded mode
    # ------------------------------------------------------------------

    def broadcast_offline(self) -> int:
        """Mark every bay OFFLINE. Returns how many bays changed."""
        if self._stopping:
            return 0
        self._offline_broadcasts += 1
        changed = 0
        for machine in self._bays:
            if machine.mark_offline(ERROR_PROTOCOL_OFFLINE):
                changed += 1
        return changed

    def _enter_degraded(self):
        if self._stopping:
            return
        self.broadcast_offline()
        if self._offline_task is None or self._offline_task.done():
            self._offline_task = asyncio.get_event_loop().create_task(
                self._offline_loop(), name="plc-offline-broadcast",
            )

    async def _offline_loop(self):
        while True:
            await asyncio.sleep(self._offline_interval)
            try:
                self.broadcast_offline()
            except Exception:
                logger.exception("Offline broadcast failed")

    def _stop_offline_broadcast(self):
        if self._offline_task is not None and not self._offline_task.done():
            self._offline_task.cancel()
        self._offline_task = None

    def get_status(self) -> dict:
        return {
            "state": self.state.value,
            "backoff_s": self._backoff,
            "connect_attempts": self._connect_attempts,
            "disconnects": self._disconnects,
            "ops_completed": self._ops_completed,
            "ops_failed": self._ops_failed,
            "queued": self._queue.qsize(),
            "offline_broadcasts": self._offline_broadcasts,
            "last_error": self._last_error,
            "last_connect": self._last_connect_time,
            "last_disconnect": self._last_disconnect_time,
            "driver": self._driver.get_health(),
        }
