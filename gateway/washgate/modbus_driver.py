# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Modbus TCP register driver with health tracking.

Wraps pymodbus' AsyncModbusTcpClient. Every failure mode (connection
refused, timeout, exception response, dropped socket) is raised as
DriverError so the supervisor can treat them uniformly.
"""

import asyncio
import logging
import time

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ModbusException

from .transport import DriverError

logger = logging.getLogger(__name__)


class ModbusDriver:
    """RegisterDriver implementation backed by Modbus TCP holding registers."""

    def __init__(self, host: str, port: int = 502, unit_id: int = 1,
                 timeout: float = 1.0):
        self._host = host
        self._port = port
        self._unit_id = unit_id
        self._timeout = timeout
        self._client: AsyncModbusTcpClient | None = None

        # Health tracking
        self._total_reads = 0
        self._failed_reads = 0
        self._total_writes = 0
        self._failed_writes = 0
        self._consecutive_failures = 0
        self._last_success_time: float | None = None
        self._last_error_time: float | None = None
        self._last_error_msg: str | None = None

    @property
    def target(self) -> str:
        return f"{self._host}:{self._port}/{self._unit_id}"

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.connected

    def get_health(self) -> dict:
        """Return Modbus connection health metrics."""
        return {
            "target": self.target,
            "connected": self.is_connected,
            "total_reads": self._total_reads,
            "failed_reads": self._failed_reads,
            "total_writes": self._total_writes,
            "failed_writes": self._failed_writes,
            "consecutive_failures": self._consecutive_failures,
            "last_success": self._last_success_time,
            "last_error": self._last_error_time,
            "last_error_msg": self._last_error_msg,
        }

    def _record_success(self):
        self._consecutive_failures = 0
        self._last_success_time = time.time()

    def _record_failure(self, msg: str) -> DriverError:
        self._consecutive_failures += 1
        self._last_error_time = time.time()
        self._last_error_msg = msg
        if self._consecutive_failures <= 3:
            logger.warning("Modbus %s: %s", self.target, msg)
        return DriverError(msg)

    async def connect(self) -> None:
        await self.close()
        self._client = AsyncModbusTcpClient(
            self._host,
            port=self._port,
            timeout=self._timeout,
        )
        try:
            await asyncio.wait_for(self._client.connect(), timeout=self._timeout * 2)
        except (ModbusException, OSError, asyncio.TimeoutError) as e:
            raise self._record_failure(f"connect failed: {str(e) or type(e).__name__}") from e
        if not self._client.connected:
            raise self._record_failure("connect failed: connection refused or unreachable")
        self._record_success()
        logger.info("Connected to Modbus device at %s", self.target)

    async def read_registers(self, address: int, count: int) -> list[int]:
        self._total_reads += 1
        try:
            client = self._require_client()
            response = await asyncio.wait_for(
                client.read_holding_registers(address, count=count, device_id=self._unit_id),
                timeout=self._timeout,
            )
        except (ModbusException, OSError, asyncio.TimeoutError, DriverError) as e:
            self._failed_reads += 1
            raise self._record_failure(
                f"read {address}+{count} failed: {str(e) or type(e).__name__}"
            ) from e

        if response.isError():
            self._failed_reads += 1
            raise self._record_failure(f"read {address}+{count} error response: {response}")

        registers = list(response.registers)
        if len(registers) < count:
            self._failed_reads += 1
            raise self._record_failure(
                f"read {address}+{count} returned {len(registers)} registers"
            )
        self._record_success()
        return registers

    async def write_register(self, address: int, value: int) -> None:
        self._total_writes += 1
        try:
            client = self._require_client()
            response = await asyncio.wait_for(
                client.write_register(address, value, device_id=self._unit_id),
                timeout=self._timeout,
            )
        except (ModbusException, OSError, asyncio.TimeoutError, DriverError) as e:
            self._failed_writes += 1
            raise self._record_failure(
                f"write {address}={value} failed: {str(e) or type(e).__name__}"
            ) from e

        if response.isError():
            self._failed_writes += 1
            raise self._record_failure(f"write {address}={value} error response: {response}")
        self._record_success()

    async def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        try:
            client.close()
        except Exception:
            logger.debug("Error closing Modbus client %s", self.target, exc_info=True)

    def _require_client(self) -> AsyncModbusTcpClient:
        if self._client is None or not self._client.connected:
            raise DriverError("not connected")
        return self._client
