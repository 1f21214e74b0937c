# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Tests for the Modbus TCP driver: mocked pymodbus client, then a real server."""

import asyncio
import os
import socket
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from pymodbus.exceptions import ModbusException

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "gateway"))

from conftest import FakeClock
from washgate.bay_model import (
    CMD_NONE,
    CMD_START,
    COURSE_CODES,
    REG_COMMAND,
    REG_COURSE,
    REG_PROGRESS,
    REG_STATUS,
    STATUS_WASHING,
)
from washgate.mock_plc import MockPLC
from washgate.modbus_driver import ModbusDriver
from washgate.plc_server import PLCServer
from washgate.transport import DriverError, RegisterDriver


def make_response(registers=None, error=False):
    resp = MagicMock()
    resp.isError.return_value = error
    resp.registers = registers or []
    return resp


def make_client(connected=True):
    client = MagicMock()
    client.connect = AsyncMock(return_value=connected)
    client.connected = connected
    client.read_holding_registers = AsyncMock(return_value=make_response([0] * 10))
    client.write_register = AsyncMock(return_value=make_response())
    return client


def test_implements_driver_protocol():
    assert isinstance(ModbusDriver("127.0.0.1"), RegisterDriver)


@patch("washgate.modbus_driver.AsyncModbusTcpClient")
class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_creates_client(self, MockClient):
        MockClient.return_value = make_client()
        driver = ModbusDriver("10.0.0.5", port=5020, unit_id=3, timeout=0.5)

        await driver.connect()

        MockClient.assert_called_once_with("10.0.0.5", port=5020, timeout=0.5)
        assert driver.is_connected

    @pytest.mark.asyncio
    async def test_connect_refused(self, MockClient):
        MockClient.return_value = make_client(connected=False)
        driver = ModbusDriver("10.0.0.5")

        with pytest.raises(DriverError, match="connect failed"):
            await driver.connect()
        assert driver.get_health()["consecutive_failures"] == 1

    @pytest.mark.asyncio
    async def test_connect_os_error(self, MockClient):
        client = make_client()
        client.connect.side_effect = OSError("no route to host")
        MockClient.return_value = client

        with pytest.raises(DriverError, match="no route to host"):
            await ModbusDriver("10.0.0.5").connect()

    @pytest.mark.asyncio
    async def test_reconnect_closes_old_client(self, MockClient):
        first, second = make_client(), make_client()
        MockClient.side_effect = [first, second]
        driver = ModbusDriver("10.0.0.5")

        await driver.connect()
        await driver.connect()

        first.close.assert_called_once()


@patch("washgate.modbus_driver.AsyncModbusTcpClient")
class TestReadWrite:
    async def _connected(self, MockClient, unit_id=1):
        client = make_client()
        MockClient.return_value = client
        driver = ModbusDriver("10.0.0.5", unit_id=unit_id)
        await driver.connect()
        return driver, client

    @pytest.mark.asyncio
    async def test_read_uses_unit_id(self, MockClient):
        driver, client = await self._connected(MockClient, unit_id=7)
        client.read_holding_registers.return_value = make_response(list(range(10)))

        assert await driver.read_registers(20, 10) == list(range(10))
        client.read_holding_registers.assert_awaited_once_with(20, count=10, device_id=7)

    @pytest.mark.asyncio
    async def test_read_error_response(self, MockClient):
        driver, client = await self._connected(MockClient)
        client.read_holding_registers.return_value = make_response(error=True)

        with pytest.raises(DriverError, match="error response"):
            await driver.read_registers(0, 10)
        assert driver.get_health()["failed_reads"] == 1

    @pytest.mark.asyncio
    async def test_read_short_response(self, MockClient):
        driver, client = await self._connected(MockClient)
        client.read_holding_registers.return_value = make_response([0, 0])

        with pytest.raises(DriverError, match="returned 2 registers"):
            await driver.read_registers(0, 10)

    @pytest.mark.asyncio
    async def test_read_modbus_exception(self, MockClient):
        driver, client = await self._connected(MockClient)
        client.read_holding_registers.side_effect = ModbusException("connection lost")

        with pytest.raises(DriverError):
            await driver.read_registers(0, 10)

    @pytest.mark.asyncio
    async def test_read_timeout(self, MockClient):
        driver, client = await self._connected(MockClient)
        driver._timeout = 0.01

        async def hang(*args, **kwargs):
            await asyncio.sleep(1)

        client.read_holding_registers.side_effect = hang

        with pytest.raises(DriverError, match="TimeoutError"):
            await driver.read_registers(0, 10)

    @pytest.mark.asyncio
    async def test_write_uses_unit_id(self, MockClient):
        driver, client = await self._connected(MockClient, unit_id=2)

        await driver.write_register(11, 3)

        client.write_register.assert_awaited_once_with(11, 3, device_id=2)
        assert driver.get_health()["total_writes"] == 1

    @pytest.mark.asyncio
    async def test_write_error_response(self, MockClient):
        driver, client = await self._connected(MockClient)
        client.write_register.return_value = make_response(error=True)

        with pytest.raises(DriverError):
            await driver.write_register(0, 1)
        assert driver.get_health()["failed_writes"] == 1

    @pytest.mark.asyncio
    async def test_operations_after_close_fail(self, MockClient):
        driver, _ = await self._connected(MockClient)
        await driver.close()

        with pytest.raises(DriverError, match="not connected"):
            await driver.read_registers(0, 10)


def free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest_asyncio.fixture
async def sim_server():
    """Simulated two-bay PLC behind a real Modbus TCP server."""
    clock = FakeClock()
    plc = MockPLC(["bay1", "bay2"], wash_duration=10.0, idle_delay=3.0, clock=clock)
    server = PLCServer(plc, host="127.0.0.1", port=free_port())
    await server.start()
    yield server, clock
    await server.stop()


async def connect_driver(port):
    driver = ModbusDriver("127.0.0.1", port=port, timeout=1.0)
    # The listener comes up in the background after start()
    for _ in range(50):
        try:
            await driver.connect()
            return driver
        except DriverError:
            await asyncio.sleep(0.02)
    pytest.fail(f"simulated PLC on port {port} never accepted a connection")


class TestAgainstSimulatedPLC:
    @pytest.mark.asyncio
    async def test_start_wash_over_tcp(self, sim_server):
        server, clock = sim_server
        driver = await connect_driver(server.port)
        try:
            await driver.write_register(10 + REG_COURSE, COURSE_CODES["DELUXE"])
            await driver.write_register(10 + REG_COMMAND, CMD_START)

            block = await driver.read_registers(10, 10)
            assert block[REG_STATUS] == STATUS_WASHING
            assert block[REG_COURSE] == COURSE_CODES["DELUXE"]
            assert block[REG_COMMAND] == CMD_NONE
            assert server.plc.writes == [
                (10 + REG_COURSE, COURSE_CODES["DELUXE"]),
                (10 + REG_COMMAND, CMD_START),
            ]

            clock.now = 4.0
            assert (await driver.read_registers(10, 10))[REG_PROGRESS] == 40
            # bay1 is a separate block and stays idle
            assert (await driver.read_registers(0, 10))[REG_STATUS] == 0
        finally:
            await driver.close()

        health = driver.get_health()
        assert health["failed_reads"] == 0
        assert health["total_writes"] == 2

    @pytest.mark.asyncio
    async def test_read_past_last_bay_is_error(self, sim_server):
        server, _ = sim_server
        driver = await connect_driver(server.port)
        try:
            with pytest.raises(DriverError):
                await driver.read_registers(15, 10)
            assert driver.get_health()["failed_reads"] == 1
        finally:
            await driver.close()
