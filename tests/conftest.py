# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Shared test support: fake clock, scripted PLC, gateway harness."""

import asyncio
import os
import platform
import sys
from unittest.mock import MagicMock

import pytest_asyncio

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "gateway"))

from washgate.bay_model import RegisterMap
from washgate.bay_state import BayTable
from washgate.connection import ConnectionSupervisor
from washgate.dispatcher import CommandDispatcher
from washgate.mock_plc import MockPLC
from washgate.poller import BayPoller
from washgate.status import StatusPublisher
from washgate.transport import DriverError
from washgate.wash_log import WashLogStore

BAYS = ["bay1", "bay2", "bay3"]


class FakeClock:
    """Monotonic clock for MockPLC, advanced by hand."""

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class ScriptedPLC(MockPLC):
    """MockPLC that records read addresses and times out once at ``fail_address``."""

    def __init__(self, *args, fail_address=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_address = fail_address
        self.read_addresses: list[int] = []

    async def read_registers(self, address, count):
        self.read_addresses.append(address)
        if address == self.fail_address:
            self.fail_address = None
            raise DriverError(f"read {address}+{count} timed out")
        return await super().read_registers(address, count)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_event_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class Gateway:
    """The protocol side of the gateway, without MQTT or HTTP.

    Supervisor, poller, dispatcher, bay table and a real SQLite store wired
    together as in production; MQTT is a MagicMock and the PLC clock is
    driven by hand.
    """

    def __init__(self, db_path, reconnect=0.01):
        self.clock = FakeClock()
        self.plc = ScriptedPLC(BAYS, clock=self.clock)
        self.mqtt = MagicMock()
        self.store = WashLogStore(db_path)
        self.bays = BayTable(BAYS, self.store, StatusPublisher(self.mqtt, self.store))
        rmap = RegisterMap(BAYS)
        self.supervisor = ConnectionSupervisor(
            self.plc, self.bays, offline_interval=0.05,
            reconnect_initial=reconnect, reconnect_max=reconnect, shutdown_timeout=0.5,
        )
        self.poller = BayPoller(self.supervisor, self.bays, rmap)
        self.dispatcher = CommandDispatcher(self.supervisor, self.bays, rmap)

    def statuses(self, bay_id):
        return [
            c.args[1] for c in self.mqtt.publish_status.call_args_list
            if c.args[0] == bay_id
        ]

    def assert_log_handles_match_store(self):
        open_logs = self.store.get_open_logs()
        for machine in self.bays:
            mine = [r["id"] for r in open_logs if r["bay_id"] == machine.bay_id]
            expected = [] if machine.bay.log_id is None else [machine.bay.log_id]
            assert mine == expected

    async def close(self):
        await self.supervisor.stop()
        self.store.close()


@pytest_asyncio.fixture
async def make_gateway(tmp_path):
    """Factory for started Gateway harnesses; all are stopped at teardown."""
    started = []

    async def factory(reconnect=0.01):
        gw = Gateway(str(tmp_path / f"wash{len(started)}.db"), reconnect=reconnect)
        started.append(gw)
        await gw.supervisor.start()
        return gw

    yield factory
    for gw in started:
        await gw.close()


def pytest_configure(config):
    """Add project metadata to the HTML report (only if pytest-metadata installed)."""
    try:
        from pytest_metadata.plugin import metadata_key
    except ImportError:
        return

    config.stash[metadata_key]["Project"] = "Wash Bay Gateway"
    config.stash[metadata_key]["Python"] = platform.python_version()


try:
    import pytest_html  # noqa: F401

    def pytest_html_report_title(report):
        report.title = "Wash Bay Gateway: Test Report"
except ImportError:
    pass
