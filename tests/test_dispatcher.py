# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Unit tests for START/STOP command dispatch."""

import asyncio
import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "gateway"))

from washgate.bay_model import (
    CMD_START,
    CMD_STOP,
    COURSE_CODES,
    BayReading,
    BayState,
    RegisterMap,
    UnknownBayError,
    WashCommand,
)
from washgate.bay_state import BayTable
from washgate.connection import ConnectionDownError, ConnectionSupervisor
from washgate.dispatcher import CommandDispatcher
from washgate.mock_plc import MockPLC
from washgate.status import StatusPublisher
from washgate.transport import DriverError
from washgate.wash_log import WashLogStore

BAYS = ["bay1", "bay2"]


async def make_dispatcher(reachable=True):
    plc = MockPLC(BAYS, clock=lambda: 0.0)
    plc.set_reachable(reachable)
    mqtt = MagicMock()
    store = WashLogStore(":memory:")
    table = BayTable(BAYS, store, StatusPublisher(mqtt, store))
    sup = ConnectionSupervisor(
        plc, table, offline_interval=1.0, reconnect_initial=1.0,
        reconnect_max=1.0, shutdown_timeout=0.5,
    )
    await sup.start()
    dispatcher = CommandDispatcher(sup, table, RegisterMap(BAYS))
    return dispatcher, sup, plc, table, mqtt


class TestStart:
    @pytest.mark.asyncio
    async def test_writes_course_then_start(self):
        dispatcher, sup, plc, table, mqtt = await make_dispatcher()
        try:
            ok = await dispatcher.dispatch(WashCommand("bay2", "START", "STANDARD", "req-1"))

            assert ok is True
            assert plc.writes == [(11, COURSE_CODES["STANDARD"]), (10, CMD_START)]
            bay = table.get("bay2").bay
            assert bay.state is BayState.STARTING
            assert bay.request_id == "req-1"
            assert bay.session_id is not None
            status = mqtt.publish_status.call_args.args[1]
            assert status["state"] == "STARTING"
            assert status["course"] == "STANDARD"
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_default_course(self):
        dispatcher, sup, plc, table, _ = await make_dispatcher()
        try:
            await dispatcher.dispatch(WashCommand("bay1", "START"))
            assert plc.writes[0] == (1, COURSE_CODES["BASIC"])
            assert table.get("bay1").bay.course == "BASIC"
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_start_while_starting_ignored(self):
        dispatcher, sup, plc, table, _ = await make_dispatcher()
        try:
            await dispatcher.dispatch(WashCommand("bay1", "START", "BASIC", "req-1"))
            bay = table.get("bay1").bay
            session, writes = bay.session_id, list(plc.writes)

            ok = await dispatcher.dispatch(WashCommand("bay1", "START", "DELUXE", "req-2"))

            assert ok is False
            assert plc.writes == writes
            assert bay.session_id == session
            assert bay.request_id == "req-1"
            assert dispatcher.get_status()["ignored"] == 1
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_start_while_washing_ignored(self):
        dispatcher, sup, plc, table, _ = await make_dispatcher()
        try:
            table.get("bay1").reconcile(BayReading(BayState.WASHING, 50, "BASIC"))
            assert await dispatcher.dispatch(WashCommand("bay1", "START")) is False
            assert plc.writes == []
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_start_writes_once(self):
        dispatcher, sup, plc, _, _ = await make_dispatcher()
        try:
            results = await asyncio.gather(
                dispatcher.dispatch(WashCommand("bay1", "START", "BASIC", "a")),
                dispatcher.dispatch(WashCommand("bay1", "START", "BASIC", "b")),
            )
            assert sorted(results) == [False, True]
            assert len(plc.writes) == 2
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_start_after_done_allowed(self):
        dispatcher, sup, plc, table, _ = await make_dispatcher()
        try:
            table.get("bay1").reconcile(BayReading(BayState.DONE, 100, "BASIC"))
            assert await dispatcher.dispatch(WashCommand("bay1", "START")) is True
        finally:
            await sup.stop()


class TestStop:
    @pytest.mark.asyncio
    async def test_writes_only_command_register(self):
        dispatcher, sup, plc, table, mqtt = await make_dispatcher()
        try:
            table.get("bay2").reconcile(BayReading(BayState.WASHING, 50, "BASIC"))
            publishes = mqtt.publish_status.call_count

            assert await dispatcher.dispatch(WashCommand("bay2", "STOP")) is True

            assert plc.writes == [(10, CMD_STOP)]
            assert table.get("bay2").state is BayState.WASHING
            assert mqtt.publish_status.call_count == publishes
        finally:
            await sup.stop()


class TestRejections:
    @pytest.mark.asyncio
    async def test_unknown_bay(self):
        dispatcher, sup, plc, _, _ = await make_dispatcher()
        try:
            with pytest.raises(UnknownBayError):
                await dispatcher.dispatch(WashCommand("bay9", "START"))
            assert plc.writes == []
            assert dispatcher.get_status()["rejected"] == 1
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_connection_down(self):
        dispatcher, sup, plc, table, _ = await make_dispatcher(reachable=False)
        try:
            with pytest.raises(ConnectionDownError):
                await dispatcher.dispatch(WashCommand("bay1", "START"))
            with pytest.raises(ConnectionDownError):
                await dispatcher.dispatch(WashCommand("bay1", "STOP"))
            assert plc.writes == []
            assert table.get("bay1").state is BayState.OFFLINE
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_write_failure_leaves_state(self):
        dispatcher, sup, plc, table, _ = await make_dispatcher()
        try:
            plc.set_reachable(False)
            with pytest.raises(DriverError):
                await dispatcher.dispatch(WashCommand("bay1", "START", "BASIC", "r"))

            bay = table.get("bay1").bay
            assert bay.state is BayState.OFFLINE
            assert bay.request_id is None
            assert not sup.connected
            # A retry after the failure is not mistaken for a duplicate
            assert dispatcher.get_status()["starts_in_flight"] == []
        finally:
            await sup.stop()
