# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Modbus TCP server in front of the simulated wash PLC.

Serves a MockPLC's holding registers on the network so a gateway running
with the real ModbusDriver can be pointed at it instead of a controller:

    washgate-plc-sim --port 5020 --bays bay1,bay2,bay3
    MODBUS_HOST=127.0.0.1 MODBUS_PORT=5020 washgate

Writes go through the same firmware logic the in-process mock uses, so a
START latches the course and the command register self-clears.
"""

import argparse
import asyncio
import logging

from pymodbus.datastore import (
    ModbusDeviceContext,
    ModbusSequentialDataBlock,
    ModbusServerContext,
)
from pymodbus.server import ModbusTcpServer

from .mock_plc import MockPLC

logger = logging.getLogger(__name__)


class PLCDataBlock(ModbusSequentialDataBlock):
    """Holding-register block that reads and writes through a MockPLC."""

    def __init__(self, plc: MockPLC):
        # The device context shifts request addresses up by one before
        # they reach the block, so register 0 lives at block address 1.
        super().__init__(1, [0] * plc.register_count)
        self.plc = plc

    def validate(self, address, count=1):
        start = address - self.address
        return start >= 0 and count >= 1 and start + count <= self.plc.register_count

    def getValues(self, address, count=1):
        return self.plc.read_block(address - self.address, count)

    def setValues(self, address, values):
        if not isinstance(values, list):
            values = [values]
        start = address - self.address
        for i, value in enumerate(values):
            self.plc.apply_write(start + i, value)


def build_context(plc: MockPLC) -> ModbusServerContext:
    """Answer every unit id from the one simulated PLC."""
    device = ModbusDeviceContext(hr=PLCDataBlock(plc))
    return ModbusServerContext(devices=device, single=True)


class PLCServer:
    """Runs the Modbus TCP server for a MockPLC as a background task."""

    def __init__(self, plc: MockPLC, host: str = "0.0.0.0", port: int = 5020):
        self.plc = plc
        self.host = host
        self.port = port
        self._server: ModbusTcpServer | None = None
        self._task: asyncio.Task | None = None

    async def start(self):
        self._server = ModbusTcpServer(build_context(self.plc), address=(self.host, self.port))
        self._task = asyncio.ensure_future(self._server.serve_forever())
        logger.info("Simulated PLC serving Modbus TCP on %s:%d", self.host, self.port)

    async def stop(self):
        if self._server is None:
            return
        server, self._server = self._server, None
        await server.shutdown()
        if self._task is not None:
            task, self._task = self._task, None
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Simulated PLC stopped")


async def run_server(bay_ids: list[str], host: str, port: int,
                     wash_duration: float, idle_delay: float):
    plc = MockPLC(bay_ids, wash_duration=wash_duration, idle_delay=idle_delay)
    server = PLCServer(plc, host=host, port=port)
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Serve a simulated wash PLC over Modbus TCP"
    )
    parser.add_argument(
        "--host", default="0.0.0.0",
        help="Address to listen on (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port", type=int, default=5020,
        help="Modbus TCP port (default: 5020)"
    )
    parser.add_argument(
        "--bays", default="bay1,bay2,bay3",
        help="Comma-separated bay ids, in register order (default: bay1,bay2,bay3)"
    )
    parser.add_argument(
        "--wash-duration", type=float, default=10.0,
        help="Seconds a wash takes to reach 100%% (default: 10)"
    )
    parser.add_argument(
        "--idle-delay", type=float, default=3.0,
        help="Seconds a finished bay waits before returning to idle (default: 3)"
    )
    args = parser.parse_args()

    bay_ids = [b.strip() for b in args.bays.split(",") if b.strip()]
    if not bay_ids:
        parser.error("--bays must name at least one bay")

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        asyncio.run(run_server(bay_ids, args.host, args.port,
                               args.wash_duration, args.idle_delay))
    except KeyboardInterrupt:
        logger.info("Simulated PLC stopped by user")


if __name__ == "__main__":
    main()
