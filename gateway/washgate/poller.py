# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Fixed-interval poll loop over every bay's register block."""

import asyncio
import logging
import time

from .bay_model import RegisterMap, decode_block
from .bay_state import BayTable
from .connection import ConnectionDownError, ConnectionSupervisor
from .transport import DriverError

logger = logging.getLogger(__name__)


class BayPoller:
    """Reads bays one after another and feeds the readings to reconciliation.

    Started and stopped by the ConnectionSupervisor's listeners: it only
    runs while the PLC is connected. A failed read aborts the rest of the
    cycle; the supervisor has already taken over by the time it returns.
    """

    def __init__(self, supervisor: ConnectionSupervisor, bays: BayTable,
                 register_map: RegisterMap, interval: float = 1.0):
        self.supervisor = supervisor
        self.bays = bays
        self.register_map = register_map
        self.interval = interval
        self._task: asyncio.Task | None = None

        self._cycles = 0
        self._aborted_cycles = 0
        self._last_cycle_duration: float | None = None
        self._last_cycle_time: float | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.get_event_loop().create_task(self._run(), name="bay-poller")
        logger.info("Polling %d bay(s) every %.1fs", len(self.bays), self.interval)

    def stop(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.info("Polling stopped")
        self._task = None

    async def _run(self):
        while True:
            await self.poll_once()
            await asyncio.sleep(self.interval)

    async def poll_once(self) -> bool:
        """One sequential pass over all bays. Returns False if aborted."""
        t0 = time.monotonic()
        self._cycles += 1
        for machine in self.bays:
            address = self.register_map.base_address(machine.bay_id)
            count = self.register_map.block_size
            try:
                registers = await self.supervisor.submit(
                    lambda driver, a=address, c=count: driver.read_registers(a, c)
                )
            except (DriverError, ConnectionDownError) as e:
                self._aborted_cycles += 1
                logger.warning("[%s] Poll aborted: %s", machine.bay_id, e)
                return False
            machine.reconcile(decode_block(registers))

        self._last_cycle_duration = time.monotonic() - t0
        self._last_cycle_time = time.time()
        return True

    def get_status(self) -> dict:
        return {
            "running": self.running,
            "interval_s": self.interval,
            "cycles": self._cycles,
            "aborted_cycles": self._aborted_cycles,
            "last_cycle_duration_s": self._last_cycle_duration,
            "last_cycle": self._last_cycle_time,
        }
