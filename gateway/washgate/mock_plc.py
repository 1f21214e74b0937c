# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Simulated wash PLC for running the gateway without hardware.

Holds the same holding-register layout as the real firmware and advances
each bay's wash on the clock: a START latches the course and begins
washing, progress climbs linearly to 100 over ``wash_duration`` seconds,
then the bay reports COMPLETED and drops back to IDLE after
``idle_delay`` seconds. STOP cancels. The command register self-clears.

Faults can be injected to exercise the gateway's connection handling.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .bay_model import (
    BLOCK_SIZE,
    CMD_NONE,
    CMD_START,
    CMD_STOP,
    COURSE_CODES,
    DEFAULT_COURSE,
    REG_COMMAND,
    REG_COURSE,
    REG_PROGRESS,
    REG_STATUS,
    STATUS_CANCELED,
    STATUS_COMPLETED,
    STATUS_IDLE,
    STATUS_WASHING,
)
from .transport import DriverError

logger = logging.getLogger(__name__)


@dataclass
class _SimBay:
    status: int = STATUS_IDLE
    progress: float = 0.0
    course: int = 0
    started_at: float | None = None
    finished_at: float | None = None


class MockPLC:
    """In-process RegisterDriver that simulates one PLC serving all bays."""

    def __init__(self, bay_ids: list[str], wash_duration: float = 10.0,
                 idle_delay: float = 3.0,
                 clock: Callable[[], float] = time.monotonic):
        self._bay_ids = list(bay_ids)
        self._wash_duration = wash_duration
        self._idle_delay = idle_delay
        self._clock = clock
        self._registers = [0] * (len(self._bay_ids) * BLOCK_SIZE)
        self._bays = [_SimBay() for _ in self._bay_ids]

        self._connected = False
        self._reachable = True
        self._fail_reads = 0

        # Every write in arrival order, for inspection
        self.writes: list[tuple[int, int]] = []
        self._total_reads = 0
        self._failed_ops = 0

        for index in range(len(self._bay_ids)):
            self._sync_registers(index)

    # -- Fault injection --------------------------------------------------

    def set_reachable(self, reachable: bool):
        """Simulate the PLC dropping off the network (or coming back)."""
        self._reachable = reachable
        if not reachable:
            self._connected = False

    def fail_reads(self, count: int = 1):
        """Fail the next ``count`` reads, then behave normally."""
        self._fail_reads = count

    # -- RegisterDriver ---------------------------------------------------

    async def connect(self) -> None:
        if not self._reachable:
            self._failed_ops += 1
            raise DriverError("mock PLC unreachable")
        self._connected = True
        logger.info("Mock PLC connected (%d bays)", len(self._bay_ids))

    async def read_registers(self, address: int, count: int) -> list[int]:
        self._check_link()
        if self._fail_reads > 0:
            self._fail_reads -= 1
            self._failed_ops += 1
            raise DriverError(f"mock PLC read {address}+{count} timed out")
        return self.read_block(address, count)

    async def write_register(self, address: int, value: int) -> None:
        self._check_link()
        self.apply_write(address, value)

    async def close(self) -> None:
        self._connected = False

    def get_health(self) -> dict:
        return {
            "target": "mock",
            "connected": self._connected,
            "reachable": self._reachable,
            "total_reads": self._total_reads,
            "total_writes": len(self.writes),
            "failed_ops": self._failed_ops,
        }

    # -- Register access --------------------------------------------------
    # Used directly by the Modbus TCP server, which has no link to check.

    @property
    def register_count(self) -> int:
        return len(self._registers)

    def read_block(self, address: int, count: int) -> list[int]:
        self._check_range(address, count)
        self._total_reads += 1
        self._advance()
        return list(self._registers[address:address + count])

    def apply_write(self, address: int, value: int):
        """Write one holding register as the firmware would see it."""
        self._check_range(address, 1)
        self.writes.append((address, value))
        index, offset = divmod(address, BLOCK_SIZE)
        self._advance()

        if offset == REG_COURSE:
            self._bays[index].course = value
            self._sync_registers(index)
        elif offset == REG_COMMAND:
            if value == CMD_START:
                self._start(index)
            elif value == CMD_STOP:
                self._stop(index)
            self._registers[address] = CMD_NONE
        else:
            self._registers[address] = value

    # -- Simulation -------------------------------------------------------

    def _check_link(self):
        if not self._connected:
            self._failed_ops += 1
            raise DriverError("mock PLC not connected")

    def _check_range(self, address: int, count: int):
        if address < 0 or count < 1 or address + count > len(self._registers):
            self._failed_ops += 1
            raise DriverError(f"illegal data address {address}+{count}")

    def _start(self, index: int):
        bay = self._bays[index]
        if bay.status == STATUS_WASHING:
            return
        if not bay.course:
            bay.course = COURSE_CODES[DEFAULT_COURSE]
        bay.status = STATUS_WASHING
        bay.progress = 0.0
        bay.started_at = self._clock()
        bay.finished_at = None
        self._sync_registers(index)
        logger.info("Mock PLC [%s] wash started (course %d)", self._bay_ids[index], bay.course)

    def _stop(self, index: int):
        bay = self._bays[index]
        bay.status = STATUS_CANCELED
        bay.progress = 0.0
        bay.started_at = None
        bay.finished_at = self._clock()
        self._sync_registers(index)
        logger.info("Mock PLC [%s] wash stopped", self._bay_ids[index])

    def _advance(self):
        now = self._clock()
        for index, bay in enumerate(self._bays):
            if bay.status == STATUS_WASHING and bay.started_at is not None:
                elapsed = now - bay.started_at
                if self._wash_duration <= 0 or elapsed >= self._wash_duration:
                    bay.status = STATUS_COMPLETED
                    bay.progress = 100.0
                    bay.started_at = None
                    bay.finished_at = now
                    logger.info("Mock PLC [%s] wash completed", self._bay_ids[index])
                else:
                    bay.progress = min(100.0, elapsed / self._wash_duration * 100.0)
            elif bay.status in (STATUS_COMPLETED, STATUS_CANCELED) and bay.finished_at is not None:
                if now - bay.finished_at >= self._idle_delay:
                    bay.status = STATUS_IDLE
                    bay.progress = 0.0
                    bay.course = 0
                    bay.finished_at = None
            self._sync_registers(index)

    def _sync_registers(self, index: int):
        bay = self._bays[index]
        base = index * BLOCK_SIZE
        self._registers[base + REG_STATUS] = bay.status
        self._registers[base + REG_PROGRESS] = round(bay.progress)
        self._registers[base + REG_COURSE] = bay.course
