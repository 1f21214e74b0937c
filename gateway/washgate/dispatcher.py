# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Turns validated wash commands into PLC register writes."""

import logging

from .bay_model import (
    ACTION_START,
    ACTION_STOP,
    ACTIVE_STATES,
    CMD_START,
    CMD_STOP,
    COURSE_CODES,
    DEFAULT_COURSE,
    REG_COMMAND,
    REG_COURSE,
    RegisterMap,
    WashCommand,
)
from .bay_state import BayTable
from .connection import ConnectionDownError, ConnectionSupervisor
from .transport import RegisterDriver

logger = logging.getLogger(__name__)


class CommandDispatcher:
    """START / STOP handling.

    Commands are not queued across outages: with the connection down they
    fail immediately with ConnectionDownError and the sender retries.
    """

    def __init__(self, supervisor: ConnectionSupervisor, bays: BayTable,
                 register_map: RegisterMap):
        self.supervisor = supervisor
        self.bays = bays
        self.register_map = register_map
        # Bays with START writes queued or in flight
        self._starting: set[str] = set()

        self._accepted = 0
        self._ignored = 0
        self._rejected = 0

    async def dispatch(self, command: WashCommand) -> bool:
        """Execute a command. Returns False if it was ignored.

        Raises UnknownBayError, ConnectionDownError or DriverError.
        """
        try:
            machine = self.bays.get(command.bay_id)
            if not self.supervisor.connected:
                raise ConnectionDownError(
                    f"[{command.bay_id}] {command.action} refused: PLC offline"
                )
        except Exception:
            self._rejected += 1
            raise

        if command.action == ACTION_START:
            return await self._start(machine, command)
        if command.action == ACTION_STOP:
            return await self._stop(command)
        self._rejected += 1
        raise ValueError(f"unsupported action {command.action!r}")

    async def _start(self, machine, command: WashCommand) -> bool:
        bay_id = command.bay_id
        if machine.state in ACTIVE_STATES or bay_id in self._starting:
            self._ignored += 1
            logger.info(
                "[%s] START ignored: bay already %s (request=%s)",
                bay_id, machine.state.value, command.request_id,
            )
            return False

        course = command.course or DEFAULT_COURSE
        course_addr = self.register_map.address(bay_id, REG_COURSE)
        command_addr = self.register_map.address(bay_id, REG_COMMAND)

        async def write_start(driver: RegisterDriver):
            # Firmware samples the course when it sees START
            await driver.write_register(course_addr, COURSE_CODES[course])
            await driver.write_register(command_addr, CMD_START)

        self._starting.add(bay_id)
        try:
            await self.supervisor.submit(write_start)
        except Exception:
            self._rejected += 1
            raise
        finally:
            self._starting.discard(bay_id)

        self._accepted += 1
        logger.info("[%s] START written (course=%s request=%s)", bay_id, course, command.request_id)
        machine.accept_start(course, command.request_id)
        return True

    async def _stop(self, command: WashCommand) -> bool:
        command_addr = self.register_map.address(command.bay_id, REG_COMMAND)
        try:
            await self.supervisor.submit(
                lambda driver: driver.write_register(command_addr, CMD_STOP)
            )
        except Exception:
            self._rejected += 1
            raise
        self._accepted += 1
        logger.info("[%s] STOP written (request=%s)", command.bay_id, command.request_id)
        return True

    def get_status(self) -> dict:
        return {
            "accepted": self._accepted,
            "ignored": self._ignored,
            "rejected": self._rejected,
            "starts_in_flight": sorted(self._starting),
        }
