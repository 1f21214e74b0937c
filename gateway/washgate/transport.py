# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Abstract register driver protocol for the PLC connection.

Defines the RegisterDriver interface that the Modbus TCP driver and the
simulated PLC both implement. The gateway never touches protocol framing;
it only connects, reads a block, writes a single register and closes.
"""

from typing import Protocol, runtime_checkable


class DriverError(Exception):
    """Connect, read or write failure on the PLC connection.

    A single connection carries every bay's register block, so this is
    always a connection-level fault, never a per-bay one.
    """


@runtime_checkable
class RegisterDriver(Protocol):
    """Protocol for PLC register drivers.

    Implementations: ModbusDriver, MockPLC. Callers must not issue more
    than one operation at a time; ConnectionSupervisor enforces that.
    """

    async def connect(self) -> None:
        """Open the connection. Raises DriverError on failure."""
        ...

    async def read_registers(self, address: int, count: int) -> list[int]:
        """Read ``count`` holding registers starting at ``address``."""
        ...

    async def write_register(self, address: int, value: int) -> None:
        """Write a single holding register."""
        ...

    async def close(self) -> None:
        """Close the connection. Safe to call when already closed."""
        ...

    def get_health(self) -> dict:
        """Return driver health metrics."""
        ...
