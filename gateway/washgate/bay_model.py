"""Register layout, code tables and data models for wash bays."""

import enum
from dataclasses import dataclass, replace
from datetime import datetime, timezone

# Each bay owns a fixed block of holding registers. The layout must match
# the PLC firmware.
BLOCK_SIZE = 10

REG_COMMAND = 0   # write: CMD_*
REG_COURSE = 1    # write: course code
REG_STATUS = 2    # read: STATUS_*
REG_PROGRESS = 3  # read: 0-100
REG_ERROR = 4     # reserved

MAX_REGISTERS = 65536

# Command register values
CMD_NONE = 0
CMD_START = 1
CMD_STOP = 2

# Status register values
STATUS_IDLE = 0
STATUS_WASHING = 1
STATUS_COMPLETED = 2
STATUS_CANCELED = 3
STATUS_ERROR = 4

COURSE_CODES = {
    "BASIC": 1,
    "STANDARD": 2,
    "PREMIUM": 3,
    "DELUXE": 4,
}

COURSE_NAMES = {code: name for name, code in COURSE_CODES.items()}

DEFAULT_COURSE = "BASIC"

ERROR_PROTOCOL_OFFLINE = "PROTOCOL_OFFLINE"
ERROR_GATEWAY_RESTART = "GATEWAY_RESTART"

ACTION_START = "START"
ACTION_STOP = "STOP"
VALID_ACTIONS = (ACTION_START, ACTION_STOP)


class UnknownBayError(Exception):
    """Raised when a bay id is not in the configured set."""


class InvalidCommandError(Exception):
    """Raised when a command payload cannot be turned into a WashCommand."""


class BayState(enum.Enum):
    IDLE = "IDLE"
    STARTING = "STARTING"   # software only: START written, not yet confirmed
    WASHING = "WASHING"
    DONE = "DONE"
    CANCELED = "CANCELED"
    ERROR = "ERROR"
    OFFLINE = "OFFLINE"     # software only: protocol connection down


ACTIVE_STATES = frozenset({BayState.STARTING, BayState.WASHING})
TERMINAL_STATES = frozenset({
    BayState.DONE, BayState.CANCELED, BayState.ERROR, BayState.OFFLINE,
})

STATUS_STATE_MAP = {
    STATUS_IDLE: BayState.IDLE,
    STATUS_WASHING: BayState.WASHING,
    STATUS_COMPLETED: BayState.DONE,
    STATUS_CANCELED: BayState.CANCELED,
    STATUS_ERROR: BayState.ERROR,
}


@dataclass
class Bay:
    bay_id: str
    state: BayState = BayState.IDLE
    progress: int = 0
    course: str | None = None
    error_code: str | None = None
    session_id: str | None = None
    request_id: str | None = None
    log_id: int | None = None

    def copy(self) -> "Bay":
        return replace(self)


@dataclass(frozen=True)
class BayReading:
    """One decoded register block, as seen by a single poll."""
    state: BayState
    progress: int = 0
    course: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class WashCommand:
    bay_id: str
    action: str
    course: str | None = None
    request_id: str | None = None

    @classmethod
    def from_payload(cls, bay_id: str, payload: dict) -> "WashCommand":
        """Validate a decoded bus payload.

        Raises InvalidCommandError for a missing/unknown action or an
        unknown course name.
        """
        if not isinstance(payload, dict):
            raise InvalidCommandError(f"payload must be an object, got {type(payload).__name__}")

        action = str(payload.get("action") or "").strip().upper()
        if action not in VALID_ACTIONS:
            raise InvalidCommandError(f"unknown action: {payload.get('action')!r}")

        # Blank course means "no course", same as omitting it
        course = str(payload.get("course") or "").strip().upper() or None
        if course is not None and course not in COURSE_CODES:
            raise InvalidCommandError(f"unknown course: {payload.get('course')!r}")

        request_id = payload.get("requestId")
        if request_id is not None:
            request_id = str(request_id)

        return cls(bay_id=bay_id, action=action, course=course, request_id=request_id)


class RegisterMap:
    """Maps (bay, field offset) to a holding register address.

    ``base_address(bay) = index(bay) * block_size``.
    """

    def __init__(self, bay_ids: list[str], block_size: int = BLOCK_SIZE):
        self._bay_ids = list(bay_ids)
        self._index = {bay_id: i for i, bay_id in enumerate(self._bay_ids)}
        self.block_size = block_size

    @property
    def bay_ids(self) -> list[str]:
        return list(self._bay_ids)

    def index(self, bay_id: str) -> int:
        try:
            return self._index[bay_id]
        except KeyError:
            raise UnknownBayError(f"unknown bay: {bay_id!r}") from None

    def base_address(self, bay_id: str) -> int:
        return self.index(bay_id) * self.block_size

    def address(self, bay_id: str, offset: int) -> int:
        if not 0 <= offset < self.block_size:
            raise ValueError(f"offset {offset} outside block of {self.block_size}")
        return self.base_address(bay_id) + offset


def decode_block(registers: list[int]) -> BayReading:
    """Decode a bay's register block into domain values."""
    if len(registers) <= REG_ERROR:
        raise ValueError(f"register block too short: {len(registers)} registers")

    status = registers[REG_STATUS]
    error_raw = registers[REG_ERROR]

    state = STATUS_STATE_MAP.get(status)
    if state is None:
        state = BayState.ERROR
        error_code = f"UNKNOWN_STATUS_{status}"
    elif error_raw:
        error_code = f"PLC_{error_raw}"
    elif state is BayState.ERROR:
        error_code = "PLC_ERROR"
    else:
        error_code = None

    progress = max(0, min(100, int(registers[REG_PROGRESS])))
    course = COURSE_NAMES.get(registers[REG_COURSE])

    return BayReading(state=state, progress=progress, course=course, error_code=error_code)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_utc(ts: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a Z suffix."""
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
