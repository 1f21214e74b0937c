# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Canonical per-bay state: reconciliation, sessions and wash logs.

One BayStateMachine exists per configured bay for the life of the
process. It is mutated from three places only: poll results
(``reconcile``), an accepted START (``accept_start``) and the connection
supervisor's offline broadcast (``mark_offline`` / ``clear_error``).
All of them run on the asyncio loop, so no locking is needed.

Log invariant: ``bay.log_id`` is set exactly while a wash_logs row for
this bay is open.
"""

import logging
from datetime import datetime
from typing import Callable, Iterator

from .bay_model import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    Bay,
    BayReading,
    BayState,
    UnknownBayError,
    iso_utc,
    utc_now,
)
from .status import StatusPublisher
from .wash_log import LogGateway

logger = logging.getLogger(__name__)


class SessionIdGenerator:
    """Session ids of the form ``{YYYYmmddHHMMSS}-{bay_id}-{seq:03d}``.

    ``seq`` is a process-local counter shared by all bays that wraps at
    1000. Ids are unique within one process's uptime; two processes
    started in the same second can collide, which is acceptable because
    wash_logs rows carry their own primary key.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._seq = 0

    def next_id(self, bay_id: str) -> str:
        self._seq = (self._seq + 1) % 1000
        stamp = self._clock().strftime("%Y%m%d%H%M%S")
        return f"{stamp}-{bay_id}-{self._seq:03d}"


class BayStateMachine:
    def __init__(self, bay_id: str, store: LogGateway, publisher: StatusPublisher,
                 sessions: SessionIdGenerator):
        self.bay = Bay(bay_id)
        self._store = store
        self._publisher = publisher
        self._sessions = sessions

    @property
    def bay_id(self) -> str:
        return self.bay.bay_id

    @property
    def state(self) -> BayState:
        return self.bay.state

    # -- Poll-driven ------------------------------------------------------

    def reconcile(self, reading: BayReading) -> bool:
        """Apply a polled reading. Returns True if a status was published."""
        bay = self.bay
        prev_state = bay.state
        state_changed = reading.state is not prev_state
        progress_changed = reading.progress != bay.progress
        course_changed = reading.course != bay.course
        now = utc_now()

        if state_changed:
            if reading.state is BayState.WASHING:
                self._open_session(reading.course or bay.course, now)
            elif bay.log_id is not None:
                # Any exit from WASHING ends the logged attempt
                self._close_log(reading.state, reading.error_code, now)

            if reading.state is BayState.IDLE:
                bay.session_id = None
                bay.request_id = None
                bay.log_id = None

            logger.info(
                "[%s] %s -> %s (progress=%d course=%s error=%s)",
                bay.bay_id, prev_state.value, reading.state.value,
                reading.progress, reading.course, reading.error_code,
            )

        bay.state = reading.state
        bay.progress = reading.progress
        bay.course = reading.course
        bay.error_code = reading.error_code

        if state_changed or progress_changed or course_changed:
            self._publisher.publish(bay)
            return True
        return False

    # -- Command-driven ---------------------------------------------------

    def accept_start(self, course: str, request_id: str | None):
        """Move to STARTING once the START writes have been accepted.

        The poll that follows confirms WASHING (or reports otherwise).
        """
        bay = self.bay
        if bay.state in ACTIVE_STATES:
            raise RuntimeError(f"[{bay.bay_id}] accept_start while {bay.state.value}")

        if bay.state in TERMINAL_STATES and bay.session_id is not None:
            # The held session belongs to the attempt that just ended
            logger.debug("[%s] Retiring finished session %s", bay.bay_id, bay.session_id)
            bay.session_id = None

        if bay.session_id is None:
            bay.session_id = self._sessions.next_id(bay.bay_id)
        bay.request_id = request_id
        bay.state = BayState.STARTING
        bay.progress = 0
        bay.course = course
        bay.error_code = None

        logger.info(
            "[%s] STARTING course=%s session=%s request=%s",
            bay.bay_id, course, bay.session_id, request_id,
        )
        self._publisher.publish(bay)

    # -- Connection-driven ------------------------------------------------

    def mark_offline(self, error_code: str) -> bool:
        """Force OFFLINE while the protocol connection is down.

        Records the incident exactly once: an open log is closed with
        ``error_code``, otherwise a zero-duration entry is written. Repeated
        calls during the same outage are no-ops. Returns True if anything
        changed.
        """
        bay = self.bay
        if bay.state is BayState.OFFLINE and bay.error_code == error_code:
            return False

        now = utc_now()
        if bay.log_id is not None:
            self._close_log(BayState.OFFLINE, error_code, now)
        else:
            log_id = self._safe_create(bay.course, now)
            if log_id is not None:
                self._safe_close(log_id, BayState.OFFLINE, error_code, now)

        logger.warning("[%s] %s -> OFFLINE (%s)", bay.bay_id, bay.state.value, error_code)
        bay.state = BayState.OFFLINE
        bay.progress = 0
        bay.error_code = error_code
        self._publisher.publish(bay)
        return True

    def clear_error(self, error_code: str) -> bool:
        """Drop ``error_code`` if it is the current one. State is untouched."""
        if self.bay.error_code != error_code:
            return False
        self.bay.error_code = None
        return True

    # -- Helpers ----------------------------------------------------------

    def _open_session(self, course: str | None, now: datetime):
        bay = self.bay
        if bay.session_id is None:
            bay.session_id = self._sessions.next_id(bay.bay_id)
        if bay.log_id is None:
            bay.log_id = self._safe_create(course, now)
            if bay.log_id is not None:
                logger.info(
                    "[%s] Wash log %d opened (session=%s course=%s)",
                    bay.bay_id, bay.log_id, bay.session_id, course,
                )

    def _close_log(self, final_state: BayState, error_code: str | None, now: datetime):
        bay = self.bay
        log_id, bay.log_id = bay.log_id, None
        if self._safe_close(log_id, final_state, error_code, now):
            logger.info(
                "[%s] Wash log %d closed: %s error=%s at %s",
                bay.bay_id, log_id, final_state.value, error_code, iso_utc(now),
            )

    def _safe_create(self, course: str | None, now: datetime) -> int | None:
        bay = self.bay
        try:
            return self._store.create_log(bay.bay_id, course, bay.session_id, bay.request_id, now)
        except Exception:
            logger.exception("[%s] Failed to open wash log", bay.bay_id)
            return None

    def _safe_close(self, log_id: int, final_state: BayState, error_code: str | None,
                    now: datetime) -> bool:
        try:
            return bool(self._store.close_log(log_id, final_state.value, error_code, now))
        except Exception:
            logger.exception("[%s] Failed to close wash log %d", self.bay.bay_id, log_id)
            return False


class BayTable:
    """The owned set of bay state machines, in configured (register) order."""

    def __init__(self, bay_ids: list[str], store: LogGateway, publisher: StatusPublisher,
                 sessions: SessionIdGenerator | None = None):
        self.sessions = sessions or SessionIdGenerator()
        self._machines: dict[str, BayStateMachine] = {
            bay_id: BayStateMachine(bay_id, store, publisher, self.sessions)
            for bay_id in bay_ids
        }

    def get(self, bay_id: str) -> BayStateMachine:
        try:
            return self._machines[bay_id]
        except KeyError:
            raise UnknownBayError(f"unknown bay: {bay_id!r}") from None

    def __iter__(self) -> Iterator[BayStateMachine]:
        return iter(self._machines.values())

    def __len__(self) -> int:
        return len(self._machines)

    def __contains__(self, bay_id: str) -> bool:
        return bay_id in self._machines

    def as_dicts(self) -> list[dict]:
        return [
            {
                "bay_id": m.bay.bay_id,
                "state": m.bay.state.value,
                "progress": m.bay.progress,
                "course": m.bay.course,
                "error_code": m.bay.error_code,
                "session_id": m.bay.session_id,
                "request_id": m.bay.request_id,
                "log_id": m.bay.log_id,
            }
            for m in self._machines.values()
        ]
