# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Status publishing: bay state to the bus and to the snapshot table."""

import asyncio
import logging
from datetime import datetime
from typing import Iterable

from .bay_model import Bay, iso_utc, utc_now
from .mqtt_handler import MQTTHandler
from .wash_log import LogGateway

logger = logging.getLogger(__name__)


def build_status(bay: Bay, timestamp: datetime) -> dict:
    """Normalized status message for one bay."""
    return {
        "bayId": bay.bay_id,
        "sessionId": bay.session_id,
        "requestId": bay.request_id,
        "state": bay.state.value,
        "progress": bay.progress,
        "course": bay.course,
        "errorCode": bay.error_code,
        "timestampUtc": iso_utc(timestamp),
    }


class StatusPublisher:
    """Publishes bay status and upserts snapshots.

    The bus and the snapshot store are isolated from each other: a failure
    in one never stops the other, and neither ever propagates to the
    caller, which is always on the protocol path.
    """

    def __init__(self, mqtt: MQTTHandler, store: LogGateway):
        self.mqtt = mqtt
        self.store = store
        self._publish_count = 0
        self._heartbeat_count = 0
        self._subsystem_errors: dict[str, int] = {"mqtt": 0, "snapshot": 0}

    def publish(self, bay: Bay):
        """Publish a state change and persist it as the bay's snapshot."""
        # Timestamp is taken at publish time, not when the change was observed
        now = utc_now()
        self._publish_count += 1
        self._safe_publish(bay, now)
        self._safe_snapshot(bay, now)

    def publish_heartbeat(self, bays: Iterable[Bay]):
        """Re-publish current state for late or lossy subscribers."""
        now = utc_now()
        self._heartbeat_count += 1
        for bay in bays:
            self._safe_publish(bay, now)

    async def run_heartbeat(self, bays, interval: float):
        """Background task: heartbeat every ``interval`` seconds.

        ``bays`` is re-read each tick, so it should be a live view
        (e.g. a BayTable), not a list copied once.
        """
        while True:
            await asyncio.sleep(interval)
            try:
                self.publish_heartbeat(machine.bay for machine in bays)
            except Exception:
                logger.exception("Heartbeat publish failed")

    def _safe_publish(self, bay: Bay, now: datetime):
        try:
            self.mqtt.publish_status(bay.bay_id, build_status(bay, now))
        except Exception:
            self._subsystem_errors["mqtt"] += 1
            if self._subsystem_errors["mqtt"] <= 3:
                logger.exception("[%s] MQTT status publish error", bay.bay_id)

    def _safe_snapshot(self, bay: Bay, now: datetime):
        try:
            self.store.upsert_snapshot(
                bay.bay_id, bay.session_id, bay.request_id, bay.state.value,
                bay.progress, bay.course, bay.error_code, now,
            )
        except Exception:
            self._subsystem_errors["snapshot"] += 1
            if self._subsystem_errors["snapshot"] <= 3:
                logger.exception("[%s] Snapshot upsert error", bay.bay_id)

    def get_status(self) -> dict:
        return {
            "publishes": self._publish_count,
            "heartbeats": self._heartbeat_count,
            "subsystem_errors": dict(self._subsystem_errors),
        }
