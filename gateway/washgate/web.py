# Wash Bay Gateway
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Read-only health and diagnostics HTTP endpoint."""

import collections
import json
import logging
import time

from aiohttp import web

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# RingBufferHandler: in-memory log capture for the diagnostics endpoint
# ---------------------------------------------------------------------------

class RingBufferHandler(logging.Handler):
    """Logging handler that stores records in a bounded deque."""

    def __init__(self, capacity: int = 1000):
        super().__init__()
        self._records: collections.deque = collections.deque(maxlen=capacity)

    def emit(self, record):
        try:
            self._records.append({
                "ts": record.created,
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
            })
        except Exception:
            self.handleError(record)

    def get_records(self, level: str | None = None, limit: int = 200,
                    search: str | None = None) -> list[dict]:
        """Return filtered log records, newest first."""
        level_num = getattr(logging, level.upper(), 0) if level else 0
        results = []
        for rec in reversed(self._records):
            if level_num and getattr(logging, rec["level"], 0) < level_num:
                continue
            if search and search.lower() not in rec["message"].lower():
                continue
            results.append(rec)
            if len(results) >= limit:
                break
        return results


class HealthServer:
    def __init__(self, port: int = 8080, bays=None, supervisor=None, poller=None,
                 dispatcher=None, publisher=None, mqtt=None, store=None,
                 log_buffer: RingBufferHandler | None = None):
        self._port = port
        self._bays = bays
        self._supervisor = supervisor
        self._poller = poller
        self._dispatcher = dispatcher
        self._publisher = publisher
        self._mqtt = mqtt
        self._store = store
        self._log_buffer = log_buffer
        self._start_time = time.time()

        self._app = web.Application()
        self._runner: web.AppRunner | None = None
        self._setup_routes()

    def set_log_buffer(self, handler: RingBufferHandler):
        self._log_buffer = handler

    def _setup_routes(self):
        self._app.router.add_get("/api/health", self._handle_health)
        self._app.router.add_get("/api/bays", self._handle_bays)
        self._app.router.add_get("/api/logs", self._handle_logs)
        self._app.router.add_get("/api/wash-logs", self._handle_wash_logs)
        self._app.router.add_get("/api/snapshots", self._handle_snapshots)

    def _json(self, data, status=200):
        return web.Response(
            text=json.dumps(data),
            content_type="application/json",
            status=status,
        )

    async def _handle_health(self, request):
        """Aggregate health: PLC connection, MQTT and the wash log store."""
        issues = []
        subsystems = {}

        if self._supervisor:
            conn = self._supervisor.get_status()
            subsystems["plc"] = conn
            if conn["state"] != "CONNECTED":
                issues.append(f"PLC {conn['state'].lower()}")
        else:
            subsystems["plc"] = {"status": "unavailable"}

        if self._mqtt:
            mqtt_status = self._mqtt.get_status()
            subsystems["mqtt"] = mqtt_status
            if not mqtt_status.get("connected"):
                issues.append("MQTT disconnected")
        else:
            subsystems["mqtt"] = {"status": "unavailable"}

        if self._store:
            store_health = self._store.get_health()
            subsystems["store"] = store_health
            if not store_health.get("healthy"):
                issues.append("Wash log write errors detected")
        else:
            subsystems["store"] = {"status": "unavailable"}

        if self._poller:
            subsystems["poller"] = self._poller.get_status()
        if self._dispatcher:
            subsystems["dispatcher"] = self._dispatcher.get_status()
        if self._publisher:
            subsystems["publisher"] = self._publisher.get_status()

        healthy = not issues
        result = {
            "status": "healthy" if healthy else "degraded",
            "issues": issues,
            "bay_count": len(self._bays) if self._bays is not None else 0,
            "subsystems": subsystems,
            "uptime_seconds": round(time.time() - self._start_time, 1),
        }
        return self._json(result, 200 if healthy else 503)

    async def _handle_bays(self, request):
        """GET /api/bays: live in-memory bay table."""
        bays = self._bays.as_dicts() if self._bays is not None else []
        return self._json({"bays": bays, "count": len(bays)})

    async def _handle_logs(self, request):
        """GET /api/logs: recent log records from the ring buffer."""
        if not self._log_buffer:
            return self._json({"error": "log buffer not available"}, 503)

        level = request.query.get("level")
        try:
            limit = min(int(request.query.get("limit", "200")), 1000)
        except ValueError:
            return self._json({"error": "limit must be an integer"}, 400)
        search = request.query.get("search")

        records = self._log_buffer.get_records(level=level, limit=limit, search=search)
        return self._json({"logs": records, "count": len(records)})

    async def _handle_wash_logs(self, request):
        """GET /api/wash-logs?bay=&limit=&open=1: persisted wash log entries."""
        if not self._store:
            return self._json({"error": "wash log not available"}, 503)

        if request.query.get("open", "").lower() in ("1", "true", "yes"):
            entries = self._store.get_open_logs()
        else:
            try:
                limit = int(request.query.get("limit", "20"))
            except ValueError:
                return self._json({"error": "limit must be an integer"}, 400)
            entries = self._store.get_logs(bay_id=request.query.get("bay"), limit=limit)
        return self._json({"logs": entries, "count": len(entries)})

    async def _handle_snapshots(self, request):
        """GET /api/snapshots: last persisted status per bay."""
        if not self._store:
            return self._json({"error": "wash log not available"}, 503)
        snapshots = self._store.get_snapshots()
        return self._json({"snapshots": snapshots, "count": len(snapshots)})

    async def start(self):
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self._port)
        await site.start()
        logger.info("Health endpoint started on http://0.0.0.0:%d", self._port)

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
