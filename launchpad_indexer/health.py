import logging
import time
from typing import Any, Dict, Optional, Tuple

from aiohttp import web

from .scheduler import CycleStats
from .store import Storage

logger = logging.getLogger(__name__)

TOP_ERRORS = 10


class HealthReporter:
    def __init__(self, storage: Storage, stats: CycleStats, unhealthy_error_threshold: int = 5):
        self.storage = storage
        self.stats = stats
        self.unhealthy_error_threshold = unhealthy_error_threshold
        self._runner: Optional[web.AppRunner] = None

    def snapshot(self) -> Tuple[int, Dict[str, Any]]:
        error_count, worst = self.storage.error_totals()
        errors = self.storage.list_error_cursors(limit=TOP_ERRORS)
        last_block = self.storage.max_indexed_block()

        if self.stats.last_cycle_ok is False or worst >= self.unhealthy_error_threshold:
            status = "unhealthy"
        elif self.stats.cycle_count == 0:
            status = "starting"
        else:
            status = "healthy"

        body = {
            "status": status,
            "uptime": int(time.time() - self.stats.started_at),
            "lastBlock": str(last_block) if last_block is not None else None,
            "cycleCount": self.stats.cycle_count,
            "errorCount": error_count,
            "indexerErrors": [c.to_api() for c in errors],
        }
        if self.stats.last_cycle_error:
            body["lastCycleError"] = self.stats.last_cycle_error
        return (503 if status == "unhealthy" else 200), body

    async def health_handler(self, request: web.Request) -> web.Response:
        code, body = self.snapshot()
        return web.json_response(body, status=code)

    async def ready_handler(self, request: web.Request) -> web.Response:
        ready = self.stats.cycle_count > 0
        return web.json_response({"ready": ready}, status=200 if ready else 503)

    async def live_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"alive": True})

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/ready", self.ready_handler)
        app.router.add_get("/live", self.live_handler)
        return app

    async def start(self, host: str, port: int) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, host=host, port=port)
        await site.start()
        logger.info("health server listening on %s:%d", host, port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
