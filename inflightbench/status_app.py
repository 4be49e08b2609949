"""
Live status endpoint for a running scenario.

    GET /health        liveness + current phase
    GET /stats         counters, latency, per-identity state
    GET /stats/stream  server-sent ``stats`` events until the run finishes

The server runs inside the scenario's event loop, so handlers read the
orchestrator directly.
"""

import asyncio
import json
import logging

import uvicorn
from fastapi import FastAPI, Request
from sse_starlette.sse import EventSourceResponse

from inflightbench import __version__
from inflightbench.orchestrator import ScenarioOrchestrator

log = logging.getLogger("inflightbench.status")


def create_status_app(orchestrator: ScenarioOrchestrator,
                      stream_interval: float | None = None) -> FastAPI:
    interval = stream_interval or orchestrator.config.stats_interval or 1.0
    app = FastAPI(title="inflightbench status", version=__version__)

    @app.get("/health")
    async def health():
        return {"status": "ok", "phase": orchestrator.phase.value}

    @app.get("/stats")
    async def stats():
        return orchestrator.status()

    async def stats_events(request: Request):
        try:
            while True:
                yield {"event": "stats", "data": json.dumps(orchestrator.status())}
                if orchestrator.finished:
                    return
                await asyncio.sleep(interval)
                if await request.is_disconnected():
                    return
        except (asyncio.CancelledError, GeneratorExit):
            return

    @app.get("/stats/stream")
    async def stats_stream(request: Request):
        return EventSourceResponse(
            stats_events(request),
            headers={
                "Cache-Control":     "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    return app


class StatusServer:
    """uvicorn serving the status app as a task of the running loop."""

    def __init__(self, orchestrator: ScenarioOrchestrator, port: int,
                 host: str = "127.0.0.1"):
        config = uvicorn.Config(create_status_app(orchestrator), host=host, port=port,
                                log_level="warning", lifespan="off")
        self.server = uvicorn.Server(config)
        self.url = f"http://{host}:{port}"
        self._task: asyncio.Task | None = None

    async def start(self):
        self._task = asyncio.create_task(self.server.serve(), name="status-server")
        log.info("Status endpoint on %s", self.url)

    async def stop(self):
        if self._task is None:
            return
        self.server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
