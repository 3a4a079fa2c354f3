"""
Liveness endpoint that keeps the load controller running as a background service.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from load_controller import ControllerState, LoadController


def create_app(controller: Optional[LoadController] = None) -> FastAPI:
    """Build the app; when a controller is given it runs for the lifetime of the app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if controller is not None:
            if controller.state is ControllerState.CREATED:
                controller.initialize()
        try:
            if controller is not None:
                await asyncio.to_thread(controller.start)
            yield
        finally:
            if controller is not None:
                await asyncio.to_thread(controller.close)

    app = FastAPI(title="Upsert load generator", lifespan=lifespan)
    app.state.controller = controller

    @app.get("/", response_class=PlainTextResponse)
    def index():
        return "Hello World!"

    @app.get("/stats")
    def stats():
        """Most recent reporting interval."""
        snapshot = controller.last_snapshot if controller is not None else None
        if snapshot is None:
            return {"state": controller.state.value if controller is not None else "idle"}
        return {
            "state": controller.state.value,
            "write_count": snapshot.write_count,
            "qps": snapshot.qps,
            "avg_latency_ms": snapshot.avg_latency_ms,
        }

    return app
