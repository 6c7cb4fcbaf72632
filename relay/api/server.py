import asyncio
import contextlib
from typing import Optional

import uvicorn
from fastapi import FastAPI
from loguru import logger

from core.state import SessionContext


def create_app(context: SessionContext, generation_enabled: bool) -> FastAPI:
    """Create the status API. Exposes counters only, never user content."""

    app = FastAPI(title="Voice Relay Bot", version="1.0.0")

    # Store references for route handlers
    app.state.session_context = context
    app.state.generation_enabled = generation_enabled

    from api.routes.status import router as status_router

    app.include_router(status_router, prefix="/api/status", tags=["status"])

    @app.get("/api/health")
    async def health():
        return {
            "status": "ok",
            "generation_enabled": generation_enabled,
            "uptime_seconds": round(context.uptime_seconds, 1),
        }

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the bot's event loop."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class StatusServer:
    """Runs the status API as a task on the current event loop."""

    def __init__(self, app: FastAPI, port: int, host: str = "0.0.0.0"):
        self.port = port
        self._server = _EmbeddedServer(
            uvicorn.Config(app, host=host, port=port, log_level="warning")
        )
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Status API started on port {}", self.port)

    async def stop(self):
        if self._task is None:
            return
        self._server.should_exit = True
        await self._task
        self._task = None
        logger.info("Status API stopped.")
