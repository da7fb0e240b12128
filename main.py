import uvicorn
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from pipewatch.agents.pipeline_monitor import PipelineMonitorService
from pipewatch.api.monitors import router as monitors_router
from pipewatch.core import config
from pipewatch.services.broadcaster import SessionBroadcaster
from pipewatch.services.monitor_store import MonitorStore
from pipewatch.utils.logging_config import setup_logging

# Initialize console + file logging
setup_logging(level=config.LOG_LEVEL, log_dir=config.LOG_DIR)
logger = logging.getLogger("main")


# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
QUIET_PATHS = frozenset({"/health"})


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    One line per API request. Health probes log at DEBUG; 5xx responses
    log at WARNING so provider outages stand out from routine polling.
    """

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        path = request.url.path
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("%s %s raised %s: %s", request.method, path, e.__class__.__name__, e)
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        if path in QUIET_PATHS:
            level = logging.DEBUG
        elif response.status_code >= 500:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(level, "%s %s -> %d (%.1fms)", request.method, path, response.status_code, elapsed_ms)
        return response


def create_app(
    service: Optional[PipelineMonitorService] = None,
    broadcaster: Optional[SessionBroadcaster] = None,
) -> FastAPI:
    """
    Build the API. Without arguments the store is loaded from
    PIPELINE_MONITORS_FILE and persisted polling monitors are resumed.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal service, broadcaster
        if broadcaster is None:
            broadcaster = SessionBroadcaster(notifications_enabled=config.CICD_NOTIFICATIONS)
        if service is None:
            store = MonitorStore(config.PIPELINE_MONITORS_FILE)
            store.load()
            service = PipelineMonitorService(store, broadcaster=broadcaster)
            service.resume()

        app.state.broadcaster = broadcaster
        app.state.monitor_service = service
        try:
            yield
        finally:
            await service.shutdown()

    app = FastAPI(title="Pipeline Monitor API", lifespan=lifespan)
    app.add_middleware(LoggingMiddleware)

    # CORS — the desktop renderer talks to this API from its own origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:8000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    app.include_router(monitors_router)
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
