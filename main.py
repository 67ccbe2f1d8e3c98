#!/usr/bin/env python3
"""
buildforge: source-to-artifact build service.
Queues builds, runs them in isolated containers and serves their artifacts.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from buildforge.api.builds import router as builds_router
from buildforge.api.metrics import router as metrics_router
from buildforge.core.config import get_settings
from buildforge.core.logging import setup_logging
from buildforge.core.request_logging import RequestLoggingMiddleware
from buildforge.core.service import create_build_engine
from buildforge.db.database import init_db

settings = get_settings()

# Setup structured JSON logging
setup_logging(settings.log_level)
logger = logging.getLogger("buildforge")

# Initialize database on startup
init_db()

LISTEN_HOST = os.environ.get("LISTEN_HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = app.state.engine
    recovered = engine.pool.recover()
    logger.info(f"startup recovered_jobs={recovered} start_workers={engine.settings.start_workers}")
    if engine.settings.start_workers:
        engine.pool.start()
    try:
        yield
    finally:
        engine.pool.stop()


app = FastAPI(
    title="buildforge",
    description="Build engine: repository commit in, deployable artifact out",
    version=VERSION,
    lifespan=lifespan,
)
app.state.engine = create_build_engine(settings)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(builds_router)
app.include_router(metrics_router)


@app.get("/health")
def health():
    """Health check endpoint."""
    engine = app.state.engine
    return {
        "status": "ok",
        "version": VERSION,
        "workers_running": engine.pool.running,
        "queue": engine.service.queue_depth(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=LISTEN_HOST, port=PORT)
