"""
sidequest.api.main — FastAPI application entry point
=====================================================

The API is the UI's window onto the client state: read-only views of the
synchronizer's :class:`~sidequest.sync.state.AppState` plus one endpoint per
user action.

Run with::

    uvicorn sidequest.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from sidequest.api.deps import get_config, get_engine, get_synchronizer  # noqa: E402
from sidequest.api.routes.actions import router as actions_router  # noqa: E402
from sidequest.api.routes.views import router as views_router  # noqa: E402
from sidequest.backend.auth import load_session_secret  # noqa: E402
from sidequest.sync.synchronizer import ClientSynchronizer  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — build, start and stop the synchronizer."""
    cfg = get_config()
    engine = get_engine()
    sync = ClientSynchronizer.create(cfg, engine, load_session_secret())
    app.state.synchronizer = sync
    await sync.start()
    logger.info("%s API started — engine ready (%s)", cfg.app_name, engine.url.database)
    yield
    logger.info("%s API shutting down", cfg.app_name)
    await sync.stop()
    app.state.synchronizer = None


app = FastAPI(
    title="SideQuest Client API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(views_router, prefix="/api")
app.include_router(actions_router, prefix="/api")


@app.get("/api/health")
def health(sync: ClientSynchronizer = Depends(get_synchronizer)):
    return {
        "status": "ok",
        "phase": sync.state.phase.value,
        "loading": sync.state.loading,
        "boot_timed_out": sync.boot.timed_out,
        "listener_healthy": sync.feed.listener_healthy,
    }
