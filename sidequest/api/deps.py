"""
sidequest.api.deps — FastAPI dependency injection
==================================================
"""

from __future__ import annotations

from functools import lru_cache

from fastapi import HTTPException, Request, status
from sqlalchemy import Engine

from sidequest.config import SideQuestConfig, load_config
from sidequest.database.engine import create_db_engine
from sidequest.sync.synchronizer import ClientSynchronizer


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> SideQuestConfig:
    return load_config()


def get_synchronizer(request: Request) -> ClientSynchronizer:
    """The synchronizer started by the app lifespan.  503 until it exists."""
    sync = getattr(request.app.state, "synchronizer", None)
    if sync is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Synchronizer not started")
    return sync
