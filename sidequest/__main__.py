"""
sidequest.__main__ — Entry point for ``python -m sidequest``
=============================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (soft settings).
3. Validate SESSION_SECRET and DATABASE_URL before anything starts.
4. Provision the admin credential when ADMIN_PASSWORD is set.
5. Serve the API (its lifespan builds and starts the synchronizer).

Run with::

    python -m sidequest
"""

from __future__ import annotations

import logging
import os
import sys

import uvicorn
from dotenv import load_dotenv

from sidequest.backend.auth import AuthError, CredentialStore, load_session_secret
from sidequest.config import load_config
from sidequest.database.engine import create_db_engine, init_db

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("sidequest")


def main() -> None:
    """Bootstrap and serve the SideQuest client API."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    try:
        cfg = load_config()
    except (FileNotFoundError, KeyError) as exc:
        logger.critical("Invalid configuration: %s", exc)
        sys.exit(1)

    # 3. Secrets and database.
    try:
        load_session_secret()
        engine = create_db_engine()
    except RuntimeError as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    init_db(engine)

    # 4. Admin credential (the admin address is closed to public sign-up).
    admin_password = os.getenv("ADMIN_PASSWORD", "")
    if admin_password:
        try:
            CredentialStore(engine).set_password(cfg.admin_email, admin_password, "Admin")
        except AuthError as exc:
            logger.critical("ADMIN_PASSWORD rejected: %s", exc)
            sys.exit(1)
        logger.info("Admin credential provisioned for %s", cfg.admin_email)
    engine.dispose()

    # 5. Serve.
    logger.info("Starting %s on port %d", cfg.app_name, cfg.api_port)
    uvicorn.run("sidequest.api.main:app", host="0.0.0.0", port=cfg.api_port, log_level="info")


if __name__ == "__main__":
    main()
