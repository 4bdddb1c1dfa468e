"""
sidequest.config — YAML Configuration Loader
=============================================

Reads ``config.yaml`` for the non-secret client settings (branding, the
administrator address used for profile repair, boot timing).  Secrets such as
``DATABASE_URL`` and ``SESSION_SECRET`` stay in the environment / ``.env``.

Usage::

    from sidequest.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.admin_email)           # "admin@sidequest.example"
    print(cfg.boot_timeout_seconds)  # 12.0
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from sidequest.constants import (
    DEFAULT_ADMIN_EMAIL,
    DEFAULT_BOOT_TIMEOUT_SECONDS,
    REDEMPTION_CODE_PREFIX,
)


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SideQuestConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    app_name: str

    # Moderation: profiles repaired for this address become Admin
    admin_email: str = DEFAULT_ADMIN_EMAIL

    # Boot safety valve (seconds before loading is forcibly cleared)
    boot_timeout_seconds: float = DEFAULT_BOOT_TIMEOUT_SECONDS

    # Redemptions
    redemption_code_prefix: str = REDEMPTION_CODE_PREFIX

    # Where the persisted session lives between restarts
    session_file: str = ".sidequest_session.json"

    # UI-facing API
    api_port: int = 8000

    # Optional PG LISTEN bridge for changes made by other clients
    listen_for_remote_changes: bool = False


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> SideQuestConfig:
    """Read *path* and return a :class:`SideQuestConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return SideQuestConfig(
        app_name=raw["app_name"],
        admin_email=str(raw.get("admin_email", DEFAULT_ADMIN_EMAIL)).strip().lower(),
        boot_timeout_seconds=float(
            raw.get("boot_timeout_seconds", DEFAULT_BOOT_TIMEOUT_SECONDS)
        ),
        redemption_code_prefix=str(
            raw.get("redemption_code_prefix", REDEMPTION_CODE_PREFIX)
        ),
        session_file=str(raw.get("session_file", ".sidequest_session.json")),
        api_port=int(raw.get("api_port", 8000)),
        listen_for_remote_changes=bool(raw.get("listen_for_remote_changes", False)),
    )
