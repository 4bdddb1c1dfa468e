"""
SideQuest — Client State Synchronizer for an Impact-Tourism Marketplace
========================================================================
Travelers accept location-based quests, upload photo proof, earn XP and
redeem it for partner rewards.  This package keeps a client's local view of
that world consistent with the hosted backend: it boots a snapshot, mirrors
the realtime change feed, and writes user actions through.

Package layout::

    sidequest/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Roles, statuses, badge thresholds, geo helper
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # Hosted tables (profiles, quests, rewards, …)
    ├── backend/
    │   ├── client.py      # Row read/write client with row policies
    │   ├── procedures.py  # Atomic server-side procedures
    │   ├── auth.py        # Persisted sessions + auth-state stream
    │   └── realtime.py    # Change feed + PG LISTEN bridge
    ├── sync/
    │   ├── state.py       # AppState, BootPhase, Collection
    │   ├── boot.py        # Boot sequencer + safety valve
    │   ├── mirror.py      # Realtime mirror + race guard
    │   ├── actions.py     # Accept / submit / redeem / moderate
    │   └── synchronizer.py  # One per application lifetime
    ├── services/
    │   ├── progress.py    # Traveler stats + badges
    │   └── discovery.py   # Nearest-quest ordering
    └── api/
        ├── main.py        # FastAPI app
        └── routes/        # Views + actions for UI components
"""

__version__ = "0.1.0"
