"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os

# ---------------------------------------------------------------------------
# Ensure a valid SESSION_SECRET is always set for test runs.
# ---------------------------------------------------------------------------
_TEST_SESSION_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("SESSION_SECRET", _TEST_SESSION_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

from sidequest.backend.auth import AuthClient, CredentialStore, SessionStore, user_id_for_email  # noqa: E402
from sidequest.backend.client import row_to_dict  # noqa: E402
from sidequest.config import SideQuestConfig  # noqa: E402
from sidequest.database.engine import get_session  # noqa: E402
from sidequest.database.models import (  # noqa: E402
    Base,
    ContentStatus,
    Profile,
    Quest,
    QuestProgress,
    Reward,
    Role,
    SubmissionStatus,
)

SECRET = os.environ["SESSION_SECRET"]
ADMIN_EMAIL = "admin@sidequest.example"
PASSWORD = "correct-horse-battery"
# bcrypt's minimum cost keeps hashing fast in tests
FAST_ROUNDS = 4


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


@pytest.fixture
def db_engine(tmp_path) -> Engine:
    """File-backed SQLite engine with all SideQuest tables.

    A file (not ``StaticPool`` in-memory) because the boot sequence fans out
    several ``asyncio.to_thread`` queries at once.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'sidequest.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 15},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def cfg(tmp_path) -> SideQuestConfig:
    return SideQuestConfig(
        app_name="SideQuest Test",
        admin_email=ADMIN_EMAIL,
        boot_timeout_seconds=5.0,
        session_file=str(tmp_path / "session.json"),
    )


# ---------------------------------------------------------------------------
# Credentials and sessions
# ---------------------------------------------------------------------------
def make_credential(engine: Engine, email: str, password: str = PASSWORD, full_name: str | None = None) -> dict:
    """Create (or reset) a login for *email*."""
    return CredentialStore(engine, rounds=FAST_ROUNDS).set_password(email, password, full_name)


def make_auth(engine: Engine, tmp_path, **kw) -> AuthClient:
    return AuthClient(
        SessionStore(tmp_path / "session.json"),
        SECRET,
        CredentialStore(engine, rounds=FAST_ROUNDS),
        **kw,
    )


async def sign_in_as(auth: AuthClient, engine: Engine, email: str, full_name: str | None = None):
    """Provision a login for *email* and sign in with it."""
    make_credential(engine, email, full_name=full_name)
    return await auth.sign_in(email, PASSWORD)


# ---------------------------------------------------------------------------
# Row factories (service role: straight to the database)
# ---------------------------------------------------------------------------
def make_profile(
    engine: Engine,
    email: str,
    role: Role = Role.TRAVELER,
    xp: int = 0,
    full_name: str | None = None,
) -> dict:
    with get_session(engine) as session:
        obj = Profile(
            id=user_id_for_email(email),
            email=email,
            full_name=full_name or email.split("@")[0].title(),
            role=role,
            xp=xp,
        )
        session.add(obj)
        session.flush()
        session.refresh(obj)
        return row_to_dict(obj)


def make_quest(engine: Engine, **fields) -> dict:
    data = {
        "title": "Beach Clean-up",
        "category": "Environmental",
        "xp_value": 50,
        "status": ContentStatus.ACTIVE,
    }
    data.update(fields)
    with get_session(engine) as session:
        obj = Quest(**data)
        session.add(obj)
        session.flush()
        session.refresh(obj)
        return row_to_dict(obj)


def make_reward(engine: Engine, **fields) -> dict:
    data = {
        "title": "Free Coffee",
        "partner_name": "Harbour Cafe",
        "xp_cost": 100,
        "status": ContentStatus.ACTIVE,
    }
    data.update(fields)
    with get_session(engine) as session:
        obj = Reward(**data)
        session.add(obj)
        session.flush()
        session.refresh(obj)
        return row_to_dict(obj)


def make_submission(
    engine: Engine,
    quest_id: str,
    traveler_id: str,
    status: SubmissionStatus = SubmissionStatus.PENDING,
) -> dict:
    with get_session(engine) as session:
        obj = QuestProgress(
            quest_id=quest_id,
            traveler_id=traveler_id,
            status=status,
            completion_note="Done!",
            proof_photo_url="https://img.example/proof.jpg",
        )
        session.add(obj)
        session.flush()
        session.refresh(obj)
        return row_to_dict(obj)


def fetch_profile(engine: Engine, email: str) -> dict | None:
    with get_session(engine) as session:
        return row_to_dict(session.get(Profile, user_id_for_email(email)))
