"""
sidequest.backend.client — Row Read/Write Client
=================================================

The synchronizer's only door to the hosted Postgres.  It speaks in tables and
plain ``dict`` rows, mirroring the managed backend's REST surface:

* ``select(table, filters)``        → rows
* ``insert(table, rows)``           → written rows
* ``update(table, patch, filters)`` → affected rows (empty when a row policy
  filtered everything out)
* ``delete(table, filters)``        → deleted rows
* ``rpc(name, params)``             → result of an atomic server procedure

Every call runs its SQLAlchemy work on a worker thread via
:func:`~sidequest.database.engine.run_db` and, once back on the loop thread,
publishes the resulting :class:`ChangeEvent`\\ s to the change feed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Engine, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from sidequest.backend import policies
from sidequest.database.engine import get_session, run_db
from sidequest.database.models import TABLES, Profile
from sidequest.sync.events import ChangeEvent, ChangeKind

if TYPE_CHECKING:
    from sqlalchemy.orm import Session as DBSession

    from sidequest.backend.auth import AuthClient
    from sidequest.backend.realtime import ChangeFeed

logger = logging.getLogger(__name__)

Filters = dict[str, Any]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class BackendError(Exception):
    """Any failure reported by the hosted backend."""


class PermissionDenied(BackendError):
    """A row policy rejected the write."""


class ConflictError(BackendError):
    """A uniqueness or check constraint was violated."""


class NotFound(BackendError):
    """The addressed row does not exist."""


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------
def row_to_dict(obj: Any) -> dict | None:
    """Convert a model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        elif hasattr(val, "value"):
            val = val.value
        result[col.name] = val
    return result


def _model_for(table: str):
    try:
        return TABLES[table]
    except KeyError:
        raise BackendError(f"Unknown table: '{table}'") from None


def _apply_filters(stmt, model, filters: Filters | None):
    for column, value in (filters or {}).items():
        attr = getattr(model, column, None)
        if attr is None:
            raise BackendError(f"Unknown column '{column}' on {model.__tablename__}")
        if isinstance(value, (list, tuple, set, frozenset)):
            stmt = stmt.where(attr.in_(list(value)))
        else:
            stmt = stmt.where(attr == value)
    return stmt


def _check_columns(model, row: dict) -> None:
    unknown = set(row) - set(model.__table__.columns.keys())
    if unknown:
        raise BackendError(f"Unknown column(s) {sorted(unknown)} on {model.__tablename__}")


def _load_actor(session: DBSession, actor_id: str | None) -> dict | None:
    if actor_id is None:
        return None
    return row_to_dict(session.get(Profile, actor_id))


# ---------------------------------------------------------------------------
# Sync implementations (run via run_db)
# ---------------------------------------------------------------------------
def _select_sync(
    engine: Engine, table: str, filters: Filters | None, order_by: str | None
) -> list[dict]:
    model = _model_for(table)
    stmt = _apply_filters(select(model), model, filters)
    if order_by:
        desc = order_by.startswith("-")
        col = getattr(model, order_by.lstrip("-"))
        stmt = stmt.order_by(col.desc() if desc else col)
    with get_session(engine) as session:
        return [row_to_dict(r) for r in session.scalars(stmt).all()]


def _insert_sync(
    engine: Engine,
    table: str,
    rows: list[dict],
    actor_id: str | None,
    enforce: bool,
    admin_email: str | None,
) -> list[dict]:
    model = _model_for(table)
    with get_session(engine) as session:
        actor = _load_actor(session, actor_id)
        objs = []
        for row in rows:
            if enforce and not policies.can_insert(table, row, actor, actor_id, admin_email):
                raise PermissionDenied(f"Insert into {table} not permitted")
            _check_columns(model, row)
            obj = model(**row)
            session.add(obj)
            objs.append(obj)
        session.flush()
        for obj in objs:
            session.refresh(obj)
        return [row_to_dict(o) for o in objs]


def _update_sync(
    engine: Engine,
    table: str,
    patch: dict,
    filters: Filters,
    actor_id: str | None,
    enforce: bool,
) -> list[tuple[dict, dict]]:
    model = _model_for(table)
    _check_columns(model, patch)
    stmt = _apply_filters(select(model), model, filters)
    changed: list[tuple[dict, dict]] = []
    with get_session(engine) as session:
        actor = _load_actor(session, actor_id)
        for obj in session.scalars(stmt).all():
            before = row_to_dict(obj)
            if enforce and not policies.can_update(table, before, patch, actor, actor_id):
                logger.debug("Row policy skipped update of %s %s", table, before["id"])
                continue
            for key, value in patch.items():
                setattr(obj, key, value)
            changed.append((before, obj))
        session.flush()
        return [(before, row_to_dict(obj)) for before, obj in changed]


def _delete_sync(
    engine: Engine, table: str, filters: Filters, actor_id: str | None, enforce: bool
) -> list[dict]:
    model = _model_for(table)
    stmt = _apply_filters(select(model), model, filters)
    deleted: list[dict] = []
    with get_session(engine) as session:
        actor = _load_actor(session, actor_id)
        for obj in session.scalars(stmt).all():
            row = row_to_dict(obj)
            if enforce and not policies.can_delete(table, row, actor, actor_id):
                continue
            session.delete(obj)
            deleted.append(row)
    return deleted


# ---------------------------------------------------------------------------
# Public client
# ---------------------------------------------------------------------------
class BackendClient:
    """Async row client acting as the signed-in user.

    Parameters
    ----------
    engine:
        Engine connected to the hosted database.
    feed:
        Change feed that receives an event for every successful write.
    auth:
        Source of the acting user.  ``None`` selects the service role, which
        bypasses row policies (seeding / maintenance only).
    admin_email:
        The one address allowed to self-repair into an Admin profile.
    """

    def __init__(
        self,
        engine: Engine,
        feed: ChangeFeed,
        auth: AuthClient | None = None,
        admin_email: str | None = None,
    ) -> None:
        self.engine = engine
        self.feed = feed
        self._auth = auth
        self._admin_email = admin_email.lower() if admin_email else None

    @property
    def actor_id(self) -> str | None:
        if self._auth is None:
            return None
        session = self._auth.current_session
        return session.user_id if session else None

    @property
    def _enforce(self) -> bool:
        return self._auth is not None

    async def _call(self, func, *args):
        try:
            return await run_db(func, *args)
        except BackendError:
            raise
        except IntegrityError as exc:
            raise ConflictError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise BackendError(str(exc)) from exc

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        return await self._call(_select_sync, self.engine, table, filters, order_by)

    async def select_one(self, table: str, row_id: str) -> dict | None:
        rows = await self.select(table, {"id": row_id})
        return rows[0] if rows else None

    async def insert(self, table: str, rows: dict | list[dict]) -> list[dict]:
        batch = [rows] if isinstance(rows, dict) else list(rows)
        written = await self._call(
            _insert_sync, self.engine, table, batch, self.actor_id, self._enforce,
            self._admin_email,
        )
        for row in written:
            self.feed.publish(ChangeEvent(table, ChangeKind.INSERT, new=row))
        return written

    async def update(self, table: str, patch: dict, filters: Filters) -> list[dict]:
        if not filters:
            raise BackendError("update() requires at least one filter")
        pairs = await self._call(
            _update_sync, self.engine, table, patch, filters, self.actor_id, self._enforce,
        )
        for before, after in pairs:
            self.feed.publish(ChangeEvent(table, ChangeKind.UPDATE, new=after, old=before))
        return [after for _, after in pairs]

    async def delete(self, table: str, filters: Filters) -> list[dict]:
        if not filters:
            raise BackendError("delete() requires at least one filter")
        deleted = await self._call(
            _delete_sync, self.engine, table, filters, self.actor_id, self._enforce,
        )
        for row in deleted:
            self.feed.publish(ChangeEvent(table, ChangeKind.DELETE, old=row))
        return deleted

    async def rpc(self, name: str, params: dict) -> dict:
        """Run an atomic server procedure (see :mod:`sidequest.backend.procedures`)."""
        from sidequest.backend.procedures import run_procedure

        result = await self._call(run_procedure, self.engine, name, params, self.actor_id)
        for event in result.pop("_changes", []):
            self.feed.publish(event)
        return result
