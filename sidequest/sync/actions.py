"""
sidequest.sync.actions — User Actions (Client → Backend Writes)
================================================================

Every action follows the same rule:

1. Check preconditions locally (signed in, role, balance) — a failed check
   never reaches the backend.
2. Perform one backend request (atomic procedures for multi-row writes).
3. Merge the written rows into local state immediately.  The realtime echo
   of the same write is an idempotent no-op in the mirror.

Failures are caught here, at the operation boundary: logged, surfaced as a
blocking alert, and reported through the return value.  Nothing is retried.
A write that a row policy filtered out (zero affected rows) is reported as a
permission error rather than a generic failure.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from sidequest.backend.auth import AuthError
from sidequest.backend.client import BackendError, ConflictError, PermissionDenied
from sidequest.backend.procedures import InsufficientXP
from sidequest.constants import DEFAULT_QUEST_XP, make_redemption_code
from sidequest.database.models import ContentStatus, Role, SubmissionStatus
from sidequest.sync.events import ChangeKind

if TYPE_CHECKING:
    from sidequest.backend.auth import AuthClient, Session
    from sidequest.backend.client import BackendClient
    from sidequest.sync.boot import BootSequencer
    from sidequest.sync.notifications import Notifier
    from sidequest.sync.state import AppState

logger = logging.getLogger(__name__)

# Fields a caller may set on quests / rewards
QUEST_FIELDS: frozenset[str] = frozenset({
    "title", "description", "category", "xp_value",
    "lat", "lng", "location_address", "status",
})
REWARD_FIELDS: frozenset[str] = frozenset({
    "title", "description", "partner_name", "xp_cost", "status",
})

CONTENT_LABELS: dict[str, str] = {"quests": "quest", "rewards": "reward"}


def moderated_status(role: Role | None, requested: str | None) -> ContentStatus:
    """Status to persist for a quest/reward write by *role*.

    Non-admin edits always go back to moderation; Admins get what they asked
    for, defaulting to ``active``.
    """
    if role is not Role.ADMIN:
        return ContentStatus.PENDING_ADMIN
    if requested is None:
        return ContentStatus.ACTIVE
    try:
        return ContentStatus(requested)
    except ValueError:
        raise ValueError(f"Unknown status '{requested}'.") from None


def _clean_content(table: str, fields: dict[str, Any]) -> dict[str, Any]:
    """Keep the writable fields of *fields*, coerced to column types.

    Raises ValueError (or TypeError) on a value that cannot be coerced.
    """
    allowed = QUEST_FIELDS if table == "quests" else REWARD_FIELDS
    data = {k: v for k, v in fields.items() if k in allowed}
    if table == "quests":
        if "xp_value" in data:
            data["xp_value"] = int(data["xp_value"] or DEFAULT_QUEST_XP)
        for key in ("lat", "lng"):
            if data.get(key) not in (None, ""):
                data[key] = float(data[key])
            elif key in data:
                data[key] = None
    elif "xp_cost" in data:
        data["xp_cost"] = int(data["xp_cost"])
    return data


class ActionService:
    def __init__(
        self,
        state: AppState,
        backend: BackendClient,
        auth: AuthClient,
        notifier: Notifier,
        boot: BootSequencer,
        *,
        redemption_code_prefix: str = "SQ",
    ) -> None:
        self._state = state
        self._backend = backend
        self._auth = auth
        self._notifier = notifier
        self._boot = boot
        self._code_prefix = redemption_code_prefix

    # -------------------------------------------------------------------
    # Guards
    # -------------------------------------------------------------------
    def _require_user(self) -> dict | None:
        profile = self._state.profile
        if profile is None:
            self._state.show_auth_modal = True
        return profile

    def _require_admin(self) -> dict | None:
        profile = self._state.profile
        if profile is None or profile["role"] != Role.ADMIN:
            self._notifier.alert("Admin access required.")
            return None
        return profile

    def _require_creator(self) -> dict | None:
        profile = self._require_user()
        if profile is None:
            return None
        if profile["role"] not in (Role.PARTNER, Role.ADMIN):
            self._notifier.alert("Partner access required.")
            return None
        return profile

    def _fail(self, action: str, exc: Exception, message: str | None = None) -> None:
        if isinstance(exc, PermissionDenied):
            logger.warning("%s denied: %s", action, exc)
            self._notifier.alert(message or "You don't have permission to do that.")
            return
        logger.exception("%s failed", action)
        self._notifier.alert(message or f"Could not {action}. Please try again.")

    # -------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------
    async def sign_in(self, email: str, password: str) -> Session | None:
        try:
            session = await self._auth.sign_in(email, password)
        except AuthError as exc:
            logger.warning("Sign-in refused: %s", exc)
            self._notifier.alert(str(exc))
            return None
        except SQLAlchemyError as exc:
            self._fail("sign in", exc)
            return None
        return await self._after_sign_in(session)

    async def sign_up(
        self, email: str, password: str, full_name: str | None = None
    ) -> Session | None:
        try:
            session = await self._auth.sign_up(email, password, full_name)
        except AuthError as exc:
            logger.warning("Sign-up refused: %s", exc)
            self._notifier.alert(str(exc))
            return None
        except SQLAlchemyError as exc:
            self._fail("sign up", exc)
            return None
        return await self._after_sign_in(session)

    async def _after_sign_in(self, session: Session) -> Session | None:
        # The SIGNED_IN event joins this hydration rather than starting another
        try:
            await self._boot.hydrate_profile(session)
        except BackendError as exc:
            self._fail("sign in", exc)
            return None
        self._state.show_auth_modal = False
        self._notifier.notify(f"Welcome, {self._state.profile['full_name']}!")
        return session

    async def sign_out(self) -> None:
        await self._auth.sign_out()
        self._state.clear_user_scope()
        self._state.show_auth_modal = False

    async def delete_account(self) -> bool:
        """Delete the signed-in user's login; their profile row stays."""
        if self._require_user() is None:
            return False
        try:
            await self._auth.delete_user()
        except SQLAlchemyError as exc:
            self._fail("delete account", exc)
            return False
        self._state.clear_user_scope()
        self._state.show_auth_modal = False
        self._notifier.notify("Your account has been deleted.")
        return True

    # -------------------------------------------------------------------
    # Traveler actions
    # -------------------------------------------------------------------
    async def accept_quest(self, quest_id: str) -> bool:
        profile = self._require_user()
        if profile is None:
            return False
        if self._state.submission_for(quest_id, profile["id"]) is not None:
            self._notifier.alert("You already accepted this quest!")
            return False
        try:
            rows = await self._backend.insert("quest_progress", {
                "quest_id": quest_id,
                "traveler_id": profile["id"],
                "status": SubmissionStatus.IN_PROGRESS,
            })
        except ConflictError as exc:
            self._fail("accept quest", exc, "You already accepted this quest!")
            return False
        except BackendError as exc:
            self._fail("accept quest", exc)
            return False

        self._state.submissions.upsert(rows[0])
        self._notifier.notify("Quest accepted! Good luck out there.")
        return True

    async def submit_proof(
        self, quest_id: str, note: str, proof_photo_url: str | None
    ) -> dict | None:
        """Create or update the user's submission for *quest_id* as ``pending``.

        *proof_photo_url* points at the already-uploaded proof image.
        """
        profile = self._require_user()
        if profile is None:
            return None
        if not proof_photo_url:
            self._notifier.alert("Please attach a photo as proof.")
            return None

        existing = self._state.submission_for(quest_id, profile["id"])
        if existing is not None and existing["status"] == SubmissionStatus.APPROVED:
            self._notifier.alert("This quest is already completed.")
            return None

        fields = {
            "status": SubmissionStatus.PENDING,
            "completion_note": note,
            "proof_photo_url": proof_photo_url,
            "submitted_at": datetime.now(UTC),
        }
        try:
            if existing is not None:
                rows = await self._backend.update(
                    "quest_progress", fields, {"id": existing["id"]}
                )
                if not rows:
                    raise PermissionDenied(f"update of submission {existing['id']} affected no rows")
            else:
                rows = await self._backend.insert("quest_progress", {
                    "quest_id": quest_id,
                    "traveler_id": profile["id"],
                    **fields,
                })
        except BackendError as exc:
            self._fail("submit proof", exc)
            return None

        self._state.submissions.upsert(rows[0])
        self._notifier.notify("Proof submitted for review!")
        return rows[0]

    async def redeem_reward(self, reward_id: str) -> str | None:
        """Spend XP on a reward.  Returns the redemption code, or None."""
        profile = self._require_user()
        if profile is None:
            return None
        reward = self._state.rewards.get(reward_id)
        if reward is None:
            self._notifier.alert("That reward is no longer available.")
            return None
        if profile["xp"] < reward["xp_cost"]:
            self._notifier.alert(
                f"Not enough XP! You have {profile['xp']} XP; "
                f"this reward costs {reward['xp_cost']} XP (insufficient balance)."
            )
            return None

        code = make_redemption_code(self._code_prefix)
        try:
            result = await self._backend.rpc("redeem_reward", {
                "reward_id": reward_id,
                "redemption_code": code,
            })
        except InsufficientXP as exc:
            logger.warning("Redeem refused by backend: %s", exc)
            self._notifier.alert("Not enough XP! (insufficient balance)")
            return None
        except BackendError as exc:
            self._fail("redeem reward", exc)
            return None

        self._state.profile = result["profile"]
        self._state.redemptions.upsert(result["redemption"])
        self._notifier.notify(f"Reward redeemed! Your code: {code}")
        return code

    # -------------------------------------------------------------------
    # Moderation (Admin)
    # -------------------------------------------------------------------
    async def approve_submission(self, submission_id: str) -> bool:
        admin = self._require_admin()
        if admin is None:
            return False
        try:
            result = await self._backend.rpc("approve_submission", {"submission_id": submission_id})
        except BackendError as exc:
            self._fail("approve submission", exc)
            return False

        self._state.submissions.upsert(result["submission"])
        if result["profile"]["id"] == admin["id"]:
            self._state.profile = result["profile"]
        try:
            await self._boot.load_admin_oversight()
        except BackendError:
            logger.exception("Oversight refresh after approval failed")
        self._notifier.notify("Submission approved and XP awarded.")
        return True

    async def reject_submission(self, submission_id: str) -> bool:
        if self._require_admin() is None:
            return False
        try:
            rows = await self._backend.update(
                "quest_progress", {"status": SubmissionStatus.REJECTED}, {"id": submission_id}
            )
            if not rows:
                raise PermissionDenied(f"reject of {submission_id} affected no rows")
        except BackendError as exc:
            self._fail("reject submission", exc)
            return False
        self._state.submissions.upsert(rows[0])
        self._notifier.notify("Submission rejected.")
        return True

    def _merge_content(self, table: str, kind: ChangeKind, row: dict) -> None:
        """Merge a written quest/reward and announce a status move.

        The realtime echo of the same write then finds the status unchanged
        and stays silent, so the announcement happens exactly once.
        """
        collection = self._state.collection_for(table)
        previous = collection.get(row["id"])
        collection.upsert(row)
        if previous is None or previous.get("status") != row.get("status"):
            self._notifier.announce(table, kind, row)

    async def _approve_content(self, table: str, row_id: str) -> bool:
        label = CONTENT_LABELS[table]
        if self._require_admin() is None:
            return False
        try:
            rows = await self._backend.update(table, {"status": ContentStatus.ACTIVE}, {"id": row_id})
            if not rows:
                raise PermissionDenied(f"approval of {label} {row_id} affected no rows")
        except BackendError as exc:
            self._fail(f"approve {label}", exc)
            return False

        self._merge_content(table, ChangeKind.UPDATE, rows[0])
        try:
            await self._boot.refresh_collection(table)
        except BackendError:
            logger.exception("Re-fetch of %s after approval failed", table)
        self._notifier.notify(f"New {label} approved and now visible to all Travelers!")
        return True

    async def approve_new_quest(self, quest_id: str) -> bool:
        return await self._approve_content("quests", quest_id)

    async def approve_new_reward(self, reward_id: str) -> bool:
        return await self._approve_content("rewards", reward_id)

    # -------------------------------------------------------------------
    # Content management (Partner / Admin)
    # -------------------------------------------------------------------
    async def _create_content(self, table: str, fields: dict[str, Any]) -> dict | None:
        label = CONTENT_LABELS[table]
        profile = self._require_creator()
        if profile is None:
            return None
        try:
            data = _clean_content(table, fields)
            data["status"] = moderated_status(Role(profile["role"]), data.get("status"))
        except (TypeError, ValueError) as exc:
            logger.warning("Rejected %s fields: %s", label, exc)
            self._notifier.alert(f"Invalid {label} details: {exc}")
            return None
        if not data.get("title"):
            self._notifier.alert(f"Please give the {label} a title.")
            return None
        data["created_by"] = profile["id"]
        try:
            rows = await self._backend.insert(table, data)
        except BackendError as exc:
            self._fail(f"create {label}", exc)
            return None

        self._merge_content(table, ChangeKind.INSERT, rows[0])
        if rows[0]["status"] == ContentStatus.PENDING_ADMIN:
            self._notifier.notify(f"Your {label} was submitted and awaits admin approval.")
        else:
            self._notifier.notify(f"{label.capitalize()} '{rows[0]['title']}' is live.")
        return rows[0]

    async def create_quest(self, fields: dict[str, Any]) -> dict | None:
        return await self._create_content("quests", fields)

    async def create_reward(self, fields: dict[str, Any]) -> dict | None:
        return await self._create_content("rewards", fields)

    async def _update_content(self, table: str, row_id: str, fields: dict[str, Any]) -> dict | None:
        label = CONTENT_LABELS[table]
        profile = self._require_user()
        if profile is None:
            return None
        try:
            patch = _clean_content(table, fields)
            patch["status"] = moderated_status(Role(profile["role"]), fields.get("status"))
        except (TypeError, ValueError) as exc:
            logger.warning("Rejected %s fields: %s", label, exc)
            self._notifier.alert(f"Invalid {label} details: {exc}")
            return None
        try:
            rows = await self._backend.update(table, patch, {"id": row_id})
        except BackendError as exc:
            self._fail(f"update {label}", exc)
            return None
        if not rows:
            logger.warning("Update of %s %s affected no rows — permission denied", label, row_id)
            self._notifier.alert(f"You don't have permission to edit this {label}.")
            return None

        self._merge_content(table, ChangeKind.UPDATE, rows[0])
        if rows[0]["status"] == ContentStatus.PENDING_ADMIN and profile["role"] != Role.ADMIN:
            self._notifier.notify(f"{label.capitalize()} updated and sent back for admin review.")
        else:
            self._notifier.notify(f"{label.capitalize()} successfully updated!")
        return rows[0]

    async def update_quest(self, quest_id: str, fields: dict[str, Any]) -> dict | None:
        return await self._update_content("quests", quest_id, fields)

    async def update_reward(self, reward_id: str, fields: dict[str, Any]) -> dict | None:
        return await self._update_content("rewards", reward_id, fields)

    async def _delete_content(self, table: str, row_id: str) -> bool:
        label = CONTENT_LABELS[table]
        if self._require_user() is None:
            return False
        try:
            rows = await self._backend.delete(table, {"id": row_id})
        except BackendError as exc:
            self._fail(f"delete {label}", exc)
            return False
        if not rows:
            self._notifier.alert(f"You don't have permission to delete this {label}.")
            return False
        self._state.collection_for(table).remove(row_id)
        self._notifier.notify(f"{label.capitalize()} deleted.")
        return True

    async def delete_quest(self, quest_id: str) -> bool:
        return await self._delete_content("quests", quest_id)

    async def delete_reward(self, reward_id: str) -> bool:
        return await self._delete_content("rewards", reward_id)
