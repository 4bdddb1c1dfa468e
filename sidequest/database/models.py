"""
sidequest.database.models — SQLAlchemy 2.0 Data Models
=======================================================

The hosted tables the client synchronizes against.

Tables:
- profiles        — One row per authenticated user (role + XP balance)
- quests          — Location-bound tasks, moderated by Admins
- rewards         — XP-redeemable partner vouchers, same moderation lifecycle
- quest_progress  — Submissions: one traveler's attempt at one quest
- redemptions     — XP exchanged for a reward, yielding a redemption code
- auth_credentials — Password hashes behind sign-in (never exposed as rows)
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def new_id() -> str:
    """Primary keys are opaque strings, as the hosted backend exposes them."""
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all SideQuest ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class Role(enum.StrEnum):
    TRAVELER = "Traveler"
    PARTNER = "Partner"
    ADMIN = "Admin"


class ContentStatus(enum.StrEnum):
    """Moderation lifecycle shared by quests and rewards."""
    PENDING_ADMIN = "pending_admin"
    ACTIVE = "active"
    INACTIVE = "inactive"


class SubmissionStatus(enum.StrEnum):
    """in_progress → pending → approved (terminal) | rejected → pending …"""
    IN_PROGRESS = "in_progress"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RedemptionStatus(enum.StrEnum):
    ISSUED = "issued"
    VERIFIED = "verified"


def _str_enum(cls: type[enum.StrEnum], name: str) -> Enum:
    # Store the string values, not the member names
    return Enum(
        cls,
        name=name,
        native_enum=False,
        values_callable=lambda members: [m.value for m in members],
        length=20,
    )


# ---------------------------------------------------------------------------
# Profiles — one row per session user
# ---------------------------------------------------------------------------
class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    role: Mapped[Role] = mapped_column(_str_enum(Role, "profile_role"), default=Role.TRAVELER)
    xp: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("xp >= 0", name="ck_profiles_xp_non_negative"),
        Index("ix_profiles_email", "email"),
    )

    def __repr__(self) -> str:
        return f"<Profile id={self.id} email={self.email!r} role={self.role} xp={self.xp}>"


# ---------------------------------------------------------------------------
# Credentials — read only by the auth client, not by the row client
# ---------------------------------------------------------------------------
class Credential(Base):
    __tablename__ = "auth_credentials"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(120), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Credential user_id={self.user_id} email={self.email!r}>"


# ---------------------------------------------------------------------------
# Quests — location-bound tasks
# ---------------------------------------------------------------------------
class Quest(Base):
    __tablename__ = "quests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    category: Mapped[str] = mapped_column(String(50), default="Environmental")
    xp_value: Mapped[int] = mapped_column(Integer, default=50)
    lat: Mapped[float | None] = mapped_column(Float, default=None)
    lng: Mapped[float | None] = mapped_column(Float, default=None)
    location_address: Mapped[str | None] = mapped_column(String(255), default=None)
    status: Mapped[ContentStatus] = mapped_column(
        _str_enum(ContentStatus, "quest_status"), default=ContentStatus.PENDING_ADMIN
    )
    created_by: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("profiles.id", ondelete="SET NULL"), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_quests_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Quest id={self.id} title={self.title!r} status={self.status}>"


# ---------------------------------------------------------------------------
# Rewards — partner vouchers
# ---------------------------------------------------------------------------
class Reward(Base):
    __tablename__ = "rewards"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    partner_name: Mapped[str | None] = mapped_column(String(120), default=None)
    xp_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ContentStatus] = mapped_column(
        _str_enum(ContentStatus, "reward_status"), default=ContentStatus.PENDING_ADMIN
    )
    created_by: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("profiles.id", ondelete="SET NULL"), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("xp_cost >= 0", name="ck_rewards_cost_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Reward id={self.id} title={self.title!r} cost={self.xp_cost}>"


# ---------------------------------------------------------------------------
# QuestProgress — submissions (one per quest + traveler)
# ---------------------------------------------------------------------------
class QuestProgress(Base):
    __tablename__ = "quest_progress"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    quest_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("quests.id", ondelete="CASCADE"), nullable=False
    )
    traveler_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[SubmissionStatus] = mapped_column(
        _str_enum(SubmissionStatus, "submission_status"),
        default=SubmissionStatus.IN_PROGRESS,
    )
    completion_note: Mapped[str | None] = mapped_column(Text, default=None)
    proof_photo_url: Mapped[str | None] = mapped_column(String(500), default=None)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("quest_id", "traveler_id", name="uq_quest_progress_quest_traveler"),
        Index("ix_quest_progress_traveler", "traveler_id"),
    )

    def __repr__(self) -> str:
        return f"<QuestProgress id={self.id} quest={self.quest_id} status={self.status}>"


# ---------------------------------------------------------------------------
# Redemptions — XP spent on a reward
# ---------------------------------------------------------------------------
class Redemption(Base):
    __tablename__ = "redemptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    traveler_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    reward_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("rewards.id", ondelete="CASCADE"), nullable=False
    )
    redemption_code: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[RedemptionStatus] = mapped_column(
        _str_enum(RedemptionStatus, "redemption_status"), default=RedemptionStatus.ISSUED
    )
    redeemed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_redemptions_traveler", "traveler_id"),
    )

    def __repr__(self) -> str:
        return f"<Redemption id={self.id} code={self.redemption_code!r}>"


# Table name → model, used by the row client and the change feed
TABLES: dict[str, type[Base]] = {
    "profiles": Profile,
    "quests": Quest,
    "rewards": Reward,
    "quest_progress": QuestProgress,
    "redemptions": Redemption,
}
