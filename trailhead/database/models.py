"""
trailhead.database.models — SQLAlchemy 2.0 Data Models
=======================================================

Tables:
- trail_badges        — Reward definitions (badge + coin amount)
- trail_templates     — Admin-authored trail blueprints
- trail_stages        — Stage definitions owned by a template OR a trail
- trails              — A member's trail instance (snapshot of a template)
- stage_progress      — One progress row per (trail, stage)
- stage_responses     — A member's answer to a stage that asks for one
- trail_badge_awards  — Earned badges, at most one per (trail, badge)
- admin_log           — Append-only audit trail of admin mutations

Templates and trails are separate tables on purpose: starting a trail
copies the template's name, description, life area and stages into rows the
trail owns, so later template edits never rewrite an in-progress journey.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Trailhead ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class TrailStatus(enum.StrEnum):
    """Trail instance states.  ``completed`` is terminal."""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class CreditStatus(enum.StrEnum):
    """Delivery state of the coin credit attached to a badge award."""
    PENDING = "pending"      # award written, credit not yet acknowledged
    CREDITED = "credited"    # wallet applied the credit
    QUEUED = "queued"        # wallet accepted it for later processing
    FAILED = "failed"        # last attempt raised; retry_credits() picks it up
    SKIPPED = "skipped"      # badge carries no coins


class AdminActionType(enum.StrEnum):
    """Categories of admin mutations recorded in admin_log."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    REORDER = "REORDER"
    PIN = "PIN"
    DEACTIVATE = "DEACTIVATE"
    ASSIGN = "ASSIGN"
    COMPLETE = "COMPLETE"


# ---------------------------------------------------------------------------
# TrailBadge — reward definition
# ---------------------------------------------------------------------------
class TrailBadge(Base):
    __tablename__ = "trail_badges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    icon: Mapped[str] = mapped_column(String(50), nullable=False, default="award")
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#1E40AF")
    badge_type: Mapped[str] = mapped_column(String(50), nullable=False, default="completion")
    coins_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    life_area: Mapped[str | None] = mapped_column(String(100), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("coins_reward >= 0", name="ck_trail_badges_coins_non_negative"),
        Index("ix_trail_badges_company", "company_id"),
    )

    def __repr__(self) -> str:
        return f"<TrailBadge id={self.id} name={self.name!r} coins={self.coins_reward}>"


# ---------------------------------------------------------------------------
# TrailTemplate — reusable blueprint
# ---------------------------------------------------------------------------
class TrailTemplate(Base):
    __tablename__ = "trail_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    life_area: Mapped[str | None] = mapped_column(String(100), default=None)
    cover_url: Mapped[str | None] = mapped_column(String(500), default=None)

    # Gating, see trailhead.engine.access and trailhead.engine.prerequisites
    access_criteria: Mapped[dict | None] = mapped_column(JSONB, default=dict)
    prerequisite_ids: Mapped[list | None] = mapped_column(JSONB, default=list)

    # Rewards
    completion_badge_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("trail_badges.id", ondelete="SET NULL"), nullable=True
    )
    auto_complete: Mapped[bool] = mapped_column(Boolean, default=True)

    # Surfacing
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    pinned_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_by: Mapped[str | None] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    stages: Mapped[list[TrailStage]] = relationship(
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="TrailStage.order_index",
        foreign_keys="TrailStage.template_id",
    )
    completion_badge: Mapped[TrailBadge | None] = relationship()

    __table_args__ = (
        Index("ix_trail_templates_company_order", "company_id", "order_index"),
    )

    def __repr__(self) -> str:
        return f"<TrailTemplate id={self.id} name={self.name!r} active={self.is_active}>"


# ---------------------------------------------------------------------------
# TrailStage — one step, owned by a template or by a trail
# ---------------------------------------------------------------------------
class TrailStage(Base):
    __tablename__ = "trail_stages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    template_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("trail_templates.id", ondelete="CASCADE"), nullable=True
    )
    trail_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("trails.id", ondelete="CASCADE"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    guidance_text: Mapped[str | None] = mapped_column(Text, default=None)
    is_required: Mapped[bool] = mapped_column(Boolean, default=True)
    requires_response: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    target_value: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)

    template: Mapped[TrailTemplate | None] = relationship(
        back_populates="stages", foreign_keys=[template_id]
    )
    trail: Mapped[TrailInstance | None] = relationship(
        back_populates="stages", foreign_keys=[trail_id]
    )
    progress: Mapped[StageProgress | None] = relationship(
        back_populates="stage", uselist=False, cascade="all, delete-orphan"
    )
    response: Mapped[StageResponse | None] = relationship(
        back_populates="stage", uselist=False, cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "(template_id IS NULL) <> (trail_id IS NULL)",
            name="ck_trail_stages_single_parent",
        ),
        CheckConstraint("target_value >= 1", name="ck_trail_stages_target_positive"),
        UniqueConstraint("template_id", "order_index", name="uq_trail_stages_template_order"),
        UniqueConstraint("trail_id", "order_index", name="uq_trail_stages_trail_order"),
    )
    # Owned by a template OR a trail: an orphan only once detached from both.
    __mapper_args__ = {"legacy_is_orphan": True}

    def __repr__(self) -> str:
        return (
            f"<TrailStage id={self.id} name={self.name!r} "
            f"order={self.order_index} required={self.is_required}>"
        )


# ---------------------------------------------------------------------------
# TrailInstance — a member's journey
# ---------------------------------------------------------------------------
class TrailInstance(Base):
    """A member's concrete trail.

    ``version`` is the optimistic-lock counter: every write bumps it and a
    write based on a stale read fails with ``StaleDataError``.
    """
    __tablename__ = "trails"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    template_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("trail_templates.id"), nullable=True
    )

    # Snapshot of the template at start time
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    life_area: Mapped[str | None] = mapped_column(String(100), default=None)
    auto_complete: Mapped[bool] = mapped_column(Boolean, default=True)
    completion_badge_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("trail_badges.id", ondelete="SET NULL"), nullable=True
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TrailStatus.ACTIVE.value
    )
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    stages: Mapped[list[TrailStage]] = relationship(
        back_populates="trail",
        cascade="all, delete-orphan",
        order_by="TrailStage.order_index",
        foreign_keys="TrailStage.trail_id",
    )
    template: Mapped[TrailTemplate | None] = relationship()
    awards: Mapped[list[BadgeAward]] = relationship(back_populates="trail")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("user_id", "template_id", name="uq_trails_user_template"),
        CheckConstraint(
            "(status = 'completed') = (completed_at IS NOT NULL)",
            name="ck_trails_completed_at_matches_status",
        ),
        Index("ix_trails_user_status", "user_id", "status"),
        Index("ix_trails_company", "company_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<TrailInstance id={self.id} user={self.user_id!r} "
            f"status={self.status} pct={self.progress_percentage}>"
        )


# ---------------------------------------------------------------------------
# StageProgress — per (trail, stage) completion record
# ---------------------------------------------------------------------------
class StageProgress(Base):
    __tablename__ = "stage_progress"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trail_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("trails.id", ondelete="CASCADE"), nullable=False
    )
    stage_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("trail_stages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    progress_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    target_value: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    stage: Mapped[TrailStage] = relationship(back_populates="progress")

    __table_args__ = (
        UniqueConstraint("trail_id", "stage_id", name="uq_stage_progress_trail_stage"),
        CheckConstraint(
            "NOT is_completed OR (completed_at IS NOT NULL AND progress_value >= target_value)",
            name="ck_stage_progress_completed_consistent",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<StageProgress trail={self.trail_id} stage={self.stage_id} "
            f"{self.progress_value}/{self.target_value}>"
        )


# ---------------------------------------------------------------------------
# StageResponse — what a member submitted for a stage
# ---------------------------------------------------------------------------
class StageResponse(Base):
    """Answer to a ``requires_response`` stage.

    One row per (trail, stage); submitting again overwrites it.
    """
    __tablename__ = "stage_responses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trail_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("trails.id", ondelete="CASCADE"), nullable=False
    )
    stage_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("trail_stages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    response_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_data: Mapped[dict | None] = mapped_column(JSONB, default=dict)
    file_urls: Mapped[list | None] = mapped_column(JSONB, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    stage: Mapped[TrailStage] = relationship(back_populates="response")

    __table_args__ = (
        UniqueConstraint("trail_id", "stage_id", name="uq_stage_responses_trail_stage"),
        Index("ix_stage_responses_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<StageResponse trail={self.trail_id} stage={self.stage_id}>"


# ---------------------------------------------------------------------------
# BadgeAward — earned badges (at most one per trail + badge)
# ---------------------------------------------------------------------------
class BadgeAward(Base):
    __tablename__ = "trail_badge_awards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trail_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("trails.id", ondelete="CASCADE"), nullable=False
    )
    badge_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("trail_badges.id", ondelete="CASCADE"), nullable=False
    )
    coins_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CreditStatus.PENDING.value
    )
    credit_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    credited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    earned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    trail: Mapped[TrailInstance] = relationship(back_populates="awards")
    badge: Mapped[TrailBadge] = relationship()

    __table_args__ = (
        UniqueConstraint("trail_id", "badge_id", name="uq_badge_awards_trail_badge"),
        Index("ix_badge_awards_user", "user_id", "earned_at"),
        Index("ix_badge_awards_credit_status", "credit_status"),
    )

    @property
    def idempotency_key(self) -> str:
        """Key the wallet uses to de-duplicate credits for this award."""
        return f"trail-badge-award:{self.id}"

    def __repr__(self) -> str:
        return (
            f"<BadgeAward id={self.id} trail={self.trail_id} "
            f"badge={self.badge_id} credit={self.credit_status}>"
        )


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id} action={self.action_type}>"
