"""
trailhead.services.badge_service — Trail Badge Catalogue
=========================================================

CRUD for the badges templates hand out on completion.  Badges are
deactivated rather than deleted once awarded so earned awards keep their
badge row.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from trailhead.database.models import AdminActionType, BadgeAward, TrailBadge
from trailhead.errors import NotFound, ValidationError
from trailhead.schemas import BadgeDefinition, parse
from trailhead.services.audit import log_admin_action, row_to_dict

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

TABLE = "trail_badges"

ALLOWED_BADGE_FIELDS: set[str] = {
    "name", "description", "icon", "color", "badge_type",
    "coins_reward", "life_area", "is_active",
}


def create_badge(
    engine: Engine,
    definition: BadgeDefinition | dict[str, Any],
    *,
    actor_id: str | None = None,
) -> TrailBadge:
    definition = parse(BadgeDefinition, definition)
    if not definition.name:
        raise ValidationError("Badge name cannot be empty.")

    with Session(engine, expire_on_commit=False) as session:
        badge = TrailBadge(**definition.model_dump())
        session.add(badge)
        session.flush()
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.CREATE,
            target_table=TABLE,
            target_id=badge.id,
            after=row_to_dict(badge),
        )
        session.commit()
        session.refresh(badge)
        return badge


def update_badge(
    engine: Engine,
    badge_id: int,
    *,
    actor_id: str | None = None,
    **updates: Any,
) -> TrailBadge:
    """Patch a badge.  Unknown keys are rejected.

    Changing ``coins_reward`` only affects future awards; existing awards
    keep the amount they were issued with.
    """
    unknown = set(updates) - ALLOWED_BADGE_FIELDS
    if unknown:
        raise ValidationError(
            "Fields cannot be updated.", details={"fields": sorted(unknown)}
        )

    with Session(engine, expire_on_commit=False) as session:
        badge = session.get(TrailBadge, badge_id)
        if badge is None:
            raise NotFound(f"Badge {badge_id} not found.")

        before = row_to_dict(badge)
        # Re-validate the merged result with the same rules as create.
        current = {k: v for k, v in before.items() if k in BadgeDefinition.model_fields}
        merged = parse(BadgeDefinition, {**current, **updates})
        if not merged.name:
            raise ValidationError("Badge name cannot be empty.")
        for key in updates:
            setattr(badge, key, getattr(merged, key))
        session.flush()

        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.UPDATE,
            target_table=TABLE,
            target_id=badge.id,
            before=before,
            after=row_to_dict(badge),
        )
        session.commit()
        session.refresh(badge)
        return badge


def deactivate_badge(
    engine: Engine,
    badge_id: int,
    *,
    actor_id: str | None = None,
) -> TrailBadge:
    return update_badge(engine, badge_id, actor_id=actor_id, is_active=False)


def get_badge(engine: Engine, badge_id: int) -> TrailBadge:
    with Session(engine, expire_on_commit=False) as session:
        badge = session.get(TrailBadge, badge_id)
        if badge is None:
            raise NotFound(f"Badge {badge_id} not found.")
        return badge


def list_badges(
    engine: Engine,
    company_id: str,
    *,
    include_inactive: bool = False,
) -> list[TrailBadge]:
    with Session(engine, expire_on_commit=False) as session:
        stmt = (
            select(TrailBadge)
            .where(TrailBadge.company_id == company_id)
            .order_by(TrailBadge.badge_type, TrailBadge.name)
        )
        if not include_inactive:
            stmt = stmt.where(TrailBadge.is_active.is_(True))
        return list(session.scalars(stmt).all())


def list_user_badges(engine: Engine, user_id: str) -> list[tuple[BadgeAward, TrailBadge]]:
    """Every badge a member has earned, newest first."""
    with Session(engine, expire_on_commit=False) as session:
        rows = session.execute(
            select(BadgeAward, TrailBadge)
            .join(TrailBadge, TrailBadge.id == BadgeAward.badge_id)
            .where(BadgeAward.user_id == user_id)
            .order_by(BadgeAward.earned_at.desc(), BadgeAward.id.desc())
        ).all()
        return [(row.BadgeAward, row.TrailBadge) for row in rows]
