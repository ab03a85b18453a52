"""
trailhead.services.template_service — Trail Template Store
===========================================================

Administrator-facing operations on trail templates.  Every write is
validated before anything touches the database and is recorded in
``admin_log`` (see :mod:`trailhead.services.audit`).

Ordering rules for listings:
  1. Pinned templates first, by ``pinned_order`` ascending.
  2. Then everything else by ``order_index`` ascending.

Templates referenced by a trail are never physically deleted; they are
deactivated so historical trails keep a valid ``template_id``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from trailhead.database.models import (
    AdminActionType,
    TrailBadge,
    TrailInstance,
    TrailStage,
    TrailTemplate,
)
from trailhead.engine.access import AccessCriteria
from trailhead.engine.prerequisites import find_prerequisite_cycle
from trailhead.errors import NotFound, ReorderFailed, ValidationError
from trailhead.schemas import (
    AccessCriteriaIn,
    ReorderItem,
    StageDefinition,
    TemplateDefinition,
    parse,
)
from trailhead.services.audit import log_admin_action, row_to_dict

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

TABLE = "trail_templates"

# Fields update_template() may change; everything else is frozen.
UPDATABLE_FIELDS: set[str] = {
    "name",
    "description",
    "life_area",
    "cover_url",
    "access_criteria",
    "prerequisite_ids",
    "completion_badge_id",
    "auto_complete",
    "is_active",
    "stages",
}


# ---------------------------------------------------------------------------
# Validation helpers (shared with trail_service for custom trails)
# ---------------------------------------------------------------------------
def require_name(name: str | None, what: str = "Template") -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError(f"{what} name cannot be empty.")
    return cleaned


def ordered_stages(stages: Sequence[StageDefinition | dict]) -> list[StageDefinition]:
    """Validate stage definitions and return them sorted by order index.

    Either every stage carries an ``order_index`` or none does (then list
    order is used).  Indices must be exactly ``0..n-1``.
    """
    parsed = [parse(StageDefinition, s) for s in stages]
    for stage in parsed:
        require_name(stage.name, "Stage")

    explicit = [s.order_index for s in parsed if s.order_index is not None]
    if not explicit:
        return [s.model_copy(update={"order_index": i}) for i, s in enumerate(parsed)]
    if len(explicit) != len(parsed):
        raise ValidationError("Either all stages or none must specify order_index.")
    if sorted(explicit) != list(range(len(parsed))):
        raise ValidationError(
            "Stage order must be unique and contiguous starting at 0.",
            details={"order_indices": sorted(explicit)},
        )
    return sorted(parsed, key=lambda s: s.order_index)


def build_stage_rows(stages: Iterable[StageDefinition]) -> list[TrailStage]:
    """Turn validated definitions into unattached TrailStage rows."""
    return [
        TrailStage(
            name=s.name,
            description=s.description,
            guidance_text=s.guidance_text,
            is_required=s.is_required,
            requires_response=s.requires_response,
            target_value=s.target_value,
            order_index=s.order_index,
        )
        for s in stages
    ]


def _criteria_json(value: AccessCriteriaIn | dict | None) -> dict:
    if value is None:
        return AccessCriteria().to_dict()
    if isinstance(value, dict):
        value = parse(AccessCriteriaIn, value)
    return AccessCriteria.from_dict(value.model_dump()).to_dict()


def _check_badge(session: Session, company_id: str, badge_id: int | None) -> None:
    if badge_id is None:
        return
    badge = session.get(TrailBadge, badge_id)
    if badge is None or badge.company_id != company_id:
        raise ValidationError(f"Badge {badge_id} does not exist.")


def _check_prerequisites(
    session: Session,
    company_id: str,
    template_id: int | None,
    prerequisite_ids: list[int],
) -> None:
    if not prerequisite_ids:
        return
    if template_id is not None and template_id in prerequisite_ids:
        raise ValidationError("A template cannot be its own prerequisite.")

    rows = session.execute(
        select(TrailTemplate.id, TrailTemplate.prerequisite_ids).where(
            TrailTemplate.company_id == company_id
        )
    ).all()
    graph = {row.id: [int(p) for p in (row.prerequisite_ids or [])] for row in rows}

    unknown = sorted(set(prerequisite_ids) - set(graph))
    if unknown:
        raise ValidationError(
            "Unknown prerequisite templates.", details={"unknown": unknown}
        )

    graph.pop(template_id, None)
    cycle = find_prerequisite_cycle(template_id, prerequisite_ids, graph)
    if cycle:
        raise ValidationError(
            "Prerequisites would form a cycle.", details={"cycle": cycle}
        )


def _next_order_index(session: Session, company_id: str) -> int:
    current = session.scalar(
        select(func.max(TrailTemplate.order_index)).where(
            TrailTemplate.company_id == company_id
        )
    )
    return 0 if current is None else current + 1


def _clashing_indices(session: Session, company_id: str) -> list[int]:
    """Order indices held by more than one of the company's templates."""
    return list(session.scalars(
        select(TrailTemplate.order_index)
        .where(TrailTemplate.company_id == company_id)
        .group_by(TrailTemplate.order_index)
        .having(func.count() > 1)
        .order_by(TrailTemplate.order_index)
    ))


def _load_template(session: Session, template_id: int) -> TrailTemplate | None:
    return session.scalar(
        select(TrailTemplate)
        .options(
            selectinload(TrailTemplate.stages),
            selectinload(TrailTemplate.completion_badge),
        )
        .where(TrailTemplate.id == template_id)
        .execution_options(populate_existing=True)
    )


def _snapshot(template: TrailTemplate) -> dict:
    data = row_to_dict(template) or {}
    data["stages"] = [row_to_dict(s) for s in template.stages]
    return data


def template_sort_key(template: TrailTemplate) -> tuple:
    """Pinned first (by pinned_order), then by order_index."""
    if template.is_pinned:
        pinned = template.pinned_order if template.pinned_order is not None else 2**31
        return (0, pinned, template.order_index, template.id)
    return (1, 0, template.order_index, template.id)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
def get_template(engine: Engine, template_id: int) -> TrailTemplate:
    """Fetch a template with its stages, or raise NotFound."""
    with Session(engine, expire_on_commit=False) as session:
        template = _load_template(session, template_id)
        if template is None:
            raise NotFound(f"Trail template {template_id} not found.")
        return template


def list_templates(
    engine: Engine,
    company_id: str,
    *,
    include_inactive: bool = False,
) -> list[TrailTemplate]:
    """All templates of a company in listing order."""
    with Session(engine, expire_on_commit=False) as session:
        return fetch_templates(session, company_id, include_inactive=include_inactive)


def fetch_templates(
    session: Session,
    company_id: str,
    *,
    include_inactive: bool = False,
) -> list[TrailTemplate]:
    stmt = (
        select(TrailTemplate)
        .options(selectinload(TrailTemplate.stages))
        .where(TrailTemplate.company_id == company_id)
        .execution_options(populate_existing=True)
    )
    if not include_inactive:
        stmt = stmt.where(TrailTemplate.is_active.is_(True))
    return sorted(session.scalars(stmt).all(), key=template_sort_key)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------
def create_template(
    engine: Engine,
    definition: TemplateDefinition | dict[str, Any],
    *,
    actor_id: str | None = None,
) -> TrailTemplate:
    """Validate and insert a template, appended after the company's last one."""
    definition = parse(TemplateDefinition, definition)
    name = require_name(definition.name)
    stages = ordered_stages(definition.stages)

    with Session(engine, expire_on_commit=False) as session:
        _check_badge(session, definition.company_id, definition.completion_badge_id)
        _check_prerequisites(
            session, definition.company_id, None, definition.prerequisite_ids
        )

        template = TrailTemplate(
            company_id=definition.company_id,
            name=name,
            description=definition.description,
            life_area=definition.life_area,
            cover_url=definition.cover_url,
            access_criteria=_criteria_json(definition.access_criteria),
            prerequisite_ids=list(definition.prerequisite_ids),
            completion_badge_id=definition.completion_badge_id,
            auto_complete=definition.auto_complete,
            is_active=definition.is_active,
            order_index=_next_order_index(session, definition.company_id),
            created_by=actor_id,
            stages=build_stage_rows(stages),
        )
        session.add(template)
        session.flush()

        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.CREATE,
            target_table=TABLE,
            target_id=template.id,
            after=_snapshot(template),
        )
        session.commit()
        logger.info(
            "Trail template created: %s (id=%d, %d stages) for company %s",
            template.name, template.id, len(stages), template.company_id,
        )
        return _load_template(session, template.id)


def update_template(
    engine: Engine,
    template_id: int,
    *,
    actor_id: str | None = None,
    **fields: Any,
) -> TrailTemplate:
    """Patch a template.

    Passing ``stages`` replaces the stage list (same validation as create).
    Trails already started from the template are not affected.
    """
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(
            "Fields cannot be updated.", details={"fields": sorted(unknown)}
        )
    if "name" in fields:
        fields["name"] = require_name(fields["name"])
    new_stages = ordered_stages(fields.pop("stages")) if "stages" in fields else None
    if "access_criteria" in fields:
        fields["access_criteria"] = _criteria_json(fields["access_criteria"])
    if "prerequisite_ids" in fields:
        fields["prerequisite_ids"] = list(dict.fromkeys(
            int(p) for p in (fields["prerequisite_ids"] or [])
        ))

    with Session(engine, expire_on_commit=False) as session:
        template = _load_template(session, template_id)
        if template is None:
            raise NotFound(f"Trail template {template_id} not found.")

        if "completion_badge_id" in fields:
            _check_badge(session, template.company_id, fields["completion_badge_id"])
        if "prerequisite_ids" in fields:
            _check_prerequisites(
                session, template.company_id, template.id, fields["prerequisite_ids"]
            )

        before = _snapshot(template)
        for key, value in fields.items():
            setattr(template, key, value)
        if new_stages is not None:
            # Flush the removals first so the (template_id, order_index)
            # unique constraint never sees old and new rows together.
            template.stages.clear()
            session.flush()
            template.stages.extend(build_stage_rows(new_stages))
        session.flush()

        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.UPDATE,
            target_table=TABLE,
            target_id=template.id,
            before=before,
            after=_snapshot(template),
        )
        session.commit()
        return _load_template(session, template_id)


def copy_template(
    engine: Engine,
    template_id: int,
    *,
    name: str | None = None,
    actor_id: str | None = None,
) -> TrailTemplate:
    """Duplicate a template and its stages at the end of the order, unpinned."""
    with Session(engine, expire_on_commit=False) as session:
        source = _load_template(session, template_id)
        if source is None:
            raise NotFound(f"Trail template {template_id} not found.")

        copy = TrailTemplate(
            company_id=source.company_id,
            name=require_name(name) if name is not None else f"{source.name} (copy)",
            description=source.description,
            life_area=source.life_area,
            cover_url=source.cover_url,
            access_criteria=dict(source.access_criteria or {}),
            prerequisite_ids=list(source.prerequisite_ids or []),
            completion_badge_id=source.completion_badge_id,
            auto_complete=source.auto_complete,
            is_active=source.is_active,
            order_index=_next_order_index(session, source.company_id),
            created_by=actor_id,
            stages=[
                TrailStage(
                    name=s.name,
                    description=s.description,
                    guidance_text=s.guidance_text,
                    is_required=s.is_required,
                    requires_response=s.requires_response,
                    target_value=s.target_value,
                    order_index=s.order_index,
                )
                for s in source.stages
            ],
        )
        session.add(copy)
        session.flush()
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.CREATE,
            target_table=TABLE,
            target_id=copy.id,
            after=_snapshot(copy),
            reason=f"copy of template {source.id}",
        )
        session.commit()
        return _load_template(session, copy.id)


def reorder_templates(
    engine: Engine,
    items: Sequence[ReorderItem | dict[str, Any]],
    *,
    actor_id: str | None = None,
) -> list[TrailTemplate]:
    """Assign ``order_index`` values to many templates at once.

    All-or-nothing: the batch runs in one transaction and any failure rolls
    every row back and raises :class:`ReorderFailed`.  A batch that would
    leave two of the company's templates on the same index is rolled back
    with :class:`ValidationError`.  Returns the company's templates in
    their new listing order.
    """
    parsed = [parse(ReorderItem, item) for item in items]
    if not parsed:
        return []

    ids = [item.id for item in parsed]
    if len(set(ids)) != len(ids):
        raise ValidationError("Reorder batch lists a template more than once.")
    indices = [item.order_index for item in parsed]
    if len(set(indices)) != len(indices):
        raise ValidationError("Reorder batch assigns the same index twice.")

    with Session(engine, expire_on_commit=False) as session:
        templates = session.scalars(
            select(TrailTemplate).where(TrailTemplate.id.in_(ids))
        ).all()
        by_id = {t.id: t for t in templates}
        missing = sorted(set(ids) - set(by_id))
        if missing:
            raise ValidationError(
                "Unknown templates in reorder batch.", details={"unknown": missing}
            )
        companies = {t.company_id for t in templates}
        if len(companies) != 1:
            raise ValidationError("Reorder batch spans several companies.")
        company_id = companies.pop()

        before = {str(t.id): t.order_index for t in templates}
        try:
            for item in parsed:
                by_id[item.id].order_index = item.order_index
                session.flush()
            clashes = _clashing_indices(session, company_id)
            if clashes:
                raise ValidationError(
                    "Reorder batch leaves several templates on the same index; "
                    "include every template whose position changes.",
                    details={"order_indices": clashes},
                )
            log_admin_action(
                session,
                actor_id=actor_id,
                action_type=AdminActionType.REORDER,
                target_table=TABLE,
                target_id=None,
                before=before,
                after={str(item.id): item.order_index for item in parsed},
            )
            session.commit()
        except ValidationError:
            session.rollback()
            raise
        except Exception as exc:
            session.rollback()
            logger.error(
                "Template reorder for company %s failed; batch rolled back", company_id
            )
            raise ReorderFailed(
                "Reordering failed and was rolled back; retry the whole batch.",
                details={"template_ids": ids},
            ) from exc

        logger.info("Reordered %d templates for company %s", len(parsed), company_id)
        return fetch_templates(session, company_id, include_inactive=True)


def set_pinned(
    engine: Engine,
    template_id: int,
    pinned: bool,
    pinned_order: int | None = None,
    *,
    actor_id: str | None = None,
) -> TrailTemplate:
    """Pin or unpin a template.

    Pinning without an explicit ``pinned_order`` places it after the
    currently pinned templates.  Unpinning clears ``pinned_order``.
    """
    if pinned_order is not None and pinned_order < 0:
        raise ValidationError("pinned_order cannot be negative.")

    with Session(engine, expire_on_commit=False) as session:
        template = session.get(TrailTemplate, template_id)
        if template is None:
            raise NotFound(f"Trail template {template_id} not found.")
        before = row_to_dict(template)

        if pinned:
            if pinned_order is None:
                current = session.scalar(
                    select(func.max(TrailTemplate.pinned_order)).where(
                        TrailTemplate.company_id == template.company_id,
                        TrailTemplate.is_pinned.is_(True),
                        TrailTemplate.id != template.id,
                    )
                )
                pinned_order = 0 if current is None else current + 1
            template.is_pinned = True
            template.pinned_order = pinned_order
        else:
            template.is_pinned = False
            template.pinned_order = None
        session.flush()

        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.PIN,
            target_table=TABLE,
            target_id=template.id,
            before=before,
            after=row_to_dict(template),
        )
        session.commit()
        return _load_template(session, template_id)


def deactivate_template(
    engine: Engine,
    template_id: int,
    *,
    actor_id: str | None = None,
) -> TrailTemplate:
    """Hide a template from new starts.  Existing trails are untouched."""
    with Session(engine, expire_on_commit=False) as session:
        template = session.get(TrailTemplate, template_id)
        if template is None:
            raise NotFound(f"Trail template {template_id} not found.")
        before = row_to_dict(template)
        template.is_active = False
        session.flush()
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.DEACTIVATE,
            target_table=TABLE,
            target_id=template.id,
            before=before,
            after=row_to_dict(template),
        )
        session.commit()
        logger.info("Trail template %d deactivated", template_id)
        return _load_template(session, template_id)


def delete_template(
    engine: Engine,
    template_id: int,
    *,
    actor_id: str | None = None,
) -> bool:
    """Delete a template that no trail references.

    Returns ``True`` if the row was deleted, ``False`` if it is referenced
    and was deactivated instead.
    """
    with Session(engine, expire_on_commit=False) as session:
        template = _load_template(session, template_id)
        if template is None:
            raise NotFound(f"Trail template {template_id} not found.")

        referenced = session.scalar(
            select(func.count())
            .select_from(TrailInstance)
            .where(TrailInstance.template_id == template_id)
        )
        dependents = [
            row.id
            for row in session.execute(
                select(TrailTemplate.id, TrailTemplate.prerequisite_ids).where(
                    TrailTemplate.company_id == template.company_id,
                    TrailTemplate.id != template_id,
                )
            )
            if template_id in [int(p) for p in (row.prerequisite_ids or [])]
        ]
        if dependents:
            raise ValidationError(
                "Template is a prerequisite of other templates.",
                details={"dependents": dependents},
            )
        if referenced:
            before = row_to_dict(template)
            template.is_active = False
            session.flush()
            log_admin_action(
                session,
                actor_id=actor_id,
                action_type=AdminActionType.DEACTIVATE,
                target_table=TABLE,
                target_id=template.id,
                before=before,
                after=row_to_dict(template),
                reason=f"delete requested; referenced by {referenced} trail(s)",
            )
            session.commit()
            return False

        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.DELETE,
            target_table=TABLE,
            target_id=template.id,
            before=_snapshot(template),
        )
        session.delete(template)
        session.commit()
        return True
