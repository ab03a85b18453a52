"""
trailhead.services.trail_service — Trail Instance Lifecycle
============================================================

The state machine behind a member's trail::

    active ──pause──▶ paused ──resume──▶ active
    active ──complete──▶ completed   (terminal)

``paused → completed`` is not allowed (resume first) and nothing leaves
``completed``.

Starting a template runs two gates first: the access criteria
(:mod:`trailhead.engine.access`) and the prerequisite trails
(:mod:`trailhead.engine.prerequisites`).  The new trail gets a *copy* of the
template's fields and stages plus one ``stage_progress`` row per stage.

Stage updates recompute the trail percentage from required stages only
(:mod:`trailhead.engine.progress`).  When ``auto_complete`` is on and an
update makes every required stage complete for the first time, the trail is
completed in the same transaction.  Rewards are issued after commit and
their failure never undoes completion.  A stage flagged
``requires_response`` only completes once the member has recorded a
response for it.

Every write to a trail bumps its ``version``; a write racing another on the
same trail fails with ``StaleDataError`` and the whole operation is replayed
(``conflict_retries`` times) before giving up with
:class:`~trailhead.errors.ConcurrentModification`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from trailhead.database.models import (
    AdminActionType,
    StageProgress,
    StageResponse,
    TrailBadge,
    TrailInstance,
    TrailStage,
    TrailStatus,
    TrailTemplate,
)
from trailhead.engine.access import (
    AccessCriteria,
    UserProfile,
    is_eligible,
    missing_requirements,
)
from trailhead.engine.prerequisites import unmet_prerequisites
from trailhead.engine.progress import (
    ProgressSummary,
    StageState,
    clamp_progress,
    reaches_target,
    summarize,
)
from trailhead.errors import (
    AccessDenied,
    ConcurrentModification,
    InvalidTransition,
    NotFound,
    PrerequisitesUnmet,
    ResponseRequired,
    ValidationError,
)
from trailhead.schemas import CustomTrailDefinition, StageResponseIn, parse
from trailhead.services.audit import log_admin_action, row_to_dict
from trailhead.services.template_service import (
    build_stage_rows,
    fetch_templates,
    ordered_stages,
    require_name,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from trailhead.config import TrailheadConfig
    from trailhead.services.collaborators import UserDirectory
    from trailhead.services.reward_service import RewardDispatcher

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class StartResult:
    """Outcome of starting a template.

    ``already_existed`` is True when the member had already started this
    template; the existing trail is returned and nothing was created.
    """

    trail: TrailInstance
    already_existed: bool = False


@dataclass(slots=True)
class AvailableTemplate:
    """A template the member passes the access criteria for."""

    template: TrailTemplate
    unmet_prerequisites: list[TrailTemplate]
    trail: TrailInstance | None = None

    @property
    def can_start(self) -> bool:
        return self.trail is None and not self.unmet_prerequisites


def _now() -> datetime:
    return datetime.now(UTC)


def _stage_states(trail: TrailInstance) -> list[StageState]:
    return [
        StageState(
            is_required=stage.is_required,
            is_completed=bool(stage.progress is not None and stage.progress.is_completed),
        )
        for stage in trail.stages
    ]


class TrailLifecycle:
    """Member-facing trail operations (start, progress, pause, complete)."""

    def __init__(
        self,
        engine: Engine,
        directory: UserDirectory,
        rewards: RewardDispatcher,
        *,
        config: TrailheadConfig,
    ) -> None:
        self.engine = engine
        self.directory = directory
        self.rewards = rewards
        self.config = config

    # -----------------------------------------------------------------------
    # Loading helpers
    # -----------------------------------------------------------------------
    @staticmethod
    def _trail_query(trail_id: int):
        return (
            select(TrailInstance)
            .options(
                selectinload(TrailInstance.stages).options(
                    selectinload(TrailStage.progress), selectinload(TrailStage.response)
                )
            )
            .where(TrailInstance.id == trail_id)
        )

    def _load_trail(self, session: Session, trail_id: int) -> TrailInstance:
        """Fresh read of a trail with its stages and progress rows."""
        trail = session.scalar(
            self._trail_query(trail_id).execution_options(populate_existing=True)
        )
        if trail is None:
            raise NotFound(f"Trail {trail_id} not found.")
        return trail

    @staticmethod
    def _history(session: Session, user_id: str) -> list[TrailInstance]:
        return list(session.scalars(
            select(TrailInstance).where(TrailInstance.user_id == user_id)
        ).all())

    def _profile(self, user_id: str) -> UserProfile:
        profile = self.directory.get_user_attributes(user_id)
        return profile if profile is not None else UserProfile.anonymous(user_id)

    def _with_conflict_retry(self, op_name: str, func: Callable[..., T], *args: Any) -> T:
        attempts = self.config.conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return func(*args)
            except StaleDataError as exc:
                if attempt >= attempts:
                    raise ConcurrentModification(
                        f"Trail changed concurrently during {op_name}; try again.",
                        details={"operation": op_name, "attempts": attempts},
                    ) from exc
                logger.warning(
                    "Concurrent update during %s (attempt %d/%d); retrying",
                    op_name, attempt, attempts,
                )
        raise AssertionError("unreachable")

    # -----------------------------------------------------------------------
    # Gates
    # -----------------------------------------------------------------------
    def _check_gates(
        self,
        session: Session,
        template: TrailTemplate,
        user_id: str,
        history: list[TrailInstance],
    ) -> None:
        criteria = AccessCriteria.from_dict(template.access_criteria)
        profile = self._profile(user_id)
        if not is_eligible(criteria, profile):
            logger.info(
                "Access denied to template %d for %s: missing %s",
                template.id, user_id, missing_requirements(criteria, profile),
            )
            raise AccessDenied(template.id, user_id)

        unmet_ids = unmet_prerequisites(template, history)
        if unmet_ids:
            unmet = session.scalars(
                select(TrailTemplate).where(TrailTemplate.id.in_(unmet_ids))
            ).all()
            raise PrerequisitesUnmet(template.id, unmet)

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------
    def get_trail(self, trail_id: int) -> TrailInstance:
        with Session(self.engine, expire_on_commit=False) as session:
            return self._load_trail(session, trail_id)

    def get_progress(self, trail_id: int) -> ProgressSummary:
        return summarize(_stage_states(self.get_trail(trail_id)))

    def list_user_trails(
        self,
        user_id: str,
        *,
        status: TrailStatus | str | None = None,
        company_id: str | None = None,
    ) -> list[TrailInstance]:
        """A member's trails, most recently started first."""
        with Session(self.engine, expire_on_commit=False) as session:
            stmt = (
                select(TrailInstance)
                .options(selectinload(TrailInstance.stages).selectinload(TrailStage.progress))
                .where(TrailInstance.user_id == user_id)
                .order_by(TrailInstance.started_at.desc(), TrailInstance.id.desc())
            )
            if status is not None:
                stmt = stmt.where(TrailInstance.status == str(status))
            if company_id is not None:
                stmt = stmt.where(TrailInstance.company_id == company_id)
            return list(session.scalars(stmt).all())

    def list_available_templates(self, user_id: str, company_id: str) -> list[AvailableTemplate]:
        """Active templates the member passes the access criteria for.

        Each entry lists the prerequisites still to complete and the
        member's existing trail for the template, if any.
        """
        profile = self._profile(user_id)
        with Session(self.engine, expire_on_commit=False) as session:
            templates = fetch_templates(session, company_id)
            history = self._history(session, user_id)
            started = {t.template_id: t for t in history if t.template_id is not None}

            visible: list[tuple[TrailTemplate, set[int]]] = []
            for template in templates:
                if not is_eligible(AccessCriteria.from_dict(template.access_criteria), profile):
                    continue
                visible.append((template, unmet_prerequisites(template, history)))

            wanted = set().union(*(ids for _, ids in visible)) if visible else set()
            names = {
                t.id: t for t in session.scalars(
                    select(TrailTemplate).where(TrailTemplate.id.in_(wanted))
                ).all()
            } if wanted else {}

            return [
                AvailableTemplate(
                    template=template,
                    unmet_prerequisites=sorted(
                        (names[i] for i in unmet if i in names),
                        key=lambda t: t.order_index,
                    ),
                    trail=started.get(template.id),
                )
                for template, unmet in visible
            ]

    # -----------------------------------------------------------------------
    # Starting
    # -----------------------------------------------------------------------
    def start(self, user_id: str, template_id: int) -> StartResult:
        """Start *template_id* for *user_id* after checking both gates.

        Raises AccessDenied, PrerequisitesUnmet or NotFound (unknown or
        inactive template).
        """
        return self._start_from_template(user_id, template_id, enforce_gates=True)

    def assign_template(self, user_id: str, template_id: int, *, actor_id: str) -> StartResult:
        """Administrator starts a template on behalf of a member (no gates)."""
        return self._start_from_template(
            user_id, template_id, enforce_gates=False, actor_id=actor_id
        )

    def _start_from_template(
        self,
        user_id: str,
        template_id: int,
        *,
        enforce_gates: bool,
        actor_id: str | None = None,
    ) -> StartResult:
        with Session(self.engine, expire_on_commit=False) as session:
            template = session.scalar(
                select(TrailTemplate)
                .options(selectinload(TrailTemplate.stages))
                .where(TrailTemplate.id == template_id)
            )
            if template is None or not template.is_active:
                raise NotFound(f"Trail template {template_id} not found.")

            history = self._history(session, user_id)
            existing = next((t for t in history if t.template_id == template_id), None)
            if existing is not None:
                return StartResult(self._load_trail(session, existing.id), already_existed=True)

            if enforce_gates:
                self._check_gates(session, template, user_id, history)

            stage_rows = [
                TrailStage(
                    name=s.name,
                    description=s.description,
                    guidance_text=s.guidance_text,
                    is_required=s.is_required,
                    requires_response=s.requires_response,
                    target_value=s.target_value,
                    order_index=s.order_index,
                )
                for s in template.stages
            ]
            try:
                trail = self._create_trail(
                    session,
                    company_id=template.company_id,
                    user_id=user_id,
                    template_id=template.id,
                    name=template.name,
                    description=template.description,
                    life_area=template.life_area,
                    auto_complete=template.auto_complete,
                    completion_badge_id=None,
                    stage_rows=stage_rows,
                    created_by=actor_id or user_id,
                )
            except IntegrityError:
                # Same member started the same template concurrently.
                session.rollback()
                trail_id = session.scalar(
                    select(TrailInstance.id).where(
                        TrailInstance.user_id == user_id,
                        TrailInstance.template_id == template_id,
                    )
                )
                if trail_id is None:
                    raise
                return StartResult(self._load_trail(session, trail_id), already_existed=True)

            if actor_id is not None:
                log_admin_action(
                    session,
                    actor_id=actor_id,
                    action_type=AdminActionType.ASSIGN,
                    target_table="trails",
                    target_id=trail.id,
                    after=row_to_dict(trail),
                )
            session.commit()
            logger.info(
                "Trail %d started from template %d by %s (%d stages)",
                trail.id, template.id, user_id, len(stage_rows),
            )
            return StartResult(self._load_trail(session, trail.id))

    def start_custom(
        self,
        user_id: str,
        company_id: str,
        definition: CustomTrailDefinition | dict[str, Any],
        *,
        created_by: str | None = None,
    ) -> TrailInstance:
        """Create an ad-hoc trail that has no template (no gates apply)."""
        definition = parse(CustomTrailDefinition, definition)
        name = require_name(definition.name, "Trail")
        stages = ordered_stages(definition.stages)

        with Session(self.engine, expire_on_commit=False) as session:
            if definition.completion_badge_id is not None:
                badge = session.get(TrailBadge, definition.completion_badge_id)
                if badge is None or badge.company_id != company_id:
                    raise ValidationError(
                        f"Badge {definition.completion_badge_id} does not exist."
                    )
            trail = self._create_trail(
                session,
                company_id=company_id,
                user_id=user_id,
                template_id=None,
                name=name,
                description=definition.description,
                life_area=definition.life_area,
                auto_complete=definition.auto_complete,
                completion_badge_id=definition.completion_badge_id,
                stage_rows=build_stage_rows(stages),
                created_by=created_by or user_id,
            )
            session.commit()
            logger.info("Custom trail %d created for %s", trail.id, user_id)
            return self._load_trail(session, trail.id)

    @staticmethod
    def _create_trail(
        session: Session,
        *,
        company_id: str,
        user_id: str,
        template_id: int | None,
        name: str,
        description: str | None,
        life_area: str | None,
        auto_complete: bool,
        completion_badge_id: int | None,
        stage_rows: Iterable[TrailStage],
        created_by: str | None,
    ) -> TrailInstance:
        now = _now()
        trail = TrailInstance(
            company_id=company_id,
            user_id=user_id,
            template_id=template_id,
            name=name,
            description=description,
            life_area=life_area,
            auto_complete=auto_complete,
            completion_badge_id=completion_badge_id,
            status=TrailStatus.ACTIVE.value,
            progress_percentage=0,
            started_at=now,
            updated_at=now,
            created_by=created_by,
            stages=list(stage_rows),
        )
        session.add(trail)
        session.flush()
        for stage in trail.stages:
            stage.progress = StageProgress(
                trail_id=trail.id,
                user_id=user_id,
                progress_value=0,
                target_value=stage.target_value,
                is_completed=False,
            )
        session.flush()
        return trail

    # -----------------------------------------------------------------------
    # Stage responses
    # -----------------------------------------------------------------------
    @staticmethod
    def _find_response(session: Session, trail_id: int, stage_id: int) -> StageResponse | None:
        return session.scalar(
            select(StageResponse).where(
                StageResponse.trail_id == trail_id, StageResponse.stage_id == stage_id
            )
        )

    def record_stage_response(
        self,
        trail_id: int,
        stage_id: int,
        *,
        text: str | None = None,
        data: dict[str, Any] | None = None,
        file_urls: list[str] | None = None,
    ) -> StageResponse:
        """Store the member's response to a stage, replacing any earlier one.

        Only active trails accept responses.  Stages with
        ``requires_response`` cannot be completed until one is stored.
        """
        answer = parse(StageResponseIn, {
            "response_text": text,
            "response_data": data or {},
            "file_urls": file_urls or [],
        })
        with Session(self.engine, expire_on_commit=False) as session:
            trail = session.get(TrailInstance, trail_id)
            if trail is None:
                raise NotFound(f"Trail {trail_id} not found.")
            stage = session.scalar(
                select(TrailStage).where(
                    TrailStage.id == stage_id, TrailStage.trail_id == trail_id
                )
            )
            if stage is None:
                raise NotFound(f"Stage {stage_id} not found on trail {trail_id}.")
            if trail.status != TrailStatus.ACTIVE:
                raise InvalidTransition(trail.id, trail.status, "respond to a stage of")

            row = self._find_response(session, trail_id, stage_id)
            if row is None:
                row = StageResponse(trail_id=trail_id, stage_id=stage_id, user_id=trail.user_id)
                try:
                    with session.begin_nested():   # SAVEPOINT
                        session.add(row)
                        session.flush()
                except IntegrityError:
                    # Submitted twice at once; the other insert wins, this one updates it.
                    row = self._find_response(session, trail_id, stage_id)
                    if row is None:
                        raise
            row.response_text = answer.response_text
            row.response_data = answer.response_data
            row.file_urls = answer.file_urls
            session.commit()
            session.refresh(row)

        logger.info("Response recorded for stage %d of trail %d", stage_id, trail_id)
        return row

    # -----------------------------------------------------------------------
    # Stage progress
    # -----------------------------------------------------------------------
    def update_stage_progress(self, trail_id: int, stage_id: int, value: int) -> TrailInstance:
        """Set a stage's progress (clamped to ``[0, target]``).

        Reaching the target completes the stage; updating an already
        completed stage is a no-op.  May complete the whole trail (see
        module docstring).  Raises ResponseRequired when the update would
        finish a stage that still waits for the member's response.
        """
        trail, completed_now = self._with_conflict_retry(
            "update_stage_progress", self._apply_progress, trail_id, stage_id, value
        )
        if completed_now:
            self._after_completion(trail)
        return trail

    def complete_stage(self, trail_id: int, stage_id: int) -> TrailInstance:
        """Mark a stage as done (progress = target)."""
        with Session(self.engine) as session:
            target = session.scalar(
                select(TrailStage.target_value).where(
                    TrailStage.id == stage_id, TrailStage.trail_id == trail_id
                )
            )
        if target is None:
            raise NotFound(f"Stage {stage_id} not found on trail {trail_id}.")
        return self.update_stage_progress(trail_id, stage_id, target)

    def _apply_progress(
        self, trail_id: int, stage_id: int, value: int
    ) -> tuple[TrailInstance, bool]:
        with Session(self.engine, expire_on_commit=False) as session:
            trail = session.scalar(self._trail_query(trail_id))
            if trail is None:
                raise NotFound(f"Trail {trail_id} not found.")
            stage = next((s for s in trail.stages if s.id == stage_id), None)
            if stage is None:
                raise NotFound(f"Stage {stage_id} not found on trail {trail_id}.")

            progress = stage.progress
            if progress is not None and progress.is_completed:
                return trail, False
            if trail.status != TrailStatus.ACTIVE:
                raise InvalidTransition(trail.id, trail.status, "update progress on")

            if progress is None:
                logger.warning("Stage %d of trail %d had no progress row", stage.id, trail.id)
                progress = StageProgress(
                    trail_id=trail.id,
                    user_id=trail.user_id,
                    target_value=stage.target_value,
                )
                stage.progress = progress

            finishes = reaches_target(value, progress.target_value)
            if finishes and stage.requires_response and stage.response is None:
                raise ResponseRequired(trail.id, stage.id)

            was_done = summarize(_stage_states(trail)).all_required_complete
            now = _now()
            progress.progress_value = clamp_progress(value, progress.target_value)
            if finishes:
                progress.is_completed = True
                progress.completed_at = now

            summary = summarize(_stage_states(trail))
            trail.progress_percentage = summary.percentage
            trail.updated_at = now

            completing = (
                trail.auto_complete and summary.all_required_complete and not was_done
            )
            if completing:
                self._mark_completed(trail, now)
            session.commit()

            if completing:
                logger.info("Trail %d auto-completed for %s", trail.id, trail.user_id)
            return self._load_trail(session, trail_id), completing

    # -----------------------------------------------------------------------
    # Status transitions
    # -----------------------------------------------------------------------
    @staticmethod
    def _mark_completed(trail: TrailInstance, now: datetime) -> None:
        trail.status = TrailStatus.COMPLETED.value
        trail.completed_at = now
        trail.paused_at = None
        trail.updated_at = now

    def _after_completion(self, trail: TrailInstance) -> None:
        """Post-commit side effects of completion.  Never raises."""
        try:
            self.rewards.reward_completion(trail)
        except Exception:
            logger.exception(
                "Reward issuance failed for trail %d; completion stands "
                "(RewardDispatcher.issue_missing_awards will retry)",
                trail.id,
            )
        if self.config.notifications_enabled:
            self.rewards.background.submit(self.rewards.notifier.trail_completed, trail)

    def complete(self, trail_id: int, *, actor_id: str | None = None) -> TrailInstance:
        """Complete a trail and issue its reward.

        Idempotent: completing a completed trail returns it unchanged and
        issues nothing.  Raises InvalidTransition on a paused trail.
        """
        trail, changed = self._with_conflict_retry(
            "complete", self._apply_complete, trail_id, actor_id
        )
        if changed:
            self._after_completion(trail)
        return trail

    def _apply_complete(
        self, trail_id: int, actor_id: str | None
    ) -> tuple[TrailInstance, bool]:
        with Session(self.engine, expire_on_commit=False) as session:
            trail = session.scalar(self._trail_query(trail_id))
            if trail is None:
                raise NotFound(f"Trail {trail_id} not found.")
            if trail.status == TrailStatus.COMPLETED:
                return trail, False
            if trail.status == TrailStatus.PAUSED:
                raise InvalidTransition(trail.id, trail.status, "complete")

            before = row_to_dict(trail)
            self._mark_completed(trail, _now())
            session.flush()
            if actor_id is not None:
                log_admin_action(
                    session,
                    actor_id=actor_id,
                    action_type=AdminActionType.COMPLETE,
                    target_table="trails",
                    target_id=trail.id,
                    before=before,
                    after=row_to_dict(trail),
                )
            session.commit()
            logger.info("Trail %d completed for %s", trail.id, trail.user_id)
            return self._load_trail(session, trail_id), True

    def pause(self, trail_id: int) -> TrailInstance:
        return self._with_conflict_retry(
            "pause", self._transition, trail_id, TrailStatus.ACTIVE, TrailStatus.PAUSED, "pause"
        )

    def resume(self, trail_id: int) -> TrailInstance:
        return self._with_conflict_retry(
            "resume", self._transition, trail_id, TrailStatus.PAUSED, TrailStatus.ACTIVE, "resume"
        )

    def _transition(
        self,
        trail_id: int,
        expected: TrailStatus,
        target: TrailStatus,
        verb: str,
    ) -> TrailInstance:
        with Session(self.engine, expire_on_commit=False) as session:
            trail = session.get(TrailInstance, trail_id)
            if trail is None:
                raise NotFound(f"Trail {trail_id} not found.")
            if trail.status != expected:
                raise InvalidTransition(trail.id, trail.status, verb)

            now = _now()
            trail.status = target.value
            trail.paused_at = now if target == TrailStatus.PAUSED else None
            trail.updated_at = now
            session.commit()
            logger.info("Trail %d %sd", trail.id, verb)
            return self._load_trail(session, trail_id)
