"""
trailhead.services.reward_service — Badge Awards & Coin Credits
================================================================

Issues the completion badge of a trail **at most once** and asks the
external wallet to credit the badge's coins.

* The award row is the source of truth.  Uniqueness on (trail, badge) is
  enforced by the database: the insert runs inside a SAVEPOINT and an
  ``IntegrityError`` means another request won the race, in which case
  the existing award is returned untouched.
* The coin credit runs in the background after the award has committed.
  The wallet de-duplicates on ``BadgeAward.idempotency_key``, so
  :meth:`RewardDispatcher.retry_credits` can safely re-send credits that
  failed or were never acknowledged.  Retrying never creates awards.
* :meth:`RewardDispatcher.issue_missing_awards` repairs completed trails
  whose award was lost (reward issuance is best-effort during completion).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from trailhead.config import TrailheadConfig
from trailhead.database.models import (
    BadgeAward,
    CreditStatus,
    TrailBadge,
    TrailInstance,
    TrailStatus,
    TrailTemplate,
)
from trailhead.services.background import BackgroundDispatcher
from trailhead.services.collaborators import CreditOutcome, NullNotifier

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from trailhead.services.collaborators import CurrencyWallet, Notifier

logger = logging.getLogger(__name__)

RETRYABLE_CREDIT_STATUSES = (CreditStatus.PENDING.value, CreditStatus.FAILED.value)


@dataclass(slots=True)
class IssueResult:
    """Outcome of :meth:`RewardDispatcher.issue`.

    ``already_awarded`` is True when the award existed before the call; no
    coins were requested in that case.
    """

    award: BadgeAward
    already_awarded: bool


class RewardDispatcher:
    """Issues completion badges and hands coin credits to the wallet."""

    def __init__(
        self,
        engine: Engine,
        wallet: CurrencyWallet,
        *,
        config: TrailheadConfig,
        background: BackgroundDispatcher | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.engine = engine
        self.wallet = wallet
        self.config = config
        self.background = background or BackgroundDispatcher(config.background_workers)
        self.notifier = notifier or NullNotifier()

    # -----------------------------------------------------------------------
    # Badge resolution
    # -----------------------------------------------------------------------
    def resolve_badge(self, session: Session, trail: TrailInstance) -> TrailBadge | None:
        """The trail's badge override, else its template's completion badge.

        Inactive badges are not issued.
        """
        badge_id = trail.completion_badge_id
        if badge_id is None and trail.template_id is not None:
            badge_id = session.scalar(
                select(TrailTemplate.completion_badge_id).where(
                    TrailTemplate.id == trail.template_id
                )
            )
        if badge_id is None:
            return None
        badge = session.get(TrailBadge, badge_id)
        if badge is None:
            logger.warning("Trail %d references missing badge %d", trail.id, badge_id)
            return None
        if not badge.is_active:
            logger.warning(
                "Badge %r (id=%d) is inactive; not issuing it for trail %d",
                badge.name, badge.id, trail.id,
            )
            return None
        return badge

    def reward_completion(self, trail: TrailInstance) -> IssueResult | None:
        """Issue the resolved completion badge for a completed *trail*."""
        with Session(self.engine, expire_on_commit=False) as session:
            badge = self.resolve_badge(session, trail)
        if badge is None:
            return None
        return self.issue(trail, badge)

    # -----------------------------------------------------------------------
    # Issuing
    # -----------------------------------------------------------------------
    def issue(self, trail: TrailInstance, badge: TrailBadge) -> IssueResult:
        """Award *badge* for *trail* unless that award already exists."""
        with Session(self.engine, expire_on_commit=False) as session:
            existing = self._find_award(session, trail.id, badge.id)
            if existing is not None:
                return IssueResult(existing, already_awarded=True)

            award = BadgeAward(
                company_id=trail.company_id,
                user_id=trail.user_id,
                trail_id=trail.id,
                badge_id=badge.id,
                coins_reward=badge.coins_reward,
                credit_status=(
                    CreditStatus.PENDING.value if badge.coins_reward > 0
                    else CreditStatus.SKIPPED.value
                ),
            )
            try:
                with session.begin_nested():   # SAVEPOINT
                    session.add(award)
                    session.flush()
            except IntegrityError:
                # A concurrent request inserted the same (trail, badge) award.
                session.commit()
                existing = self._find_award(session, trail.id, badge.id)
                if existing is None:
                    raise
                logger.info(
                    "Badge %d for trail %d was awarded concurrently", badge.id, trail.id
                )
                return IssueResult(existing, already_awarded=True)

            session.commit()
            session.refresh(award)

        logger.info(
            "Badge awarded: %s (id=%d) to %s for trail %d",
            badge.name, badge.id, trail.user_id, trail.id,
        )
        if award.credit_status == CreditStatus.PENDING:
            self.background.submit(self.deliver_credit, award.id)
        if self.config.notifications_enabled:
            self.background.submit(self.notifier.badge_awarded, award, badge)
        return IssueResult(award, already_awarded=False)

    @staticmethod
    def _find_award(session: Session, trail_id: int, badge_id: int) -> BadgeAward | None:
        return session.scalar(
            select(BadgeAward)
            .where(BadgeAward.trail_id == trail_id, BadgeAward.badge_id == badge_id)
            .execution_options(populate_existing=True)
        )

    # -----------------------------------------------------------------------
    # Coin credits
    # -----------------------------------------------------------------------
    def deliver_credit(self, award_id: int) -> str | None:
        """Send the coin credit for one award and record the outcome.

        Wallet errors are logged and stored on the award, never raised.
        Returns the resulting credit status.
        """
        with Session(self.engine, expire_on_commit=False) as session:
            award = session.get(BadgeAward, award_id)
            if award is None:
                logger.warning("Credit requested for unknown award %d", award_id)
                return None
            if award.credit_status not in RETRYABLE_CREDIT_STATUSES:
                return award.credit_status

            badge = session.get(TrailBadge, award.badge_id)
            reason = self.config.credit_reason(badge.name if badge else str(award.badge_id))
            award.credit_attempts += 1
            try:
                outcome = self.wallet.credit(
                    award.user_id, award.coins_reward, reason, award.idempotency_key
                )
            except Exception as exc:
                logger.exception(
                    "Coin credit of %d for award %d (user %s) failed",
                    award.coins_reward, award.id, award.user_id,
                )
                award.credit_status = CreditStatus.FAILED.value
                award.credit_error = str(exc)[:500] or exc.__class__.__name__
            else:
                if outcome == CreditOutcome.QUEUED:
                    award.credit_status = CreditStatus.QUEUED.value
                else:
                    award.credit_status = CreditStatus.CREDITED.value
                    award.credited_at = datetime.now(UTC)
                award.credit_error = None
            session.commit()
            return award.credit_status

    def retry_credits(self, *, limit: int = 100) -> dict:
        """Re-send credits that are pending or failed.

        Returns ``{"checked": N, "<status>": count, ...}``.
        """
        with Session(self.engine) as session:
            award_ids = session.scalars(
                select(BadgeAward.id)
                .where(BadgeAward.credit_status.in_(RETRYABLE_CREDIT_STATUSES))
                .order_by(BadgeAward.id)
                .limit(limit)
            ).all()

        summary: dict[str, int] = {"checked": len(award_ids)}
        for award_id in award_ids:
            status = self.deliver_credit(award_id)
            if status is not None:
                summary[status] = summary.get(status, 0) + 1
        if award_ids:
            logger.info("Credit retry: %s", summary)
        return summary

    # -----------------------------------------------------------------------
    # Repair
    # -----------------------------------------------------------------------
    def issue_missing_awards(self, *, company_id: str | None = None) -> int:
        """Issue awards for completed trails that should have one but don't.

        Returns the number of awards created.
        """
        with Session(self.engine, expire_on_commit=False) as session:
            stmt = select(TrailInstance).where(
                TrailInstance.status == TrailStatus.COMPLETED.value
            )
            if company_id is not None:
                stmt = stmt.where(TrailInstance.company_id == company_id)
            todo: list[tuple[TrailInstance, TrailBadge]] = []
            for trail in session.scalars(stmt).all():
                badge = self.resolve_badge(session, trail)
                if badge is not None and self._find_award(session, trail.id, badge.id) is None:
                    todo.append((trail, badge))

        created = 0
        for trail, badge in todo:
            if not self.issue(trail, badge).already_awarded:
                created += 1
        if created:
            logger.info("Repaired %d missing badge award(s)", created)
        return created
