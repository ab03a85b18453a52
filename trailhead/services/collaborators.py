"""
trailhead.services.collaborators — External Collaborator Interfaces
====================================================================

The engine never talks to the user directory, the coin wallet or the
notification surface directly; it is handed objects satisfying these
protocols.  Production wiring lives in the host application; tests use
small fakes.
"""

from __future__ import annotations

import enum
import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from trailhead.database.models import BadgeAward, TrailBadge, TrailInstance
    from trailhead.engine.access import UserProfile

logger = logging.getLogger(__name__)


class CreditOutcome(enum.StrEnum):
    """What the wallet did with a credit request."""
    OK = "ok"
    QUEUED = "queued"


@runtime_checkable
class UserDirectory(Protocol):
    def get_user_attributes(self, user_id: str) -> UserProfile | None:
        """Return the member's level, tags and roles, or None if unknown."""
        ...


@runtime_checkable
class CurrencyWallet(Protocol):
    def credit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> CreditOutcome:
        """Credit *amount* coins.  Repeated keys must not credit twice."""
        ...


@runtime_checkable
class Notifier(Protocol):
    def trail_completed(self, trail: TrailInstance) -> None: ...

    def badge_awarded(self, award: BadgeAward, badge: TrailBadge) -> None: ...


class NullNotifier:
    """Notifier that only logs; the default when no surface is wired."""

    def trail_completed(self, trail: TrailInstance) -> None:
        logger.debug("Trail %d completed by %s", trail.id, trail.user_id)

    def badge_awarded(self, award: BadgeAward, badge: TrailBadge) -> None:
        logger.debug("Badge %r awarded to %s", badge.name, award.user_id)
