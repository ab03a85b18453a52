"""
trailhead.errors — Domain Exceptions
=====================================

Every failure the engine reports to its callers is a :class:`TrailError`
carrying a human-readable ``message``, a stable ``code`` and a ``details``
dict the UI layer can render.

``AccessDenied`` and ``PrerequisitesUnmet`` are expected outcomes of a start
request (show an explanation, not a crash).  ``InvalidTransition`` only
happens when a caller ignores the trail status.  A duplicate badge award is
not an error at all; see :class:`trailhead.services.reward_service.IssueResult`.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from trailhead.database.models import TrailTemplate


class TrailError(Exception):
    """Base exception for all trail engine errors."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(TrailError):
    """Malformed input (empty name, non-contiguous stage order, ...).

    Always raised before anything is written.
    """


class NotFound(TrailError):
    """A referenced template, trail, stage or badge does not exist."""


class AccessDenied(TrailError):
    """The member does not meet the template's access criteria."""

    def __init__(self, template_id: int, user_id: str) -> None:
        super().__init__(
            "You do not meet the requirements to start this trail.",
            details={"template_id": template_id, "user_id": user_id},
        )
        self.template_id = template_id
        self.user_id = user_id


class PrerequisitesUnmet(TrailError):
    """The member still has to complete other trails first.

    ``templates`` holds the unmet prerequisite templates so the caller can
    list them by name.
    """

    def __init__(self, template_id: int, templates: Iterable[TrailTemplate]) -> None:
        self.template_id = template_id
        self.templates = sorted(templates, key=lambda t: t.order_index)
        names = ", ".join(t.name for t in self.templates) or "previous trails"
        super().__init__(
            f"Complete these trails first: {names}",
            details={
                "template_id": template_id,
                "unmet": [{"id": t.id, "name": t.name} for t in self.templates],
            },
        )


class InvalidTransition(TrailError):
    """A status change the trail state machine does not allow."""

    def __init__(self, trail_id: int, current: str, attempted: str) -> None:
        super().__init__(
            f"Cannot {attempted} trail {trail_id} while it is {current}.",
            details={"trail_id": trail_id, "current": current, "attempted": attempted},
        )
        self.trail_id = trail_id
        self.current = current
        self.attempted = attempted


class ConcurrentModification(TrailError):
    """A trail kept changing underneath the operation, even after retrying."""


class ReorderFailed(TrailError):
    """A template reorder batch did not apply; nothing was changed.

    The whole batch must be retried.
    """


class ResponseRequired(TrailError):
    """The stage asks for a response and the member has not submitted one."""

    def __init__(self, trail_id: int, stage_id: int) -> None:
        super().__init__(
            "Submit a response to this stage before completing it.",
            details={"trail_id": trail_id, "stage_id": stage_id},
        )
        self.trail_id = trail_id
        self.stage_id = stage_id
