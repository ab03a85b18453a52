"""
trailhead.engine.access — Access Criteria Evaluation
=====================================================

Decides whether a member may start a trail template.  Pure calculation: no
database I/O, no directory calls.  The member's attributes arrive as a
:class:`UserProfile` built by the caller from the user directory.

Rules (all must hold unless ``available_to_all``):

* **level** — the member's level rank is at least ``required_level``.
* **tags** — the member holds *every* required tag (tags are additive
  attributes).
* **roles** — the member holds *at least one* required role (roles are
  mutually exclusive categories, so requiring all of them would be
  unsatisfiable).

A missing attribute never satisfies a criterion that asks for it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


def _as_frozenset(values: Iterable[str] | None) -> frozenset[str]:
    if not values:
        return frozenset()
    return frozenset(str(v) for v in values if v)


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AccessCriteria:
    """Admission rules stored on a template's ``access_criteria`` column."""

    available_to_all: bool = True
    required_level: int | None = None
    required_tags: frozenset[str] = field(default_factory=frozenset)
    required_roles: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> AccessCriteria:
        """Build criteria from the JSON column.

        ``None`` / ``{}`` means open to everyone.  The legacy key
        ``is_available_for_all`` is accepted as an alias.
        """
        if not raw:
            return cls()
        if "available_to_all" in raw:
            open_to_all = bool(raw["available_to_all"])
        else:
            open_to_all = bool(raw.get("is_available_for_all", True))
        level = raw.get("required_level")
        return cls(
            available_to_all=open_to_all,
            required_level=int(level) if level is not None else None,
            required_tags=_as_frozenset(raw.get("required_tags")),
            required_roles=_as_frozenset(raw.get("required_roles")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "available_to_all": self.available_to_all,
            "required_level": self.required_level,
            "required_tags": sorted(self.required_tags),
            "required_roles": sorted(self.required_roles),
        }


@dataclass(frozen=True, slots=True)
class UserProfile:
    """Member attributes as reported by the user directory.

    Parameters
    ----------
    user_id : External user identifier.
    level : Level rank (higher is more advanced), or None if unknown.
    tags : Tag names the member holds.
    roles : Role names the member holds.
    """

    user_id: str
    level: int | None = None
    tags: frozenset[str] = field(default_factory=frozenset)
    roles: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def anonymous(cls, user_id: str) -> UserProfile:
        """Profile for a member the directory knows nothing about."""
        return cls(user_id=user_id)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------
def is_eligible(criteria: AccessCriteria, profile: UserProfile) -> bool:
    """Return True if *profile* satisfies *criteria*."""
    if criteria.available_to_all:
        return True

    if criteria.required_level is not None:
        if profile.level is None or profile.level < criteria.required_level:
            return False

    if criteria.required_tags and not criteria.required_tags <= profile.tags:
        return False

    if criteria.required_roles and criteria.required_roles.isdisjoint(profile.roles):
        return False

    return True


def missing_requirements(criteria: AccessCriteria, profile: UserProfile) -> dict[str, Any]:
    """Describe which criteria *profile* fails, for explanatory messages.

    Returns an empty dict when the member is eligible.
    """
    if criteria.available_to_all:
        return {}
    missing: dict[str, Any] = {}
    if criteria.required_level is not None and (
        profile.level is None or profile.level < criteria.required_level
    ):
        missing["required_level"] = criteria.required_level
    absent_tags = criteria.required_tags - profile.tags
    if absent_tags:
        missing["required_tags"] = sorted(absent_tags)
    if criteria.required_roles and criteria.required_roles.isdisjoint(profile.roles):
        missing["required_roles"] = sorted(criteria.required_roles)
    return missing
