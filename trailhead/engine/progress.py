"""
trailhead.engine.progress — Stage Progress Arithmetic
======================================================

Clamping of stage progress values and the aggregate view of a trail.

Only **required** stages count toward the percentage and toward
"all required complete".  Optional stages can be finished for their own
sake; they show up in ``optional_completed_count`` and nowhere else.

This module is pure calculation — no database I/O.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol


class _StageState(Protocol):
    is_required: bool
    is_completed: bool


@dataclass(frozen=True, slots=True)
class StageState:
    """Minimal stage view the tracker needs."""

    is_required: bool
    is_completed: bool


@dataclass(frozen=True, slots=True)
class ProgressSummary:
    """Read-only projection of a trail's stage progress."""

    completed_count: int
    required_count: int
    optional_completed_count: int
    percentage: int
    all_required_complete: bool


def clamp_progress(value: int, target: int) -> int:
    """Clamp *value* into ``[0, target]``."""
    return max(0, min(int(value), int(target)))


def reaches_target(value: int, target: int) -> bool:
    return clamp_progress(value, target) >= target


def summarize(stages: Iterable[_StageState]) -> ProgressSummary:
    """Aggregate stage states into a :class:`ProgressSummary`.

    ``percentage = round(completed_required / required * 100)``.  A trail
    with no required stages reports 0% and is never "all required
    complete", so it can only be finished explicitly.
    """
    required = 0
    completed_required = 0
    optional_done = 0
    for stage in stages:
        if stage.is_required:
            required += 1
            if stage.is_completed:
                completed_required += 1
        elif stage.is_completed:
            optional_done += 1

    percentage = round(completed_required * 100 / required) if required else 0
    return ProgressSummary(
        completed_count=completed_required,
        required_count=required,
        optional_completed_count=optional_done,
        percentage=percentage,
        all_required_complete=required > 0 and completed_required == required,
    )
