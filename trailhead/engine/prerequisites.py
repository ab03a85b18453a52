"""
trailhead.engine.prerequisites — Prerequisite Resolution
=========================================================

A template may require the member to have *completed* other templates
before starting it.  This module works purely on ids and duck-typed
records (anything with ``template_id`` and ``status``), so it can be fed
ORM rows or test doubles alike.

This module is pure calculation — no database I/O.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Protocol

from trailhead.database.models import TrailStatus


class _HasPrerequisites(Protocol):
    prerequisite_ids: list | None


class _TrailRecord(Protocol):
    template_id: int | None
    status: str


def completed_template_ids(history: Iterable[_TrailRecord]) -> set[int]:
    """Template ids the member has a completed trail for."""
    return {
        trail.template_id
        for trail in history
        if trail.template_id is not None and trail.status == TrailStatus.COMPLETED
    }


def unmet_prerequisites(
    template: _HasPrerequisites,
    history: Iterable[_TrailRecord],
) -> set[int]:
    """Return the prerequisite template ids not yet satisfied by *history*.

    An empty set means the member may start *template*.  A trail that is
    active or paused does not count; only ``completed`` does.
    """
    required = {int(pid) for pid in (template.prerequisite_ids or [])}
    if not required:
        return set()
    return required - completed_template_ids(history)


def find_prerequisite_cycle(
    template_id: int | None,
    prerequisite_ids: Iterable[int],
    graph: Mapping[int, Iterable[int]],
) -> list[int] | None:
    """Detect a cycle that *prerequisite_ids* would introduce.

    Parameters
    ----------
    template_id : The template being configured (None for a new template,
        which cannot be part of a cycle yet).
    prerequisite_ids : The proposed prerequisites of *template_id*.
    graph : Current ``template id → prerequisite ids`` mapping for the
        company, excluding *template_id*'s own (old) entry.

    Returns
    -------
    The offending path ``[template_id, ..., template_id]`` or None.
    """
    if template_id is None:
        return None

    # Depth-first search from each proposed prerequisite back to template_id.
    stack: list[tuple[int, list[int]]] = [
        (pid, [template_id, pid]) for pid in prerequisite_ids
    ]
    seen: set[int] = set()
    while stack:
        node, path = stack.pop()
        if node == template_id:
            return path
        if node in seen:
            continue
        seen.add(node)
        for nxt in graph.get(node, ()):
            stack.append((nxt, [*path, nxt]))
    return None
