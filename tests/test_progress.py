"""
tests/test_progress.py — Unit Tests for Stage Progress Arithmetic
==================================================================
"""

from __future__ import annotations

import pytest

from trailhead.engine.progress import StageState, clamp_progress, reaches_target, summarize


def _stages(*spec: tuple[bool, bool]) -> list[StageState]:
    """(is_required, is_completed) pairs."""
    return [StageState(is_required=r, is_completed=c) for r, c in spec]


class TestClamp:
    @pytest.mark.parametrize(
        ("value", "target", "expected"),
        [(-3, 5, 0), (0, 5, 0), (3, 5, 3), (5, 5, 5), (9, 5, 5)],
    )
    def test_clamp(self, value, target, expected):
        assert clamp_progress(value, target) == expected

    def test_reaches_target(self):
        assert reaches_target(7, 5)
        assert not reaches_target(4, 5)


class TestSummarize:
    def test_optional_stages_do_not_count(self):
        # 2 required + 2 optional, only the optional ones done
        summary = summarize(_stages((True, False), (True, False), (False, True), (False, True)))
        assert summary.percentage == 0
        assert summary.optional_completed_count == 2
        assert not summary.all_required_complete

    def test_half_of_required(self):
        summary = summarize(_stages((True, True), (True, False), (False, False), (False, False)))
        assert summary.percentage == 50
        assert summary.completed_count == 1
        assert summary.required_count == 2

    def test_rounding(self):
        summary = summarize(_stages((True, True), (True, True), (True, False)))
        assert summary.percentage == 67

    def test_all_required_complete(self):
        summary = summarize(_stages((True, True), (True, True), (False, False)))
        assert summary.percentage == 100
        assert summary.all_required_complete

    def test_no_required_stages(self):
        summary = summarize(_stages((False, True)))
        assert summary.percentage == 0
        assert not summary.all_required_complete

    def test_empty(self):
        summary = summarize([])
        assert summary.required_count == 0
        assert summary.percentage == 0
