"""
tests/test_background.py — Background Dispatcher Tests
=======================================================
"""

from __future__ import annotations

import logging
import threading

from trailhead.services.background import BackgroundDispatcher


class TestBackgroundDispatcher:
    def test_runs_submitted_work(self):
        bg = BackgroundDispatcher(max_workers=2)
        results = []
        bg.submit(results.append, 1)
        bg.submit(results.append, 2)
        assert bg.wait(timeout=5) is True
        assert sorted(results) == [1, 2]
        bg.shutdown()

    def test_failures_are_logged_not_raised(self, caplog):
        bg = BackgroundDispatcher(max_workers=1)

        def _boom():
            raise RuntimeError("wallet down")

        with caplog.at_level(logging.ERROR, logger="trailhead.services.background"):
            future = bg.submit(_boom)
            assert bg.wait(timeout=5) is True
        assert future.result() is None
        assert "failed" in caplog.text
        bg.shutdown()

    def test_wait_covers_follow_up_tasks(self):
        bg = BackgroundDispatcher(max_workers=2)
        done = threading.Event()

        def _second():
            done.set()

        def _first():
            bg.submit(_second)

        bg.submit(_first)
        assert bg.wait(timeout=5) is True
        assert done.is_set()
        bg.shutdown()

    def test_wait_times_out(self):
        bg = BackgroundDispatcher(max_workers=1)
        release = threading.Event()
        bg.submit(release.wait, 5)
        assert bg.wait(timeout=0.05) is False
        release.set()
        bg.shutdown()
