"""
tests/test_database.py — Engine, Session and Async Bridge Tests
================================================================
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from trailhead.database import engine as db
from trailhead.database.models import TrailBadge


class TestCreateEngine:
    def test_missing_url(self, monkeypatch):
        monkeypatch.setattr(db, "load_dotenv", lambda: False)
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            db.create_db_engine()


class TestGetSession:
    def test_commits_on_success(self, db_engine):
        with db.get_session(db_engine) as session:
            session.add(TrailBadge(company_id="acme", name="Kept"))
        with db.get_session(db_engine) as session:
            assert session.scalar(select(func.count()).select_from(TrailBadge)) == 1

    def test_rolls_back_on_error(self, db_engine):
        with pytest.raises(RuntimeError):
            with db.get_session(db_engine) as session:
                session.add(TrailBadge(company_id="acme", name="Dropped"))
                session.flush()
                raise RuntimeError("boom")
        with db.get_session(db_engine) as session:
            assert session.scalar(select(func.count()).select_from(TrailBadge)) == 0


class TestRunDb:
    def test_runs_sync_call_off_loop(self, lifecycle, make_template):
        template = make_template()
        result = asyncio.run(db.run_db(lifecycle.start, "u1", template.id))
        assert result.trail.template_id == template.id
