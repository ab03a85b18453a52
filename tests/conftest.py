"""
tests/conftest.py — Shared Test Fixtures
=========================================
In-memory SQLite engine with every trail table, plus small fakes for the
engine's external collaborators (user directory, coin wallet, notifier).
"""

from __future__ import annotations

import logging
from typing import Any

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from trailhead.config import TrailheadConfig
from trailhead.database.models import Base
from trailhead.engine.access import UserProfile
from trailhead.services import badge_service, template_service
from trailhead.services.collaborators import CreditOutcome
from trailhead.services.reward_service import RewardDispatcher
from trailhead.services.trail_service import TrailLifecycle

COMPANY = "acme"

_log = logging.getLogger("tests.fakes")


@compiles(PG_JSONB, "sqlite")
def _compile_jsonb_as_text(type_, compiler, **kw):
    return "TEXT"


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Trailhead tables.

    Uses StaticPool so every session sees the same in-memory database.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------
class FakeDirectory:
    """User directory backed by a dict of profiles."""

    def __init__(self) -> None:
        self.profiles: dict[str, UserProfile] = {}

    def add(self, user_id: str, *, level=None, tags=(), roles=()) -> UserProfile:
        profile = UserProfile(
            user_id=user_id, level=level, tags=frozenset(tags), roles=frozenset(roles)
        )
        self.profiles[user_id] = profile
        return profile

    def get_user_attributes(self, user_id: str) -> UserProfile | None:
        return self.profiles.get(user_id)


class FakeWallet:
    """Records credits; de-duplicates on the idempotency key like a real wallet."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.balances: dict[str, int] = {}
        self.seen_keys: set[str] = set()
        self.fail_with: Exception | None = None
        self.outcome = CreditOutcome.OK

    def credit(self, user_id, amount, reason, idempotency_key):
        self.calls.append({
            "user_id": user_id, "amount": amount,
            "reason": reason, "idempotency_key": idempotency_key,
        })
        if self.fail_with is not None:
            raise self.fail_with
        if idempotency_key not in self.seen_keys:
            self.seen_keys.add(idempotency_key)
            self.balances[user_id] = self.balances.get(user_id, 0) + amount
        return self.outcome


class RecordingNotifier:
    def __init__(self) -> None:
        self.completed: list[int] = []
        self.awarded: list[tuple[int, int]] = []

    def trail_completed(self, trail) -> None:
        self.completed.append(trail.id)

    def badge_awarded(self, award, badge) -> None:
        self.awarded.append((award.id, badge.id))


class InlineBackground:
    """Runs submitted work immediately, logging failures like the real pool.

    SQLite with a StaticPool shares a single connection, so background
    threads would race the test thread on it.
    """

    def __init__(self) -> None:
        self.submitted: list[str] = []

    def submit(self, func, *args, **kwargs):
        self.submitted.append(getattr(func, "__name__", repr(func)))
        try:
            return func(*args, **kwargs)
        except Exception:
            _log.exception("Background task failed")
            return None

    def wait(self, timeout=None) -> bool:
        return True

    def shutdown(self) -> None:
        pass


@pytest.fixture
def config() -> TrailheadConfig:
    return TrailheadConfig(community_name="Test Community")


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def wallet() -> FakeWallet:
    return FakeWallet()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def background() -> InlineBackground:
    return InlineBackground()


@pytest.fixture
def rewards(db_engine, wallet, config, background, notifier) -> RewardDispatcher:
    return RewardDispatcher(
        db_engine, wallet, config=config, background=background, notifier=notifier
    )


@pytest.fixture
def lifecycle(db_engine, directory, rewards, config) -> TrailLifecycle:
    return TrailLifecycle(db_engine, directory, rewards, config=config)


# ---------------------------------------------------------------------------
# Seed factories
# ---------------------------------------------------------------------------
@pytest.fixture
def make_badge(db_engine):
    def _make(name: str = "Explorer", coins: int = 50, **extra):
        return badge_service.create_badge(
            db_engine,
            {"company_id": COMPANY, "name": name, "coins_reward": coins, **extra},
            actor_id="admin-1",
        )
    return _make


@pytest.fixture
def make_template(db_engine):
    """Create a template; ``stages`` is a list of (name, required) pairs."""
    def _make(
        name: str = "Onboarding",
        stages: list[tuple[str, bool]] | None = None,
        **extra,
    ):
        if stages is None:
            stages = [("Read the guide", True), ("Say hello", True)]
        return template_service.create_template(
            db_engine,
            {
                "company_id": COMPANY,
                "name": name,
                "stages": [{"name": n, "is_required": r} for n, r in stages],
                **extra,
            },
            actor_id="admin-1",
        )
    return _make
