"""
tests/test_reward_service.py — Reward Dispatcher Integration Tests
===================================================================
Badge awards are issued at most once per (trail, badge); coin credits are
keyed so the wallet never pays twice, and failed credits are retried
without creating new awards.

Uses an in-memory SQLite database via the shared conftest fixtures.
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from trailhead.database.models import BadgeAward, CreditStatus
from trailhead.services import badge_service, template_service
from trailhead.services.collaborators import CreditOutcome


def _award_count(engine) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(BadgeAward))


def _reload(engine, award_id: int) -> BadgeAward:
    with Session(engine) as session:
        return session.get(BadgeAward, award_id)


@pytest.fixture
def finished_trail(make_template, lifecycle):
    """A completed trail whose template carries no badge."""
    template = make_template(stages=[("only", True)])
    trail = lifecycle.start("u1", template.id).trail
    return lifecycle.complete(trail.id)


class TestIssue:
    def test_first_issue_credits_once(self, db_engine, rewards, wallet, notifier,
                                      finished_trail, make_badge):
        badge = make_badge("Explorer", coins=50)
        result = rewards.issue(finished_trail, badge)

        assert result.already_awarded is False
        award = _reload(db_engine, result.award.id)
        assert award.credit_status == CreditStatus.CREDITED
        assert award.credit_attempts == 1
        assert award.credited_at is not None
        assert award.coins_reward == 50

        assert len(wallet.calls) == 1
        call = wallet.calls[0]
        assert call["user_id"] == "u1"
        assert call["amount"] == 50
        assert call["reason"] == "Trail badge earned: Explorer"
        assert call["idempotency_key"] == f"trail-badge-award:{award.id}"
        assert notifier.awarded == [(award.id, badge.id)]

    def test_second_issue_returns_existing(self, db_engine, rewards, wallet,
                                           finished_trail, make_badge):
        badge = make_badge(coins=50)
        first = rewards.issue(finished_trail, badge)
        second = rewards.issue(finished_trail, badge)

        assert second.already_awarded is True
        assert second.award.id == first.award.id
        assert _award_count(db_engine) == 1
        assert len(wallet.calls) == 1
        assert wallet.balances == {"u1": 50}

    def test_zero_coin_badge_skips_wallet(self, db_engine, rewards, wallet,
                                          finished_trail, make_badge):
        badge = make_badge(coins=0)
        result = rewards.issue(finished_trail, badge)
        assert _reload(db_engine, result.award.id).credit_status == CreditStatus.SKIPPED
        assert wallet.calls == []

    def test_queued_outcome(self, db_engine, rewards, wallet, finished_trail, make_badge):
        wallet.outcome = CreditOutcome.QUEUED
        result = rewards.issue(finished_trail, make_badge())
        award = _reload(db_engine, result.award.id)
        assert award.credit_status == CreditStatus.QUEUED
        assert award.credited_at is None

        # Queued credits belong to the wallet now; the retry job leaves them.
        assert rewards.retry_credits() == {"checked": 0}

    def test_award_keeps_coin_amount_after_badge_edit(self, db_engine, rewards,
                                                      finished_trail, make_badge):
        badge = make_badge(coins=50)
        result = rewards.issue(finished_trail, badge)
        badge_service.update_badge(db_engine, badge.id, coins_reward=500)
        assert _reload(db_engine, result.award.id).coins_reward == 50


class TestCreditFailures:
    def test_wallet_error_is_recorded_not_raised(self, db_engine, rewards, wallet,
                                                 finished_trail, make_badge):
        wallet.fail_with = ConnectionError("wallet down")
        result = rewards.issue(finished_trail, make_badge())

        award = _reload(db_engine, result.award.id)
        assert award.credit_status == CreditStatus.FAILED
        assert award.credit_error == "wallet down"
        assert wallet.balances == {}

    def test_retry_reuses_key_and_award(self, db_engine, rewards, wallet,
                                        finished_trail, make_badge):
        wallet.fail_with = ConnectionError("wallet down")
        result = rewards.issue(finished_trail, make_badge(coins=30))

        wallet.fail_with = None
        summary = rewards.retry_credits()

        assert summary == {"checked": 1, "credited": 1}
        award = _reload(db_engine, result.award.id)
        assert award.credit_status == CreditStatus.CREDITED
        assert award.credit_attempts == 2
        assert award.credit_error is None
        assert _award_count(db_engine) == 1
        keys = {c["idempotency_key"] for c in wallet.calls}
        assert keys == {f"trail-badge-award:{award.id}"}
        assert wallet.balances == {"u1": 30}

    def test_retry_with_nothing_to_do(self, rewards):
        assert rewards.retry_credits() == {"checked": 0}


class TestResolveAndRepair:
    def test_inactive_badge_not_issued(self, db_engine, rewards, finished_trail, make_badge):
        badge = make_badge()
        badge_service.deactivate_badge(db_engine, badge.id)
        template_service.update_template(
            db_engine, finished_trail.template_id, completion_badge_id=badge.id
        )
        assert rewards.reward_completion(finished_trail) is None
        assert _award_count(db_engine) == 0

    def test_trail_override_wins(self, db_engine, rewards, lifecycle, make_badge):
        badge = make_badge("Custom")
        trail = lifecycle.start_custom(
            "u1", "acme",
            {"name": "My own", "stages": [{"name": "s"}], "completion_badge_id": badge.id},
        )
        completed = lifecycle.complete(trail.id)
        with Session(db_engine) as session:
            assert rewards.resolve_badge(session, completed).id == badge.id
        assert _award_count(db_engine) == 1

    def test_issue_missing_awards(self, db_engine, rewards, wallet,
                                  finished_trail, make_badge):
        badge = make_badge(coins=20)
        # Badge attached after the member had already finished.
        template_service.update_template(
            db_engine, finished_trail.template_id, completion_badge_id=badge.id
        )

        assert rewards.issue_missing_awards() == 1
        assert rewards.issue_missing_awards() == 0
        assert _award_count(db_engine) == 1
        assert wallet.balances == {"u1": 20}

    def test_issue_missing_awards_scoped_by_company(self, db_engine, rewards,
                                                    finished_trail, make_badge):
        badge = make_badge()
        template_service.update_template(
            db_engine, finished_trail.template_id, completion_badge_id=badge.id
        )
        assert rewards.issue_missing_awards(company_id="globex") == 0
        assert rewards.issue_missing_awards(company_id="acme") == 1
