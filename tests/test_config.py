"""
tests/test_config.py — YAML Configuration Loader Tests
=======================================================
"""

from __future__ import annotations

import pytest

from trailhead.config import DEFAULT_CREDIT_REASON, load_config


def _write(tmp_path, text: str):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_minimal_file_uses_defaults(self, tmp_path):
        cfg = load_config(_write(tmp_path, 'community_name: "Acme"\n'))
        assert cfg.community_name == "Acme"
        assert cfg.credit_reason_template == DEFAULT_CREDIT_REASON
        assert cfg.background_workers == 4
        assert cfg.notifications_enabled is True
        assert cfg.conflict_retries == 1

    def test_overrides(self, tmp_path):
        cfg = load_config(_write(tmp_path, (
            "community_name: Acme\n"
            "credit_reason_template: 'Badge {badge}!'\n"
            "background_workers: 2\n"
            "notifications_enabled: false\n"
            "conflict_retries: 0\n"
        )))
        assert cfg.credit_reason("Explorer") == "Badge Explorer!"
        assert cfg.background_workers == 2
        assert cfg.notifications_enabled is False
        assert cfg.conflict_retries == 0

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_missing_community_name(self, tmp_path):
        with pytest.raises(KeyError):
            load_config(_write(tmp_path, "background_workers: 2\n"))

    def test_zero_workers_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            load_config(_write(tmp_path, "community_name: A\nbackground_workers: 0\n"))

    def test_negative_retries_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            load_config(_write(tmp_path, "community_name: A\nconflict_retries: -1\n"))
