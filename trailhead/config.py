"""
trailhead.config — YAML Configuration Loader
=============================================

Reads ``config.yaml`` for engine tuning that operators may want to change
without a deploy: the community display name, the wording attached to coin
credits, the size of the background pool that delivers credits and
notifications, and how many times a conflicting trail write is retried.

The database URL is **not** here; it comes from ``DATABASE_URL`` (see
:mod:`trailhead.database.engine`).

Usage::

    from trailhead.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.community_name)        # "Trailhead Dev"
    print(cfg.credit_reason("Explorer"))  # "Trail badge earned: Explorer"
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

DEFAULT_CREDIT_REASON = "Trail badge earned: {badge}"


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TrailheadConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str

    # Rewards
    credit_reason_template: str = DEFAULT_CREDIT_REASON

    # Background delivery (wallet credits, notifications)
    background_workers: int = 4
    notifications_enabled: bool = True

    # Optimistic locking: how many times a stale trail write is replayed
    conflict_retries: int = 1

    def credit_reason(self, badge_name: str) -> str:
        """Render the human-readable reason sent with a coin credit."""
        return self.credit_reason_template.format(badge=badge_name)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> TrailheadConfig:
    """Read *path* and return a :class:`TrailheadConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If a numeric setting is out of range.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    workers = int(raw.get("background_workers", 4))
    if workers < 1:
        raise ValueError("background_workers must be at least 1")
    retries = int(raw.get("conflict_retries", 1))
    if retries < 0:
        raise ValueError("conflict_retries cannot be negative")

    return TrailheadConfig(
        community_name=raw["community_name"],
        credit_reason_template=raw.get("credit_reason_template") or DEFAULT_CREDIT_REASON,
        background_workers=workers,
        notifications_enabled=bool(raw.get("notifications_enabled", True)),
        conflict_retries=retries,
    )
