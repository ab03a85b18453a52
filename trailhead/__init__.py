"""
Trailhead — Trail Progression Engine for Community Platforms
==============================================================
Reusable trail templates made of ordered stages, per-member trail
instances that track stage completion, eligibility gating on audience
criteria and prerequisite trails, and exactly-once badge + coin rewards
when a trail is completed.

Package layout::

    trailhead/
    ├── config.py          # YAML → typed Python config
    ├── errors.py          # Domain exception hierarchy
    ├── schemas.py         # Pydantic input models (template / stage / badge)
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + session + async helper
    │   └── models.py      # ORM models (templates, trails, stages, responses, awards)
    ├── engine/
    │   ├── access.py      # Access criteria evaluation (pure)
    │   ├── prerequisites.py # Prerequisite resolution + cycle checks (pure)
    │   └── progress.py    # Stage progress arithmetic (pure)
    └── services/
        ├── collaborators.py   # User directory / wallet / notifier protocols
        ├── background.py      # Fire-and-forget thread pool runner
        ├── template_service.py # Audited template store
        ├── badge_service.py   # Badge catalogue
        ├── reward_service.py  # At-most-once badge awards + coin credits
        └── trail_service.py   # Trail instance lifecycle (state machine)
"""

__version__ = "0.1.0"
