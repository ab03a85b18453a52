"""
trailhead.services.audit — Admin Audit Helpers
===============================================

Every administrative write (template and badge edits, reorders, pins,
assignments) follows the same pattern inside one transaction:

  1. Read a "before" snapshot
  2. Apply the change and flush
  3. Write an ``admin_log`` row with before/after JSON
  4. Commit
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from trailhead.database.models import AdminLog

SYSTEM_ACTOR = "system"


def row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        result[col.name] = val
    return result


def log_admin_action(
    session: Session,
    *,
    actor_id: str | None,
    action_type: str,
    target_table: str,
    target_id: Any,
    before: dict | None = None,
    after: dict | None = None,
    reason: str | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=actor_id or SYSTEM_ACTOR,
        action_type=str(action_type),
        target_table=target_table,
        target_id=str(target_id) if target_id is not None else None,
        before_snapshot=before,
        after_snapshot=after,
        reason=reason,
    ))
