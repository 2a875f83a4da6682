# Overview: Service-layer operations for maintenance; prunes audit tables.

from __future__ import annotations

from datetime import timedelta

from ..extensions import db
from ..models import SyncEvent
from ..time_utils import utcnow


def cleanup_sync_events(*, retention_days: int = 90) -> int:
    """Delete sync events older than retention_days."""
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SyncEvent).filter(
        SyncEvent.occurred_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
