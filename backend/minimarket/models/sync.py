from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class SyncEvent(db.Model):
    """
    Server-side audit row for every sync upload / download request.

    Append-only. Old rows are removed by `flask maintenance cleanup-sync-events`.
    """
    __tablename__ = "sync_events"
    __table_args__ = (
        db.Index("ix_sync_events_user_occurred", "user_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    # upload, download
    direction = db.Column(db.String(16), nullable=False)
    success = db.Column(db.Boolean, nullable=False, default=True)

    processed = db.Column(db.Integer, nullable=False, default=0)
    conflicts = db.Column(db.Integer, nullable=False, default=0)
    errors = db.Column(db.Integer, nullable=False, default=0)

    # Per-entity result counters / request parameters
    summary = db.Column(db.JSON, nullable=True)
    client_checkpoint = db.Column(db.String(64), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)

    occurred_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "direction": self.direction,
            "success": self.success,
            "processed": self.processed,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "summary": self.summary,
            "client_checkpoint": self.client_checkpoint,
            "occurred_at": to_utc_z(self.occurred_at),
        }
