"""
Atelier Platform
Workshop history — immutable, append-only trail of lifecycle events.
"""

from datetime import datetime, timezone

from atelier.models import db

# ── Constants ────────────────────────────────────────────────────────────────

HISTORY_LOG_TYPES = {
    "status_change",
    "field_edit",
    "participant_add",
    "participant_remove",
    "participant_reinscribe",
    "refund",
    "exchange",
    "payment",
    "confirmation",
    "attendance",
    "date_change",
    "location_change",
    "email_sent",
}


class WorkshopHistoryLog(db.Model):
    """
    One row per workshop event. Application code never updates or deletes
    these rows; ``metadata_json`` carries the event-specific payload.
    """

    __tablename__ = "workshop_history_logs"
    __table_args__ = (
        db.Index("idx_whl_workshop_ts", "workshop_id", "created_at"),
        db.Index("idx_whl_log_type", "log_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workshop_id = db.Column(
        db.String(36), db.ForeignKey("workshops.id", ondelete="CASCADE"),
        nullable=False,
    )
    log_type = db.Column(db.String(40), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    metadata_json = db.Column("metadata", db.JSON, nullable=False, default=dict)
    actor_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="Subject participant, when the event concerns one",
    )
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workshop_id": self.workshop_id,
            "log_type": self.log_type,
            "description": self.description,
            "metadata": self.metadata_json or {},
            "actor_user_id": self.actor_user_id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<WorkshopHistoryLog {self.id}: {self.log_type} on {self.workshop_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_history(
    *,
    workshop_id: str,
    log_type: str,
    description: str = "",
    actor_user_id: str | None = None,
    user_id: str | None = None,
    metadata: dict | None = None,
) -> WorkshopHistoryLog:
    """
    Append a single history row. Uses ``flush`` so callers keep
    transaction control. Callers wrap this in try/except: a failed
    history write never fails the operation that triggered it.
    """
    if log_type not in HISTORY_LOG_TYPES:
        raise ValueError(f"Unknown history log_type: {log_type}")

    entry = WorkshopHistoryLog(
        workshop_id=workshop_id,
        log_type=log_type,
        description=description,
        actor_user_id=actor_user_id,
        user_id=user_id,
        metadata_json=metadata or {},
    )
    db.session.add(entry)
    db.session.flush()
    return entry
