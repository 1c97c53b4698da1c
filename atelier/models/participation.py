"""
Atelier Platform — Participation Model

One user's booking on one workshop.

Status lifecycle (see services.participation_lifecycle):
    en_attente → paye
    inscrit | paye → rembourse | echange
    en_attente | inscrit | paye → annule
    rembourse | annule → inscrit
"""

import uuid
from datetime import datetime, timezone

from atelier.models import db


__all__ = [
    "Participation",
    "PARTICIPATION_STATUSES",
    "PAYMENT_STATUSES",
    "TICKET_TYPES",
    "ACTIVE_STATUSES",
    "CONFIRMED_STATUSES",
]


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


PARTICIPATION_STATUSES = ("en_attente", "inscrit", "paye", "rembourse", "echange", "annule")
PAYMENT_STATUSES = ("none", "pending", "paid", "refunded", "failed")
TICKET_TYPES = ("normal", "reduit", "gratuit", "pro")

# Statuses that hold (or wait for) a seat; unconfirmed-change checks apply to these.
ACTIVE_STATUSES = ("en_attente", "inscrit", "paye")
# Statuses counted against audience_number.
CONFIRMED_STATUSES = ("inscrit", "paye")


class Participation(db.Model):
    __tablename__ = "participations"
    __table_args__ = (
        # At most one live (non-annule) booking per (user, workshop).
        db.Index(
            "uq_participation_user_workshop_live",
            "user_id", "workshop_id",
            unique=True,
            sqlite_where=db.text("status != 'annule'"),
            postgresql_where=db.text("status != 'annule'"),
        ),
        db.Index("idx_participation_workshop_status", "workshop_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    workshop_id = db.Column(
        db.String(36), db.ForeignKey("workshops.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True,
    )

    status = db.Column(
        db.String(20), nullable=False, default="en_attente",
        comment="en_attente | inscrit | paye | rembourse | echange | annule",
    )
    payment_status = db.Column(
        db.String(20), nullable=False, default="none",
        comment="none | pending | paid | refunded | failed",
    )
    ticket_type = db.Column(
        db.String(20), nullable=False, default="normal",
        comment="normal | reduit | gratuit | pro",
    )
    price_paid = db.Column(
        db.Numeric(8, 2), nullable=False, default=0,
        comment="Snapshot at registration, never recomputed",
    )
    confirmation_date = db.Column(db.DateTime(timezone=True), nullable=True)

    exchange_parent_participation_id = db.Column(
        db.String(36), db.ForeignKey("participations.id", ondelete="SET NULL"),
        nullable=True,
    )

    date_confirmation_version = db.Column(db.Integer, nullable=False, default=1)
    location_confirmation_version = db.Column(db.Integer, nullable=False, default=1)

    attended = db.Column(db.Boolean, nullable=True)

    row_version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    __mapper_args__ = {"version_id_col": row_version}

    user = db.relationship("User")
    exchange_parent = db.relationship("Participation", remote_side=[id])

    def to_dict(self, include_user: bool = False):
        d = {
            "id": self.id,
            "workshop_id": self.workshop_id,
            "user_id": self.user_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "ticket_type": self.ticket_type,
            "price_paid": float(self.price_paid) if self.price_paid is not None else 0.0,
            "confirmation_date": self.confirmation_date.isoformat() if self.confirmation_date else None,
            "exchange_parent_participation_id": self.exchange_parent_participation_id,
            "date_confirmation_version": self.date_confirmation_version,
            "location_confirmation_version": self.location_confirmation_version,
            "attended": self.attended,
            "row_version": self.row_version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_user and self.user:
            d["user"] = self.user.to_dict()
        return d

    def __repr__(self):
        return f"<Participation {self.id[:8]} {self.status}>"
