"""
Atelier Platform — Workshop Models

WorkshopFamily, WorkshopType, Workshop.

A Workshop's ``end_at`` is always ``start_at + base duration of its type +
extra_duration_minutes``; only ``services.workshop_lifecycle`` writes those
three columns.
"""

import uuid
from datetime import datetime, timedelta, timezone

from atelier.models import db


__all__ = [
    "WorkshopFamily",
    "WorkshopType",
    "Workshop",
    "WORKSHOP_LIFECYCLE_STATUSES",
    "DEFAULT_TYPE_DURATIONS",
    "FALLBACK_DURATION_MINUTES",
    "base_duration_minutes",
    "compute_end_at",
]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────

WORKSHOP_LIFECYCLE_STATUSES = ("active", "closed", "canceled")

# Built-in base durations (minutes) for type codes without a configured value.
DEFAULT_TYPE_DURATIONS = {
    "formation": 180,
    "formation_pro_1": 120,
    "formation_pro_2": 150,
    "formation_formateur": 240,
    "formation_retex": 90,
}
FALLBACK_DURATION_MINUTES = 180


def base_duration_minutes(workshop_type) -> int:
    """Base duration of a WorkshopType (configured value, else built-in default)."""
    if workshop_type is None:
        return FALLBACK_DURATION_MINUTES
    if workshop_type.default_duration_minutes:
        return workshop_type.default_duration_minutes
    return DEFAULT_TYPE_DURATIONS.get(workshop_type.code, FALLBACK_DURATION_MINUTES)


def compute_end_at(start_at: datetime, workshop_type, extra_minutes: int = 0) -> datetime:
    return start_at + timedelta(minutes=base_duration_minutes(workshop_type) + (extra_minutes or 0))


# ═════════════════════════════════════════════════════════════════════════════
# 1. WorkshopFamily — product line (e.g. FDFP, HD)
# ═════════════════════════════════════════════════════════════════════════════

class WorkshopFamily(db.Model):
    __tablename__ = "workshop_families"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    code = db.Column(db.String(20), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    types = db.relationship(
        "WorkshopType", backref="family", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {"id": self.id, "code": self.code, "name": self.name}

    def __repr__(self):
        return f"<WorkshopFamily {self.code}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. WorkshopType — ordinary workshop or one of the formation tiers
# ═════════════════════════════════════════════════════════════════════════════

class WorkshopType(db.Model):
    __tablename__ = "workshop_types"
    __table_args__ = (
        db.UniqueConstraint("family_id", "code", name="uq_wtype_family_code"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    family_id = db.Column(
        db.String(36), db.ForeignKey("workshop_families.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    code = db.Column(
        db.String(40), nullable=False,
        comment="workshop | formation | formation_pro_1 | formation_pro_2 | formation_formateur | formation_retex",
    )
    label = db.Column(db.String(200), nullable=False)
    is_formation = db.Column(db.Boolean, nullable=False, default=False)
    default_duration_minutes = db.Column(db.Integer, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "family_id": self.family_id,
            "code": self.code,
            "label": self.label,
            "is_formation": self.is_formation,
            "default_duration_minutes": base_duration_minutes(self),
        }

    def __repr__(self):
        return f"<WorkshopType {self.code}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. Workshop — one scheduled session with a roster
# ═════════════════════════════════════════════════════════════════════════════

class Workshop(db.Model):
    """
    A scheduled workshop. Lifecycle: active → closed | canceled (both sinks).

    Date and location edits are tracked on two independent axes: each has a
    ``modified_*_flag``, a monotonically increasing ``*_confirmation_version``
    (starts at 1) and an append-only ``*_change_history`` list.
    ``roster_version`` is bumped by every capacity-consuming write and is used
    as a conditional-update token.
    """

    __tablename__ = "workshops"
    __table_args__ = (
        db.Index("idx_ws_family_status", "family_id", "lifecycle_status"),
        db.Index("idx_ws_organizer_status", "organizer_id", "lifecycle_status"),
        db.Index("idx_ws_start", "start_at"),
        db.CheckConstraint("audience_number >= 0", name="ck_ws_audience_nonneg"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    family_id = db.Column(
        db.String(36), db.ForeignKey("workshop_families.id"), nullable=False,
    )
    type_id = db.Column(
        db.String(36), db.ForeignKey("workshop_types.id"), nullable=False,
    )
    organizer_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False,
    )

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    language = db.Column(db.String(5), nullable=False, default="fr")

    # Scheduling
    start_at = db.Column(db.DateTime(timezone=True), nullable=False)
    end_at = db.Column(db.DateTime(timezone=True), nullable=False)
    extra_duration_minutes = db.Column(db.Integer, nullable=False, default=0)

    # Modality: location XOR visio/mural links
    is_remote = db.Column(db.Boolean, nullable=False, default=False)
    location = db.Column(
        db.JSON, nullable=True,
        comment="{venue_name, street, city, postal_code}",
    )
    visio_link = db.Column(db.String(500), nullable=True)
    mural_link = db.Column(db.String(500), nullable=True)

    audience_number = db.Column(db.Integer, nullable=False, default=0)
    classification_status = db.Column(
        db.String(40), nullable=True,
        comment="Resolver output; NULL = not yet classified",
    )
    lifecycle_status = db.Column(
        db.String(20), nullable=False, default="active",
        comment="active | closed | canceled",
    )

    # Change-reconfirmation protocol
    modified_date_flag = db.Column(db.Boolean, nullable=False, default=False)
    date_confirmation_version = db.Column(db.Integer, nullable=False, default=1)
    date_change_history = db.Column(db.JSON, nullable=False, default=list)
    modified_location_flag = db.Column(db.Boolean, nullable=False, default=False)
    location_confirmation_version = db.Column(db.Integer, nullable=False, default=1)
    location_change_history = db.Column(db.JSON, nullable=False, default=list)

    roster_version = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Relationships ────────────────────────────────────────────────────
    family = db.relationship("WorkshopFamily")
    workshop_type = db.relationship("WorkshopType")
    organizer = db.relationship("User")
    participations = db.relationship(
        "Participation", backref="workshop", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    @property
    def is_formation(self) -> bool:
        return bool(self.workshop_type and self.workshop_type.is_formation)

    def to_dict(self):
        return {
            "id": self.id,
            "family_id": self.family_id,
            "type_id": self.type_id,
            "type_code": self.workshop_type.code if self.workshop_type else None,
            "organizer_id": self.organizer_id,
            "title": self.title,
            "description": self.description,
            "language": self.language,
            "start_at": self.start_at.isoformat() if self.start_at else None,
            "end_at": self.end_at.isoformat() if self.end_at else None,
            "extra_duration_minutes": self.extra_duration_minutes,
            "is_remote": self.is_remote,
            "location": self.location,
            "visio_link": self.visio_link,
            "mural_link": self.mural_link,
            "audience_number": self.audience_number,
            "classification_status": self.classification_status,
            "lifecycle_status": self.lifecycle_status,
            "modified_date_flag": self.modified_date_flag,
            "date_confirmation_version": self.date_confirmation_version,
            "modified_location_flag": self.modified_location_flag,
            "location_confirmation_version": self.location_confirmation_version,
            "date_change_history": list(self.date_change_history or []),
            "location_change_history": list(self.location_change_history or []),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Workshop {self.id[:8]}: {self.title}>"
