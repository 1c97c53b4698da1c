"""
Atelier Platform — Progression Models

RoleLevel:        one rung of a family's organizer ladder.
RoleRequirement:  declarative thresholds a RoleLevel needs to be unlocked.
"""

import uuid

from atelier.models import db


def _uuid():
    return str(uuid.uuid4())


class RoleLevel(db.Model):
    __tablename__ = "role_levels"
    __table_args__ = (
        db.UniqueConstraint("family_id", "level", name="uq_role_level_family_level"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    family_id = db.Column(
        db.String(36), db.ForeignKey("workshop_families.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    level = db.Column(db.Integer, nullable=False)
    code = db.Column(db.String(40), nullable=False)
    label = db.Column(db.String(200), nullable=False)
    badge_label = db.Column(db.String(100), nullable=True)
    badge_color = db.Column(db.String(20), nullable=True)

    requirement = db.relationship(
        "RoleRequirement", backref="role_level", uselist=False,
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "family_id": self.family_id,
            "level": self.level,
            "code": self.code,
            "label": self.label,
            "badge_label": self.badge_label,
            "badge_color": self.badge_color,
            "requirement": self.requirement.to_dict() if self.requirement else None,
        }

    def __repr__(self):
        return f"<RoleLevel {self.code} L{self.level}>"


class RoleRequirement(db.Model):
    __tablename__ = "role_requirements"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    role_level_id = db.Column(
        db.String(36), db.ForeignKey("role_levels.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    min_workshops_total = db.Column(db.Integer, nullable=False, default=0)
    min_workshops_in_person = db.Column(db.Integer, nullable=False, default=0)
    min_workshops_remote = db.Column(db.Integer, nullable=False, default=0)
    min_feedback_count = db.Column(db.Integer, nullable=False, default=0)
    min_feedback_avg = db.Column(db.Float, nullable=False, default=0.0)
    required_formation_types = db.Column(
        db.JSON, nullable=False, default=list,
        comment="Formation-type codes that must each appear in completed formations",
    )

    def to_dict(self):
        return {
            "min_workshops_total": self.min_workshops_total,
            "min_workshops_in_person": self.min_workshops_in_person,
            "min_workshops_remote": self.min_workshops_remote,
            "min_feedback_count": self.min_feedback_count,
            "min_feedback_avg": self.min_feedback_avg,
            "required_formation_types": list(self.required_formation_types or []),
        }
