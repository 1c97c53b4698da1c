"""
Atelier Platform
User model — the minimal identity the booking core needs (names, email).

Authentication lives outside this application; rows are created on first
registration or by an organizer's quick-add.
"""

import uuid
from datetime import datetime, timezone

from atelier.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def full_name(self) -> str:
        parts = [self.first_name or "", self.last_name or ""]
        return " ".join(p for p in parts if p).strip() or self.email

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
        }

    def __repr__(self):
        return f"<User {self.email}>"


def get_or_create_user(email: str, first_name: str = "", last_name: str = "") -> User:
    """Return the user for ``email`` (case-insensitive), creating it if missing.

    Uses ``flush`` so callers keep transaction control.
    """
    normalized = email.strip().lower()
    user = User.query.filter_by(email=normalized).first()
    if user:
        return user
    user = User(email=normalized, first_name=first_name.strip() or None,
                last_name=last_name.strip() or None)
    db.session.add(user)
    db.session.flush()
    return user
