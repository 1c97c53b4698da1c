"""
Atelier Platform
Participant feedback — post-workshop ratings feeding organizer progression.
"""

from datetime import datetime, timezone

from atelier.models import db


class ParticipantFeedback(db.Model):
    __tablename__ = "participant_feedbacks"
    __table_args__ = (
        db.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_feedback_rating_range"),
    )

    id = db.Column(db.Integer, primary_key=True)
    participation_id = db.Column(
        db.String(36), db.ForeignKey("participations.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    rating = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    participation = db.relationship("Participation")

    def to_dict(self):
        return {
            "id": self.id,
            "participation_id": self.participation_id,
            "rating": self.rating,
            "comment": self.comment,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
