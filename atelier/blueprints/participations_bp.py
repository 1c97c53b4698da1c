"""
Participations blueprint — registration and booking transitions.

Endpoint groups:
  Users              POST /api/v1/users
  Registration       POST /api/v1/workshops/<workshop_id>/participations   (rate-limited)
  Participation      GET/DELETE /api/v1/participations/<participation_id>
  Transitions        POST /api/v1/participations/<participation_id>/transition
  Reconfirmation     POST /api/v1/participations/<participation_id>/confirm-change
  Attendance         POST /api/v1/participations/<participation_id>/attendance
  Feedback           POST /api/v1/participations/<participation_id>/feedback

Every mutating endpoint accepts an optional ``expected_version`` (the
participation's ``row_version``); a stale value yields 409 ConflictOrUnavailable.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from atelier import limiter
from atelier.blueprints import actor_id, register_error_handlers
from atelier.core.exceptions import InvalidStateError, ValidationError
from atelier.models import db
from atelier.models.feedback import ParticipantFeedback
from atelier.models.participation import Participation
from atelier.models.user import get_or_create_user
from atelier.services import participation_lifecycle as lifecycle
from atelier.utils.errors import E, api_error
from atelier.utils.helpers import as_utc, db_commit_or_error, get_or_404, utcnow

logger = logging.getLogger(__name__)

participations_bp = Blueprint("participations", __name__, url_prefix="/api/v1")
register_error_handlers(participations_bp)


def _registration_limit():
    return current_app.config.get("REGISTRATION_RATE_LIMIT", "30 per minute")


def _expected_version(data: dict):
    value = data.get("expected_version")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("expected_version must be an integer",
                              details={"expected_version": "integer expected"}) from None


def _participation_payload(p: Participation) -> dict:
    d = p.to_dict(include_user=True)
    d["available_transitions"] = lifecycle.get_available_participation_transitions(p)
    d["unconfirmed"] = {
        "date": lifecycle.is_unconfirmed(p, p.workshop, "date"),
        "location": lifecycle.is_unconfirmed(p, p.workshop, "location"),
    }
    return d


# ── Users ────────────────────────────────────────────────────────────────────


@participations_bp.route("/users", methods=["POST"])
def create_user():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip()
    if not email or "@" not in email:
        return api_error(E.VALIDATION_REQUIRED, "A valid email is required")
    user = get_or_create_user(email, data.get("first_name") or "", data.get("last_name") or "")
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(user.to_dict()), 201


# ── Registration ─────────────────────────────────────────────────────────────


@participations_bp.route("/workshops/<workshop_id>/participations", methods=["POST"])
@limiter.limit(_registration_limit)
def register(workshop_id):
    data = request.get_json(silent=True) or {}
    user_id = data.get("user_id")
    if not user_id:
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")

    p = lifecycle.register(
        workshop_id, user_id, actor_id(data) or user_id,
        ticket_type=data.get("ticket_type"),
        mark_paid=bool(data.get("mark_paid", False)),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(_participation_payload(p)), 201


# ── Participation ────────────────────────────────────────────────────────────


@participations_bp.route("/participations/<participation_id>", methods=["GET"])
def get_participation(participation_id):
    p, err = get_or_404(Participation, participation_id, "Participation")
    if err:
        return err
    return jsonify(_participation_payload(p))


@participations_bp.route("/participations/<participation_id>", methods=["DELETE"])
def remove_participation(participation_id):
    data = request.get_json(silent=True) or {}
    result = lifecycle.remove(participation_id, actor_id(data),
                              expected_version=_expected_version(data))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result)


@participations_bp.route("/participations/<participation_id>/transition", methods=["POST"])
def transition(participation_id):
    """
    Body: {"action": "confirm_payment" | "refund" | "cancel" | "exchange" | "reinscribe",
           "expected_version"?, "target_workshop_id"? (exchange),
           "initiated_by"?, "reason"? (refund)}
    """
    data = request.get_json(silent=True) or {}
    action = data.get("action")
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")

    kwargs = {"expected_version": _expected_version(data)}
    if action == "exchange":
        kwargs["target_workshop_id"] = data.get("target_workshop_id")
    elif action == "refund":
        kwargs["initiated_by"] = data.get("initiated_by") or "participant"
        kwargs["reason"] = data.get("reason")

    result = lifecycle.transition_participation(participation_id, action, actor_id(data), **kwargs)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result)


@participations_bp.route("/participations/<participation_id>/confirm-change", methods=["POST"])
def confirm_change(participation_id):
    data = request.get_json(silent=True) or {}
    dimension = data.get("dimension")
    if not dimension:
        return api_error(E.VALIDATION_REQUIRED, "dimension is required")
    result = lifecycle.confirm_change(participation_id, dimension, actor_id(data),
                                      expected_version=_expected_version(data))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result)


@participations_bp.route("/participations/<participation_id>/attendance", methods=["POST"])
def set_attendance(participation_id):
    data = request.get_json(silent=True) or {}
    if "attended" not in data:
        return api_error(E.VALIDATION_REQUIRED, "attended is required")
    result = lifecycle.set_attendance(participation_id, bool(data["attended"]), actor_id(data),
                                      expected_version=_expected_version(data))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result)


@participations_bp.route("/participations/<participation_id>/feedback", methods=["POST"])
def leave_feedback(participation_id):
    p, err = get_or_404(Participation, participation_id, "Participation")
    if err:
        return err
    data = request.get_json(silent=True) or {}
    rating = data.get("rating")
    if not isinstance(rating, int) or not 1 <= rating <= 5:
        return api_error(E.VALIDATION_INVALID, "rating must be an integer between 1 and 5")
    if utcnow() < as_utc(p.workshop.end_at):
        raise InvalidStateError("Feedback opens once the workshop has ended",
                                current=p.workshop.lifecycle_status, action="feedback")
    if ParticipantFeedback.query.filter_by(participation_id=p.id).first():
        return api_error(E.CONFLICT_DUPLICATE, "Feedback already recorded for this participation")

    feedback = ParticipantFeedback(participation_id=p.id, rating=rating, comment=data.get("comment"))
    db.session.add(feedback)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(feedback.to_dict()), 201
