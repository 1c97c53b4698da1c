"""
Workshops blueprint — catalog, workshop lifecycle and reconfirmation.

Endpoint groups:
  Catalog            GET/POST /api/v1/families
                     POST     /api/v1/families/<family_id>/types
  Workshops          GET/POST /api/v1/workshops
                     GET/PATCH /api/v1/workshops/<workshop_id>
  Lifecycle          POST /api/v1/workshops/<workshop_id>/close
                     POST /api/v1/workshops/<workshop_id>/cancel
                     POST /api/v1/workshops/close-ended
  Reconfirmation     GET  /api/v1/workshops/<workshop_id>/unconfirmed
  Roster             GET  /api/v1/workshops/<workshop_id>/participants
                     POST /api/v1/workshops/<workshop_id>/attendance/mark-all
  History / export   GET  /api/v1/workshops/<workshop_id>/history
                     GET  /api/v1/workshops/<workshop_id>/calendar.ics

Services own the business rules and flush; this layer commits.
"""

import logging

from flask import Blueprint, Response, jsonify, request
from sqlalchemy import select

from atelier.blueprints import actor_id, register_error_handlers
from atelier.models import db
from atelier.models.workshop import Workshop, WorkshopFamily, WorkshopType
from atelier.services import calendar_export
from atelier.services import participation_lifecycle as participations
from atelier.services import workshop_lifecycle as lifecycle
from atelier.services.classification import get_classification_label
from atelier.services.pricing import get_ticket_types
from atelier.utils.errors import E, api_error
from atelier.utils.helpers import db_commit_or_error, get_or_404

logger = logging.getLogger(__name__)

workshops_bp = Blueprint("workshops", __name__, url_prefix="/api/v1")
register_error_handlers(workshops_bp)


def _workshop_payload(workshop: Workshop) -> dict:
    d = workshop.to_dict()
    d["remaining_seats"] = participations.remaining_seats(workshop.id)
    d["classification_label"] = get_classification_label(workshop.classification_status)
    d["ticket_types"] = [
        t.to_dict() for t in get_ticket_types(workshop.is_formation, workshop.classification_status)
    ]
    return d


# ── Catalog ──────────────────────────────────────────────────────────────────


@workshops_bp.route("/families", methods=["GET"])
def list_families():
    families = db.session.execute(select(WorkshopFamily).order_by(WorkshopFamily.code)).scalars()
    return jsonify([
        {**f.to_dict(), "types": [t.to_dict() for t in f.types.order_by(WorkshopType.code)]}
        for f in families
    ])


@workshops_bp.route("/families", methods=["POST"])
def create_family():
    data = request.get_json(silent=True) or {}
    if not data.get("code") or not data.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "code and name are required")
    family = WorkshopFamily(code=data["code"].strip(), name=data["name"].strip())
    db.session.add(family)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(family.to_dict()), 201


@workshops_bp.route("/families/<family_id>/types", methods=["POST"])
def create_type(family_id):
    family, err = get_or_404(WorkshopFamily, family_id, "Workshop family")
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not data.get("code") or not data.get("label"):
        return api_error(E.VALIDATION_REQUIRED, "code and label are required")
    duration = data.get("default_duration_minutes")
    if duration is not None and (not isinstance(duration, int) or duration <= 0):
        return api_error(E.VALIDATION_INVALID, "default_duration_minutes must be a positive integer")
    wtype = WorkshopType(
        family_id=family.id,
        code=data["code"].strip(),
        label=data["label"].strip(),
        is_formation=bool(data.get("is_formation", False)),
        default_duration_minutes=duration,
    )
    db.session.add(wtype)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(wtype.to_dict()), 201


# ── Workshops ────────────────────────────────────────────────────────────────


@workshops_bp.route("/workshops", methods=["GET"])
def list_workshops():
    stmt = select(Workshop)
    if request.args.get("family_id"):
        stmt = stmt.where(Workshop.family_id == request.args["family_id"])
    if request.args.get("organizer_id"):
        stmt = stmt.where(Workshop.organizer_id == request.args["organizer_id"])
    if request.args.get("lifecycle_status"):
        stmt = stmt.where(Workshop.lifecycle_status == request.args["lifecycle_status"])
    workshops = db.session.execute(stmt.order_by(Workshop.start_at)).scalars()
    return jsonify([_workshop_payload(w) for w in workshops])


@workshops_bp.route("/workshops", methods=["POST"])
def create_workshop():
    data = request.get_json(silent=True) or {}
    organizer = data.get("organizer_id") or actor_id(data)
    if not organizer:
        return api_error(E.VALIDATION_REQUIRED, "organizer_id is required")
    workshop = lifecycle.create_workshop(data, organizer)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(_workshop_payload(workshop)), 201


@workshops_bp.route("/workshops/<workshop_id>", methods=["GET"])
def get_workshop(workshop_id):
    workshop, err = get_or_404(Workshop, workshop_id, "Workshop")
    if err:
        return err
    return jsonify(_workshop_payload(workshop))


@workshops_bp.route("/workshops/<workshop_id>", methods=["PATCH", "PUT"])
def update_workshop(workshop_id):
    data = request.get_json(silent=True) or {}
    actor = actor_id(data)
    updates = {k: v for k, v in data.items() if k != "actor_id"}
    if not updates:
        return api_error(E.VALIDATION_REQUIRED, "No fields to update")
    result = lifecycle.update_workshop(workshop_id, updates, actor)
    err = db_commit_or_error()
    if err:
        return err
    workshop = db.session.get(Workshop, workshop_id)
    return jsonify({**result, "workshop": _workshop_payload(workshop)})


# ── Lifecycle ────────────────────────────────────────────────────────────────


@workshops_bp.route("/workshops/<workshop_id>/close", methods=["POST"])
def close_workshop(workshop_id):
    data = request.get_json(silent=True) or {}
    result = lifecycle.close_workshop(workshop_id, actor_id(data))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result)


@workshops_bp.route("/workshops/<workshop_id>/cancel", methods=["POST"])
def cancel_workshop(workshop_id):
    data = request.get_json(silent=True) or {}
    result = lifecycle.cancel_workshop(workshop_id, actor_id(data), reason=data.get("reason"))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result)


@workshops_bp.route("/workshops/close-ended", methods=["POST"])
def close_ended():
    closed = lifecycle.close_ended_workshops()
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"closed": closed, "count": len(closed)})


# ── Reconfirmation & roster ──────────────────────────────────────────────────


@workshops_bp.route("/workshops/<workshop_id>/unconfirmed", methods=["GET"])
def unconfirmed_participants(workshop_id):
    dimension = request.args.get("dimension") or None
    items = lifecycle.get_unconfirmed_participants(workshop_id, dimension)
    return jsonify({"dimension": dimension, "total": len(items),
                    "items": [p.to_dict(include_user=True) for p in items]})


@workshops_bp.route("/workshops/<workshop_id>/participants", methods=["GET"])
def list_participants(workshop_id):
    _workshop, err = get_or_404(Workshop, workshop_id, "Workshop")
    if err:
        return err
    items = participations.list_participants(workshop_id, request.args.get("status"))
    return jsonify({
        "total": len(items),
        "remaining_seats": participations.remaining_seats(workshop_id),
        "items": [p.to_dict(include_user=True) for p in items],
    })


@workshops_bp.route("/workshops/<workshop_id>/attendance/mark-all", methods=["POST"])
def mark_all_attended(workshop_id):
    data = request.get_json(silent=True) or {}
    result = participations.mark_all_attended(workshop_id, actor_id(data))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result)


# ── History & calendar ───────────────────────────────────────────────────────


@workshops_bp.route("/workshops/<workshop_id>/history", methods=["GET"])
def workshop_history(workshop_id):
    entries = lifecycle.list_history(workshop_id, request.args.get("log_type"))
    return jsonify({"total": len(entries), "items": [e.to_dict() for e in entries]})


@workshops_bp.route("/workshops/<workshop_id>/calendar.ics", methods=["GET"])
def workshop_calendar(workshop_id):
    workshop, err = get_or_404(Workshop, workshop_id, "Workshop")
    if err:
        return err
    return Response(
        calendar_export.generate_ics(workshop),
        mimetype="text/calendar",
        headers={"Content-Disposition": f'attachment; filename="atelier-{workshop.id}.ics"'},
    )
