"""
Progression blueprint — organizer certification ladder.

    GET  /api/v1/users/<user_id>/progression?family_id=…
    GET  /api/v1/users/<user_id>/progression/levels/<level>?family_id=…
    GET  /api/v1/families/<family_id>/role-levels
    POST /api/v1/families/<family_id>/role-levels
"""

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy import select

from atelier.blueprints import register_error_handlers
from atelier.models import db
from atelier.models.progression import RoleLevel, RoleRequirement
from atelier.models.workshop import WorkshopFamily
from atelier.services.progression import get_user_progression, require_level
from atelier.utils.errors import E, api_error
from atelier.utils.helpers import db_commit_or_error, get_or_404

logger = logging.getLogger(__name__)

progression_bp = Blueprint("progression", __name__, url_prefix="/api/v1")
register_error_handlers(progression_bp)

_REQUIREMENT_FIELDS = (
    "min_workshops_total", "min_workshops_in_person", "min_workshops_remote",
    "min_feedback_count",
)


@progression_bp.route("/users/<user_id>/progression", methods=["GET"])
def user_progression(user_id):
    family_id = request.args.get("family_id")
    if not family_id:
        return api_error(E.VALIDATION_REQUIRED, "family_id is required")
    return jsonify(get_user_progression(user_id, family_id).to_dict())


@progression_bp.route("/users/<user_id>/progression/levels/<int:level>", methods=["GET"])
def check_level(user_id, level):
    family_id = request.args.get("family_id")
    if not family_id:
        return api_error(E.VALIDATION_REQUIRED, "family_id is required")
    result = require_level(user_id, family_id, level)
    return jsonify(result.to_dict())


@progression_bp.route("/families/<family_id>/role-levels", methods=["GET"])
def list_role_levels(family_id):
    _family, err = get_or_404(WorkshopFamily, family_id, "Workshop family")
    if err:
        return err
    levels = db.session.execute(
        select(RoleLevel).where(RoleLevel.family_id == family_id).order_by(RoleLevel.level)
    ).scalars()
    return jsonify([lv.to_dict() for lv in levels])


@progression_bp.route("/families/<family_id>/role-levels", methods=["POST"])
def create_role_level(family_id):
    family, err = get_or_404(WorkshopFamily, family_id, "Workshop family")
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get("level"), int) or not data.get("code") or not data.get("label"):
        return api_error(E.VALIDATION_REQUIRED, "level (integer), code and label are required")

    level = RoleLevel(
        family_id=family.id,
        level=data["level"],
        code=data["code"],
        label=data["label"],
        badge_label=data.get("badge_label"),
        badge_color=data.get("badge_color"),
    )
    req = data.get("requirement")
    if req is not None:
        if not isinstance(req, dict):
            return api_error(E.VALIDATION_INVALID, "requirement must be an object")
        counts = {}
        for key in _REQUIREMENT_FIELDS:
            value = req.get(key, 0)
            if not isinstance(value, int) or value < 0:
                return api_error(E.VALIDATION_INVALID, f"{key} must be a non-negative integer")
            counts[key] = value
        try:
            min_avg = float(req.get("min_feedback_avg", 0) or 0)
        except (TypeError, ValueError):
            return api_error(E.VALIDATION_INVALID, "min_feedback_avg must be a number")
        formations = req.get("required_formation_types") or []
        if not isinstance(formations, list):
            return api_error(E.VALIDATION_INVALID, "required_formation_types must be a list")
        level.requirement = RoleRequirement(
            min_feedback_avg=min_avg,
            required_formation_types=sorted(set(formations)),
            **counts,
        )

    db.session.add(level)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(level.to_dict()), 201
