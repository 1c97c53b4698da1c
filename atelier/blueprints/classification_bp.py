"""
Classification blueprint — questionnaire resolution and pricing table.

    POST /api/v1/classification/resolve   questionnaire answers → tag, price, next step
    GET  /api/v1/classification/pricing   full pricing table with labels
"""

from flask import Blueprint, jsonify, request

from atelier.blueprints import register_error_handlers
from atelier.services.classification import (
    STEPS,
    ClassificationChoice,
    get_classification_label,
    next_missing_step,
    resolve_classification,
    validate_choice,
)
from atelier.services.pricing import FALLBACK_PRICE, PRICE_TABLE, get_ticket_types

classification_bp = Blueprint("classification", __name__, url_prefix="/api/v1/classification")
register_error_handlers(classification_bp)


@classification_bp.route("/resolve", methods=["POST"])
def resolve():
    data = request.get_json(silent=True) or {}
    is_formation = bool(data.get("is_formation", False))
    choice = ClassificationChoice.from_dict(data)
    validate_choice(choice)

    status = resolve_classification(choice, is_formation=is_formation)
    body = {
        "choice": choice.to_dict(),
        "complete": status is not None,
        "classification_status": status,
        "label": get_classification_label(status),
        "next_step": None if status else next_missing_step(choice),
        "steps": list(STEPS),
        "ticket_types": [],
    }
    if status:
        body["ticket_types"] = [t.to_dict() for t in get_ticket_types(is_formation, status)]
    return jsonify(body)


@classification_bp.route("/pricing", methods=["GET"])
def pricing_table():
    return jsonify({
        "currency": "EUR",
        "fallback_price": float(FALLBACK_PRICE),
        "items": [
            {"classification_status": status, "label": get_classification_label(status),
             "price": float(price)}
            for status, price in PRICE_TABLE.items()
        ],
    })
