"""
Atelier Platform
Blueprint registry helpers.
"""

import logging

from flask import jsonify, request

from atelier.core.exceptions import BookingError, NotFoundError, ValidationError
from atelier.models import db
from atelier.utils.errors import E, api_error, booking_error_response
from atelier.utils.helpers import discard_after_commit

logger = logging.getLogger(__name__)


def actor_id(data: dict | None = None) -> str | None:
    """Acting user: ``X-User-Id`` header, else ``actor_id`` in the JSON body.

    Authentication happens upstream; the header is trusted as given.
    """
    header = request.headers.get("X-User-Id")
    if header:
        return header
    return (data or {}).get("actor_id")


def register_error_handlers(bp):
    """Map the service-layer exception hierarchy to JSON responses on ``bp``."""

    @bp.errorhandler(BookingError)
    def _handle_booking_error(error: BookingError):
        db.session.rollback()
        discard_after_commit()
        logger.info("Booking refused (%s): %s", error.kind, error, extra={"kind": error.kind})
        return booking_error_response(error)

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        db.session.rollback()
        discard_after_commit()
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        db.session.rollback()
        discard_after_commit()
        return api_error(E.BUSINESS_RULE, str(error), details=error.details)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        from werkzeug.exceptions import HTTPException
        if isinstance(error, HTTPException):
            return error
        db.session.rollback()
        discard_after_commit()
        logger.exception("Unhandled error in %s", bp.name)
        return jsonify({"error": "Internal server error", "code": E.INTERNAL}), 500
