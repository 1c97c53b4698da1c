"""Shared utility functions for blueprints and services.

get_or_404:          tuple-return lookup used by every blueprint
as_utc / utcnow:     timezone normalisation (SQLite returns naive datetimes)
parse_datetime:      ISO-8601 input parsing, raises ValueError on bad input
db_commit_or_error:  uniform commit + error response for blueprints
run_after_commit:    defer side effects (emails) until db_commit_or_error succeeds
"""
import logging
from datetime import datetime, timezone

from flask import jsonify

from atelier.models import db

logger = logging.getLogger(__name__)


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, (jsonify_response, 404))

        obj, err = get_or_404(Workshop, wid)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj:
        return None, (jsonify({"error": f"{label} not found"}), 404)
    return obj, None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime.

    SQLite drops tzinfo on round-trip; naive values are treated as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value):
    """Parse an ISO-8601 datetime string, raising ValueError on bad input.

    Accepts a trailing ``Z``. Naive input is interpreted as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise ValueError(
            f"Invalid datetime {value!r}. Use ISO-8601, e.g. 2026-05-01T09:30:00Z."
        ) from exc


# ── Post-commit callbacks ────────────────────────────────────────────────────

_AFTER_COMMIT_KEY = "after_commit_callbacks"


def run_after_commit(callback) -> None:
    """Queue ``callback`` to run once the session commits via db_commit_or_error.

    Callbacks are dropped when the commit fails or the request rolls back.
    """
    db.session.info.setdefault(_AFTER_COMMIT_KEY, []).append(callback)


def discard_after_commit() -> None:
    db.session.info.pop(_AFTER_COMMIT_KEY, None)


def _run_after_commit_callbacks() -> None:
    for callback in db.session.info.pop(_AFTER_COMMIT_KEY, []):
        try:
            callback()
        except Exception:
            logger.warning("Post-commit callback failed", exc_info=True)


# ── Database commit helper ───────────────────────────────────────────────────

def db_commit_or_error():
    """Commit the current SQLAlchemy session, returning an error response on failure.

    Returns:
        None on success.
        (response, status_code) tuple on failure — ready for ``return``.

    IntegrityError → 409 (duplicate / constraint violation)
    StaleDataError → 409 (concurrent modification, caller must reload)
    OperationalError → 503 (connection / lock issues)
    Other → 500 (unexpected)
    """
    from sqlalchemy.exc import IntegrityError, OperationalError
    from sqlalchemy.orm.exc import StaleDataError

    try:
        db.session.commit()
        _run_after_commit_callbacks()
        return None
    except IntegrityError as exc:
        db.session.rollback()
        discard_after_commit()
        logger.warning("Integrity error on commit: %s", exc.orig)
        return jsonify({"error": "Duplicate or constraint violation",
                        "kind": "ConflictOrUnavailable"}), 409
    except StaleDataError:
        db.session.rollback()
        discard_after_commit()
        logger.warning("Stale data on commit — concurrent modification")
        return jsonify({"error": "Record changed concurrently, reload and retry",
                        "kind": "ConflictOrUnavailable"}), 409
    except OperationalError:
        db.session.rollback()
        discard_after_commit()
        logger.exception("Database operational error on commit")
        return jsonify({"error": "Database unavailable",
                        "kind": "ConflictOrUnavailable"}), 503
    except Exception:
        db.session.rollback()
        discard_after_commit()
        logger.exception("Unexpected database error on commit")
        return jsonify({"error": "Database error"}), 500
