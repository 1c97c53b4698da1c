"""
Workshop Lifecycle Service

Manages a workshop from creation to its terminal state:
  - Creation with modality validation, end_at computation, auto-classification
  - Controlled edit path (the only writer of start_at / end_at / extra_duration_minutes)
  - Change-reconfirmation protocol on two independent axes (date, location)
  - Close (only once ended, idempotent), batch close sweep, cancel

Lifecycle:
    active → closed    (once end_at has passed)
    active → canceled  (organizer, any time)

Every tracked date/location change appends one history entry and bumps the
matching confirmation version by exactly 1. Participants whose stored
version is behind are "unconfirmed" for that dimension until they act.

Usage:
    from atelier.services.workshop_lifecycle import update_workshop

    result = update_workshop(workshop_id, {"start_at": new_start}, actor_id=organizer_id)
"""

import logging

from sqlalchemy import func, or_, select, update

from atelier.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from atelier.models import db
from atelier.models.history import WorkshopHistoryLog, write_history
from atelier.models.participation import ACTIVE_STATUSES, Participation
from atelier.models.user import User
from atelier.models.workshop import Workshop, WorkshopFamily, WorkshopType, compute_end_at
from atelier.services import email_service
from atelier.services.classification import (
    CLASSIFICATION_STATUSES,
    FORMATION_STATUS,
    ClassificationChoice,
    resolve_classification,
    validate_choice,
)
from atelier.utils.helpers import as_utc, parse_datetime, utcnow

logger = logging.getLogger(__name__)


IMMUTABLE_FIELDS = frozenset({
    "id", "family_id", "type_id", "organizer_id", "lifecycle_status",
    "modified_date_flag", "date_confirmation_version", "date_change_history",
    "modified_location_flag", "location_confirmation_version", "location_change_history",
    "roster_version", "end_at", "created_at", "updated_at", "closed_at", "canceled_at",
})

EDITABLE_FIELDS = frozenset({
    "title", "description", "language", "start_at", "extra_duration_minutes",
    "is_remote", "location", "visio_link", "mural_link", "audience_number",
    "classification", "classification_status",
})

LOCATION_KEYS = ("venue_name", "street", "city", "postal_code")
MODALITY_FIELDS = ("is_remote", "location", "visio_link", "mural_link")


def _get_workshop(workshop_id: str) -> Workshop:
    workshop = db.session.get(Workshop, workshop_id)
    if not workshop:
        raise NotFoundError(resource="Workshop", resource_id=workshop_id)
    return workshop


def _log(workshop_id: str, log_type: str, description: str, *, actor_id=None, metadata=None) -> None:
    """Best-effort history row in a savepoint; the main flow is flushed first."""
    db.session.flush()
    try:
        with db.session.begin_nested():
            write_history(
                workshop_id=workshop_id,
                log_type=log_type,
                description=description,
                actor_user_id=actor_id,
                metadata=metadata,
            )
    except Exception:
        logger.warning("History log failed for %s — main flow unaffected", log_type, exc_info=True)


def _iso(value):
    value = as_utc(value)
    return value.isoformat() if value else None


# ── Input validation ─────────────────────────────────────────────────────────

def _clean_location(location) -> dict | None:
    if location is None:
        return None
    if not isinstance(location, dict):
        raise ValidationError("location must be an object", details={"location": "object expected"})
    unknown = set(location) - set(LOCATION_KEYS)
    if unknown:
        raise ValidationError("Unknown location fields",
                              details={k: "unknown field" for k in sorted(unknown)})
    if not (location.get("city") or "").strip():
        raise ValidationError("location.city is required", details={"location.city": "required"})
    return {k: (location.get(k) or None) for k in LOCATION_KEYS}


def _resolve_modality(current: dict, updates: dict) -> dict:
    """Apply modality updates; one side set → the other side nulled."""
    result = dict(current)
    for key in MODALITY_FIELDS:
        if key in updates:
            result[key] = updates[key]
    result["location"] = _clean_location(result.get("location"))

    sets_location = updates.get("location") is not None
    sets_links = bool(updates.get("visio_link") or updates.get("mural_link"))
    if sets_location and sets_links:
        raise ValidationError("A workshop is either on-site (location) or remote (visio/mural links)",
                              details={"location": "exclusive with visio_link/mural_link"})

    if "is_remote" in updates:
        result["is_remote"] = bool(updates["is_remote"])
    elif sets_location:
        result["is_remote"] = False
    elif sets_links:
        result["is_remote"] = True

    if result["is_remote"]:
        if updates.get("location") is not None:
            raise ValidationError("A remote workshop cannot have a location",
                                  details={"location": "must be null when is_remote"})
        result["location"] = None
    else:
        if sets_links:
            raise ValidationError("An on-site workshop cannot have visio/mural links",
                                  details={"visio_link": "must be null when not remote"})
        result["visio_link"] = None
        result["mural_link"] = None
    return result


def _parse_capacity(value) -> int:
    try:
        capacity = int(value)
    except (TypeError, ValueError):
        raise ValidationError("audience_number must be an integer",
                              details={"audience_number": "integer expected"}) from None
    if capacity < 0:
        raise ValidationError("audience_number must be >= 0",
                              details={"audience_number": "must be >= 0"})
    return capacity


def _parse_extra_minutes(value) -> int:
    try:
        minutes = int(value or 0)
    except (TypeError, ValueError):
        raise ValidationError("extra_duration_minutes must be an integer",
                              details={"extra_duration_minutes": "integer expected"}) from None
    if minutes < 0:
        raise ValidationError("extra_duration_minutes must be >= 0",
                              details={"extra_duration_minutes": "must be >= 0"})
    return minutes


def _parse_start(value):
    try:
        start = parse_datetime(value)
    except ValueError as exc:
        raise ValidationError(str(exc), details={"start_at": "invalid datetime"}) from exc
    if start is None:
        raise ValidationError("start_at is required", details={"start_at": "required"})
    return start


def _classification_from(data: dict, workshop_type: WorkshopType) -> str | None:
    if workshop_type.is_formation:
        return FORMATION_STATUS
    if data.get("classification") is not None:
        choice = ClassificationChoice.from_dict(data["classification"])
        validate_choice(choice)
        return resolve_classification(choice)
    status = data.get("classification_status")
    if status is None:
        return None
    if status not in CLASSIFICATION_STATUSES or status == FORMATION_STATUS:
        raise ValidationError(f"Unknown classification_status '{status}'",
                              details={"classification_status": "unknown value"})
    return status


# ═════════════════════════════════════════════════════════════════════════════
# Create
# ═════════════════════════════════════════════════════════════════════════════

def create_workshop(data: dict, organizer_id: str) -> Workshop:
    """
    Create an active workshop.

    Required: family_id, type_id, title, start_at, audience_number.
    Formation types are classified ``formation`` automatically; other types
    take a ``classification`` questionnaire answer or a ``classification_status``.
    """
    missing = [f for f in ("family_id", "type_id", "title", "start_at", "audience_number")
               if data.get(f) in (None, "")]
    if missing:
        raise ValidationError("Missing required fields", details={f: "required" for f in missing})

    family = db.session.get(WorkshopFamily, data["family_id"])
    if not family:
        raise NotFoundError(resource="WorkshopFamily", resource_id=data["family_id"])
    wtype = db.session.get(WorkshopType, data["type_id"])
    if not wtype or wtype.family_id != family.id:
        raise NotFoundError(resource="WorkshopType", resource_id=data["type_id"])
    if not db.session.get(User, organizer_id):
        raise NotFoundError(resource="User", resource_id=organizer_id)

    start = _parse_start(data["start_at"])
    extra = _parse_extra_minutes(data.get("extra_duration_minutes"))
    modality = _resolve_modality(
        {"is_remote": False, "location": None, "visio_link": None, "mural_link": None},
        {k: data[k] for k in MODALITY_FIELDS if k in data},
    )

    workshop = Workshop(
        family_id=family.id,
        type_id=wtype.id,
        organizer_id=organizer_id,
        title=data["title"].strip(),
        description=data.get("description"),
        language=data.get("language") or "fr",
        start_at=start,
        extra_duration_minutes=extra,
        end_at=compute_end_at(start, wtype, extra),
        audience_number=_parse_capacity(data["audience_number"]),
        classification_status=_classification_from(data, wtype),
        lifecycle_status="active",
        date_confirmation_version=1,
        location_confirmation_version=1,
        date_change_history=[],
        location_change_history=[],
        **modality,
    )
    workshop.workshop_type = wtype
    db.session.add(workshop)
    db.session.flush()

    _log(workshop.id, "status_change", "Atelier créé", actor_id=organizer_id,
         metadata={"new": "active", "type": wtype.code})
    logger.info("Workshop %s created (%s)", workshop.id, wtype.code,
                extra={"workshop_id": workshop.id})
    return workshop


# ═════════════════════════════════════════════════════════════════════════════
# Controlled edit path
# ═════════════════════════════════════════════════════════════════════════════

def active_participant_count(workshop_id: str) -> int:
    return db.session.execute(
        select(func.count(Participation.id)).where(
            Participation.workshop_id == workshop_id,
            Participation.status.in_(ACTIVE_STATUSES),
        )
    ).scalar_one()


def _field_edit_description(key: str, old, new) -> str:
    if key == "language":
        old_lang = str(old).upper() if old else "N/A"
        return f"Langue changée de {old_lang} à {str(new).upper()}"
    if key == "title":
        return "Titre modifié"
    if key == "description":
        return "Description modifiée"
    if key == "audience_number":
        return f"Capacité changée de {old} à {new} participants"
    if key == "extra_duration_minutes":
        return f"Durée prolongée de {new} minutes"
    if key == "classification_status":
        return f"Classification changée de {old or 'N/A'} à {new or 'N/A'}"
    return f"{key} modifié"


def _track_date_change(workshop: Workshop, old_start, old_end, actor_id, now) -> int:
    new_version = workshop.date_confirmation_version + 1
    entry = {
        "version": new_version,
        "changed_at": now.isoformat(),
        "changed_by": actor_id,
        "old_start": _iso(old_start),
        "old_end": _iso(old_end),
        "new_start": _iso(workshop.start_at),
        "new_end": _iso(workshop.end_at),
    }
    workshop.date_change_history = [*(workshop.date_change_history or []), entry]
    workshop.date_confirmation_version = new_version
    workshop.modified_date_flag = True

    old_day = as_utc(old_start).strftime("%d/%m/%Y")
    new_day = as_utc(workshop.start_at).strftime("%d/%m/%Y")
    _log(workshop.id, "date_change", f"Date changée du {old_day} au {new_day}",
         actor_id=actor_id, metadata=entry)
    return new_version


def _track_location_change(workshop: Workshop, old: dict, actor_id, now) -> int:
    new_version = workshop.location_confirmation_version + 1
    entry = {
        "version": new_version,
        "changed_at": now.isoformat(),
        "changed_by": actor_id,
        "old_location": old["location"],
        "new_location": workshop.location,
        "old_is_remote": old["is_remote"],
        "new_is_remote": workshop.is_remote,
    }
    workshop.location_change_history = [*(workshop.location_change_history or []), entry]
    workshop.location_confirmation_version = new_version
    workshop.modified_location_flag = True

    if workshop.is_remote:
        description = "Format changé en distanciel" if not old["is_remote"] else "Liens distanciel modifiés"
    else:
        city = (workshop.location or {}).get("city") or ""
        description = f"Lieu changé : {city}".strip()
    _log(workshop.id, "location_change", description, actor_id=actor_id,
         metadata={**entry, "old_visio_link": old["visio_link"], "new_visio_link": workshop.visio_link})
    return new_version


def update_workshop(workshop_id: str, updates: dict, actor_id: str | None = None, *,
                    notify: bool = True) -> dict:
    """
    Apply an organizer edit.

    start_at → date protocol; location / is_remote / visio_link / mural_link →
    location protocol; extra_duration_minutes only recomputes end_at; every
    other changed field logs a ``field_edit``.

    Returns:
        {"workshop_id", "changed_fields", "date_changed", "location_changed",
         "date_confirmation_version", "location_confirmation_version"}

    Raises:
        NotFoundError, ValidationError
    """
    workshop = _get_workshop(workshop_id)
    updates = dict(updates or {})

    immutable = sorted(set(updates) & IMMUTABLE_FIELDS)
    if immutable:
        raise ValidationError("Fields cannot be changed after creation",
                              details={f: "immutable" for f in immutable})
    unknown = sorted(set(updates) - EDITABLE_FIELDS)
    if unknown:
        raise ValidationError("Unknown fields", details={f: "unknown field" for f in unknown})

    now = utcnow()
    changed: dict[str, tuple] = {}

    # Simple fields
    for key in ("title", "description", "language"):
        if key in updates and updates[key] != getattr(workshop, key):
            if key == "title" and not (updates[key] or "").strip():
                raise ValidationError("title cannot be empty", details={"title": "required"})
            changed[key] = (getattr(workshop, key), updates[key])

    if "audience_number" in updates:
        capacity = _parse_capacity(updates["audience_number"])
        if capacity != workshop.audience_number:
            active = active_participant_count(workshop.id)
            if capacity < active:
                raise ValidationError(
                    f"Capacity cannot be lower than the {active} active participant(s)",
                    details={"audience_number": f"must be >= {active}"},
                )
            changed["audience_number"] = (workshop.audience_number, capacity)

    if "classification" in updates or "classification_status" in updates:
        status = _classification_from(updates, workshop.workshop_type)
        if status != workshop.classification_status:
            changed["classification_status"] = (workshop.classification_status, status)

    # Schedule
    new_start = workshop.start_at
    if "start_at" in updates:
        new_start = _parse_start(updates["start_at"])
    new_extra = workshop.extra_duration_minutes
    if "extra_duration_minutes" in updates:
        new_extra = _parse_extra_minutes(updates["extra_duration_minutes"])
        if new_extra != workshop.extra_duration_minutes:
            changed["extra_duration_minutes"] = (workshop.extra_duration_minutes, new_extra)
    date_changed = as_utc(new_start) != as_utc(workshop.start_at)

    # Modality
    old_modality = {k: getattr(workshop, k) for k in MODALITY_FIELDS}
    new_modality = old_modality
    if any(k in updates for k in MODALITY_FIELDS):
        new_modality = _resolve_modality(old_modality, updates)
    location_changed = any(
        new_modality[k] != old_modality[k] for k in MODALITY_FIELDS
    )

    # Apply
    for key, (_old, new) in changed.items():
        setattr(workshop, key, new)
    old_start, old_end = workshop.start_at, workshop.end_at
    if date_changed or "extra_duration_minutes" in changed:
        workshop.start_at = new_start
        workshop.end_at = compute_end_at(as_utc(new_start), workshop.workshop_type, new_extra)
    if location_changed:
        for key in MODALITY_FIELDS:
            setattr(workshop, key, new_modality[key])

    if "audience_number" in changed:
        # Invalidate any in-flight roster token read against the old capacity.
        db.session.execute(
            update(Workshop)
            .where(Workshop.id == workshop.id)
            .values(roster_version=Workshop.roster_version + 1)
            .execution_options(synchronize_session=False)
        )

    for key, (old, new) in changed.items():
        _log(workshop.id, "field_edit", _field_edit_description(key, old, new),
             actor_id=actor_id, metadata={"field": key, "old_value": old, "new_value": new})

    if date_changed:
        _track_date_change(workshop, old_start, old_end, actor_id, now)
    if location_changed:
        _track_location_change(workshop, old_modality, actor_id, now)

    db.session.flush()

    if notify and (date_changed or location_changed):
        recipients = get_unconfirmed_participants(workshop.id)
        if date_changed:
            email_service.queue_notification(
                workshop, recipients, "date_change",
                {"old_start": as_utc(old_start).strftime("%d/%m/%Y %H:%M"),
                 "new_start": as_utc(workshop.start_at).strftime("%d/%m/%Y %H:%M")},
                actor_user_id=actor_id,
            )
        if location_changed:
            where = "En ligne" if workshop.is_remote else (workshop.location or {}).get("city", "")
            email_service.queue_notification(
                workshop, recipients, "location_change", {"new_location": where},
                actor_user_id=actor_id,
            )

    changed_fields = sorted(set(changed) | ({"start_at"} if date_changed else set())
                            | ({k for k in MODALITY_FIELDS if new_modality[k] != old_modality[k]}))
    return {
        "workshop_id": workshop.id,
        "changed_fields": changed_fields,
        "date_changed": date_changed,
        "location_changed": location_changed,
        "date_confirmation_version": workshop.date_confirmation_version,
        "location_confirmation_version": workshop.location_confirmation_version,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Reconfirmation reads
# ═════════════════════════════════════════════════════════════════════════════

def get_unconfirmed_participants(workshop_id: str, dimension: str | None = None) -> list[Participation]:
    """Active participants whose stored version is behind the workshop's.

    ``dimension`` is ``date``, ``location`` or None for either.
    """
    workshop = _get_workshop(workshop_id)
    date_behind = Participation.date_confirmation_version < workshop.date_confirmation_version
    location_behind = Participation.location_confirmation_version < workshop.location_confirmation_version
    if dimension == "date":
        behind = date_behind
    elif dimension == "location":
        behind = location_behind
    elif dimension is None:
        behind = or_(date_behind, location_behind)
    else:
        raise ValidationError("dimension must be 'date' or 'location'",
                              details={"dimension": dimension})

    stmt = (
        select(Participation)
        .where(Participation.workshop_id == workshop.id,
               Participation.status.in_(ACTIVE_STATUSES),
               behind)
        .order_by(Participation.created_at)
    )
    return list(db.session.execute(stmt).scalars())


# ═════════════════════════════════════════════════════════════════════════════
# Terminal transitions
# ═════════════════════════════════════════════════════════════════════════════

def close_workshop(workshop_id: str, actor_id: str | None = None, *, now=None) -> dict:
    """
    active → closed once ``end_at`` has passed.

    Before ``end_at`` and on an already-closed workshop this is a no-op
    reported as ``changed=False``. A canceled workshop cannot be closed.
    """
    workshop = _get_workshop(workshop_id)
    now = as_utc(now) if now else utcnow()

    if workshop.lifecycle_status == "canceled":
        raise InvalidStateError("Cannot close a canceled workshop",
                                current="canceled", action="close")
    if workshop.lifecycle_status == "closed":
        return {"workshop_id": workshop.id, "changed": False, "lifecycle_status": "closed",
                "reason": "already_closed"}
    if now < as_utc(workshop.end_at):
        return {"workshop_id": workshop.id, "changed": False, "lifecycle_status": "active",
                "reason": "not_ended"}

    workshop.lifecycle_status = "closed"
    workshop.closed_at = now
    db.session.flush()
    _log(workshop.id, "status_change", "Atelier clôturé", actor_id=actor_id,
         metadata={"old": "active", "new": "closed"})
    return {"workshop_id": workshop.id, "changed": True, "lifecycle_status": "closed",
            "reason": None}


def close_ended_workshops(*, now=None) -> list[str]:
    """Batch sweep: close every active workshop whose end has passed."""
    now = as_utc(now) if now else utcnow()
    candidates = db.session.execute(
        select(Workshop.id).where(Workshop.lifecycle_status == "active",
                                  Workshop.end_at <= now)
    ).scalars().all()

    closed = []
    for wid in candidates:
        if close_workshop(wid, now=now)["changed"]:
            closed.append(wid)
    if closed:
        logger.info("Closed %d ended workshop(s)", len(closed))
    return closed


def cancel_workshop(workshop_id: str, actor_id: str | None = None, *, reason: str | None = None,
                    notify: bool = True) -> dict:
    """active → canceled. Active participants are emailed once the commit succeeds."""
    workshop = _get_workshop(workshop_id)
    if workshop.lifecycle_status == "canceled":
        return {"workshop_id": workshop.id, "changed": False, "lifecycle_status": "canceled",
                "notified": 0}
    if workshop.lifecycle_status == "closed":
        raise InvalidStateError("Cannot cancel a closed workshop",
                                current="closed", action="cancel")

    workshop.lifecycle_status = "canceled"
    workshop.canceled_at = utcnow()
    db.session.flush()
    _log(workshop.id, "status_change", "Atelier annulé", actor_id=actor_id,
         metadata={"old": "active", "new": "canceled", "reason": reason})

    notified = 0
    if notify:
        participants = [
            p for p in workshop.participations.filter(Participation.status.in_(ACTIVE_STATUSES))
        ]
        notified = email_service.queue_notification(
            workshop, participants, "workshop_canceled", actor_user_id=actor_id,
        )
    return {"workshop_id": workshop.id, "changed": True, "lifecycle_status": "canceled",
            "notified": notified}


# ── History ──────────────────────────────────────────────────────────────────

def list_history(workshop_id: str, log_type: str | None = None) -> list[WorkshopHistoryLog]:
    _get_workshop(workshop_id)
    stmt = select(WorkshopHistoryLog).where(WorkshopHistoryLog.workshop_id == workshop_id)
    if log_type:
        stmt = stmt.where(WorkshopHistoryLog.log_type == log_type)
    stmt = stmt.order_by(WorkshopHistoryLog.created_at, WorkshopHistoryLog.id)
    return list(db.session.execute(stmt).scalars())
