"""
Participation Lifecycle Service

Manages one user's booking on one workshop:
  - Registration (capacity-checked conditional write)
  - Status transitions validated against PARTICIPATION_TRANSITIONS
  - Refund eligibility gate and refund amount
  - Exchange to another workshop, re-inscription, hard removal
  - Change acknowledgement (date / location) and attendance
  - WorkshopHistoryLog entry for every transition

5 table-driven transitions:
  confirm_payment, refund, cancel, exchange, reinscribe

Concurrency:
  Capacity-consuming writes (register, confirm_payment, exchange, reinscribe) bump
  ``workshops.roster_version`` with ``UPDATE … WHERE roster_version = :seen``.
  A lost race reloads and re-evaluates, so the loser sees CapacityExceeded /
  TargetFull instead of overbooking. Status transitions re-read the row and
  rely on the ``row_version`` optimistic counter.

Usage:
    from atelier.services.participation_lifecycle import register, transition_participation

    p = register(workshop_id, user_id, actor_id=organizer_id)
    result = transition_participation(p.id, "confirm_payment", actor_id=organizer_id)
"""

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from atelier.core.exceptions import (
    CapacityExceededError,
    ConflictOrUnavailableError,
    DuplicateRegistrationError,
    IncompleteClassificationError,
    InvalidStateError,
    NotFoundError,
    PaymentPendingError,
    RefundNotEligibleError,
    SameWorkshopError,
    TargetFullError,
    ValidationError,
)
from atelier.models import db
from atelier.models.history import write_history
from atelier.models.participation import ACTIVE_STATUSES, CONFIRMED_STATUSES, Participation
from atelier.models.user import User
from atelier.models.workshop import Workshop
from atelier.services import email_service
from atelier.services.pricing import price_for_ticket
from atelier.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


# Participation transition rules
PARTICIPATION_TRANSITIONS = {
    "confirm_payment": {"from": ["en_attente"], "to": "paye"},
    "refund": {"from": ["inscrit", "paye"], "to": "rembourse"},
    "cancel": {"from": ["en_attente", "inscrit", "paye"], "to": "annule"},
    "exchange": {"from": ["inscrit", "paye"], "to": "echange"},
    "reinscribe": {"from": ["rembourse", "annule"], "to": "inscrit"},
}

_ACTION_LOG_TYPE = {
    "confirm_payment": "payment",
    "refund": "refund",
    "cancel": "status_change",
    "exchange": "exchange",
    "reinscribe": "participant_reinscribe",
}

REFUND_INITIATORS = ("participant", "organizer")
CHANGE_DIMENSIONS = ("date", "location")

# Bounded re-evaluation after losing a roster race.
MAX_ROSTER_ATTEMPTS = 5


def validate_participation_transition(p: Participation, action: str) -> dict:
    """Validate whether an action is valid for the participation's current state."""
    rule = PARTICIPATION_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": p.status, "to": None,
                "reason": f"Unknown action: {action}"}

    if p.status not in rule["from"]:
        return {"valid": False, "from": p.status, "to": rule["to"],
                "reason": f"Cannot '{action}' from status '{p.status}'"}

    return {"valid": True, "from": p.status, "to": rule["to"], "reason": None}


def get_available_participation_transitions(p: Participation) -> list[str]:
    """Get list of valid actions for a participation's current status."""
    actions = [a for a, rule in PARTICIPATION_TRANSITIONS.items() if p.status in rule["from"]]
    if p.exchange_parent_participation_id and "exchange" in actions:
        actions.remove("exchange")
    return actions


# ── Loading & reads ──────────────────────────────────────────────────────────

def _get_workshop(workshop_id: str) -> Workshop:
    workshop = db.session.get(Workshop, workshop_id)
    if not workshop:
        raise NotFoundError(resource="Workshop", resource_id=workshop_id)
    return workshop


def _load_participation(participation_id: str, expected_version: int | None = None) -> Participation:
    """Re-read the current row (locked where the backend supports it)."""
    p = db.session.get(
        Participation, participation_id,
        populate_existing=True, with_for_update=True,
    )
    if not p:
        raise NotFoundError(resource="Participation", resource_id=participation_id)
    if expected_version is not None and p.row_version != expected_version:
        raise ConflictOrUnavailableError(
            details={"participation_id": p.id, "expected_version": expected_version,
                     "current_version": p.row_version},
        )
    return p


def confirmed_count(workshop_id: str) -> int:
    """Participations currently holding a seat (inscrit, paye)."""
    return db.session.execute(
        select(func.count(Participation.id)).where(
            Participation.workshop_id == workshop_id,
            Participation.status.in_(CONFIRMED_STATUSES),
        )
    ).scalar_one()


def remaining_seats(workshop_id: str) -> int:
    capacity = db.session.execute(
        select(Workshop.audience_number).where(Workshop.id == workshop_id)
    ).scalar_one_or_none()
    if capacity is None:
        raise NotFoundError(resource="Workshop", resource_id=workshop_id)
    return max(0, capacity - confirmed_count(workshop_id))


def _has_live_registration(user_id: str, workshop_id: str, exclude_id: str | None = None) -> bool:
    stmt = select(Participation.id).where(
        Participation.user_id == user_id,
        Participation.workshop_id == workshop_id,
        Participation.status != "annule",
    )
    if exclude_id:
        stmt = stmt.where(Participation.id != exclude_id)
    return db.session.execute(stmt.limit(1)).first() is not None


def list_participants(workshop_id: str, status: str | None = None) -> list[Participation]:
    stmt = select(Participation).where(Participation.workshop_id == workshop_id)
    if status:
        stmt = stmt.where(Participation.status == status)
    return list(db.session.execute(stmt.order_by(Participation.created_at)).scalars())


# ── Roster conditional write ─────────────────────────────────────────────────

def _roster_snapshot(workshop_id: str):
    """Fresh (roster_version, audience_number, lifecycle_status), bypassing the identity map."""
    row = db.session.execute(
        select(Workshop.roster_version, Workshop.audience_number, Workshop.lifecycle_status)
        .where(Workshop.id == workshop_id)
    ).one_or_none()
    if row is None:
        raise NotFoundError(resource="Workshop", resource_id=workshop_id)
    return row


def _claim_roster(workshop_id: str, seen_version: int) -> bool:
    result = db.session.execute(
        update(Workshop)
        .where(Workshop.id == workshop_id, Workshop.roster_version == seen_version)
        .values(roster_version=seen_version + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _reserve_seat(workshop_id: str, *, full_error=CapacityExceededError) -> None:
    """Check capacity and claim the roster in one conditional write.

    Raises ``full_error`` when no seat is left, InvalidStateError when the
    workshop stopped being active, ConflictOrUnavailableError when the
    roster keeps moving.
    """
    for attempt in range(1, MAX_ROSTER_ATTEMPTS + 1):
        seen, capacity, lifecycle = _roster_snapshot(workshop_id)
        if lifecycle != "active":
            raise InvalidStateError(
                f"Workshop {workshop_id} is {lifecycle}", current=lifecycle, reason="workshop_not_active",
            )
        if confirmed_count(workshop_id) >= capacity:
            raise full_error(workshop_id, capacity)
        if _claim_roster(workshop_id, seen):
            return
        logger.info("Roster of workshop %s moved (attempt %d), re-evaluating",
                    workshop_id, attempt, extra={"workshop_id": workshop_id})
    raise ConflictOrUnavailableError("Workshop roster is busy, reload and retry",
                                     details={"workshop_id": workshop_id})


def _flush_or_conflict(*, duplicate: tuple[str, str] | None = None) -> None:
    """Flush pending writes, translating concurrency failures."""
    try:
        db.session.flush()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Stale participation write: %s", exc)
        raise ConflictOrUnavailableError() from exc
    except IntegrityError as exc:
        db.session.rollback()
        if duplicate:
            raise DuplicateRegistrationError(*duplicate) from exc
        logger.warning("Integrity error on participation write: %s", exc.orig)
        raise ConflictOrUnavailableError("Constraint violation, reload and retry") from exc


def _log(workshop_id: str, log_type: str, description: str, *, actor_id=None, user_id=None,
         metadata=None) -> None:
    """Best-effort history row in a savepoint; the main flow is flushed first."""
    db.session.flush()
    try:
        with db.session.begin_nested():
            write_history(
                workshop_id=workshop_id,
                log_type=log_type,
                description=description,
                actor_user_id=actor_id,
                user_id=user_id,
                metadata=metadata,
            )
    except Exception:
        logger.warning("History log failed for %s — main flow unaffected", log_type, exc_info=True)


def _result(p: Participation, action: str, previous_status: str, **extra) -> dict:
    out = {
        "participation_id": p.id,
        "workshop_id": p.workshop_id,
        "previous_status": previous_status,
        "new_status": p.status,
        "payment_status": p.payment_status,
        "row_version": p.row_version,
        "action": action,
    }
    out.update(extra)
    return out


# ═════════════════════════════════════════════════════════════════════════════
# Registration
# ═════════════════════════════════════════════════════════════════════════════

def register(
    workshop_id: str,
    user_id: str,
    actor_id: str | None = None,
    *,
    ticket_type: str | None = None,
    mark_paid: bool = False,
) -> Participation:
    """
    Create a Participation for ``user_id`` on ``workshop_id``.

    Priced ticket → en_attente / pending; free → inscrit / none;
    ``mark_paid`` (organizer quick-add) → paye / paid.

    Raises:
        NotFoundError, InvalidStateError, IncompleteClassificationError,
        DuplicateRegistrationError, CapacityExceededError, ValidationError
    """
    workshop = _get_workshop(workshop_id)
    if workshop.lifecycle_status != "active":
        raise InvalidStateError(
            f"Cannot register on a {workshop.lifecycle_status} workshop",
            current=workshop.lifecycle_status, action="register", reason="workshop_not_active",
        )
    if not workshop.is_formation and not workshop.classification_status:
        raise IncompleteClassificationError("audience", workshop_id=workshop.id)
    if not db.session.get(User, user_id):
        raise NotFoundError(resource="User", resource_id=user_id)

    if _has_live_registration(user_id, workshop.id):
        raise DuplicateRegistrationError(user_id, workshop.id)

    try:
        chosen_ticket, price = price_for_ticket(
            workshop.is_formation, workshop.classification_status, ticket_type,
        )
    except ValueError as exc:
        raise ValidationError(str(exc), details={"ticket_type": str(exc)}) from exc

    _reserve_seat(workshop.id)

    if mark_paid:
        status, payment_status, confirmed_at = "paye", "paid", utcnow()
    elif price > 0:
        status, payment_status, confirmed_at = "en_attente", "pending", None
    else:
        status, payment_status, confirmed_at = "inscrit", "none", utcnow()

    p = Participation(
        workshop_id=workshop.id,
        user_id=user_id,
        status=status,
        payment_status=payment_status,
        ticket_type=chosen_ticket,
        price_paid=price,
        confirmation_date=confirmed_at,
        date_confirmation_version=workshop.date_confirmation_version,
        location_confirmation_version=workshop.location_confirmation_version,
    )
    db.session.add(p)
    _flush_or_conflict(duplicate=(user_id, workshop.id))

    _log(workshop.id, "participant_add",
         f"Participant registered ({status}, {chosen_ticket}, {price} €)",
         actor_id=actor_id, user_id=user_id,
         metadata={"participation_id": p.id, "status": status, "ticket_type": chosen_ticket,
                   "price_paid": str(price), "mark_paid": mark_paid})
    logger.info("Registration %s created on workshop %s", p.id, workshop.id,
                extra={"workshop_id": workshop.id, "participation_id": p.id, "user_id": user_id})
    return p


# ═════════════════════════════════════════════════════════════════════════════
# Table-driven transitions
# ═════════════════════════════════════════════════════════════════════════════

def _validated(p: Participation, action: str) -> dict:
    validation = validate_participation_transition(p, action)
    if not validation["valid"]:
        raise InvalidStateError(validation["reason"], current=p.status, action=action)
    return validation


def confirm_payment(participation_id: str, actor_id: str | None = None, *,
                    expected_version: int | None = None) -> dict:
    """en_attente → paye. A pending registration holds no seat, so paying claims one.

    Raises:
        InvalidStateError, CapacityExceededError, ConflictOrUnavailableError
    """
    p = _load_participation(participation_id, expected_version)
    validation = _validated(p, "confirm_payment")
    if p.status not in CONFIRMED_STATUSES:
        _reserve_seat(p.workshop_id)

    previous = p.status
    p.status = validation["to"]
    p.payment_status = "paid"
    p.confirmation_date = utcnow()
    _flush_or_conflict()

    _log(p.workshop_id, "payment", "Payment confirmed",
         actor_id=actor_id, user_id=p.user_id,
         metadata={"participation_id": p.id, "amount": str(p.price_paid)})
    return _result(p, "confirm_payment", previous)


def cancel(participation_id: str, actor_id: str | None = None, *,
           expected_version: int | None = None) -> dict:
    """Non-terminal status → annule. Payment status is left untouched."""
    p = _load_participation(participation_id, expected_version)
    validation = _validated(p, "cancel")

    previous = p.status
    p.status = validation["to"]
    _flush_or_conflict()

    _log(p.workshop_id, "status_change", f"Registration canceled ({previous} → annule)",
         actor_id=actor_id, user_id=p.user_id,
         metadata={"participation_id": p.id, "old": previous, "new": p.status})
    return _result(p, "cancel", previous)


# ── Refund ───────────────────────────────────────────────────────────────────

def _fee_free_hours() -> int:
    return int(current_app.config.get("REFUND_FEE_FREE_HOURS", 72))


def is_unconfirmed(p: Participation, workshop: Workshop, dimension: str | None = None) -> bool:
    """True when the participant has not acknowledged the latest change.

    ``dimension`` restricts the check to ``date`` or ``location``.
    """
    date_behind = (p.date_confirmation_version or 0) < workshop.date_confirmation_version
    location_behind = (p.location_confirmation_version or 0) < workshop.location_confirmation_version
    if dimension == "date":
        return date_behind
    if dimension == "location":
        return location_behind
    return date_behind or location_behind


def check_refund_eligibility(
    p: Participation,
    workshop: Workshop,
    *,
    initiated_by: str = "participant",
    reason: str | None = None,
    now=None,
) -> dict:
    """
    Evaluate the refund gate. Any one condition is enough:

      1. workshop canceled
      2. organizer-initiated because of a date/location change
      3. participant has not confirmed the latest date or location change
      4. organizer-initiated before the workshop starts
      5. at least REFUND_FEE_FREE_HOURS before start

    Returns {"eligible": bool, "reason": str}
    """
    now = as_utc(now) if now else utcnow()
    start = as_utc(workshop.start_at)

    if workshop.lifecycle_status == "canceled":
        return {"eligible": True, "reason": "workshop_canceled"}
    workshop_changed = workshop.modified_date_flag or workshop.modified_location_flag
    if initiated_by == "organizer" and reason == "workshop_change" and workshop_changed:
        return {"eligible": True, "reason": "workshop_change"}
    if is_unconfirmed(p, workshop):
        return {"eligible": True, "reason": "unconfirmed_change"}
    if initiated_by == "organizer" and now < start:
        return {"eligible": True, "reason": "organizer_before_start"}
    if start - now >= timedelta(hours=_fee_free_hours()):
        return {"eligible": True, "reason": "outside_fee_window"}
    return {"eligible": False, "reason": "inside_fee_window"}


def refund(
    participation_id: str,
    actor_id: str | None = None,
    *,
    initiated_by: str = "participant",
    reason: str | None = None,
    expected_version: int | None = None,
    now=None,
    notify: bool = True,
) -> dict:
    """
    {inscrit, paye} → rembourse.

    ``refund_amount`` equals ``price_paid`` only when the participant held
    ``payment_status=paid``; otherwise nothing is owed and the payment
    status is left as is.

    Raises:
        InvalidStateError, RefundNotEligibleError, ConflictOrUnavailableError
    """
    if initiated_by not in REFUND_INITIATORS:
        raise ValidationError(f"initiated_by must be one of {', '.join(REFUND_INITIATORS)}")

    p = _load_participation(participation_id, expected_version)
    validation = _validated(p, "refund")
    workshop = p.workshop

    eligibility = check_refund_eligibility(p, workshop, initiated_by=initiated_by,
                                           reason=reason, now=now)
    if not eligibility["eligible"]:
        raise RefundNotEligibleError(
            f"Refund not allowed within {_fee_free_hours()}h of the workshop start",
            current=p.status,
        )

    previous = p.status
    was_paid = p.payment_status == "paid"
    refund_amount = p.price_paid if was_paid else 0
    p.status = validation["to"]
    if was_paid:
        p.payment_status = "refunded"
    _flush_or_conflict()

    _log(p.workshop_id, "refund", f"Refund ({eligibility['reason']}): {refund_amount} €",
         actor_id=actor_id, user_id=p.user_id,
         metadata={"participation_id": p.id, "amount": str(refund_amount),
                   "initiated_by": initiated_by, "reason": reason,
                   "eligibility": eligibility["reason"], "previous_status": previous})

    if notify and was_paid:
        email_service.queue_notification(
            workshop, [p], "refund", {"amount": refund_amount}, actor_user_id=actor_id,
        )

    return _result(p, "refund", previous,
                   refund_amount=float(refund_amount), eligibility=eligibility["reason"])


# ── Remove ───────────────────────────────────────────────────────────────────

def remove(participation_id: str, actor_id: str | None = None, *,
           expected_version: int | None = None) -> dict:
    """Hard delete. A paid, un-refunded participation must be refunded first."""
    p = _load_participation(participation_id, expected_version)
    if p.payment_status == "paid" and p.status != "rembourse":
        raise PaymentPendingError(p.id)

    workshop_id, user_id, previous = p.workshop_id, p.user_id, p.status
    payment_status = p.payment_status
    db.session.delete(p)
    _flush_or_conflict()
    _log(workshop_id, "participant_remove", f"Participant removed (was {previous})",
         actor_id=actor_id, user_id=user_id,
         metadata={"participation_id": participation_id, "status": previous,
                   "payment_status": payment_status})
    return {"participation_id": participation_id, "workshop_id": workshop_id,
            "previous_status": previous, "action": "remove", "deleted": True}


# ── Exchange ─────────────────────────────────────────────────────────────────

def exchange(
    participation_id: str,
    target_workshop_id: str,
    actor_id: str | None = None,
    *,
    expected_version: int | None = None,
) -> dict:
    """
    Move a booking to another workshop.

    Source {inscrit, paye} → echange (kept). A new Participation on the
    target copies ticket_type, price_paid, status and payment_status and
    points back through ``exchange_parent_participation_id``. Only allowed
    while the source workshop has not started.

    Raises:
        SameWorkshopError, InvalidStateError, DuplicateRegistrationError,
        TargetFullError
    """
    p = _load_participation(participation_id, expected_version)
    if target_workshop_id == p.workshop_id:
        raise SameWorkshopError(target_workshop_id)
    validation = _validated(p, "exchange")
    if p.exchange_parent_participation_id:
        raise InvalidStateError(
            "A participation obtained by exchange cannot be exchanged again",
            current=p.status, action="exchange", reason="already_exchanged",
        )
    if utcnow() >= as_utc(p.workshop.start_at):
        raise InvalidStateError(
            "Cannot exchange out of a workshop that has already started",
            current=p.status, action="exchange", reason="workshop_started",
        )

    target = _get_workshop(target_workshop_id)
    if target.lifecycle_status != "active":
        raise InvalidStateError(
            f"Target workshop is {target.lifecycle_status}",
            current=target.lifecycle_status, action="exchange", reason="target_not_active",
        )
    if _has_live_registration(p.user_id, target.id):
        raise DuplicateRegistrationError(p.user_id, target.id)

    _reserve_seat(target.id, full_error=TargetFullError)

    previous = p.status
    new_p = Participation(
        workshop_id=target.id,
        user_id=p.user_id,
        status=p.status,
        payment_status=p.payment_status,
        ticket_type=p.ticket_type,
        price_paid=p.price_paid,
        confirmation_date=p.confirmation_date,
        exchange_parent_participation_id=p.id,
        date_confirmation_version=target.date_confirmation_version,
        location_confirmation_version=target.location_confirmation_version,
    )
    p.status = validation["to"]
    db.session.add(new_p)
    _flush_or_conflict(duplicate=(p.user_id, target.id))

    meta = {"source_participation_id": p.id, "new_participation_id": new_p.id,
            "source_workshop_id": p.workshop_id, "target_workshop_id": target.id}
    _log(p.workshop_id, "exchange", f"Exchanged to workshop '{target.title}'",
         actor_id=actor_id, user_id=p.user_id, metadata=meta)
    _log(target.id, "exchange", "Joined by exchange",
         actor_id=actor_id, user_id=p.user_id, metadata=meta)

    return _result(p, "exchange", previous, new_participation_id=new_p.id,
                   target_workshop_id=target.id)


# ── Re-inscription ───────────────────────────────────────────────────────────

def reinscribe(participation_id: str, actor_id: str | None = None, *,
               expected_version: int | None = None) -> dict:
    """{rembourse, annule} → inscrit with payment_status reset to none.

    ``price_paid`` keeps its original snapshot.
    """
    p = _load_participation(participation_id, expected_version)
    validation = _validated(p, "reinscribe")
    if _has_live_registration(p.user_id, p.workshop_id, exclude_id=p.id):
        raise DuplicateRegistrationError(p.user_id, p.workshop_id)

    _reserve_seat(p.workshop_id)

    previous = p.status
    p.status = validation["to"]
    p.payment_status = "none"
    _flush_or_conflict(duplicate=(p.user_id, p.workshop_id))

    _log(p.workshop_id, "participant_reinscribe", f"Participant re-registered (was {previous})",
         actor_id=actor_id, user_id=p.user_id,
         metadata={"participation_id": p.id, "old": previous, "new": p.status})
    return _result(p, "reinscribe", previous)


def transition_participation(participation_id: str, action: str, actor_id: str | None = None,
                             **kwargs) -> dict:
    """Dispatch a named transition (``confirm_payment``, ``refund`` …)."""
    handlers = {
        "confirm_payment": confirm_payment,
        "refund": refund,
        "cancel": cancel,
        "reinscribe": reinscribe,
    }
    if action == "exchange":
        target = kwargs.pop("target_workshop_id", None)
        if not target:
            raise ValidationError("target_workshop_id is required",
                                  details={"target_workshop_id": "required"})
        return exchange(participation_id, target, actor_id, **kwargs)
    handler = handlers.get(action)
    if handler is None:
        raise ValidationError(f"Unknown action: {action}",
                              details={"action": f"one of {', '.join(PARTICIPATION_TRANSITIONS)}"})
    return handler(participation_id, actor_id, **kwargs)


# ═════════════════════════════════════════════════════════════════════════════
# Change acknowledgement & attendance
# ═════════════════════════════════════════════════════════════════════════════

def confirm_change(participation_id: str, dimension: str, actor_id: str | None = None, *,
                   expected_version: int | None = None) -> dict:
    """Acknowledge the workshop's latest ``date`` or ``location`` change."""
    if dimension not in CHANGE_DIMENSIONS:
        raise ValidationError(f"dimension must be one of {', '.join(CHANGE_DIMENSIONS)}",
                              details={"dimension": dimension})
    p = _load_participation(participation_id, expected_version)
    if p.status not in ACTIVE_STATUSES:
        raise InvalidStateError(f"Cannot confirm a change from status '{p.status}'",
                                current=p.status, action="confirm_change")

    workshop = p.workshop
    field = f"{dimension}_confirmation_version"
    current = getattr(workshop, field)
    previous = getattr(p, field)
    changed = previous < current
    if changed:
        setattr(p, field, current)
        _flush_or_conflict()
        _log(p.workshop_id, "confirmation", f"Participant confirmed {dimension} change (v{current})",
             actor_id=actor_id, user_id=p.user_id,
             metadata={"participation_id": p.id, "dimension": dimension,
                       "old_version": previous, "new_version": current})
    return {"participation_id": p.id, "dimension": dimension, "changed": changed,
            "confirmed_version": current}


def _require_ended(workshop: Workshop, now=None) -> None:
    now = as_utc(now) if now else utcnow()
    if now < as_utc(workshop.end_at):
        raise InvalidStateError("Attendance can only be recorded after the workshop ends",
                                current=workshop.lifecycle_status, action="attendance",
                                reason="not_ended")


def set_attendance(participation_id: str, attended: bool, actor_id: str | None = None, *,
                   expected_version: int | None = None, now=None) -> dict:
    p = _load_participation(participation_id, expected_version)
    _require_ended(p.workshop, now)
    if p.status not in CONFIRMED_STATUSES:
        raise InvalidStateError(f"Cannot record attendance for status '{p.status}'",
                                current=p.status, action="attendance")

    p.attended = bool(attended)
    _flush_or_conflict()
    _log(p.workshop_id, "attendance", "Marked present" if p.attended else "Marked absent",
         actor_id=actor_id, user_id=p.user_id,
         metadata={"participation_id": p.id, "attended": p.attended})
    return {"participation_id": p.id, "attended": p.attended, "row_version": p.row_version}


def mark_all_attended(workshop_id: str, actor_id: str | None = None, *, now=None) -> dict:
    """Mark every seated participant whose attendance is unset as present."""
    workshop = _get_workshop(workshop_id)
    _require_ended(workshop, now)

    marked = 0
    for p in list_participants(workshop.id):
        if p.status in CONFIRMED_STATUSES and p.attended is None:
            p.attended = True
            marked += 1
    _flush_or_conflict()

    if marked:
        _log(workshop.id, "attendance", f"{marked} participant(s) marked present",
             actor_id=actor_id, metadata={"marked": marked})
    return {"workshop_id": workshop.id, "marked": marked}
