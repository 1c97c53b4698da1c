"""
Workshop lifecycle tests — creation, controlled edits, reconfirmation,
close / cancel.

Covers:
  - end_at always equals start_at + base duration + extra minutes
  - Modality exclusivity (location XOR visio/mural links)
  - Date and location confirmation versions bump by exactly one per change
  - Unconfirmed participants are reported per dimension
  - Capacity can never drop below the active roster
  - close only once ended, idempotent; cancel notifies the roster
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from atelier.core.exceptions import InvalidStateError, ValidationError
from atelier.models import db
from atelier.models.workshop import Workshop
from atelier.services import email_service
from atelier.services import participation_lifecycle as participations
from atelier.services import workshop_lifecycle as lifecycle
from atelier.utils.helpers import as_utc, db_commit_or_error, utcnow

START = datetime(2030, 5, 1, 9, 30, tzinfo=timezone.utc)


def _roster_version(workshop_id):
    return db.session.execute(
        select(Workshop.roster_version).where(Workshop.id == workshop_id)
    ).scalar_one()


# ═════════════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_end_at_from_type_duration(self, make_workshop):
        w = make_workshop(start_at=START)
        assert w.lifecycle_status == "active"
        assert as_utc(w.end_at) == START + timedelta(minutes=180)
        assert w.date_confirmation_version == 1
        assert w.location_confirmation_version == 1
        assert w.roster_version == 0

    def test_extra_duration_added(self, make_workshop):
        w = make_workshop(start_at=START, extra_duration_minutes=30)
        assert as_utc(w.end_at) == START + timedelta(minutes=210)

    def test_formation_auto_classified_with_builtin_duration(self, make_workshop, formation_type):
        w = make_workshop(start_at=START, type_id=formation_type.id, classification_status=None)
        assert w.classification_status == "formation"
        assert as_utc(w.end_at) == START + timedelta(minutes=120)

    def test_classification_from_questionnaire(self, make_workshop):
        w = make_workshop(classification_status=None,
                          classification={"audience": "pro", "organization": "entreprise",
                                          "situation": "external"})
        assert w.classification_status == "externe_entreprise"

    def test_incomplete_questionnaire_leaves_workshop_unclassified(self, make_workshop):
        w = make_workshop(classification_status=None,
                          classification={"audience": "pro", "organization": "entreprise"})
        assert w.classification_status is None

    def test_remote_workshop_has_no_location(self, make_workshop):
        w = make_workshop(is_remote=True, visio_link="https://visio.example.org/abc")
        assert w.is_remote is True
        assert w.location is None

    def test_location_and_links_are_exclusive(self, make_workshop):
        with pytest.raises(ValidationError):
            make_workshop(visio_link="https://visio.example.org/abc")

    def test_location_requires_city(self, make_workshop):
        with pytest.raises(ValidationError) as exc:
            make_workshop(location={"venue_name": "Salle B"})
        assert "location.city" in exc.value.details

    def test_missing_fields_listed(self, organizer):
        with pytest.raises(ValidationError) as exc:
            lifecycle.create_workshop({"title": "Sans date"}, organizer.id)
        assert {"family_id", "type_id", "start_at", "audience_number"} <= set(exc.value.details)

    def test_negative_capacity_rejected(self, make_workshop):
        with pytest.raises(ValidationError):
            make_workshop(audience_number=-1)

    def test_creation_logged(self, make_workshop):
        w = make_workshop()
        entries = lifecycle.list_history(w.id, "status_change")
        assert len(entries) == 1
        assert entries[0].metadata_json["new"] == "active"


# ═════════════════════════════════════════════════════════════════════════════
# Controlled edits
# ═════════════════════════════════════════════════════════════════════════════


class TestUpdate:
    def test_end_at_cannot_be_written(self, make_workshop):
        w = make_workshop()
        with pytest.raises(ValidationError) as exc:
            lifecycle.update_workshop(w.id, {"end_at": "2031-01-01T00:00:00Z"})
        assert exc.value.details == {"end_at": "immutable"}

    def test_unknown_field_rejected(self, make_workshop):
        w = make_workshop()
        with pytest.raises(ValidationError):
            lifecycle.update_workshop(w.id, {"colour": "blue"})

    def test_extra_duration_recomputes_end_without_date_protocol(self, make_workshop):
        w = make_workshop(start_at=START)
        result = lifecycle.update_workshop(w.id, {"extra_duration_minutes": 45})
        assert result["date_changed"] is False
        assert result["date_confirmation_version"] == 1
        assert as_utc(w.end_at) == START + timedelta(minutes=225)
        assert "extra_duration_minutes" in result["changed_fields"]

    def test_same_start_is_not_a_change(self, make_workshop):
        w = make_workshop(start_at=START)
        result = lifecycle.update_workshop(w.id, {"start_at": "2030-05-01T09:30:00Z"})
        assert result["date_changed"] is False
        assert w.date_confirmation_version == 1

    def test_title_edit_logged_as_field_edit(self, make_workshop):
        w = make_workshop()
        result = lifecycle.update_workshop(w.id, {"title": "Atelier Océans"})
        assert result["changed_fields"] == ["title"]
        assert w.title == "Atelier Océans"
        assert len(lifecycle.list_history(w.id, "field_edit")) == 1

    def test_date_edited_twice(self, make_workshop, make_user):
        w = make_workshop(start_at=START)
        p = participations.register(w.id, make_user().id)

        lifecycle.update_workshop(w.id, {"start_at": START + timedelta(days=1)})
        result = lifecycle.update_workshop(w.id, {"start_at": START + timedelta(days=2)})

        assert result["date_changed"] is True
        assert w.date_confirmation_version == 3
        assert w.location_confirmation_version == 1
        assert w.modified_date_flag is True
        assert len(w.date_change_history) == 2
        assert [e["version"] for e in w.date_change_history] == [2, 3]
        assert as_utc(w.end_at) == START + timedelta(days=2, minutes=180)
        assert len(lifecycle.list_history(w.id, "date_change")) == 2

        assert [x.id for x in lifecycle.get_unconfirmed_participants(w.id, "date")] == [p.id]
        assert lifecycle.get_unconfirmed_participants(w.id, "location") == []
        assert participations.is_unconfirmed(p, w, "date") is True
        assert participations.is_unconfirmed(p, w, "location") is False

    def test_confirm_date_change_clears_unconfirmed(self, make_workshop, make_user):
        w = make_workshop(start_at=START)
        p = participations.register(w.id, make_user().id)
        lifecycle.update_workshop(w.id, {"start_at": START + timedelta(hours=2)})

        result = participations.confirm_change(p.id, "date")
        assert result == {"participation_id": p.id, "dimension": "date", "changed": True,
                          "confirmed_version": 2}
        assert lifecycle.get_unconfirmed_participants(w.id) == []

        again = participations.confirm_change(p.id, "date")
        assert again["changed"] is False

    def test_switch_to_remote_is_a_location_change(self, make_workshop, make_user):
        w = make_workshop()
        p = participations.register(w.id, make_user().id)
        result = lifecycle.update_workshop(w.id, {"is_remote": True,
                                                  "visio_link": "https://visio.example.org/x"})
        assert result["location_changed"] is True
        assert result["date_changed"] is False
        assert w.location_confirmation_version == 2
        assert w.date_confirmation_version == 1
        assert w.location is None
        assert w.location_change_history[0]["old_location"]["city"] == "Lyon"
        assert participations.is_unconfirmed(p, w, "location") is True

    def test_change_notifies_participants(self, make_workshop, make_user):
        w = make_workshop()
        participations.register(w.id, make_user().id)
        lifecycle.update_workshop(w.id, {"location": {"city": "Paris"}})
        assert lifecycle.list_history(w.id, "email_sent") == []

        assert db_commit_or_error() is None
        emails = lifecycle.list_history(w.id, "email_sent")
        assert len(emails) == 1
        assert emails[0].metadata_json["template"] == "location_change"

    def test_capacity_cannot_drop_below_active_roster(self, make_workshop, make_user):
        w = make_workshop(audience_number=2, classification_status="interne_etudiants_alumnis")
        participations.register(w.id, make_user().id)
        participations.register(w.id, make_user().id)

        with pytest.raises(ValidationError) as exc:
            lifecycle.update_workshop(w.id, {"audience_number": 1})
        assert exc.value.details["audience_number"] == "must be >= 2"

    def test_capacity_change_bumps_roster_version(self, make_workshop, make_user):
        w = make_workshop(audience_number=2, classification_status="interne_etudiants_alumnis")
        participations.register(w.id, make_user().id)
        before = _roster_version(w.id)

        lifecycle.update_workshop(w.id, {"audience_number": 5})
        assert _roster_version(w.id) == before + 1
        assert participations.remaining_seats(w.id) == 4


# ═════════════════════════════════════════════════════════════════════════════
# Close / cancel
# ═════════════════════════════════════════════════════════════════════════════


class TestClose:
    def test_close_before_end_is_a_no_op(self, make_workshop):
        w = make_workshop()
        result = lifecycle.close_workshop(w.id)
        assert result["changed"] is False
        assert result["reason"] == "not_ended"
        assert w.lifecycle_status == "active"

    def test_close_after_end_and_idempotent(self, make_workshop):
        w = make_workshop(start_at=utcnow() - timedelta(days=1))
        result = lifecycle.close_workshop(w.id)
        assert result["changed"] is True
        assert w.lifecycle_status == "closed"
        assert w.closed_at is not None

        again = lifecycle.close_workshop(w.id)
        assert again == {"workshop_id": w.id, "changed": False, "lifecycle_status": "closed",
                         "reason": "already_closed"}

    def test_close_with_explicit_clock(self, make_workshop):
        w = make_workshop(start_at=START)
        assert lifecycle.close_workshop(w.id, now=START + timedelta(minutes=179))["changed"] is False
        assert lifecycle.close_workshop(w.id, now=START + timedelta(minutes=180))["changed"] is True

    def test_close_ended_sweep(self, make_workshop):
        past_a = make_workshop(start_at=utcnow() - timedelta(days=2))
        past_b = make_workshop(start_at=utcnow() - timedelta(days=1))
        future = make_workshop()

        closed = lifecycle.close_ended_workshops()
        assert set(closed) == {past_a.id, past_b.id}
        assert future.lifecycle_status == "active"
        assert lifecycle.close_ended_workshops() == []

    def test_canceled_workshop_cannot_be_closed(self, make_workshop):
        w = make_workshop(start_at=utcnow() - timedelta(days=1))
        lifecycle.cancel_workshop(w.id)
        with pytest.raises(InvalidStateError):
            lifecycle.close_workshop(w.id)


class TestCancel:
    def test_cancel_notifies_active_participants(self, make_workshop, make_user):
        w = make_workshop()
        participations.register(w.id, make_user().id)
        gone = participations.register(w.id, make_user().id)
        participations.cancel(gone.id)

        result = lifecycle.cancel_workshop(w.id, reason="salle indisponible")
        assert result["changed"] is True
        assert result["notified"] == 1
        assert w.lifecycle_status == "canceled"
        assert db_commit_or_error() is None
        assert len(lifecycle.list_history(w.id, "email_sent")) == 1

    def test_failed_commit_sends_no_cancel_email(self, make_workshop, make_user, monkeypatch):
        w = make_workshop()
        participations.register(w.id, make_user().id)
        sent = []
        monkeypatch.setattr(email_service, "send_workshop_email",
                            lambda recipients, subject, html: sent.extend(recipients) or {})

        lifecycle.cancel_workshop(w.id)

        def failing_commit():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(db.session, "commit", failing_commit)
        _, status = db_commit_or_error()
        assert status == 503
        assert sent == []

    def test_cancel_twice_is_a_no_op(self, make_workshop):
        w = make_workshop()
        lifecycle.cancel_workshop(w.id)
        result = lifecycle.cancel_workshop(w.id)
        assert result["changed"] is False

    def test_closed_workshop_cannot_be_canceled(self, make_workshop):
        w = make_workshop(start_at=utcnow() - timedelta(days=1))
        lifecycle.close_workshop(w.id)
        with pytest.raises(InvalidStateError):
            lifecycle.cancel_workshop(w.id)

    def test_registration_refused_once_canceled(self, make_workshop, make_user):
        w = make_workshop()
        lifecycle.cancel_workshop(w.id)
        with pytest.raises(InvalidStateError):
            participations.register(w.id, make_user().id)
