"""
Participations API tests — registration, transitions, reconfirmation,
attendance and feedback over HTTP.

Error bodies carry ``kind`` for booking failures; clients branch on it.
"""

from datetime import timedelta

import pytest

from atelier.utils.helpers import utcnow

BASE = "/api/v1"
FREE = "interne_etudiants_alumnis"


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════


_seq = {"n": 0}


def _user(client):
    _seq["n"] += 1
    r = client.post(f"{BASE}/users", json={"email": f"p{_seq['n']}@example.org", "first_name": "Lou"})
    assert r.status_code == 201
    return r.get_json()["id"]


@pytest.fixture()
def new_workshop(client):
    """Factory creating a workshop through the API; returns its id."""
    organizer = _user(client)
    family = client.post(f"{BASE}/families", json={"code": "FDFP", "name": "Fresque"}).get_json()
    wtype = client.post(f"{BASE}/families/{family['id']}/types",
                        json={"code": "workshop", "label": "Atelier"}).get_json()

    def _make(**overrides):
        payload = {
            "organizer_id": organizer,
            "family_id": family["id"],
            "type_id": wtype["id"],
            "title": "Atelier Climat",
            "start_at": (utcnow() + timedelta(days=10)).isoformat(),
            "audience_number": 10,
            "classification_status": "interne_asso",
            "location": {"city": "Lyon"},
        }
        payload.update(overrides)
        r = client.post(f"{BASE}/workshops", json=payload)
        assert r.status_code == 201, r.get_json()
        return r.get_json()["id"]

    return _make


def _register(client, workshop_id, user_id, **extra):
    return client.post(f"{BASE}/workshops/{workshop_id}/participations",
                       json={"user_id": user_id, **extra})


def _transition(client, participation_id, action, **extra):
    return client.post(f"{BASE}/participations/{participation_id}/transition",
                       json={"action": action, **extra})


# ═════════════════════════════════════════════════════════════════════════════
# Users & registration
# ═════════════════════════════════════════════════════════════════════════════


class TestUsers:
    def test_invalid_email(self, client):
        r = client.post(f"{BASE}/users", json={"email": "not-an-email"})
        assert r.status_code == 400

    def test_get_or_create_is_case_insensitive(self, client):
        a = client.post(f"{BASE}/users", json={"email": "Lou@Example.org"}).get_json()
        b = client.post(f"{BASE}/users", json={"email": "lou@example.org"}).get_json()
        assert a["id"] == b["id"]
        assert a["email"] == "lou@example.org"


class TestRegistrationApi:
    def test_register(self, client, new_workshop):
        wid = new_workshop()
        r = _register(client, wid, _user(client))
        assert r.status_code == 201
        body = r.get_json()
        assert body["status"] == "en_attente"
        assert body["price_paid"] == 8.0
        assert body["available_transitions"] == ["confirm_payment", "cancel"]
        assert body["unconfirmed"] == {"date": False, "location": False}

    def test_user_required(self, client, new_workshop):
        r = client.post(f"{BASE}/workshops/{new_workshop()}/participations", json={})
        assert r.status_code == 400

    def test_unknown_workshop(self, client):
        r = _register(client, "nope", _user(client))
        assert r.status_code == 404

    def test_duplicate(self, client, new_workshop):
        wid, uid = new_workshop(), _user(client)
        _register(client, wid, uid)
        r = _register(client, wid, uid)
        assert r.status_code == 409
        body = r.get_json()
        assert body["kind"] == "DuplicateRegistration"
        assert body["code"] == "BOOKING_ERROR"

    def test_full(self, client, new_workshop):
        wid = new_workshop(audience_number=1, classification_status=FREE)
        assert _register(client, wid, _user(client)).status_code == 201
        r = _register(client, wid, _user(client))
        assert r.status_code == 409
        assert r.get_json()["kind"] == "CapacityExceeded"

    def test_unclassified(self, client, new_workshop):
        wid = new_workshop(classification_status=None)
        r = _register(client, wid, _user(client))
        assert r.status_code == 422
        assert r.get_json()["details"]["missing_step"] == "audience"

    def test_get_participation(self, client, new_workshop):
        pid = _register(client, new_workshop(), _user(client)).get_json()["id"]
        r = client.get(f"{BASE}/participations/{pid}")
        assert r.status_code == 200
        assert r.get_json()["user"]["first_name"] == "Lou"
        assert client.get(f"{BASE}/participations/nope").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


class TestTransitionApi:
    def test_confirm_payment_with_version(self, client, new_workshop):
        p = _register(client, new_workshop(), _user(client)).get_json()
        r = _transition(client, p["id"], "confirm_payment", expected_version=p["row_version"])
        assert r.status_code == 200
        assert r.get_json()["new_status"] == "paye"
        assert r.get_json()["row_version"] == p["row_version"] + 1

    def test_stale_version(self, client, new_workshop):
        p = _register(client, new_workshop(), _user(client)).get_json()
        _transition(client, p["id"], "confirm_payment")
        r = _transition(client, p["id"], "cancel", expected_version=p["row_version"])
        assert r.status_code == 409
        body = r.get_json()
        assert body["kind"] == "ConflictOrUnavailable"
        assert body["details"]["hint"] == "reload and retry"

    def test_non_integer_version(self, client, new_workshop):
        p = _register(client, new_workshop(), _user(client)).get_json()
        r = _transition(client, p["id"], "cancel", expected_version="latest")
        assert r.status_code == 422

    def test_invalid_transition(self, client, new_workshop):
        p = _register(client, new_workshop(), _user(client)).get_json()
        r = _transition(client, p["id"], "reinscribe")
        assert r.status_code == 409
        assert r.get_json()["details"]["current_status"] == "en_attente"

    def test_unknown_action(self, client, new_workshop):
        p = _register(client, new_workshop(), _user(client)).get_json()
        r = _transition(client, p["id"], "teleport")
        assert r.status_code == 422
        assert r.get_json()["code"] == "ERR_BUSINESS_RULE"

    def test_action_required(self, client, new_workshop):
        p = _register(client, new_workshop(), _user(client)).get_json()
        r = client.post(f"{BASE}/participations/{p['id']}/transition", json={})
        assert r.status_code == 400

    def test_remove_paid_then_refund(self, client, new_workshop):
        p = _register(client, new_workshop(), _user(client), mark_paid=True).get_json()

        r = client.delete(f"{BASE}/participations/{p['id']}")
        assert r.status_code == 409
        assert r.get_json()["kind"] == "PaymentPending"

        r = _transition(client, p["id"], "refund")
        assert r.status_code == 200
        assert r.get_json()["refund_amount"] == 8.0

        r = client.delete(f"{BASE}/participations/{p['id']}")
        assert r.status_code == 200
        assert client.get(f"{BASE}/participations/{p['id']}").status_code == 404

    def test_refund_inside_fee_window(self, client, new_workshop):
        wid = new_workshop(start_at=(utcnow() + timedelta(hours=12)).isoformat())
        p = _register(client, wid, _user(client), mark_paid=True).get_json()
        r = _transition(client, p["id"], "refund")
        assert r.status_code == 409
        assert r.get_json()["details"]["reason"] == "RefundNotEligible"

        r = _transition(client, p["id"], "refund", initiated_by="organizer")
        assert r.status_code == 200

    def test_exchange(self, client, new_workshop):
        source, target = new_workshop(classification_status=FREE), new_workshop(classification_status=FREE)
        p = _register(client, source, _user(client)).get_json()

        r = _transition(client, p["id"], "exchange", target_workshop_id=source)
        assert r.status_code == 422
        assert r.get_json()["kind"] == "SameWorkshop"

        r = _transition(client, p["id"], "exchange", target_workshop_id=target)
        assert r.status_code == 200
        new_id = r.get_json()["new_participation_id"]
        new_p = client.get(f"{BASE}/participations/{new_id}").get_json()
        assert new_p["workshop_id"] == target
        assert new_p["exchange_parent_participation_id"] == p["id"]
        assert "exchange" not in new_p["available_transitions"]


# ═════════════════════════════════════════════════════════════════════════════
# Reconfirmation, attendance, feedback
# ═════════════════════════════════════════════════════════════════════════════


class TestFollowUpApi:
    def test_confirm_change(self, client, new_workshop):
        wid = new_workshop()
        p = _register(client, wid, _user(client)).get_json()
        client.patch(f"{BASE}/workshops/{wid}",
                     json={"start_at": (utcnow() + timedelta(days=12)).isoformat()})

        assert client.get(f"{BASE}/participations/{p['id']}").get_json()["unconfirmed"]["date"] is True
        r = client.post(f"{BASE}/participations/{p['id']}/confirm-change", json={"dimension": "date"})
        assert r.status_code == 200
        assert r.get_json()["confirmed_version"] == 2
        assert client.get(f"{BASE}/participations/{p['id']}").get_json()["unconfirmed"]["date"] is False

    def test_confirm_change_bad_dimension(self, client, new_workshop):
        p = _register(client, new_workshop(), _user(client)).get_json()
        r = client.post(f"{BASE}/participations/{p['id']}/confirm-change", json={"dimension": "venue"})
        assert r.status_code == 422

    def test_attendance_after_end(self, client, new_workshop):
        wid = new_workshop(classification_status=FREE,
                           start_at=(utcnow() - timedelta(days=1)).isoformat())
        p = _register(client, wid, _user(client)).get_json()
        r = client.post(f"{BASE}/participations/{p['id']}/attendance", json={"attended": True})
        assert r.status_code == 200
        assert r.get_json()["attended"] is True

    def test_attendance_before_end(self, client, new_workshop):
        p = _register(client, new_workshop(classification_status=FREE), _user(client)).get_json()
        r = client.post(f"{BASE}/participations/{p['id']}/attendance", json={"attended": True})
        assert r.status_code == 409

    def test_feedback(self, client, new_workshop):
        wid = new_workshop(classification_status=FREE,
                           start_at=(utcnow() - timedelta(days=1)).isoformat())
        p = _register(client, wid, _user(client)).get_json()

        r = client.post(f"{BASE}/participations/{p['id']}/feedback", json={"rating": 7})
        assert r.status_code == 400

        r = client.post(f"{BASE}/participations/{p['id']}/feedback",
                        json={"rating": 5, "comment": "Super"})
        assert r.status_code == 201
        assert r.get_json()["rating"] == 5

        r = client.post(f"{BASE}/participations/{p['id']}/feedback", json={"rating": 4})
        assert r.status_code == 409
        assert r.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_feedback_before_end(self, client, new_workshop):
        p = _register(client, new_workshop(classification_status=FREE), _user(client)).get_json()
        r = client.post(f"{BASE}/participations/{p['id']}/feedback", json={"rating": 5})
        assert r.status_code == 409
        assert r.get_json()["kind"] == "InvalidState"
