"""
Workshops, classification and progression API tests.

Rows are created through the API so every step is committed the way a
real client would see it.
"""

from datetime import timedelta

import pytest

from atelier.utils.helpers import utcnow

BASE = "/api/v1"


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════


def _iso(dt):
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def _create_user(client, email="orga@example.org"):
    r = client.post(f"{BASE}/users", json={"email": email, "first_name": "Olga"})
    assert r.status_code == 201, r.get_json()
    return r.get_json()


@pytest.fixture()
def catalog(client):
    organizer = _create_user(client)
    r = client.post(f"{BASE}/families", json={"code": "FDFP", "name": "Fresque de la Fresque"})
    assert r.status_code == 201
    family = r.get_json()
    r = client.post(f"{BASE}/families/{family['id']}/types",
                    json={"code": "workshop", "label": "Atelier", "default_duration_minutes": 180})
    assert r.status_code == 201
    return {"organizer": organizer, "family": family, "type": r.get_json()}


def _create_workshop(client, catalog, **overrides):
    payload = {
        "organizer_id": catalog["organizer"]["id"],
        "family_id": catalog["family"]["id"],
        "type_id": catalog["type"]["id"],
        "title": "Atelier Climat",
        "start_at": "2030-05-01T09:30:00Z",
        "audience_number": 12,
        "classification_status": "interne_asso",
        "location": {"venue_name": "La Ruche", "city": "Lyon"},
    }
    payload.update(overrides)
    r = client.post(f"{BASE}/workshops", json=payload)
    assert r.status_code == 201, r.get_json()
    return r.get_json()


# ═════════════════════════════════════════════════════════════════════════════
# Health
# ═════════════════════════════════════════════════════════════════════════════


class TestHealth:
    def test_ready(self, client):
        r = client.get(f"{BASE}/health/ready")
        assert r.status_code == 200
        assert r.get_json() == {"status": "ok"}
        assert "X-Request-ID" in r.headers

    def test_live(self, client):
        r = client.get(f"{BASE}/health/live")
        assert r.status_code == 200
        body = r.get_json()
        assert body["checks"]["database"]["status"] == "ok"
        assert body["checks"]["mail"]["status"] == "log_only"


# ═════════════════════════════════════════════════════════════════════════════
# Catalog & workshops
# ═════════════════════════════════════════════════════════════════════════════


class TestCatalog:
    def test_families_list_types(self, client, catalog):
        r = client.get(f"{BASE}/families")
        assert r.status_code == 200
        families = r.get_json()
        assert families[0]["code"] == "FDFP"
        assert [t["code"] for t in families[0]["types"]] == ["workshop"]

    def test_family_requires_code_and_name(self, client):
        r = client.post(f"{BASE}/families", json={"code": "X"})
        assert r.status_code == 400
        assert r.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_type_on_unknown_family(self, client):
        r = client.post(f"{BASE}/families/nope/types", json={"code": "w", "label": "W"})
        assert r.status_code == 404


class TestWorkshopCrud:
    def test_create(self, client, catalog):
        w = _create_workshop(client, catalog)
        assert w["lifecycle_status"] == "active"
        assert w["end_at"].startswith("2030-05-01T12:30:00")
        assert w["remaining_seats"] == 12
        assert w["classification_label"] == "Association - Interne"
        assert w["ticket_types"][0]["price"] == 8.0
        assert w["date_confirmation_version"] == 1

    def test_create_missing_fields(self, client, catalog):
        r = client.post(f"{BASE}/workshops", json={"organizer_id": catalog["organizer"]["id"]})
        assert r.status_code == 422
        assert "title" in r.get_json()["details"]

    def test_create_requires_organizer(self, client, catalog):
        r = client.post(f"{BASE}/workshops", json={"title": "Sans organisateur"})
        assert r.status_code == 400

    def test_create_with_unknown_family(self, client, catalog):
        r = client.post(f"{BASE}/workshops", json={
            "organizer_id": catalog["organizer"]["id"], "family_id": "nope",
            "type_id": catalog["type"]["id"], "title": "T", "start_at": "2030-05-01T09:30:00Z",
            "audience_number": 5,
        })
        assert r.status_code == 404
        assert r.get_json()["code"] == "ERR_NOT_FOUND"

    def test_get_unknown(self, client):
        assert client.get(f"{BASE}/workshops/nope").status_code == 404

    def test_list_filters_by_organizer(self, client, catalog):
        _create_workshop(client, catalog)
        other = _create_user(client, "other@example.org")
        _create_workshop(client, catalog, organizer_id=other["id"])
        r = client.get(f"{BASE}/workshops", query_string={"organizer_id": other["id"]})
        assert [w["organizer_id"] for w in r.get_json()] == [other["id"]]

    def test_end_at_is_immutable(self, client, catalog):
        w = _create_workshop(client, catalog)
        r = client.patch(f"{BASE}/workshops/{w['id']}", json={"end_at": "2031-01-01T00:00:00Z"})
        assert r.status_code == 422
        assert r.get_json()["details"] == {"end_at": "immutable"}

    def test_date_change(self, client, catalog):
        w = _create_workshop(client, catalog)
        r = client.patch(f"{BASE}/workshops/{w['id']}", json={"start_at": "2030-05-03T09:30:00Z"},
                         headers={"X-User-Id": catalog["organizer"]["id"]})
        assert r.status_code == 200
        body = r.get_json()
        assert body["date_changed"] is True
        assert body["date_confirmation_version"] == 2
        assert body["workshop"]["modified_date_flag"] is True
        assert body["workshop"]["end_at"].startswith("2030-05-03T12:30:00")

        history = client.get(f"{BASE}/workshops/{w['id']}/history",
                             query_string={"log_type": "date_change"}).get_json()
        assert history["total"] == 1
        assert history["items"][0]["actor_user_id"] == catalog["organizer"]["id"]

    def test_empty_patch(self, client, catalog):
        w = _create_workshop(client, catalog)
        assert client.patch(f"{BASE}/workshops/{w['id']}", json={}).status_code == 400


class TestWorkshopLifecycleApi:
    def test_close_before_end(self, client, catalog):
        w = _create_workshop(client, catalog)
        r = client.post(f"{BASE}/workshops/{w['id']}/close")
        assert r.status_code == 200
        assert r.get_json()["changed"] is False

    def test_cancel_then_close(self, client, catalog):
        w = _create_workshop(client, catalog)
        r = client.post(f"{BASE}/workshops/{w['id']}/cancel", json={"reason": "météo"})
        assert r.status_code == 200
        assert r.get_json()["lifecycle_status"] == "canceled"

        r = client.post(f"{BASE}/workshops/{w['id']}/close")
        assert r.status_code == 409
        assert r.get_json()["kind"] == "InvalidState"

    def test_close_ended_sweep(self, client, catalog):
        past = _create_workshop(client, catalog, start_at=_iso(utcnow() - timedelta(days=1)))
        _create_workshop(client, catalog)
        r = client.post(f"{BASE}/workshops/close-ended")
        assert r.get_json() == {"closed": [past["id"]], "count": 1}

    def test_calendar_export(self, client, catalog):
        w = _create_workshop(client, catalog)
        r = client.get(f"{BASE}/workshops/{w['id']}/calendar.ics")
        assert r.status_code == 200
        assert r.mimetype == "text/calendar"
        text = r.get_data(as_text=True)
        assert text.startswith("BEGIN:VCALENDAR\r\n")
        assert f"UID:{w['id']}@atelier.local" in text

    def test_unconfirmed_participants(self, client, catalog):
        w = _create_workshop(client, catalog)
        user = _create_user(client, "lea@example.org")
        client.post(f"{BASE}/workshops/{w['id']}/participations", json={"user_id": user["id"]})
        client.patch(f"{BASE}/workshops/{w['id']}", json={"location": {"city": "Paris"}})

        r = client.get(f"{BASE}/workshops/{w['id']}/unconfirmed", query_string={"dimension": "location"})
        assert r.get_json()["total"] == 1
        r = client.get(f"{BASE}/workshops/{w['id']}/unconfirmed", query_string={"dimension": "date"})
        assert r.get_json()["total"] == 0
        r = client.get(f"{BASE}/workshops/{w['id']}/unconfirmed", query_string={"dimension": "venue"})
        assert r.status_code == 422

    def test_participants_roster(self, client, catalog):
        w = _create_workshop(client, catalog, classification_status="interne_etudiants_alumnis")
        user = _create_user(client, "lea@example.org")
        client.post(f"{BASE}/workshops/{w['id']}/participations", json={"user_id": user["id"]})
        body = client.get(f"{BASE}/workshops/{w['id']}/participants").get_json()
        assert body["total"] == 1
        assert body["remaining_seats"] == 11
        assert body["items"][0]["user"]["email"] == "lea@example.org"

    def test_mark_all_attended_before_end(self, client, catalog):
        w = _create_workshop(client, catalog)
        r = client.post(f"{BASE}/workshops/{w['id']}/attendance/mark-all")
        assert r.status_code == 409


# ═════════════════════════════════════════════════════════════════════════════
# Classification
# ═════════════════════════════════════════════════════════════════════════════


class TestClassificationApi:
    def test_partial_path(self, client):
        r = client.post(f"{BASE}/classification/resolve",
                        json={"audience": "pro", "organization": "enseignement"})
        assert r.status_code == 200
        body = r.get_json()
        assert body["complete"] is False
        assert body["next_step"] == "sub_audience"
        assert body["ticket_types"] == []

    def test_complete_path(self, client):
        r = client.post(f"{BASE}/classification/resolve", json={
            "audience": "pro", "organization": "enseignement",
            "sub_audience": "etudiants_alumnis", "situation": "external",
        })
        body = r.get_json()
        assert body["classification_status"] == "externe_etudiants_alumnis"
        assert body["ticket_types"][0]["price"] == 4.0

    def test_formation_path(self, client):
        body = client.post(f"{BASE}/classification/resolve", json={"is_formation": True}).get_json()
        assert body["classification_status"] == "formation"
        assert body["ticket_types"][0]["type"] == "gratuit"

    def test_invalid_answer(self, client):
        r = client.post(f"{BASE}/classification/resolve", json={"audience": "martians"})
        assert r.status_code == 422

    def test_pricing_table(self, client):
        body = client.get(f"{BASE}/classification/pricing").get_json()
        prices = {i["classification_status"]: i["price"] for i in body["items"]}
        assert prices["interne_asso"] == 8.0
        assert body["fallback_price"] == 12.0


# ═════════════════════════════════════════════════════════════════════════════
# Progression
# ═════════════════════════════════════════════════════════════════════════════


class TestProgressionApi:
    def _level(self, client, family_id, level, **requirement):
        return client.post(f"{BASE}/families/{family_id}/role-levels", json={
            "level": level, "code": f"animateur_{level}", "label": f"Animateur {level}",
            "requirement": requirement,
        })

    def test_role_level_crud(self, client, catalog):
        r = self._level(client, catalog["family"]["id"], 1, min_workshops_total=2)
        assert r.status_code == 201
        assert r.get_json()["requirement"]["min_workshops_total"] == 2

        levels = client.get(f"{BASE}/families/{catalog['family']['id']}/role-levels").get_json()
        assert [lv["level"] for lv in levels] == [1]

    def test_role_level_validation(self, client, catalog):
        r = self._level(client, catalog["family"]["id"], 1, min_workshops_total=-1)
        assert r.status_code == 400

    def test_duplicate_level(self, client, catalog):
        self._level(client, catalog["family"]["id"], 1)
        r = self._level(client, catalog["family"]["id"], 1)
        assert r.status_code == 409

    def test_progression_and_gate(self, client, catalog):
        family_id = catalog["family"]["id"]
        user_id = catalog["organizer"]["id"]
        self._level(client, family_id, 1, min_workshops_total=1)

        r = client.get(f"{BASE}/users/{user_id}/progression", query_string={"family_id": family_id})
        assert r.status_code == 200
        body = r.get_json()
        assert body["current_level"] == 0
        assert body["reason"] == "min_workshops_total: 0/1"

        r = client.get(f"{BASE}/users/{user_id}/progression/levels/1",
                       query_string={"family_id": family_id})
        assert r.status_code == 403
        assert r.get_json()["kind"] == "RequirementNotMet"

    def test_progression_requires_family(self, client, catalog):
        r = client.get(f"{BASE}/users/{catalog['organizer']['id']}/progression")
        assert r.status_code == 400

    def test_progression_unknown_user(self, client, catalog):
        r = client.get(f"{BASE}/users/ghost/progression",
                       query_string={"family_id": catalog["family"]["id"]})
        assert r.status_code == 404
