"""
Shared pytest fixtures for the Atelier Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - family / workshop_type / formation_type: catalog rows
    - organizer: the user owning the workshops under test
    - make_user / make_workshop: ORM factories (flush only)

Service-level tests work on flushed rows inside the per-test app context.
API tests that build rows through the ORM commit before calling the client.
"""

from datetime import timedelta

import pytest

from atelier import create_app
from atelier.models import db as _db
from atelier.models.user import User
from atelier.models.workshop import WorkshopFamily, WorkshopType
from atelier.services.workshop_lifecycle import create_workshop
from atelier.utils.helpers import utcnow


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── ORM factories ────────────────────────────────────────────────────────


_user_seq = {"n": 0}


def _user(email=None, first_name="Camille", last_name="Test") -> User:
    """Create and flush a User row."""
    _user_seq["n"] += 1
    u = User(email=email or f"user{_user_seq['n']}@example.org",
             first_name=first_name, last_name=last_name)
    _db.session.add(u)
    _db.session.flush()
    return u


@pytest.fixture()
def make_user():
    return _user


@pytest.fixture()
def organizer():
    return _user("orga@example.org", first_name="Olga", last_name="Orga")


@pytest.fixture()
def family():
    f = WorkshopFamily(code="FDFP", name="Fresque de la Fresque")
    _db.session.add(f)
    _db.session.flush()
    return f


@pytest.fixture()
def workshop_type(family):
    t = WorkshopType(family_id=family.id, code="workshop", label="Atelier",
                     is_formation=False, default_duration_minutes=180)
    _db.session.add(t)
    _db.session.flush()
    return t


@pytest.fixture()
def formation_type(family):
    t = WorkshopType(family_id=family.id, code="formation_pro_1", label="Formation Pro 1",
                     is_formation=True)
    _db.session.add(t)
    _db.session.flush()
    return t


@pytest.fixture()
def make_workshop(family, workshop_type, organizer):
    """Factory: an active on-site workshop in ten days, priced ``interne_asso`` (8 €).

    Keyword overrides are passed to ``create_workshop``; ``organizer_id``
    picks another organizer. Remote workshops get no default location.
    """

    def _make(**overrides):
        organizer_id = overrides.pop("organizer_id", organizer.id)
        data = {
            "family_id": family.id,
            "type_id": workshop_type.id,
            "title": "Atelier Climat",
            "start_at": utcnow() + timedelta(days=10),
            "audience_number": 10,
            "classification_status": "interne_asso",
        }
        if not overrides.get("is_remote"):
            data["location"] = {"venue_name": "La Ruche", "city": "Lyon", "postal_code": "69001"}
        data.update(overrides)
        return create_workshop(data, organizer_id)

    return _make
