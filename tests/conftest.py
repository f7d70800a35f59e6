"""
Shared pytest fixtures for the Beta Testing Program Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - ledger: Recording reward ledger swapped into the app (autouse)
    - publisher / tester / other_tester: Caller identities
    - title: a TESTING title owned by ``publisher``
    - enrolled: ``tester`` with an accepted agreement and an active enrollment
"""

import pytest

from betaprogram import create_app
from betaprogram.models import db as _db
from betaprogram.models.title import RELEASE_TESTING, Title
from betaprogram.services import agreement_service, enrollment_service
from betaprogram.services.permission import ROLE_PUBLISHER, ROLE_TESTER, Caller
from betaprogram.services.rewards import EXTENSION_KEY, RewardLedger

PUBLISHER_ID = "pub-1"
TESTER_ID = "tester-1"
OTHER_TESTER_ID = "tester-2"


class RecordingRewardLedger(RewardLedger):
    """Captures emitted reward events; can be told to fail."""

    def __init__(self):
        self.events = []
        self.fail = False

    def emit(self, event):
        if self.fail:
            raise RuntimeError("ledger unavailable")
        self.events.append(event)


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


@pytest.fixture(autouse=True)
def ledger(app):
    """Replace the configured reward ledger with a recording one."""
    original = app.extensions[EXTENSION_KEY]
    recording = RecordingRewardLedger()
    app.extensions[EXTENSION_KEY] = recording
    yield recording
    app.extensions[EXTENSION_KEY] = original


# ── Identities ───────────────────────────────────────────────────────────


@pytest.fixture()
def publisher():
    return Caller(user_id=PUBLISHER_ID, role=ROLE_PUBLISHER)


@pytest.fixture()
def tester():
    return Caller(user_id=TESTER_ID, role=ROLE_TESTER)


@pytest.fixture()
def other_tester():
    return Caller(user_id=OTHER_TESTER_ID, role=ROLE_TESTER)


# ── Convenience fixtures ─────────────────────────────────────────────────


def _make_title(publisher_id=PUBLISHER_ID, name="Starfall", state=RELEASE_TESTING) -> Title:
    t = Title(publisher_id=publisher_id, name=name, release_state=state)
    _db.session.add(t)
    _db.session.commit()
    return t


def _enroll(caller: Caller, title_id: int):
    agreement_service.record_acceptance(caller, caller.user_id, title_id, {"origin": "test"}, origin="test")
    return enrollment_service.join(caller, caller.user_id, title_id)


@pytest.fixture()
def make_title():
    """Factory: persist a Title directly in a given release state."""
    return _make_title


@pytest.fixture()
def enroll():
    """Factory: accept the agreement and join, as a tester would."""
    return _enroll


@pytest.fixture()
def title():
    """A TESTING title owned by the default publisher."""
    return _make_title()


@pytest.fixture()
def enrolled(tester, title):
    """The default tester, enrolled on ``title``."""
    return _enroll(tester, title.id)
