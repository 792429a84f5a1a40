"""
Shared pytest fixtures for the takeoff import & progress ledger test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate, default templates seeded (autouse)
    - client: Flask test client (function-scoped)
    - project: Pre-created Project entity
    - rows: factory turning plain dicts into TakeoffRows
"""

import pytest

from pipetrack import create_app
from pipetrack.models import db as _db
from pipetrack.models.project import Project
from pipetrack.services.locks import reset_locks
from pipetrack.services.takeoff_parser import rows_from_records
from pipetrack.services.template_service import seed_default_templates


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


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
    """Per-test: open app context, seed templates, rollback + recreate after."""
    with app.app_context():
        reset_locks()
        seed_default_templates()
        _db.session.commit()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
        reset_locks()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def project():
    """Create and return a committed test Project."""
    p = Project(code="PRJ-1", name="Test Plant Expansion")
    _db.session.add(p)
    _db.session.commit()
    return p


@pytest.fixture()
def rows():
    """Build TakeoffRows from header-keyed dicts (row numbers start at 1)."""
    def _rows(*records):
        return rows_from_records(list(records))
    return _rows
