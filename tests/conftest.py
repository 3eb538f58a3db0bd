"""
DealerFlow Workflow Engine — pytest fixtures.

Uses SQLite in-memory for API and SQL repository tests; every test gets
fresh tables. Engine-level tests run on the in-memory repository with a
controllable clock so deadline arithmetic is deterministic.
"""

import pytest

from dealerflow import create_app
from dealerflow.models import db as _db
from dealerflow.persistence import InMemoryWorkflowRepository
from dealerflow.services.directory import seed_directory
from dealerflow.services.stage_catalog import StageCatalog
from dealerflow.services.workflow_service import WorkflowEngine, get_engine
from factories import FrozenClock


# ── Flask application (SQL repository) ───────────────────────────────────

@pytest.fixture(scope="session")
def app():
    """Create application for testing."""
    app = create_app("testing")
    return app


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables once for the test session."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Provide a clean app context per test; tables are recreated afterwards."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def directory(app):
    """Seed the bundled roles and users into the SQL store."""
    return seed_directory(get_engine().repository)


# ── Engine on the in-memory repository ───────────────────────────────────

@pytest.fixture()
def clock():
    return FrozenClock()


@pytest.fixture()
def catalog():
    return StageCatalog.from_directory()


@pytest.fixture()
def repo():
    repository = InMemoryWorkflowRepository()
    seed_directory(repository)
    return repository


@pytest.fixture()
def engine(catalog, repo, clock):
    return WorkflowEngine(catalog, repo, clock=clock)
