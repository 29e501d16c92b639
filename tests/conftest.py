"""
Shared pytest fixtures for the matterflow test suite.

Provides:
    - app: Flask application (session-scoped, in-memory SQLite)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB session; rollback + recreate tables afterwards (autouse)
    - make_template: Factory building a template from stage definitions
    - activate: Factory activating a template on the test matter
"""

import itertools

import pytest

from matterflow import create_app
from matterflow.models import db as _db
from matterflow.services.workflow_activation import activate_workflow
from matterflow.services.workflow_template_service import create_workflow_template

FIRM_ID = "firm-0001"
MATTER_ID = "matter-0001"
USER_ID = "user-0001"


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
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield _db.session
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def make_template(session):
    """Return a factory: make_template(stages, **template_fields) -> WorkflowTemplate.

    Stage dicts use the template definition shape; ``sort_order`` defaults
    to the stage's 1-based position.
    """
    counter = itertools.count(1)

    def _make(stages, **fields):
        definition = {
            "key": f"test-workflow-{next(counter)}",
            "version": "1.0.0",
            "name": "Test Workflow",
            "stages": stages,
        }
        definition.update(fields)
        return create_workflow_template(session, definition)

    return _make


@pytest.fixture()
def activate(session):
    """Return a factory activating a template on MATTER_ID (kwargs pass through)."""

    def _activate(template, conditions=None, **kwargs):
        params = {
            "firm_id": FIRM_ID,
            "matter_id": MATTER_ID,
            "workflow_template_id": template.id,
            "activated_by_id": USER_ID,
            "conditions": conditions,
        }
        params.update(kwargs)
        return activate_workflow(session, **params)

    return _activate
