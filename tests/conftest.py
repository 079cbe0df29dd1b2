"""
Shared pytest fixtures for the DocLedger test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - project: Project with owner / editor / viewer / two approvers
    - OWNER, EDITOR, VIEWER, APPROVER, APPROVER_2, OUTSIDER actors
"""

import pytest

from docledger import create_app
from docledger.models import db as _db
from docledger.services import project_service
from docledger.services.role_gate import Actor

OWNER = Actor("u-owner", "owner@example.com")
EDITOR = Actor("u-editor", "editor@example.com")
VIEWER = Actor("u-viewer")
APPROVER = Actor("u-approver", "approver@example.com")
APPROVER_2 = Actor("u-approver-2")
OUTSIDER = Actor("u-outsider")


def headers(actor):
    """Identity headers the gateway would forward for ``actor``."""
    h = {"X-User-Id": actor.user_id}
    if actor.email:
        h["X-User-Email"] = actor.email
    return h


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
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def project():
    """Project with an owner, an editor, a viewer and two approvers."""
    proj = project_service.create_project(OWNER, {"code": "ERP", "name": "ERP Rollout"})
    project_service.set_member(proj.id, OWNER, EDITOR.user_id, "editor", "Eda Editor")
    project_service.set_member(proj.id, OWNER, VIEWER.user_id, "viewer")
    project_service.set_member(proj.id, OWNER, APPROVER.user_id, "viewer", "Ada Approver")
    project_service.set_member(proj.id, OWNER, APPROVER_2.user_id, "viewer")
    project_service.set_approver(proj.id, OWNER, APPROVER.user_id)
    project_service.set_approver(proj.id, OWNER, APPROVER_2.user_id)
    return proj


@pytest.fixture()
def pid(project):
    return project.id
