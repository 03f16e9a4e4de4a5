"""
Shared pytest fixtures for the hourbook test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - consultant / project / phase / ended_phase: planning containers
    - approved_allocation: 40h APPROVED PhaseAllocation on ``phase``
    - make_phase / make_consultant / plan_week: small factories
"""

from datetime import date, timedelta

import pytest

from hourbook import create_app
from hourbook.models import db as _db
from hourbook.models.planning import Consultant, Phase, Project
from hourbook.services import allocation_ledger as ledger
from hourbook.services import approval_state_machine as asm

# A Monday well inside every test window
MONDAY = date(2026, 3, 2)
APPROVER = "lead@example.com"


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


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_consultant():
    counter = {"n": 0}

    def _make(name=None, is_active=True):
        counter["n"] += 1
        c = Consultant(
            name=name or f"Consultant {counter['n']}",
            email=f"consultant{counter['n']}@example.com",
            is_active=is_active,
        )
        _db.session.add(c)
        _db.session.commit()
        return c

    return _make


@pytest.fixture()
def make_project():
    def _make(title="Core Rollout"):
        p = Project(title=title)
        _db.session.add(p)
        _db.session.commit()
        return p

    return _make


@pytest.fixture()
def make_phase(project):
    def _make(start=None, end=None, name="Build", owner=None):
        start = start or date.today() - timedelta(days=30)
        end = end or date.today() + timedelta(days=120)
        ph = Phase(project_id=(owner or project).id, name=name, start_date=start, end_date=end)
        _db.session.add(ph)
        _db.session.commit()
        return ph

    return _make


@pytest.fixture()
def plan_week():
    """Submit ``hours`` for the week starting ``monday`` on an allocation."""
    def _plan(allocation_id, monday, hours, **kwargs):
        return ledger.submit_weekly_hours(allocation_id, monday, hours, **kwargs)

    return _plan


@pytest.fixture()
def approve():
    """Request and approve ``hours`` for a consultant on a phase in one step."""
    def _approve(consultant_id, phase_id, hours=40):
        alloc = ledger.create_or_merge_allocation(consultant_id, phase_id, hours)
        return asm.approve_phase(alloc.id, APPROVER)

    return _approve


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def consultant(make_consultant):
    return make_consultant("Ada Example")


@pytest.fixture()
def project(make_project):
    return make_project()


@pytest.fixture()
def phase(make_phase):
    """Open phase: started a month ago, ends in four months."""
    return make_phase(name="Realize")


@pytest.fixture()
def ended_phase(make_phase):
    """Phase that ended yesterday."""
    return make_phase(
        start=date.today() - timedelta(days=90),
        end=date.today() - timedelta(days=1),
        name="Explore",
    )


@pytest.fixture()
def approved_allocation(consultant, phase, approve):
    return approve(consultant.id, phase.id, 40)
