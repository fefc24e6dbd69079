import os

# In-memory database; must be set before app is imported
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from flask import g, request_started

from app import (
    app as flask_app, db, ensure_seed_data, User, Donor, GrantCall, FundingCycle,
    CycleGrantInclusion, CycleStateAllocation, EmergencyRoom, Project,
)
from budget_helpers import FUNDING_UNASSIGNED, STATUS_PENDING
from permissions import ROLE_SUPERADMIN, ROLE_STATE_ERR, ROLE_BASE_ERR

PASSWORD = "secret123"


def login(client, email, password=PASSWORD):
    return client.post("/api/login", json={"email": email, "password": password})


@pytest.fixture
def app(tmp_path):
    flask_app.config.update(
        TESTING=True,
        UPLOAD_FOLDER=str(tmp_path / "uploads"),
        USER_OVERRIDES_PATH=str(tmp_path / "user_overrides.json"),
        MAX_UPLOAD_MB=10,
    )
    def _reset_login_cache(sender, **extra):
        # Test clients share the fixture's app context (and so ``g``); drop
        # Flask-Login's cached user so each request loads its own session user.
        g.pop("_login_user", None)

    request_started.connect(_reset_login_cache, flask_app)
    with flask_app.app_context():
        db.create_all()
        ensure_seed_data()
        yield flask_app
        db.session.remove()
        db.drop_all()
    request_started.disconnect(_reset_login_cache, flask_app)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make(email, role=ROLE_SUPERADMIN, state=None):
        user = User(email=email, full_name=email.split("@")[0], role=role, state=state)
        user.set_password(PASSWORD)
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def admin_client(client, make_user):
    make_user("admin@example.org", ROLE_SUPERADMIN)
    login(client, "admin@example.org")
    return client


@pytest.fixture
def state_client(app, make_user):
    """Logged-in state ERR user for Khartoum"""
    make_user("khartoum@example.org", ROLE_STATE_ERR, state="Khartoum")
    client = app.test_client()
    login(client, "khartoum@example.org")
    return client


@pytest.fixture
def base_client(app, make_user):
    make_user("base@example.org", ROLE_BASE_ERR, state="Khartoum")
    client = app.test_client()
    login(client, "base@example.org")
    return client


@pytest.fixture
def donor(app):
    donor = Donor(name="People to Help", short_name="P2H")
    db.session.add(donor)
    db.session.commit()
    return donor


@pytest.fixture
def grant_call(donor):
    grant_call = GrantCall(name="Emergency Call", shortname="EC", donor_id=donor.id, amount=100000)
    db.session.add(grant_call)
    db.session.commit()
    return grant_call


@pytest.fixture
def cycle(grant_call):
    """Cycle 1/2025 with 50,000 of the grant call included and 20,000 allocated to Khartoum"""
    cycle = FundingCycle(cycle_number=1, year=2025, name="Cycle 1")
    db.session.add(cycle)
    db.session.flush()
    db.session.add(CycleGrantInclusion(cycle_id=cycle.id, grant_call_id=grant_call.id, amount_included=50000))
    db.session.add(CycleStateAllocation(cycle_id=cycle.id, state_name="Khartoum", amount=20000))
    db.session.commit()
    return cycle


@pytest.fixture
def allocation(cycle):
    return CycleStateAllocation.query.filter_by(cycle_id=cycle.id, state_name="Khartoum").first()


@pytest.fixture
def room(app):
    room = EmergencyRoom(err_code="KH-BAH-01", name="Bahri ERR", name_ar="غرفة طوارئ بحري", state="Khartoum")
    db.session.add(room)
    db.session.commit()
    return room


@pytest.fixture
def make_project(room):
    def _make(cost=1000, state="Khartoum", status=STATUS_PENDING, funding_status=FUNDING_UNASSIGNED, **fields):
        fields.setdefault("locality", "Bahri")
        project = Project(
            err_id=room.err_code,
            emergency_room_id=room.id,
            state=state,
            status=status,
            funding_status=funding_status,
            expenses=[{"activity": "Food baskets", "total_cost": cost}],
            **fields
        )
        db.session.add(project)
        db.session.commit()
        return project
    return _make
