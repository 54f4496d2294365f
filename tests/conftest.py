"""
Test configuration and fixtures for the test suite
"""
from datetime import timedelta

import pytest

from database import MemoryStore, utcnow
from memberships import EntityRef
from schemas import Identity
from workflow import InvitationWorkflow


def add_user(store, email, name=None):
    doc = store.insert_one("user", {"email": email.lower(), "name": name or email.split("@")[0]})
    return Identity(id=doc["_id"], email=doc["email"])


def add_session(store, user, token, expires_in=timedelta(days=7)):
    store.insert_one(
        "session",
        {"token": token, "user_id": user.id, "created_at": utcnow(), "expires_at": utcnow() + expires_in},
    )
    return {"Authorization": f"Bearer {token}"}


def join(workflow, inviter, user, project_id, role="member"):
    """Invite ``user`` to a project and accept on their behalf."""
    ref = EntityRef.project(project_id)
    workflow.invite(inviter, ref, user.email, role)
    workflow.respond(user, ref, accept=True)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def users(store):
    return {name: add_user(store, f"{name}@example.com") for name in ("alice", "bob", "carol", "dave")}


@pytest.fixture
def workflow(store):
    return InvitationWorkflow(store)


@pytest.fixture
def project(workflow, users):
    return workflow.create_project(users["alice"], "Apollo", "Moon landing")


@pytest.fixture
def project_ref(project):
    return EntityRef.project(project.id)
