"""Integration tests for the membership FastAPI application."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from config import Settings
from conftest import add_session, add_user
from database import MemoryStore, StoreError
from main import create_app


@pytest.fixture
def api():
    store = MemoryStore()
    app = create_app(Settings(store_backend="memory"), store=store)
    with TestClient(app) as client:
        yield client, store


@pytest.fixture
def people(api):
    _, store = api
    result = {}
    for name in ("alice", "bob", "carol"):
        user = add_user(store, f"{name}@example.com")
        result[name] = (user, add_session(store, user, f"token-{name}"))
    return result


def create_project(client, headers, name="Apollo"):
    res = client.post("/projects", json={"name": name}, headers=headers)
    assert res.status_code == 200
    return res.json()["id"]


def test_root_and_health(api):
    client, _ = api
    assert client.get("/").status_code == 200
    health = client.get("/health").json()
    assert health["store"] == "memory"
    assert health["database"] == "connected"


def test_requests_without_identity_are_401(api, people):
    client, store = api
    assert client.get("/notifications").status_code == 401
    assert client.get("/notifications", headers={"Authorization": "Bearer nope"}).status_code == 401

    bob, _ = people["bob"]
    expired = add_session(store, bob, "stale", expires_in=timedelta(seconds=-5))
    res = client.get("/me", headers=expired)
    assert res.status_code == 401
    assert res.json() == {"detail": "Session expired", "error": "unauthorized"}


def test_me(api, people):
    client, _ = api
    alice, headers = people["alice"]
    assert client.get("/me", headers=headers).json() == {"id": alice.id, "email": alice.email}


def test_invite_accept_flow(api, people):
    client, _ = api
    alice, alice_headers = people["alice"]
    bob, bob_headers = people["bob"]
    project_id = create_project(client, alice_headers)

    res = client.post(
        f"/projects/{project_id}/members",
        json={"email": bob.email, "role": "member"},
        headers=alice_headers,
    )
    assert res.status_code == 200
    assert res.json()["status"] == "pending"

    notes = client.get("/notifications", headers=bob_headers).json()
    assert len(notes) == 1
    assert notes[0]["type"] == "project_invite"
    assert notes[0]["read"] is False
    assert notes[0]["target"] == {"type": "project_invite", "project_id": project_id}

    res = client.post(f"/projects/{project_id}/invitation", json={"accept": True}, headers=bob_headers)
    assert res.status_code == 200
    assert res.json()["membership"]["status"] == "accepted"

    notes = client.get("/notifications", headers=bob_headers).json()
    assert notes[0]["read"] is True

    members = client.get(f"/projects/{project_id}/members", headers=bob_headers).json()
    assert {m["user_id"]: m["status"] for m in members} == {alice.id: "accepted", bob.id: "accepted"}

    activity = client.get(f"/projects/{project_id}/activity", headers=bob_headers).json()
    joined = [a for a in activity if a["type"] == "member_joined"]
    assert len(joined) == 1
    assert joined[0]["user_id"] == bob.id


def test_invite_errors(api, people):
    client, _ = api
    alice, alice_headers = people["alice"]
    bob, bob_headers = people["bob"]
    project_id = create_project(client, alice_headers)
    url = f"/projects/{project_id}/members"

    assert client.post(url, json={"email": bob.email}, headers=alice_headers).status_code == 200
    dup = client.post(url, json={"email": bob.email}, headers=alice_headers)
    assert dup.status_code == 409
    assert dup.json()["error"] == "already_member"

    bad_role = client.post(url, json={"email": "carol@example.com", "role": "emperor"}, headers=alice_headers)
    assert bad_role.status_code == 422
    assert bad_role.json()["error"] == "invalid_role"

    missing = client.post(url, json={"email": "ghost@example.com"}, headers=alice_headers)
    assert missing.status_code == 404

    client.post(f"/projects/{project_id}/invitation", json={"accept": True}, headers=bob_headers)
    denied = client.post(url, json={"email": "carol@example.com", "role": "member"}, headers=bob_headers)
    assert denied.status_code == 403
    assert denied.json()["error"] == "unauthorized"

    assert client.post("/projects/nope/members", json={"email": bob.email}, headers=alice_headers).status_code == 404


def test_decline_then_remove_is_404(api, people):
    client, _ = api
    _, alice_headers = people["alice"]
    bob, bob_headers = people["bob"]
    project_id = create_project(client, alice_headers)
    client.post(f"/projects/{project_id}/members", json={"email": bob.email}, headers=alice_headers)

    res = client.post(f"/projects/{project_id}/invitation", json={"accept": False}, headers=bob_headers)
    assert res.json() == {"accepted": False, "membership": None}
    assert client.delete(f"/projects/{project_id}/members/{bob.id}", headers=alice_headers).status_code == 404


def test_owner_self_removal_is_409(api, people):
    client, _ = api
    alice, alice_headers = people["alice"]
    project_id = create_project(client, alice_headers)
    res = client.delete(f"/projects/{project_id}/members/{alice.id}", headers=alice_headers)
    assert res.status_code == 409
    assert res.json()["error"] == "self_removal"


def test_change_role_and_remove(api, people):
    client, _ = api
    _, alice_headers = people["alice"]
    bob, bob_headers = people["bob"]
    project_id = create_project(client, alice_headers)
    client.post(f"/projects/{project_id}/members", json={"email": bob.email}, headers=alice_headers)
    client.post(f"/projects/{project_id}/invitation", json={"accept": True}, headers=bob_headers)

    url = f"/projects/{project_id}/members/{bob.id}"
    first = client.patch(url, json={"role": "admin"}, headers=alice_headers)
    second = client.patch(url, json={"role": "admin"}, headers=alice_headers)
    assert first.status_code == second.status_code == 200
    assert first.json() == second.json()
    assert second.json()["role"] == "admin"

    assert client.patch(url, json={"role": "owner"}, headers=alice_headers).status_code == 422
    assert client.delete(url, headers=alice_headers).json() == {"removed": bob.id}
    assert client.get(f"/projects/{project_id}/members", headers=bob_headers).status_code == 403


def test_team_membership(api, people):
    client, _ = api
    _, alice_headers = people["alice"]
    bob, bob_headers = people["bob"]
    carol, _ = people["carol"]
    project_id = create_project(client, alice_headers)
    client.post(f"/projects/{project_id}/members", json={"email": bob.email}, headers=alice_headers)
    client.post(f"/projects/{project_id}/invitation", json={"accept": True}, headers=bob_headers)

    team = client.post(f"/projects/{project_id}/teams", json={"name": "Flight"}, headers=alice_headers)
    assert team.status_code == 200
    team_id = team.json()["id"]
    assert team.json()["project_id"] == project_id

    added = client.post(f"/teams/{team_id}/members", json={"email": bob.email, "role": "admin"}, headers=alice_headers)
    assert added.status_code == 200
    assert added.json()["status"] == "accepted"
    outsider = client.post(f"/teams/{team_id}/members", json={"email": carol.email}, headers=alice_headers)
    assert outsider.status_code == 404

    members = client.get(f"/teams/{team_id}/members", headers=bob_headers).json()
    assert {m["role"] for m in members} == {"owner", "admin"}

    assert client.patch(f"/teams/{team_id}/members/{bob.id}", json={"role": "member"}, headers=alice_headers).status_code == 200
    assert client.delete(f"/teams/{team_id}/members/{bob.id}", headers=alice_headers).status_code == 200
    assert client.get(f"/teams/{team_id}/members", headers=bob_headers).status_code == 403

    notes = client.get("/notifications", headers=bob_headers).json()
    assert notes[0]["target"] == {"type": "team_invitation", "team_id": team_id}


def test_notification_ownership(api, people):
    client, _ = api
    _, alice_headers = people["alice"]
    bob, bob_headers = people["bob"]
    project_id = create_project(client, alice_headers)
    client.post(f"/projects/{project_id}/members", json={"email": bob.email}, headers=alice_headers)
    note_id = client.get("/notifications", headers=bob_headers).json()[0]["id"]

    assert client.post(f"/notifications/{note_id}/read", headers=alice_headers).status_code == 403
    assert client.delete(f"/notifications/{note_id}", headers=alice_headers).status_code == 403
    assert client.post("/notifications/missing/read", headers=bob_headers).status_code == 404

    assert client.post(f"/notifications/{note_id}/read", headers=bob_headers).json() == {"id": note_id, "read": True}
    assert client.post("/notifications/read-all", headers=bob_headers).json() == {"updated": 0}
    assert client.delete(f"/notifications/{note_id}", headers=bob_headers).status_code == 200
    assert client.get("/notifications", headers=bob_headers).json() == []
    assert client.delete("/notifications", headers=bob_headers).json() == {"deleted": 0}


def test_websocket_rejects_unknown_token(api):
    client, _ = api
    from starlette.websockets import WebSocketDisconnect

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/notifications?token=bogus") as ws:
            ws.receive_text()


def test_websocket_receives_new_notifications(api, people):
    client, _ = api
    _, alice_headers = people["alice"]
    bob, _ = people["bob"]
    project_id = create_project(client, alice_headers)

    with client.websocket_connect("/ws/notifications?token=token-bob") as ws:
        client.post(f"/projects/{project_id}/members", json={"email": bob.email}, headers=alice_headers)
        message = ws.receive_json()
    assert message["type"] == "notification_created"
    assert message["notification"]["user_id"] == bob.id
    assert message["notification"]["target"] == {"type": "project_invite", "project_id": project_id}


def test_update_and_delete_project(api, people):
    client, store = api
    _, alice_headers = people["alice"]
    bob, bob_headers = people["bob"]
    project_id = create_project(client, alice_headers)
    client.post(f"/projects/{project_id}/members", json={"email": bob.email}, headers=alice_headers)
    client.post(f"/projects/{project_id}/invitation", json={"accept": True}, headers=bob_headers)

    renamed = client.patch(f"/projects/{project_id}", json={"name": "Artemis"}, headers=alice_headers)
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "Artemis"
    assert client.patch(f"/projects/{project_id}", json={"name": ""}, headers=alice_headers).status_code == 422
    assert client.patch(f"/projects/{project_id}", json={"name": "Mine"}, headers=bob_headers).status_code == 403

    assert client.delete(f"/projects/{project_id}", headers=bob_headers).status_code == 403
    assert client.delete(f"/projects/{project_id}", headers=alice_headers).json() == {"deleted": project_id}
    assert client.get(f"/projects/{project_id}/members", headers=alice_headers).status_code == 404
    assert store.find("project_member", {"project_id": project_id}) == []


def test_update_and_delete_team(api, people):
    client, _ = api
    _, alice_headers = people["alice"]
    project_id = create_project(client, alice_headers)
    team_id = client.post(f"/projects/{project_id}/teams", json={"name": "Flight"}, headers=alice_headers).json()["id"]

    res = client.patch(f"/teams/{team_id}", json={"description": "Launch crew"}, headers=alice_headers)
    assert res.status_code == 200
    assert res.json()["description"] == "Launch crew"
    assert client.delete(f"/teams/{team_id}", headers=alice_headers).json() == {"deleted": team_id}
    assert client.get(f"/teams/{team_id}/members", headers=alice_headers).status_code == 404


def test_workspace_invitation(api, people):
    client, _ = api
    _, alice_headers = people["alice"]
    bob, bob_headers = people["bob"]
    project_id = create_project(client, alice_headers)
    team_id = client.post(f"/projects/{project_id}/teams", json={"name": "Flight"}, headers=alice_headers).json()["id"]

    res = client.post(
        f"/projects/{project_id}/workspace-invitations",
        json={"email": bob.email, "role": "member", "team_ids": [team_id], "message": "Join us"},
        headers=alice_headers,
    )
    assert res.status_code == 200
    assert res.json()["status"] == "pending"

    [note] = client.get("/notifications", headers=bob_headers).json()
    assert note["type"] == "workspace_invite"
    assert note["target"] == {"type": "workspace_invite", "project_id": project_id}

    client.post(f"/projects/{project_id}/invitation", json={"accept": True}, headers=bob_headers)
    members = client.get(f"/teams/{team_id}/members", headers=bob_headers).json()
    assert bob.id in {m["user_id"] for m in members}


def test_store_failure_is_503():
    class FlakyStore(MemoryStore):
        def insert_one(self, collection, doc):
            if collection == "project":
                raise StoreError("primary stepped down")
            return super().insert_one(collection, doc)

    store = FlakyStore()
    alice = add_user(store, "alice@example.com")
    headers = add_session(store, alice, "token-alice")
    with TestClient(create_app(Settings(store_backend="memory"), store=store)) as client:
        res = client.post("/projects", json={"name": "Apollo"}, headers=headers)
    assert res.status_code == 503
    assert res.json() == {"detail": "The data store is unavailable", "error": "store_unavailable"}
