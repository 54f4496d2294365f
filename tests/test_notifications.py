import logging
from datetime import timedelta

import pytest

from database import MemoryStore, StoreError, utcnow
from errors import Forbidden, NotFound
from notifications import NotificationDispatcher
from schemas import NotificationType, ProjectInviteTarget, TaskTarget, TeamInvitationTarget


@pytest.fixture
def dispatcher(store):
    return NotificationDispatcher(store, page_size=10)


def test_notify_returns_unread_notification(dispatcher):
    note = dispatcher.notify("u1", NotificationType.PROJECT_INVITE, "Join us", "p1")
    assert note.user_id == "u1"
    assert note.read is False
    assert note.created_at is not None
    assert note.target == ProjectInviteTarget(project_id="p1")


@pytest.mark.parametrize(
    "type_,expected",
    [
        ("team_invitation", TeamInvitationTarget(team_id="x1")),
        ("task_update", TaskTarget(type="task_update", task_id="x1")),
        ("task_assignment", TaskTarget(type="task_assignment", task_id="x1")),
    ],
)
def test_related_id_resolves_by_type(dispatcher, type_, expected):
    assert dispatcher.notify("u1", type_, "msg", "x1").target == expected


def test_unknown_type_is_rejected(dispatcher):
    with pytest.raises(ValueError):
        dispatcher.notify("u1", "broadcast", "msg")


def test_target_is_serialized(dispatcher):
    note = dispatcher.notify("u1", "team_invitation", "msg", "t1")
    assert note.model_dump(mode="json")["target"] == {"type": "team_invitation", "team_id": "t1"}


def test_failed_insert_is_logged_and_swallowed(caplog):
    class DownStore(MemoryStore):
        def insert_one(self, collection, doc):
            raise StoreError("connection reset")

    dispatcher = NotificationDispatcher(DownStore())
    with caplog.at_level(logging.ERROR):
        assert dispatcher.notify("u1", "project_invite", "msg", "p1") is None
    assert "Failed to deliver project_invite notification to u1" in caplog.text


def test_list_is_newest_first_and_scoped(store, dispatcher):
    now = utcnow()
    for minutes, message in ((1, "old"), (3, "new"), (2, "mid")):
        store.insert_one(
            "notification",
            {"user_id": "u1", "type": "task_update", "message": message, "related_id": "t1",
             "read": False, "created_at": now + timedelta(minutes=minutes)},
        )
    dispatcher.notify("u2", "task_update", "someone else", "t1")
    assert [n.message for n in dispatcher.list_for("u1")] == ["new", "mid", "old"]
    assert [n.message for n in dispatcher.list_for("u1", limit=1)] == ["new"]


def test_same_instant_notifications_keep_insert_order(dispatcher):
    first = dispatcher.notify("u1", "task_update", "first", "t1")
    second = dispatcher.notify("u1", "task_update", "second", "t1")
    assert [n.id for n in dispatcher.list_for("u1")] == [second.id, first.id]


def test_mark_read_checks_recipient(dispatcher):
    note = dispatcher.notify("u1", "project_invite", "msg", "p1")
    with pytest.raises(Forbidden):
        dispatcher.mark_read(note.id, "u2")
    assert dispatcher.list_for("u1")[0].read is False
    dispatcher.mark_read(note.id, "u1")
    assert dispatcher.list_for("u1")[0].read is True


def test_mark_read_missing_notification(dispatcher):
    with pytest.raises(NotFound):
        dispatcher.mark_read("missing", "u1")


def test_mark_all_read_only_touches_own_unread(dispatcher):
    dispatcher.notify("u1", "task_update", "a", "t1")
    dispatcher.notify("u1", "task_update", "b", "t2")
    dispatcher.notify("u2", "task_update", "c", "t3")
    assert dispatcher.mark_all_read("u1") == 2
    assert dispatcher.mark_all_read("u1") == 0
    assert dispatcher.list_for("u2")[0].read is False


def test_delete_checks_recipient(dispatcher):
    note = dispatcher.notify("u1", "task_update", "msg", "t1")
    with pytest.raises(Forbidden):
        dispatcher.delete(note.id, "u2")
    dispatcher.delete(note.id, "u1")
    assert dispatcher.list_for("u1") == []
    with pytest.raises(NotFound):
        dispatcher.delete(note.id, "u1")


def test_clear_all(dispatcher):
    dispatcher.notify("u1", "task_update", "a", "t1")
    dispatcher.notify("u1", "project_invite", "b", "p1")
    dispatcher.notify("u2", "task_update", "c", "t1")
    assert dispatcher.clear_all("u1") == 2
    assert dispatcher.list_for("u1") == []
    assert len(dispatcher.list_for("u2")) == 1


def test_resolve_invites_only_marks_matching_invites(dispatcher):
    dispatcher.notify("u1", "project_invite", "invite", "p1")
    dispatcher.notify("u1", "workspace_invite", "workspace", "p1")
    dispatcher.notify("u1", "project_invite", "other project", "p2")
    dispatcher.notify("u1", "task_update", "task", "p1")

    resolved = dispatcher.resolve_invites("u1", "p1", ["project_invite", "workspace_invite"])

    assert resolved == 2
    unread = {n.message for n in dispatcher.list_for("u1") if not n.read}
    assert unread == {"other project", "task"}
