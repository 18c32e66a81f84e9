"""Tests for the Tracker facade."""

from __future__ import annotations

import pytest

from conftest import FakeRemote, FakeTransport
from tbd_sync.config import Config
from tbd_sync.errors import (
    EntityRetiredError,
    NotFoundError,
    ValidationError,
)
from tbd_sync.ids import validate_id
from tbd_sync.tracker import Tracker


@pytest.fixture
def shared() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def tracker(tmp_path, shared) -> Tracker:
    return Tracker(Config(repo_root=tmp_path / "a"), transport=FakeTransport(shared))


class TestCreateAndRead:
    def test_create_starts_at_version_one(self, tracker):
        issue = tracker.create("Fix auth", labels=["urgent", "auth"], kind="bug")
        assert validate_id(issue.id, "is")
        assert issue.version == 1
        assert issue.created_at == issue.updated_at
        assert issue.labels == ["auth", "urgent"]
        assert tracker.get(issue.id) == issue

    def test_get_accepts_short_id(self, tracker):
        issue = tracker.create("Short")
        assert tracker.get(issue.id.split("-", 1)[1]) == issue

    def test_get_invalid_id(self, tracker):
        with pytest.raises(ValidationError):
            tracker.get("not an id!")

    def test_get_missing(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.get("is-ffffff")

    def test_create_invalid_value(self, tracker):
        with pytest.raises(ValidationError, match="priority"):
            tracker.create("Bad", priority=9)

    def test_create_with_missing_parent(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.create("Child", parent_id="is-ffffff")

    def test_list_filters_and_order(self, tracker):
        low = tracker.create("Low", priority=3, labels=["x"])
        high = tracker.create("High", priority=0)
        bug = tracker.create("Bug", priority=1, kind="bug", labels=["x"])

        assert [i.id for i in tracker.list()] == [high.id, bug.id, low.id]
        assert [i.id for i in tracker.list(label="x")] == [bug.id, low.id]
        assert [i.id for i in tracker.list(kind="bug")] == [bug.id]


class TestUpdate:
    def test_update_bumps_version(self, tracker):
        issue = tracker.create("Fix auth")
        updated = tracker.update(issue.id, title="Fix auth flow", priority=1)
        assert updated.version == 2
        assert updated.title == "Fix auth flow"
        assert tracker.get(issue.id) == updated

    def test_noop_update_writes_nothing(self, tracker):
        issue = tracker.create("Fix auth")
        assert tracker.update(issue.id, title="Fix auth") == issue
        assert tracker.get(issue.id).version == 1

    @pytest.mark.parametrize("field", ["id", "version", "created_at", "updated_at"])
    def test_managed_fields_rejected(self, tracker, field):
        issue = tracker.create("Fix auth")
        with pytest.raises(ValidationError, match="managed"):
            tracker.update(issue.id, **{field: "x"})

    def test_unknown_field_rejected(self, tracker):
        issue = tracker.create("Fix auth")
        with pytest.raises(ValidationError, match="Unknown"):
            tracker.update(issue.id, colour="red")

    def test_close_and_reopen(self, tracker):
        issue = tracker.create("Fix auth")
        closed = tracker.close(issue.id, reason="done")
        assert closed.status == "closed"
        assert closed.closed_at is not None
        assert closed.close_reason == "done"

        reopened = tracker.reopen(issue.id)
        assert reopened.status == "open"
        assert reopened.closed_at is None
        assert reopened.close_reason is None
        assert reopened.version == 3


class TestArchive:
    def test_archive_requires_closed(self, tracker):
        issue = tracker.create("Fix auth")
        with pytest.raises(ValidationError) as exc_info:
            tracker.archive(issue.id)
        assert "tbd close" in exc_info.value.hint

    def test_archived_issue_is_read_only(self, tracker):
        issue = tracker.create("Fix auth")
        tracker.close(issue.id)
        assert tracker.archive(issue.id) == f"archive/issues/{issue.id}.md"

        assert tracker.get(issue.id).status == "closed"
        assert tracker.list() == []
        assert [i.id for i in tracker.list(include_archived=True)] == [issue.id]
        with pytest.raises(EntityRetiredError):
            tracker.update(issue.id, title="Too late")


class TestDependencies:
    def test_add_and_remove(self, tracker):
        a = tracker.create("A")
        b = tracker.create("B")
        with_dep = tracker.add_dependency(a.id, b.id)
        assert [d.target for d in with_dep.dependencies] == [b.id]

        without = tracker.remove_dependency(a.id, b.id)
        assert without.dependencies == []

    def test_self_dependency_rejected(self, tracker):
        a = tracker.create("A")
        with pytest.raises(ValidationError):
            tracker.add_dependency(a.id, a.id)

    def test_missing_target(self, tracker):
        a = tracker.create("A")
        with pytest.raises(NotFoundError):
            tracker.add_dependency(a.id, "is-ffffff")


class TestSyncAndAttic:
    def test_two_trackers_converge(self, tmp_path, shared):
        a = Tracker(Config(repo_root=tmp_path / "a"), transport=FakeTransport(shared))
        b = Tracker(Config(repo_root=tmp_path / "b"), transport=FakeTransport(shared))

        issue = a.create("Fix auth", description="Original")
        a.sync()
        b.sync()
        assert b.get(issue.id) == issue

        a.update(issue.id, description="From A")
        a.sync()
        b.update(issue.id, description="From B")
        report = b.sync()

        assert report.attic_entries == 1
        [entry] = b.attic_list(issue.id)
        lost = entry.lost_value
        kept = b.get(issue.id).description
        assert {lost, kept} == {"From A", "From B"}
        assert b.attic_show(entry.entry_id) == entry

        restored = b.attic_restore(entry.entry_id)
        assert restored.description == lost

        b.sync()
        a.sync()
        assert a.get(issue.id) == b.get(issue.id)
        assert len(a.attic_list()) == 1

    def test_sync_status(self, tracker):
        tracker.create("Fix auth")
        status = tracker.sync_status()
        assert len(status.local_changes) == 1
        tracker.sync()
        assert tracker.sync_status().in_sync

    def test_pull_only_sync_leaves_remote_alone(self, tmp_path, shared):
        a = Tracker(Config(repo_root=tmp_path / "a"), transport=FakeTransport(shared))
        b = Tracker(Config(repo_root=tmp_path / "b"), transport=FakeTransport(shared))
        issue = a.create("Fix auth")
        a.sync()
        tip = shared.tip

        b.create("Local only")
        report = b.sync(mode="pull")

        assert report.mode == "pull"
        assert b.get(issue.id) == issue
        assert shared.tip == tip
        assert len(report.deferred) == 1
