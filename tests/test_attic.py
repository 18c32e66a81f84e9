"""Tests for the attic: recording, querying and restoring discarded values."""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from conftest import T0, T1, T2, T3, make_issue
from tbd_sync.attic import Attic, entry_rel_path
from tbd_sync.errors import EntityRetiredError, NotFoundError, ValidationError
from tbd_sync.models import AtticContext, AtticEntry
from tbd_sync.sync.merger import MergeRuleEngine


def _entry(field="description", lost_value="Old text", timestamp=T1, entity_id="is-a1b2c3"):
    return AtticEntry(
        entity_id=entity_id,
        timestamp=timestamp,
        field=field,
        lost_value=lost_value,
        winner_source="remote",
        loser_source="local",
        strategy="lww-with-archive",
        context=AtticContext(
            local_version=2,
            remote_version=2,
            local_updated_at=T0,
            remote_updated_at=T0,
        ),
    )


@pytest.fixture
def attic(store):
    store.write(make_issue(version=3, description="Current"))
    return Attic(store)


class TestRecordAndList:
    def test_record_writes_under_conflicts(self, attic, store):
        rel_path = attic.record(_entry())
        assert rel_path == (
            "attic/conflicts/is-a1b2c3/2025-01-07T10-30-00.000Z_description.yml"
        )
        assert store.read_file(rel_path) is not None

    def test_list_newest_first(self, attic):
        attic.record(_entry(timestamp=T1))
        attic.record(_entry(timestamp=T3, field="notes"))
        attic.record(_entry(timestamp=T2))
        assert [e.timestamp for e in attic.list()] == [T3, T2, T1]

    def test_list_filters(self, attic):
        attic.record(_entry(timestamp=T1))
        attic.record(_entry(timestamp=T2, field="notes"))
        attic.record(_entry(timestamp=T3, entity_id="is-00000b"))

        assert len(attic.list(entity_id="is-a1b2c3")) == 2
        assert [e.field for e in attic.list(field="notes")] == ["notes"]
        assert [e.timestamp for e in attic.list(since=T2)] == [T3, T2]
        assert len(attic.list(limit=1)) == 1

    def test_list_unknown_or_invalid_entity(self, attic):
        assert attic.list(entity_id="is-ffffff") == []
        assert attic.list(entity_id="../etc") == []

    def test_unreadable_entries_skipped(self, attic, store):
        attic.record(_entry())
        store.write_file("attic/conflicts/is-a1b2c3/broken.yml", b"- 1\n")
        assert len(attic.list()) == 1


class TestShow:
    def test_show_by_entry_id(self, attic):
        entry = _entry()
        attic.record(entry)
        assert attic.show(entry.entry_id) == entry

    def test_show_missing(self, attic):
        with pytest.raises(NotFoundError):
            attic.show("is-a1b2c3/2030-01-01T00-00-00.000Z_title")


class TestRestore:
    def test_restore_writes_new_version(self, attic, store):
        entry = _entry(lost_value="Old text")
        attic.record(entry)

        restored = attic.restore(entry.entry_id)

        assert restored.description == "Old text"
        assert restored.version == 4
        assert restored.updated_at != make_issue().updated_at
        assert store.read("is-a1b2c3") == restored
        # The entry itself is never consumed.
        assert attic.show(entry.entry_id) == entry

    def test_restore_extension_namespace(self, attic, store):
        entry = _entry(field="extensions.gh", lost_value={"number": 7})
        attic.record(entry)
        restored = attic.restore(entry.entry_id)
        assert restored.extensions == {"gh": {"number": 7}}

    def test_restore_full_snapshot_skips_protected_fields(self, attic):
        snapshot = make_issue(
            id="is-a1b2c3", title="Snapshot title", version=99, created_by="mallory"
        ).model_dump(mode="json")
        entry = _entry(field="full", lost_value=snapshot)
        attic.record(entry)

        restored = attic.restore(entry.entry_id)

        assert restored.title == "Snapshot title"
        assert restored.version == 4
        assert restored.created_by is None

    def test_restore_protected_field_rejected(self, attic):
        entry = _entry(field="created_by", lost_value="mallory")
        attic.record(entry)
        with pytest.raises(ValidationError):
            attic.restore(entry.entry_id)

    def test_restore_into_archived_entity_rejected(self, attic, store):
        entry = _entry()
        attic.record(entry)
        store.archive("is-a1b2c3")
        with pytest.raises(EntityRetiredError):
            attic.restore(entry.entry_id)

    def test_restore_for_missing_entity(self, attic):
        entry = _entry(entity_id="is-00000b")
        attic.record(entry)
        with pytest.raises(NotFoundError):
            attic.restore(entry.entry_id)

    def test_restoring_closed_status_stamps_closed_at(self, attic):
        entry = _entry(field="status", lost_value="closed")
        attic.record(entry)

        restored = attic.restore(entry.entry_id)

        assert restored.status == "closed"
        assert restored.closed_at is not None
        assert restored.closed_at == restored.updated_at

    def test_restoring_open_status_clears_close_fields(self, attic, store):
        store.write(
            make_issue(version=3, status="closed", closed_at=T2, close_reason="fixed")
        )
        entry = _entry(field="status", lost_value="open")
        attic.record(entry)

        restored = attic.restore(entry.entry_id)

        assert restored.status == "open"
        assert restored.closed_at is None
        assert restored.close_reason is None

    def test_restoring_other_field_keeps_closed_at(self, attic, store):
        store.write(
            make_issue(version=3, status="closed", closed_at=T2, close_reason="fixed")
        )
        entry = _entry(field="title", lost_value="Old title")
        attic.record(entry)

        restored = attic.restore(entry.entry_id)

        assert restored.closed_at == T2
        assert restored.close_reason == "fixed"


class TestUnsafeExtensionNamespaces:
    NAMESPACE = "a/../../../../meta"

    def test_merge_entry_path_stays_in_entity_dir(self):
        local = make_issue(updated_at=T1, extensions={self.NAMESPACE: {"v": 1}})
        remote = make_issue(updated_at=T2, extensions={self.NAMESPACE: {"v": 2}})

        result = MergeRuleEngine().merge(local, remote, merge_time=T3)

        [entry] = result.attic_entries
        assert entry.field == f"extensions.{self.NAMESPACE}"
        rel_path = entry_rel_path(entry)
        assert rel_path == (
            "attic/conflicts/is-a1b2c3/2025-01-08T09-00-00.000Z_"
            "extensions.a%2F..%2F..%2F..%2F..%2Fmeta.yml"
        )
        assert ".." not in rel_path.split("/")

    def test_record_show_and_restore(self, attic, store):
        entry = _entry(field=f"extensions.{self.NAMESPACE}", lost_value={"v": 1})

        rel_path = attic.record(entry)

        assert rel_path.startswith("attic/conflicts/is-a1b2c3/")
        assert store.read_file("meta.yml") is None
        assert [e.field for e in attic.list()] == [entry.field]
        assert attic.show(entry.entry_id) == entry
        restored = attic.restore(entry.entry_id)
        assert restored.extensions == {self.NAMESPACE: {"v": 1}}

    def test_entry_requires_valid_entity_id(self):
        with pytest.raises(PydanticValidationError):
            _entry(entity_id="../is-a1b2c3")
