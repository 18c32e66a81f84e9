"""Tests for LocalSyncState."""

from __future__ import annotations

import yaml

from tbd_sync.sync.state import LocalSyncState


class TestLoad:
    def test_missing_file_returns_defaults(self, tmp_path):
        state = LocalSyncState(tmp_path / "cache")
        assert state.load() == {"last_sync_at": None, "last_synced_commit": None}
        assert state.last_synced_commit() is None

    def test_unreadable_file_returns_defaults(self, tmp_path):
        state = LocalSyncState(tmp_path)
        state.path.write_text("last_synced_commit: [unclosed\n", encoding="utf-8")
        assert state.last_synced_commit() is None

    def test_non_mapping_returns_defaults(self, tmp_path):
        state = LocalSyncState(tmp_path)
        state.path.write_text("- a\n- b\n", encoding="utf-8")
        assert state.load()["last_synced_commit"] is None


class TestSave:
    def test_record_sync_round_trip(self, tmp_path):
        state = LocalSyncState(tmp_path / "cache")
        state.record_sync("abc123")

        assert state.last_synced_commit() == "abc123"
        data = yaml.safe_load(state.path.read_text(encoding="utf-8"))
        assert data["last_synced_commit"] == "abc123"
        assert data["last_sync_at"].endswith("Z")

    def test_extra_keys_preserved(self, tmp_path):
        state = LocalSyncState(tmp_path)
        state.save({"last_synced_commit": "a", "note": "kept"})
        state.record_sync("b")
        loaded = state.load()
        assert loaded["note"] == "kept"
        assert loaded["last_synced_commit"] == "b"

    def test_no_temp_files_left(self, tmp_path):
        state = LocalSyncState(tmp_path)
        state.record_sync("abc")
        assert [p.name for p in tmp_path.iterdir()] == ["state.yml"]
