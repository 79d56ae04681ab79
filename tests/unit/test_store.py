"""Unit tests for the local store.

Tests notesync/store.py: trash transitions, persistence, merge application
and upload bookkeeping.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from notesync.errors import LocalWriteFailure, NoteNotFound
from notesync.store import PENDING_REMOTE_FIELD, REMOTE_ABSENT_FIELD, LocalStore
from notesync.timestamp_utils import format_timestamp
from notesync.validation import ValidationError
from tests.helpers import T2, T3, local_id, make_draft, make_note, make_tag


def _seed(store: LocalStore, *notes) -> None:
    for note in notes:
        store.put_note(note)


@pytest.mark.unit
class TestPersistence:
    """Test loading and atomic writes."""

    def test_new_store_is_empty(self, store: LocalStore) -> None:
        assert store.get_notes() == []
        assert store.get_trash() == []
        assert store.get_sync_config()["syncStatus"] == "idle"

    def test_data_survives_reopen(self, store_path: Path) -> None:
        first = LocalStore(store_path)
        note = first.create_note("hello world", title="greeting")
        first.close()

        second = LocalStore(store_path)
        assert second.get_note(note["localId"])["content"] == "hello world"

    def test_document_layout(self, store: LocalStore, store_path: Path) -> None:
        store.create_note("x")
        data = json.loads(store_path.read_text())
        assert set(data) >= {"notes", "trash", "tags", "drafts", "syncConfig"}

    def test_corrupt_file_raises(self, store_path: Path) -> None:
        store_path.write_text("[1, 2")
        with pytest.raises(LocalWriteFailure):
            LocalStore(store_path)

    def test_failed_write_leaves_state_unchanged(self, store: LocalStore) -> None:
        note = store.create_note("keep me")
        with patch.object(store, "_write_file", side_effect=OSError("disk full")):
            with pytest.raises(LocalWriteFailure):
                store.move_to_trash(note["localId"])
        assert store.get_note(note["localId"]) is not None
        assert store.get_trash() == []

    def test_memory_store_writes_nothing(self, memory_store: LocalStore, tmp_path: Path) -> None:
        memory_store.create_note("x")
        assert memory_store.path is None
        assert list(tmp_path.iterdir()) == []

    def test_reads_are_copies(self, memory_store: LocalStore) -> None:
        note = memory_store.create_note("x")
        memory_store.get_notes()[0]["content"] = "mutated"
        assert memory_store.get_note(note["localId"])["content"] == "x"


@pytest.mark.unit
class TestEditing:
    """Test note creation and edits."""

    def test_create_sets_metadata(self, memory_store: LocalStore) -> None:
        note = memory_store.create_note("one two three", tags=["work"])
        assert len(note["localId"]) == 32
        assert note["isModified"] is True
        assert note["wordCount"] == 3
        assert note["createTime"] == note["updateTime"]
        assert memory_store.get_tags()[0]["useCount"] == 1

    def test_update_bumps_time_and_flag(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1))
        updated = memory_store.update_note(local_id(1), content="new words here")
        assert updated["content"] == "new words here"
        assert updated["isModified"] is True
        assert updated["updateTime"] > make_note(1)["updateTime"]
        assert updated["wordCount"] == 3

    def test_update_rejects_unknown_field(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1))
        with pytest.raises(ValidationError):
            memory_store.update_note(local_id(1), serverId=9)

    def test_update_missing_note(self, memory_store: LocalStore) -> None:
        with pytest.raises(NoteNotFound):
            memory_store.update_note(local_id(1), content="x")

    def test_new_tags_counted(self, memory_store: LocalStore) -> None:
        note = memory_store.create_note("x", tags=["a"])
        memory_store.update_note(note["localId"], tags=["a", "b"])
        counts = {t["name"]: t["useCount"] for t in memory_store.get_tags()}
        assert counts == {"a": 1, "b": 1}

    def test_save_draft_replaces_by_id(self, memory_store: LocalStore) -> None:
        memory_store.save_draft({"id": "d1", "title": "first"})
        memory_store.save_draft({"id": "d1", "title": "second"})
        drafts = memory_store.get_drafts()
        assert len(drafts) == 1
        assert drafts[0]["title"] == "second"


@pytest.mark.unit
class TestTrashTransitions:
    """Test moving notes between the active set and the trash."""

    def test_move_to_trash(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1, server_id=5))
        note, already = memory_store.move_to_trash(local_id(1))
        assert already is False
        assert note["deleteTime"]
        assert note["isDeleted"] is True
        assert note[PENDING_REMOTE_FIELD] == "delete"
        assert memory_store.get_notes() == []
        assert memory_store.get_trashed_note(local_id(1)) is not None

    def test_local_only_note_has_no_pending_marker(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1))
        note, _ = memory_store.move_to_trash(local_id(1))
        assert PENDING_REMOTE_FIELD not in note

    def test_move_twice_is_noop(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1))
        first, _ = memory_store.move_to_trash(local_id(1))
        second, already = memory_store.move_to_trash(local_id(1))
        assert already is True
        assert second["deleteTime"] == first["deleteTime"]
        assert len(memory_store.get_trash()) == 1

    def test_move_unknown_raises(self, memory_store: LocalStore) -> None:
        with pytest.raises(NoteNotFound):
            memory_store.move_to_trash(local_id(9))

    def test_restore_clears_trash_markers(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1, server_id=5))
        memory_store.move_to_trash(local_id(1))
        note, already = memory_store.restore_from_trash(local_id(1))
        assert already is False
        assert "deleteTime" not in note
        assert "isDeleted" not in note
        assert note["isModified"] is True
        assert note[PENDING_REMOTE_FIELD] == "restore"
        assert memory_store.get_trash() == []
        assert memory_store.get_note(local_id(1)) is not None

    def test_restore_active_note_is_noop(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1))
        _, already = memory_store.restore_from_trash(local_id(1))
        assert already is True

    def test_purge(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1))
        memory_store.move_to_trash(local_id(1))
        purged = memory_store.purge_from_trash(local_id(1))
        assert purged["localId"] == local_id(1)
        assert memory_store.get_trash() == []
        assert memory_store.get_notes() == []

    def test_purge_requires_trashed_note(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1))
        with pytest.raises(NoteNotFound):
            memory_store.purge_from_trash(local_id(1))

    def test_never_in_both_collections(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1), make_note(2))
        memory_store.move_to_trash(local_id(1))
        memory_store.restore_from_trash(local_id(1))
        memory_store.move_to_trash(local_id(2))
        active = {n["localId"] for n in memory_store.get_notes()}
        trash = {n["localId"] for n in memory_store.get_trash()}
        assert active.isdisjoint(trash)
        assert active | trash == {local_id(1), local_id(2)}

    def test_put_note_refuses_trashed_note(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1))
        memory_store.move_to_trash(local_id(1))
        with pytest.raises(NoteNotFound):
            memory_store.put_note(make_note(1))

    def test_clear_pending_remote_matches_operation(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1, server_id=5))
        memory_store.move_to_trash(local_id(1))
        assert memory_store.clear_pending_remote(local_id(1), "restore") is False
        assert memory_store.clear_pending_remote(local_id(1), "delete") is True
        assert PENDING_REMOTE_FIELD not in memory_store.get_trashed_note(local_id(1))

    def test_mark_remote_absent(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1, server_id=5))
        memory_store.move_to_trash(local_id(1))
        memory_store.restore_from_trash(local_id(1))

        assert memory_store.mark_remote_absent(local_id(1)) is True

        note = memory_store.get_note(local_id(1))
        assert note[REMOTE_ABSENT_FIELD] is True
        assert PENDING_REMOTE_FIELD not in note
        assert note["serverId"] == 5
        assert memory_store.mark_remote_absent("missing") is False

    def test_expired_trash(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1), make_note(2))
        memory_store.move_to_trash(local_id(1))
        memory_store.move_to_trash(local_id(2))
        now = datetime.now(timezone.utc) + timedelta(days=31)
        assert len(memory_store.get_expired_trash(30, now)) == 2
        assert memory_store.get_expired_trash(30) == []


@pytest.mark.unit
class TestReplaceTrashFromServer:
    """Test mirroring the server trash."""

    def test_server_list_is_authoritative(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1, server_id=1), make_note(2, server_id=2))
        memory_store.move_to_trash(local_id(1))
        memory_store.move_to_trash(local_id(2))
        memory_store.clear_pending_remote(local_id(1), "delete")
        memory_store.clear_pending_remote(local_id(2), "delete")

        server_trash = [dict(make_note(2, server_id=2), deleteTime=T2, isDeleted=True)]
        assert memory_store.replace_trash_from_server(server_trash) == 1
        assert [n["localId"] for n in memory_store.get_trash()] == [local_id(2)]

    def test_keeps_local_only_and_unconfirmed(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1), make_note(2, server_id=2))
        memory_store.move_to_trash(local_id(1))
        memory_store.move_to_trash(local_id(2))

        memory_store.replace_trash_from_server([])
        assert {n["localId"] for n in memory_store.get_trash()} == {local_id(1), local_id(2)}

    def test_ignores_notes_active_locally(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1, server_id=1))
        server_trash = [dict(make_note(1, server_id=1), deleteTime=T2, isDeleted=True)]
        memory_store.replace_trash_from_server(server_trash)
        assert memory_store.get_trash() == []
        assert memory_store.get_note(local_id(1)) is not None

    def test_assigns_local_id_to_foreign_notes(self, memory_store: LocalStore) -> None:
        memory_store.replace_trash_from_server([{"serverId": 44, "title": "web", "deleteTime": T2}])
        assert memory_store.get_trash()[0]["localId"] == "server-44"


@pytest.mark.unit
class TestApplyMerge:
    """Test persisting merge results against concurrent changes."""

    def test_applies_merged_notes(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1))
        snapshot = memory_store.get_local_data()
        merged = {"notes": [make_note(1, update_time=T2), make_note(2)], "tags": [], "drafts": []}
        memory_store.apply_merge(snapshot, merged, T3)
        notes = memory_store.get_notes()
        assert [n["localId"] for n in notes] == [local_id(1), local_id(2)]
        assert all(n["lastSyncTime"] == T3 for n in notes)

    def test_note_trashed_in_flight_stays_trashed(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1, server_id=1))
        snapshot = memory_store.get_local_data()
        memory_store.move_to_trash(local_id(1))
        merged = {"notes": [make_note(1, server_id=1, update_time=T2)]}
        memory_store.apply_merge(snapshot, merged)
        assert memory_store.get_notes() == []
        assert len(memory_store.get_trash()) == 1

    def test_note_purged_in_flight_not_resurrected(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1))
        snapshot = memory_store.get_local_data()
        memory_store.move_to_trash(local_id(1))
        memory_store.purge_from_trash(local_id(1))
        memory_store.apply_merge(snapshot, {"notes": [make_note(1)]})
        assert memory_store.get_notes() == []

    def test_edit_in_flight_wins(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1))
        snapshot = memory_store.get_local_data()
        memory_store.update_note(local_id(1), content="edited meanwhile")
        merged = {"notes": [make_note(1, server_id=8, update_time=T2, content="server")]}
        memory_store.apply_merge(snapshot, merged)
        note = memory_store.get_note(local_id(1))
        assert note["content"] == "edited meanwhile"
        assert note["serverId"] == 8

    def test_note_created_in_flight_kept(self, memory_store: LocalStore) -> None:
        snapshot = memory_store.get_local_data()
        created = memory_store.create_note("new meanwhile")
        memory_store.apply_merge(snapshot, {"notes": [make_note(2)]})
        ids = {n["localId"] for n in memory_store.get_notes()}
        assert ids == {created["localId"], local_id(2)}

    def test_tags_and_drafts(self, memory_store: LocalStore) -> None:
        memory_store.create_note("x", tags=["a"])
        snapshot = memory_store.get_local_data()
        merged = {
            "notes": snapshot["notes"],
            "tags": [make_tag("a", 5), make_tag("b", 2)],
            "drafts": [make_draft("d1")],
        }
        memory_store.apply_merge(snapshot, merged)
        counts = {t["name"]: t["useCount"] for t in memory_store.get_tags()}
        assert counts == {"a": 5, "b": 2}
        assert [d["id"] for d in memory_store.get_drafts()] == ["d1"]


@pytest.mark.unit
class TestMarkUploaded:
    """Test upload bookkeeping."""

    def test_adopts_ids_and_clears_flags(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1, is_modified=True, needsUpload=True))
        sent = memory_store.get_notes()
        cleared = memory_store.mark_uploaded(sent, {local_id(1): 11}, T3)
        note = memory_store.get_note(local_id(1))
        assert cleared == 1
        assert note["serverId"] == 11
        assert note["isModified"] is False
        assert "needsUpload" not in note
        assert note["lastSyncTime"] == T3

    def test_never_changes_existing_server_id(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1, server_id=3))
        memory_store.mark_uploaded(memory_store.get_notes(), {local_id(1): 99}, T3)
        assert memory_store.get_note(local_id(1))["serverId"] == 3

    def test_edit_during_upload_stays_modified(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1, is_modified=True))
        sent = memory_store.get_notes()
        memory_store.update_note(local_id(1), content="typed during upload")
        memory_store.mark_uploaded(sent, {local_id(1): 11}, T3)
        note = memory_store.get_note(local_id(1))
        assert note["isModified"] is True
        assert note["serverId"] == 11

    def test_trashed_during_upload_gets_server_id(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1, is_modified=True))
        sent = memory_store.get_notes()
        memory_store.move_to_trash(local_id(1))
        memory_store.mark_uploaded(sent, {local_id(1): 11}, T3)
        assert memory_store.get_trashed_note(local_id(1))["serverId"] == 11


@pytest.mark.unit
class TestSyncConfig:
    def test_save_sync_config(self, memory_store: LocalStore) -> None:
        memory_store.save_sync_config(T3, "success")
        config = memory_store.get_sync_config()
        assert config["lastSyncTime"] == T3
        assert config["syncStatus"] == "success"
        assert config["updatedAt"] >= format_timestamp(datetime(2024, 1, 1, tzinfo=timezone.utc))

    def test_mark_needs_upload(self, memory_store: LocalStore) -> None:
        _seed(memory_store, make_note(1))
        note = memory_store.mark_needs_upload(local_id(1))
        assert note["needsUpload"] is True
        assert note["isModified"] is True
