"""CLI tests for trash and sync commands."""

from __future__ import annotations

import pytest

from tests.sync.conftest import TEST_TOKEN, start_server


@pytest.fixture
def server():
    running = start_server()
    yield running
    running.thread.shutdown()


@pytest.fixture
def logged_in(cli, server):
    """Point the CLI config at the test server with a valid token."""
    assert cli("config", "set", "api_base_url", server.base_url).returncode == 0
    assert cli("config", "set", "auth_token", TEST_TOKEN).returncode == 0
    return server


@pytest.mark.cli
class TestTrashOffline:
    """Trash commands with no token configured."""

    def test_delete_and_list(self, cli, cli_json, note_ids) -> None:
        result = cli("trash", "delete", note_ids[0])
        assert result.returncode == 0
        assert f"{note_ids[0]}: Moved to trash" in result.stdout

        listing = cli_json("trash", "list", "--local")
        assert listing["source"] == "local"
        assert [n["localId"] for n in listing["notes"]] == [note_ids[0]]
        assert listing["notes"][0]["daysRemaining"] == 30
        assert len(cli_json("notes", "list")) == 2

    def test_delete_twice(self, cli, note_ids) -> None:
        cli("trash", "delete", note_ids[0])
        result = cli("trash", "delete", note_ids[0])
        assert result.returncode == 0
        assert "Already in trash" in result.stdout

    def test_delete_missing_fails(self, cli) -> None:
        result = cli("trash", "delete", "nope")
        assert result.returncode == 1
        assert "Delete failed" in result.stdout

    def test_batch_delete(self, cli, cli_json, note_ids) -> None:
        result = cli_json("trash", "delete", *note_ids, "nope")
        assert result["total"] == 4
        assert result["local_success_count"] == 3
        assert result["failed_ids"] == ["nope"]

    def test_restore(self, cli, cli_json, note_ids) -> None:
        cli("trash", "delete", note_ids[0])
        result = cli("trash", "restore", note_ids[0])
        assert result.returncode == 0
        assert "Restored" in result.stdout
        assert len(cli_json("notes", "list")) == 3

    def test_purge_and_empty(self, cli, cli_json, note_ids) -> None:
        cli("trash", "delete", *note_ids)
        assert cli("trash", "purge", note_ids[0]).returncode == 0
        result = cli("trash", "empty")
        assert result.returncode == 0
        assert "empty: 2/2 done locally" in result.stdout
        assert cli_json("trash", "list", "--local")["notes"] == []

    def test_purge_active_note_fails(self, cli, note_ids) -> None:
        assert cli("trash", "purge", note_ids[0]).returncode == 1

    def test_list_falls_back_to_local(self, cli, note_ids) -> None:
        cli("trash", "delete", note_ids[0])
        result = cli("trash", "list")
        assert result.returncode == 0
        assert "showing local trash" in result.stdout
        assert note_ids[0] in result.stdout

    def test_list_sorted_by_title(self, cli, cli_json, note_ids) -> None:
        cli("trash", "delete", *note_ids)
        listing = cli_json("trash", "list", "--local", "--sort", "title", "--asc")
        assert [n["title"] for n in listing["notes"]] == ["Note 0", "Note 1", "Note 2"]

    def test_sync_without_token(self, cli, note_ids) -> None:
        result = cli("sync", "now")
        assert result.returncode == 1
        assert "Not logged in" in result.stdout

    def test_sync_status_offline(self, cli_json) -> None:
        status = cli_json("sync", "status")
        assert status["logged_in"] is False
        assert status["last_sync_time"] is None
        assert status["trash_listing"]["available"] is True


@pytest.mark.cli
class TestWithServer:
    """Commands against a running reference server."""

    def test_sync_then_delete_is_synced(self, cli, cli_json, note_ids, logged_in) -> None:
        result = cli("sync", "upload")
        assert result.returncode == 0
        assert len(logged_in.state.notes) == 3

        result = cli("trash", "delete", note_ids[0])
        assert result.returncode == 0
        assert "Moved to trash and synced" in result.stdout
        assert logged_in.state.notes[1]["isDeleted"] is True

    def test_trash_list_from_server(self, cli, cli_json, note_ids, logged_in) -> None:
        cli("sync", "upload")
        cli("trash", "delete", note_ids[1])
        listing = cli_json("trash", "list")
        assert listing["source"] == "remote"
        assert [n["localId"] for n in listing["notes"]] == [note_ids[1]]

    def test_sync_now_and_check(self, cli, cli_json, note_ids, logged_in) -> None:
        first = cli_json("sync", "now")
        assert first["success"] is True
        assert first["action"] == "upload"
        check = cli_json("sync", "check")
        assert check["has_updates"] is False

    def test_sync_status_with_server(self, cli_json, note_ids, logged_in) -> None:
        status = cli_json("sync", "status")
        assert status["logged_in"] is True
        assert status["server"]["noteCount"] == 0

    def test_no_wait_reports_pending(self, cli, note_ids, logged_in) -> None:
        cli("sync", "upload")
        result = cli("trash", "delete", note_ids[2], "--no-wait")
        assert result.returncode == 0
        assert "Moved to trash" in result.stdout

    def test_refresh(self, cli, logged_in) -> None:
        result = cli("trash", "refresh")
        assert result.returncode == 0
        assert "Trash refreshed from remote" in result.stdout
