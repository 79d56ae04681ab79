"""Unit tests for data models."""

from __future__ import annotations

import pytest

from notesync.models import Note, NoteState, Tag, count_words, new_local_id
from tests.helpers import T1, local_id, make_note


@pytest.mark.unit
class TestNote:
    def test_from_dict(self) -> None:
        note = Note.from_dict(make_note(1, server_id=10, tags=["a", "b"]))
        assert note.local_id == local_id(1)
        assert note.server_id == 10
        assert note.tags == ("a", "b")
        assert note.has_server_id is True
        assert note.state is NoteState.ACTIVE

    def test_trashed_state(self) -> None:
        note = Note.from_dict(make_note(1, deleteTime=T1))
        assert note.state is NoteState.TRASHED
        assert note.to_dict()["isDeleted"] is True

    def test_invalid_server_id(self) -> None:
        assert Note.from_dict(make_note(1, server_id="undefined")).has_server_id is False

    def test_to_dict_matches_stored_form(self) -> None:
        stored = make_note(1, server_id=10)
        assert Note.from_dict(stored).to_dict() == stored

    def test_frozen(self) -> None:
        note = Note(local_id="x")
        with pytest.raises(AttributeError):
            note.title = "changed"


@pytest.mark.unit
class TestHelpers:
    def test_new_local_id_unique(self) -> None:
        ids = [new_local_id() for _ in range(50)]
        assert len(set(ids)) == 50
        assert all(len(i) == 32 for i in ids)

    def test_tag_from_dict(self) -> None:
        tag = Tag.from_dict({"name": "work", "useCount": "3"})
        assert tag == Tag(name="work", use_count=3)

    @pytest.mark.parametrize(
        "text,expected",
        [("", 0), ("hello world", 2), ("  spaced   out  ", 2), ("你好 world", 3), ("one,two", 2)],
    )
    def test_count_words(self, text: str, expected: int) -> None:
        assert count_words(text) == expected
