"""Tests for the plain-text projection and full-text search."""
import pytest

from notestore.storage.text_index import TextIndex
from tests.helpers import img


class TestDerive:
    """Markup stripping for the text projection."""

    @pytest.mark.parametrize(
        "content,expected",
        [
            ("<p>Hello <b>world</b></p>", "Hello world"),
            ("<p><br></p><div></div>", ""),
            ("a\u00a0b", "a b"),
            ("  lots \n\t of   space ", "lots of space"),
            ("", ""),
        ],
    )
    def test_derive(self, content, expected):
        assert TextIndex.derive(content) == expected

    def test_idempotent(self):
        html = "<h1>Title</h1>\n<p>one&amp;two\u00a0 three</p><ul><li>x</li></ul>"
        once = TextIndex.derive(html)
        assert TextIndex.derive(once) == once


class TestSearch:
    """FTS5 search over note text and OCR text."""

    def test_phrase_match(self, store):
        exact = store.notes.create("a", "<p>the quick brown fox</p>")
        store.notes.create("b", "<p>brown and quick fox</p>")

        results = store.notes.search("quick brown")

        assert [item.id for item in results] == [exact.id]
        assert "quick brown" in results[0].content

    def test_title_matches(self, store):
        note = store.notes.create("Quarterly report", "<p>numbers</p>")

        assert [item.id for item in store.notes.search("quarterly")] == [note.id]

    def test_explicit_syntax_passed_through(self, store):
        both = store.notes.create("a", "<p>apples and pears</p>")
        one = store.notes.create("b", "<p>apples only</p>")

        assert {item.id for item in store.notes.search("apples OR pears")} == {both.id, one.id}
        assert [item.id for item in store.notes.search("apples NOT pears")] == [one.id]
        assert {item.id for item in store.notes.search("appl*")} == {both.id, one.id}

    def test_plain_text_with_operator_word(self, store):
        note = store.notes.create("a", "<p>this is NOT fine at all</p>")
        store.notes.create("b", "<p>this is fine</p>")

        assert [item.id for item in store.notes.search("is NOT fine")] == [note.id]
        assert [item.id for item in store.notes.search("fine AND all")] == [note.id]

    def test_literal_override(self, store):
        both = store.notes.create("a", "<p>apples and pears</p>")
        store.notes.create("b", "<p>apples only</p>")

        assert store.notes.search("apples pears") == []
        assert [item.id for item in store.notes.search("apples pears", literal=False)] == [both.id]
        assert store.notes.search("apples OR pears", literal=True) == []

    def test_blank_query(self, store):
        store.notes.create("a", "<p>anything</p>")

        assert store.notes.search("") == []
        assert store.notes.search("   ") == []

    def test_trashed_excluded(self, store):
        note = store.notes.create("a", "<p>secret plans</p>")
        store.notes.trash(note.id)

        assert store.notes.search("secret") == []

        store.notes.restore(note.id)
        assert [item.id for item in store.notes.search("secret")] == [note.id]

    def test_notebook_filter(self, store):
        work = store.notebooks.create("Work")
        projects = store.notebooks.create("Projects", work.id)
        home = store.notebooks.create("Home")
        inside = store.notes.create("a", "<p>budget</p>", notebook_id=projects.id)
        store.notes.create("b", "<p>budget</p>", notebook_id=home.id)
        store.notes.create("c", "<p>budget</p>")

        assert [item.id for item in store.notes.search("budget", work.id)] == [inside.id]
        assert store.notes.search("budget", 9999) == []
        assert len(store.notes.search("budget")) == 3

    def test_most_recent_first(self, store):
        older = store.notes.create("a", "<p>topic</p>", updated_at=100)
        newer = store.notes.create("b", "<p>topic</p>", updated_at=200)

        assert [item.id for item in store.notes.search("topic")] == [newer.id, older.id]

    def test_ocr_match(self, store):
        note = store.notes.create("Receipt", img("ab/receipt.png"))
        pending = store.get_ocr_pending_files()
        store.upsert_ocr_text(pending[0].file_id, "eng", "TOTAL 42 EUR grocery", "h1")

        results = store.notes.search("grocery")

        assert [item.id for item in results] == [note.id]
        assert results[0].ocr_match is True

    def test_text_and_ocr_match_merged(self, store):
        note = store.notes.create("Receipt", "<p>grocery run</p>" + img("ab/receipt.png"))
        pending = store.get_ocr_pending_files()
        store.upsert_ocr_text(pending[0].file_id, "eng", "grocery store", "h1")

        results = store.notes.search("grocery")

        assert len(results) == 1
        assert results[0].id == note.id
        assert results[0].ocr_match is True
        assert "grocery" in results[0].content

    def test_ocr_match_respects_trash(self, store):
        note = store.notes.create("Receipt", img("ab/receipt.png"))
        pending = store.get_ocr_pending_files()
        store.upsert_ocr_text(pending[0].file_id, "eng", "invoice", "h1")
        store.notes.trash(note.id)

        assert store.notes.search("invoice") == []


class TestFallback:
    """LIKE search when FTS5 rejects a query or is unavailable."""

    def test_syntax_error_falls_back(self, store):
        note = store.notes.create("a", "<p>quick AND dirty fix</p>")

        results = store.notes.search("quick AND")

        assert [item.id for item in results] == [note.id]
        assert "quick AND dirty" in results[0].content

    def test_unavailable_index(self, store):
        hit = store.notes.create("a", "<p>100% done</p>")
        store.notes.create("b", "<p>1000 things</p>")
        store.text_index.available = False

        assert [item.id for item in store.notes.search("100%")] == [hit.id]

    def test_fallback_covers_ocr(self, store):
        note = store.notes.create("Receipt", img("ab/receipt.png"))
        pending = store.get_ocr_pending_files()
        store.upsert_ocr_text(pending[0].file_id, "eng", "parking ticket", "h1")
        store.text_index.available = False

        results = store.notes.search("parking")

        assert [item.id for item in results] == [note.id]
        assert results[0].ocr_match is True

    def test_rebuild_and_reset(self, store):
        note = store.notes.create("a", "<p>rebuild me</p>")

        assert store.text_index.rebuild() == 1
        store.text_index.available = False
        assert store.text_index.reset_availability() is True
        assert store.text_index.available is True
        assert [item.id for item in store.notes.search("rebuild")] == [note.id]


class TestSnippet:
    """Context cut around fallback matches."""

    def test_long_text_trimmed(self):
        words = [f"w{i}" for i in range(100)]
        plain = " ".join(words)

        snippet = TextIndex._snippet_around(plain, "w50")

        assert snippet.startswith("...")
        assert snippet.endswith("...")
        assert "w50" in snippet

    def test_short_text_untouched(self):
        assert TextIndex._snippet_around("tiny note", "note") == "tiny note"
