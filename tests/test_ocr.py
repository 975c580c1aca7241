"""Tests for the OCR work queue."""
import pytest

from notestore.config import StoreConfig
from notestore.store import NoteStore
from tests.helpers import img


def _file_row(store, file_id):
    with store.engine.connect() as conn:
        return conn.exec_driver_sql(
            "SELECT attempts_left, last_error FROM ocr_files WHERE id = ?", (file_id,)
        ).first()


class TestPendingFiles:
    """Which registered files are handed to the OCR worker."""

    def test_only_images(self, store):
        store.notes.create("n", img("ab/scan.PNG") + img("cd/doc.pdf") + img("ef/photo.jpeg"))

        pending = store.get_ocr_pending_files()

        assert [item.file_path for item in pending] == ["ab/scan.PNG", "ef/photo.jpeg"]
        assert all(item.attempts_left == 3 for item in pending)

    def test_limit(self, store):
        store.notes.create("n", "".join(img(f"aa/{i}.png") for i in range(5)))

        assert len(store.get_ocr_pending_files(limit=2)) == 2

    def test_done_files_not_pending(self, store):
        store.notes.create("n", img("ab/scan.png"))
        item = store.get_ocr_pending_files()[0]

        store.upsert_ocr_text(item.file_id, "eng", "text", "hash")

        assert store.get_ocr_pending_files() == []

    def test_upsert_replaces_text(self, store):
        note = store.notes.create("n", img("ab/scan.png"))
        item = store.get_ocr_pending_files()[0]

        store.upsert_ocr_text(item.file_id, "eng", "first pass", "h1")
        store.upsert_ocr_text(item.file_id, "deu", "zweiter durchgang", "h2")

        assert store.notes.search("first") == []
        assert [r.id for r in store.notes.search("zweiter")] == [note.id]

    def test_image_attachment_mime(self, store):
        note = store.notes.create("n", img("ab/blob"))
        with store.engine.begin() as conn:
            conn.exec_driver_sql(
                "INSERT INTO attachments (note_id, filename, mime, local_path) "
                "VALUES (?, 'blob', 'image/heic', 'files/ab/blob')",
                (note.id,),
            )

        assert [item.mime for item in store.get_ocr_pending_files()] == ["image/heic"]


class TestFailures:
    """Failed attempts consume the per-file budget."""

    def test_last_attempt(self, data_dir):
        settings = StoreConfig(data_dir=data_dir, ocr_max_attempts=1, log_to_console=False)
        with NoteStore.open(data_dir, settings) as store:
            store.notes.create("n", img("ab/scan.png"))
            item = store.get_ocr_pending_files()[0]
            assert item.attempts_left == 1

            store.mark_ocr_failed(item.file_id, "tesseract crashed")

            assert _file_row(store, item.file_id) == (0, "tesseract crashed")
            assert store.get_ocr_pending_files() == []

    def test_attempts_never_negative(self, store):
        store.notes.create("n", img("ab/scan.png"))
        item = store.get_ocr_pending_files()[0]

        for _ in range(5):
            store.mark_ocr_failed(item.file_id, "nope")

        assert _file_row(store, item.file_id)[0] == 0


class TestStatsAndBackfill:
    """Progress counters and recovery of missing file references."""

    def test_stats(self, store):
        store.notes.create("n", img("ab/a.png") + img("ab/b.png") + img("ab/c.txt"))
        first, second = store.get_ocr_pending_files()
        store.upsert_ocr_text(first.file_id, "eng", "done", "h")

        stats = store.ocr.stats()

        assert (stats.total, stats.done, stats.pending) == (2, 1, 1)

    def test_backfill_when_references_missing(self, store):
        store.notes.create("n", img("ab/a.png"))
        with store.engine.begin() as conn:
            conn.exec_driver_sql("DELETE FROM note_files")
            conn.exec_driver_sql("DELETE FROM ocr_files")

        assert store.ocr.needs_backfill() is True
        assert [item.file_path for item in store.get_ocr_pending_files()] == ["ab/a.png"]
        assert store.ocr.needs_backfill() is False

    @pytest.mark.parametrize("content", ["", "<p>no files</p>"])
    def test_notes_without_references_trigger_backfill(self, store, content):
        assert store.ocr.needs_backfill() is False
        store.notes.create("n", content)
        assert store.ocr.needs_backfill() is True
