"""Tests for the full export."""
import json
from pathlib import Path

import pytest

from notestore.exceptions import ValidationError
from notestore.services.export_service import (EXPORT_DIR_PREFIX,
                                               MANIFEST_VERSION, ExportService)
from tests.helpers import make_blob


@pytest.fixture
def populated(store, data_dir):
    work = store.notebooks.create("Work")
    projects = store.notebooks.create("Projects", work.id)
    tag = store.tags.create("todo")
    make_blob(data_dir, "ab/pic.png", b"png")
    note = store.notes.create(
        "Plan",
        '<p>see <img src="notes-file://files/ab/pic.png"></p>',
        notebook_id=projects.id,
    )
    store.tags.add_to_note(note.id, tag.id)
    attachment = store.files.import_attachment_bytes(note.id, "brief.txt", b"details")
    store.notes.update(
        note.id, "Plan", note.content + f'<a data-attachment-id="{attachment.id}">brief</a>'
    )
    return note, attachment


class TestExport:
    """Export folder layout and report."""

    def test_layout(self, store, populated, tmp_path):
        note, attachment = populated

        report = store.exporter.export(tmp_path / "out")

        root = Path(report.export_root)
        assert root.parent == tmp_path / "out"
        assert root.name.startswith(EXPORT_DIR_PREFIX)
        assert (root / "files" / "ab" / "pic.png").read_bytes() == b"png"
        assert (root / "attachments" / str(attachment.id) / "brief.txt").read_bytes() == b"details"
        assert (report.notes, report.notebooks, report.tags) == (1, 2, 1)
        assert (report.attachments, report.images) == (1, 1)
        assert report.errors == []

    def test_note_html_normalized(self, store, populated, tmp_path):
        note, _attachment = populated

        report = store.exporter.export(tmp_path)

        html = (Path(report.export_root) / "notes" / f"{note.id}.html").read_text()
        assert 'src="files/ab/pic.png"' in html
        assert "notes-file://" not in html
        meta = json.loads(
            (Path(report.export_root) / "notes" / f"{note.id}.meta.json").read_text()
        )
        assert meta["title"] == "Plan"
        assert "content" not in meta

    def test_manifest(self, store, populated, tmp_path):
        note, attachment = populated

        report = store.exporter.export(tmp_path)
        manifest = json.loads(Path(report.manifest_path).read_text())

        assert manifest["version"] == MANIFEST_VERSION
        assert [n["id"] for n in manifest["notes"]] == [note.id]
        assert manifest["notes"][0]["content_path"] == f"notes/{note.id}.html"
        assert manifest["attachments"][0]["export_path"] == (
            f"attachments/{attachment.id}/brief.txt"
        )
        assert manifest["ocr_files"][0]["export_path"] == "files/ab/pic.png"
        assert [row["note_id"] for row in manifest["note_tags"]] == [note.id]
        assert len(manifest["notes_text"]) == 1
        for table in ("notebooks", "tags", "ocr_text", "note_files", "note_history"):
            assert table in manifest

    def test_missing_blob_collected_as_error(self, store, tmp_path):
        store.notes.create("broken", '<img src="files/zz/missing.png">')

        report = store.exporter.export(tmp_path)

        assert report.notes == 1
        assert report.images == 0
        assert len(report.errors) == 1
        assert "file" in report.errors[0]
        assert Path(report.manifest_path).exists()

    def test_empty_destination_rejected(self, store):
        with pytest.raises(ValidationError):
            store.exporter.export("  ")

    def test_empty_store(self, store, tmp_path):
        report = store.exporter.export(tmp_path)

        manifest = json.loads(Path(report.manifest_path).read_text())
        assert manifest["notes"] == []
        assert report.errors == []

    def test_history_in_id_order(self, store, tmp_path):
        note = store.notes.create("n", "")
        assert store.history.add_entry(note.id)
        assert store.history.add_entry(note.id)
        with store.engine.begin() as conn:
            conn.exec_driver_sql(
                "UPDATE note_history SET opened_at = opened_at + 60 "
                "WHERE id = (SELECT MAX(id) FROM note_history)"
            )

        report = store.exporter.export(tmp_path)

        manifest = json.loads(Path(report.manifest_path).read_text())
        ids = [row["id"] for row in manifest["note_history"]]
        assert len(ids) == 2
        assert ids == sorted(ids)

    def test_back_to_back_exports_get_separate_folders(self, store, populated, tmp_path):
        first = store.exporter.export(tmp_path)
        second = store.exporter.export(tmp_path)

        assert first.export_root != second.export_root
        assert Path(first.manifest_path).exists()
        assert Path(second.manifest_path).exists()

    def test_taken_stamp_gets_suffix(self, tmp_path):
        stamp = "20260101-120000"

        first = ExportService._new_export_root(tmp_path, stamp)
        second = ExportService._new_export_root(tmp_path, stamp)
        third = ExportService._new_export_root(tmp_path, stamp)

        assert first.name == f"{EXPORT_DIR_PREFIX}{stamp}"
        assert second.name == f"{EXPORT_DIR_PREFIX}{stamp}-2"
        assert third.name == f"{EXPORT_DIR_PREFIX}{stamp}-3"
