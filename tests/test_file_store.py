"""Tests for embedded files, attachments and file garbage collection."""
import httpx
import pytest
import respx

from notestore.exceptions import (AttachmentNotFoundError, ErrorCode,
                                  FileStoreError, NoteNotFoundError,
                                  ValidationError)
from notestore.storage.content_scanner import (extract_attachment_ids,
                                               extract_note_files,
                                               normalize_file_urls)
from notestore.storage.file_store import PendingDeletions
from notestore.store import NoteStore
from notestore.utils import is_safe_rel_path
from tests.helpers import img, make_blob


def _registry(store):
    with store.engine.connect() as conn:
        return [row[0] for row in conn.exec_driver_sql(
            "SELECT file_path FROM ocr_files ORDER BY file_path"
        )]


class TestContentScanner:
    """Finding embedded-file references in note HTML."""

    @pytest.mark.parametrize(
        "html,expected",
        [
            ('<img src="files/ab/one.png">', ["ab/one.png"]),
            ("<img src='files/ab/one.png'>", ["ab/one.png"]),
            ('<img src="files/evernote/ab/one.png">', ["ab/one.png"]),
            ('<img src="notes-file://files/ab/one.png">', ["ab/one.png"]),
            ('<img src="notes-file://files/evernote/cd/two.jpg">', ["cd/two.jpg"]),
            ('<img src="http://asset.localhost/data/files/ab/one.png">', ["ab/one.png"]),
            (
                '<img src="http://asset.localhost/%2Fdata%2Ffiles%2Fab%2Fone%20x.png">',
                ["ab/one x.png"],
            ),
            ('<img src="https://example.com/pic.png">', []),
            ("<p>no images</p>", []),
            ("", []),
        ],
    )
    def test_extract(self, html, expected):
        assert extract_note_files(html) == expected

    def test_deduplicated_and_sorted(self):
        html = (
            '<img src="files/zz/b.png"><img src="files/aa/a.png">'
            '<img src="notes-file://files/zz/b.png">'
        )
        assert extract_note_files(html) == ["aa/a.png", "zz/b.png"]

    def test_attachment_markers(self):
        html = '<a data-attachment-id="3">x</a><div data-attachment-id=\'12\'></div>'
        assert extract_attachment_ids(html) == {3, 12}

    @pytest.mark.parametrize(
        "html",
        [
            '<img src="files/../notes.db">',
            '<img src="files/ab/../../attachments/7/other.pdf">',
            '<img src="notes-file://files//etc/passwd">',
            '<img src="http://asset.localhost/%2Fdata%2Ffiles%2F..%2Fnotes.db">',
        ],
    )
    def test_escaping_paths_dropped(self, html):
        assert extract_note_files(html) == []

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("ab/one.png", True),
            ("attachments/3/a.txt", True),
            ("a..b/c.png", True),
            ("", False),
            ("/etc/passwd", False),
            ("C:/Windows/win.ini", False),
            ("..\\notes.db", False),
            ("ab/../../notes.db", False),
        ],
    )
    def test_is_safe_rel_path(self, value, expected):
        assert is_safe_rel_path(value) is expected

    def test_normalize_urls(self):
        html = (
            '<img src="notes-file://files/ab/one.png">'
            '<img src="http://asset.localhost/%2Fdata%2Ffiles%2Fcd%2Ftwo.png">'
            '<img src="files/ef/three.png">'
            '<img src="https://example.com/pic.png">'
        )
        assert normalize_file_urls(html) == (
            '<img src="files/ab/one.png">'
            '<img src="files/cd/two.png">'
            '<img src="files/ef/three.png">'
            '<img src="https://example.com/pic.png">'
        )


class TestStoreBytes:
    """Writing new embedded files."""

    def test_layout_and_metadata(self, store, data_dir):
        stored = store.files.store_bytes("photo.jpg", "image/png", b"pixels")

        assert stored.rel_path.endswith(".png")
        name = stored.rel_path.split("/")[1]
        assert stored.rel_path.startswith(name[:2] + "/")
        assert stored.mime == "image/png"
        assert stored.src == f"files/{stored.rel_path}"
        assert (data_dir / "files" / stored.rel_path).read_bytes() == b"pixels"

    def test_non_image_prefers_filename_extension(self, store):
        stored = store.files.store_bytes("report.pdf", "application/octet-stream", b"%PDF")
        assert stored.rel_path.endswith(".pdf")

    def test_mime_guessed_from_extension(self, store):
        stored = store.files.store_bytes("notes.txt", None, b"hello")
        assert stored.mime == "text/plain"

    def test_unknown_type(self, store):
        stored = store.files.store_bytes(None, None, b"\x00\x01")
        assert stored.rel_path.endswith(".bin")
        assert stored.mime == "application/octet-stream"

    def test_same_bytes_get_distinct_names(self, store):
        first = store.files.store_bytes("a.png", "image/png", b"same")
        second = store.files.store_bytes("a.png", "image/png", b"same")

        assert first.rel_path != second.rel_path
        assert first.hash == second.hash

    def test_empty_rejected(self, store):
        with pytest.raises(FileStoreError) as exc_info:
            store.files.store_bytes("a.png", "image/png", b"")
        assert exc_info.value.code == ErrorCode.FILE_EMPTY

    def test_too_large_rejected(self, store, settings):
        with pytest.raises(FileStoreError) as exc_info:
            store.files.store_bytes("a.png", "image/png", b"x" * (settings.max_file_bytes + 1))
        assert exc_info.value.code == ErrorCode.FILE_TOO_LARGE

    def test_store_from_path(self, store, tmp_path):
        source = tmp_path / "scan.png"
        source.write_bytes(b"png bytes")

        stored = store.files.store_from_path(source)

        assert stored.mime == "image/png"
        assert stored.rel_path.endswith(".png")

    def test_store_from_missing_path(self, store, tmp_path):
        with pytest.raises(FileStoreError) as exc_info:
            store.files.store_from_path(tmp_path / "nope.png")
        assert exc_info.value.code == ErrorCode.FILE_NOT_FOUND


class TestDownload:
    """Fetching remote files into the files/ tree."""

    URL = "https://images.example.com/cat.jpg?size=large"

    @respx.mock
    def test_download(self, store, data_dir):
        respx.get(self.URL).mock(
            return_value=httpx.Response(
                200, content=b"jpeg data", headers={"content-type": "image/jpeg; q=1"}
            )
        )

        stored = store.files.store_download(self.URL)

        assert stored.mime == "image/jpeg"
        assert stored.rel_path.endswith(".jpg")
        assert (data_dir / "files" / stored.rel_path).read_bytes() == b"jpeg data"

    @respx.mock
    def test_http_error(self, store):
        respx.get(self.URL).mock(return_value=httpx.Response(404))

        with pytest.raises(FileStoreError) as exc_info:
            store.files.store_download(self.URL)
        assert exc_info.value.code == ErrorCode.DOWNLOAD_FAILED

    @respx.mock
    def test_oversized(self, store, settings):
        respx.get(self.URL).mock(
            return_value=httpx.Response(200, content=b"x" * (settings.max_file_bytes + 10))
        )

        with pytest.raises(FileStoreError) as exc_info:
            store.files.store_download(self.URL)
        assert exc_info.value.code == ErrorCode.FILE_TOO_LARGE

    @respx.mock
    def test_timeout(self, store):
        respx.get(self.URL).mock(side_effect=httpx.ConnectTimeout)

        with pytest.raises(FileStoreError) as exc_info:
            store.files.store_download(self.URL)
        assert exc_info.value.code == ErrorCode.DOWNLOAD_FAILED

    def test_injected_client(self, data_dir, settings):
        def handler(request):
            assert request.headers["user-agent"].startswith("notestore/")
            return httpx.Response(200, content=b"gif", headers={"content-type": "image/gif"})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        with NoteStore.open(data_dir, settings, http_client=client) as store:
            stored = store.files.store_download("https://example.com/anim")
        client.close()

        assert stored.rel_path.endswith(".gif")


class TestGarbageCollection:
    """Embedded files live exactly as long as some note references them."""

    def test_delete_removes_registry_row_and_blob(self, store, data_dir):
        blob = make_blob(data_dir, "ab/c.png")
        note = store.notes.create("hi", "<p>hi <img src='files/ab/c.png'></p>")
        assert _registry(store) == ["ab/c.png"]

        store.notes.delete(note.id)

        assert _registry(store) == []
        assert not blob.exists()
        assert not blob.parent.exists()
        assert (data_dir / "files").is_dir()

    def test_update_dropping_last_reference(self, store, data_dir):
        blob = make_blob(data_dir, "ab/c.png")
        note = store.notes.create("hi", img("ab/c.png"))

        store.notes.update(note.id, "hi", "<p>image removed</p>")

        assert _registry(store) == []
        assert not blob.exists()

    def test_shared_file_survives_one_delete(self, store, data_dir):
        blob = make_blob(data_dir, "ab/c.png")
        first = store.notes.create("one", img("ab/c.png"))
        second = store.notes.create("two", img("ab/c.png"))

        store.notes.delete(first.id)
        assert blob.exists()

        store.notes.delete(second.id)
        assert not blob.exists()

    def test_trash_keeps_files(self, store, data_dir):
        blob = make_blob(data_dir, "ab/c.png")
        note = store.notes.create("hi", img("ab/c.png"))

        store.notes.trash(note.id)
        assert blob.exists()

        store.notes.empty_trash()
        assert not blob.exists()

    def test_collect_garbage(self, store, data_dir):
        kept = make_blob(data_dir, "ab/keep.png")
        gone = make_blob(data_dir, "cd/gone.png")
        store.notes.create("hi", img("ab/keep.png"))
        with store.engine.begin() as conn:
            conn.exec_driver_sql(
                "INSERT INTO ocr_files (file_path, attempts_left) VALUES ('cd/gone.png', 3)"
            )

        assert store.files.collect_garbage() == 1
        assert kept.exists()
        assert not gone.exists()

    def test_pending_deletions_stay_inside_data_dir(self, data_dir, tmp_path):
        outside = tmp_path / "outside.txt"
        outside.write_text("keep me")
        pending = PendingDeletions(data_dir)
        pending.add("../outside.txt")
        pending.add_file("missing/none.png")

        assert pending.apply() == 0
        assert outside.exists()
        assert len(pending) == 0

    def test_pending_file_confined_to_files_root(self, data_dir):
        database = data_dir / "notes.db"
        database.write_bytes(b"db")
        other = data_dir / "attachments" / "7" / "other.pdf"
        other.parent.mkdir(parents=True)
        other.write_bytes(b"%PDF")
        pending = PendingDeletions(data_dir)
        pending.add_file("../notes.db")
        pending.add_file("../attachments/7/other.pdf")
        pending.add("attachments/../notes.db")

        assert pending.apply() == 0
        assert database.exists()
        assert other.exists()

    def test_deleting_note_with_escaping_src_keeps_database(self, store, data_dir):
        other_note = store.notes.create("owner", "")
        attachment = store.files.import_attachment_bytes(other_note.id, "other.pdf", b"%PDF")
        html = (
            '<img src="files/../notes.db">'
            f'<img src="files/../{attachment.local_path}">'
        )
        note = store.notes.create("sneaky", html)
        assert _registry(store) == []

        store.notes.delete(note.id)
        store.files.collect_garbage()

        assert (data_dir / "notes.db").exists()
        assert (data_dir / attachment.local_path).read_bytes() == b"%PDF"
        assert store.notes.get(other_note.id) is not None


class TestAttachments:
    """Explicit per-note attachments."""

    def test_import_bytes(self, store, data_dir):
        note = store.notes.create("n", "")

        attachment = store.files.import_attachment_bytes(note.id, "../../doc.txt", b"hello")

        assert attachment.filename == "doc.txt"
        assert attachment.local_path == f"attachments/{attachment.id}/doc.txt"
        assert attachment.mime == "text/plain"
        assert attachment.size == 5
        assert store.files.read_attachment_text(attachment.id) == "hello"
        assert store.files.read_attachment_text(attachment.id, max_bytes=2) == "he"
        assert store.files.get_attachment_by_path(attachment.local_path).id == attachment.id
        assert [a.id for a in store.files.list_attachments(note.id)] == [attachment.id]

    def test_import_from_path_and_save_as(self, store, tmp_path):
        note = store.notes.create("n", "")
        source = tmp_path / "manual.pdf"
        source.write_bytes(b"%PDF-1.4")

        attachment = store.files.import_attachment(note.id, source)
        saved = store.files.save_attachment_as(attachment.id, tmp_path / "out" / "copy.pdf")

        assert attachment.mime == "application/pdf"
        assert saved.read_bytes() == b"%PDF-1.4"

    def test_import_for_missing_note(self, store):
        with pytest.raises(NoteNotFoundError):
            store.files.import_attachment_bytes(404, "a.txt", b"x")

    def test_create_attachment_row(self, store):
        note = store.notes.create("n", "")

        attachment = store.files.create_attachment(
            note.id, "legacy.bin", mime="application/octet-stream", size=3,
            local_path="attachments/legacy/legacy.bin", external_id="ext",
        )

        assert attachment.local_path == "attachments/legacy/legacy.bin"
        with pytest.raises(AttachmentNotFoundError) as exc_info:
            store.files.read_attachment_bytes(attachment.id)
        assert exc_info.value.code == ErrorCode.ATTACHMENT_FILE_MISSING

    def test_marker_removed_deletes_attachment(self, store, data_dir):
        note = store.notes.create("n", "")
        kept = store.files.import_attachment_bytes(note.id, "keep.txt", b"1")
        dropped = store.files.import_attachment_bytes(note.id, "drop.txt", b"2")

        store.notes.update(note.id, "n", f'<a data-attachment-id="{kept.id}">keep.txt</a>')

        assert store.files.get_attachment(dropped.id) is None
        assert not (data_dir / dropped.local_path).exists()
        assert not (data_dir / "attachments" / str(dropped.id)).exists()
        assert store.files.get_attachment(kept.id) is not None
        assert (data_dir / kept.local_path).exists()

    def test_note_delete_removes_attachments(self, store, data_dir):
        note = store.notes.create("n", "")
        attachment = store.files.import_attachment_bytes(note.id, "a.txt", b"1")

        store.notes.delete(note.id)

        assert store.files.get_attachment(attachment.id) is None
        assert not (data_dir / attachment.local_path).exists()

    def test_delete_attachment(self, store, data_dir):
        note = store.notes.create("n", "")
        attachment = store.files.import_attachment_bytes(note.id, "a.txt", b"1")

        assert store.files.delete_attachment(attachment.id) is True
        assert not (data_dir / attachment.local_path).exists()
        assert store.files.delete_attachment(attachment.id) is False

    @pytest.mark.parametrize("local_path", ["../escape.txt", "/etc/passwd", "attachments/../../x"])
    def test_create_attachment_rejects_escaping_path(self, store, local_path):
        note = store.notes.create("n", "")

        with pytest.raises(ValidationError) as exc_info:
            store.files.create_attachment(note.id, "x", local_path=local_path)
        assert exc_info.value.code == ErrorCode.PATH_TRAVERSAL_DETECTED
        assert store.files.list_attachments(note.id) == []

    def test_path_traversal_rejected(self, store):
        note = store.notes.create("n", "")
        attachment = store.files.create_attachment(note.id, "x", local_path="attachments/x")
        with store.engine.begin() as conn:
            conn.exec_driver_sql(
                "UPDATE attachments SET local_path = '../escape.txt' WHERE id = ?",
                (attachment.id,),
            )

        with pytest.raises(ValidationError) as exc_info:
            store.files.attachment_path(attachment.id)
        assert exc_info.value.code == ErrorCode.PATH_TRAVERSAL_DETECTED

    def test_unknown_attachment(self, store):
        with pytest.raises(AttachmentNotFoundError):
            store.files.read_attachment_bytes(999)
