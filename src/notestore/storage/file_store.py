"""Embedded-file and attachment storage under the data directory.

Layout::

    <data_dir>/files/<aa>/<name>.<ext>       embedded files, sharded by name
    <data_dir>/attachments/<id>/<filename>   explicit attachments

Database bookkeeping for both kinds runs inside the caller's transaction.
Blobs that become unreferenced are queued in a ``PendingDeletions`` and
removed only after the transaction has committed.
"""
import hashlib
import itertools
import logging
import mimetypes
import os
import shutil
import threading
import time
from pathlib import Path
from typing import List, Optional, Set, Tuple, Union

import httpx
from sqlalchemy import select, text
from sqlalchemy.orm import Session

from notestore.config import StoreConfig, config
from notestore.exceptions import (AttachmentNotFoundError, ErrorCode,
                                  FileStoreError, NoteNotFoundError,
                                  ValidationError)
from notestore.models.db_models import DBAttachment, DBNote
from notestore.models.schema import Attachment, StoredFile, utc_timestamp
from notestore.storage.content_scanner import (FILES_PREFIX,
                                               extract_attachment_ids,
                                               extract_note_files)
from notestore.utils import (ext_from_filename, filename_from_url,
                             is_safe_rel_path, normalize_rel_path,
                             safe_filename)

logger = logging.getLogger(__name__)

DEFAULT_MIME = "application/octet-stream"
DEFAULT_EXT = "bin"
ATTACHMENTS_DIR = "attachments"
USER_AGENT = "notestore/1.0"
DOWNLOAD_CHUNK_SIZE = 8192

# Top-level folders a queued blob may live in
EMBEDDED_ROOTS = ("files",)
# Imported attachments may keep a legacy files/attachments/<id>/ location
ATTACHMENT_ROOTS = (ATTACHMENTS_DIR, "files")


class PendingDeletions:
    """Blob paths to remove once the enclosing transaction has committed.

    Paths are relative to the data directory, and each is confined to the
    top-level folders it was queued for: a path that resolves anywhere else
    (the database file, another root) is refused. Removal is best-effort:
    failures are logged and the next garbage collection retries them.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self._entries: List[Tuple[str, Tuple[str, ...]]] = []

    def add(self, rel_path: str, roots: Tuple[str, ...] = ATTACHMENT_ROOTS) -> None:
        """Queue a blob given relative to the data directory.

        Args:
            rel_path: Blob path, e.g. an attachment's ``local_path``.
            roots: Top-level folders the blob must stay inside.
        """
        rel_path = normalize_rel_path(rel_path or "")
        if rel_path and rel_path not in self.paths:
            self._entries.append((rel_path, tuple(roots)))

    def add_file(self, file_path: str) -> None:
        """Queue an embedded file given relative to the files/ root."""
        self.add(FILES_PREFIX + normalize_rel_path(file_path), roots=EMBEDDED_ROOTS)

    @property
    def paths(self) -> List[str]:
        return [rel_path for rel_path, _roots in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def apply(self) -> int:
        """Remove every queued blob and any parent directory left empty.

        Returns:
            Number of blobs actually removed.
        """
        removed = 0
        data_root = self.data_dir.resolve()
        for rel_path, roots in self._entries:
            path = (self.data_dir / rel_path).resolve()
            root = next(
                (data_root / name for name in roots if data_root / name in path.parents),
                None,
            )
            if root is None:
                logger.warning(
                    f"Refusing to delete {rel_path}: not inside {', '.join(roots)}"
                )
                continue
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to delete {rel_path}: {e}")
                continue
            if path.parent == root:
                continue  # Never remove the files/ or attachments/ roots
            try:
                path.parent.rmdir()
            except OSError:
                pass  # Not empty or already gone
        self._entries.clear()
        if removed:
            logger.debug(f"Removed {removed} unreferenced blobs")
        return removed


class FileStore:
    """Content-addressed blob storage plus attachment and file-reference bookkeeping.

    Args:
        data_dir: Root of the persisted layout.
        session_factory: SQLAlchemy session factory.
        settings: Store configuration (size limits, download timeout).
        http_client: Client used for downloads. A new one is created per
            download when omitted.
    """

    def __init__(
        self,
        data_dir: Path,
        session_factory,
        settings: StoreConfig = config,
        http_client: Optional[httpx.Client] = None,
    ):
        self.data_dir = Path(data_dir)
        self.files_dir = self.data_dir / "files"
        self.attachments_dir = self.data_dir / ATTACHMENTS_DIR
        self.session_factory = session_factory
        self.settings = settings
        self.http_client = http_client
        self.files_dir.mkdir(parents=True, exist_ok=True)
        self.attachments_dir.mkdir(parents=True, exist_ok=True)
        # Nonce for unique names; owned by this instance
        self._counter = itertools.count()
        self._counter_lock = threading.Lock()

    def pending_deletions(self) -> PendingDeletions:
        return PendingDeletions(self.data_dir)

    # ------------------------------------------------------------------
    # Embedded files
    # ------------------------------------------------------------------

    def store_bytes(
        self, filename: Optional[str], mime: Optional[str], data: bytes
    ) -> StoredFile:
        """Write a new embedded file and return where it went.

        Identical bytes stored twice get two different names, so a later
        garbage collection of one copy never affects the other.

        Raises:
            FileStoreError: If the data is empty, too large, or cannot be written.
        """
        if not data:
            raise FileStoreError(
                "Cannot store an empty file",
                operation="store_bytes",
                code=ErrorCode.FILE_EMPTY,
            )
        if len(data) > self.settings.max_file_bytes:
            raise FileStoreError(
                f"File exceeds maximum size of {self.settings.max_file_bytes} bytes",
                operation="store_bytes",
                code=ErrorCode.FILE_TOO_LARGE,
            )

        mime = (mime or "").strip().lower() or None
        ext = self._resolve_extension(filename, mime)
        resolved_mime = mime or mimetypes.guess_type(f"x.{ext}")[0] or DEFAULT_MIME

        content_hash = hashlib.sha256(data).hexdigest()
        name = self._unique_name(data)
        rel_path = f"{name[:2]}/{name}.{ext}"
        target = self.files_dir / rel_path
        self._write_atomic(target, data, operation="store_bytes")

        logger.debug(f"Stored {len(data)} bytes as files/{rel_path}")
        return StoredFile(rel_path=rel_path, hash=content_hash, mime=resolved_mime)

    def store_from_path(self, source: Union[str, Path]) -> StoredFile:
        """Copy a file from the local filesystem into the files/ tree."""
        source = Path(source)
        data = self._read_source(source)
        mime = mimetypes.guess_type(source.name)[0]
        return self.store_bytes(source.name, mime, data)

    def store_download(self, url: str) -> StoredFile:
        """Download ``url`` into the files/ tree.

        The response is streamed and abandoned as soon as it exceeds the
        configured maximum size.

        Raises:
            FileStoreError: On HTTP errors, timeouts or oversized responses.
        """
        client = self.http_client or httpx.Client(
            timeout=self.settings.download_timeout, follow_redirects=True
        )
        try:
            data, content_type = self._fetch(client, url)
        finally:
            if self.http_client is None:
                client.close()

        mime = content_type.split(";")[0].strip() if content_type else None
        filename = filename_from_url(url) or "download"
        return self.store_bytes(filename, mime, data)

    def _fetch(self, client: httpx.Client, url: str):
        limit = self.settings.max_file_bytes
        try:
            with client.stream("GET", url, headers={"User-Agent": USER_AGENT}) as response:
                if response.status_code >= 400:
                    raise FileStoreError(
                        f"Download failed with status {response.status_code}",
                        operation="store_download",
                        code=ErrorCode.DOWNLOAD_FAILED,
                    )

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > limit:
                    raise FileStoreError(
                        f"Download exceeds maximum size of {limit} bytes",
                        operation="store_download",
                        code=ErrorCode.FILE_TOO_LARGE,
                    )

                chunks = []
                total_bytes = 0
                for chunk in response.iter_bytes(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    total_bytes += len(chunk)
                    if total_bytes > limit:
                        raise FileStoreError(
                            f"Download exceeds maximum size of {limit} bytes",
                            operation="store_download",
                            code=ErrorCode.FILE_TOO_LARGE,
                        )
                    chunks.append(chunk)

                return b"".join(chunks), response.headers.get("content-type")

        except httpx.TimeoutException as e:
            raise FileStoreError(
                "Download timed out",
                operation="store_download",
                code=ErrorCode.DOWNLOAD_FAILED,
                original_error=e,
            ) from e
        except httpx.HTTPError as e:
            raise FileStoreError(
                f"Download failed: {e}",
                operation="store_download",
                code=ErrorCode.DOWNLOAD_FAILED,
                original_error=e,
            ) from e

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def create_attachment(
        self,
        note_id: int,
        filename: str,
        mime: Optional[str] = None,
        size: int = 0,
        local_path: str = "",
        external_id: Optional[str] = None,
        content_hash: Optional[str] = None,
        source_url: Optional[str] = None,
    ) -> Attachment:
        """Insert an attachment row for a blob the caller placed on disk itself.

        Importers use this to preserve metadata from another application.

        Raises:
            NoteNotFoundError: If the note does not exist.
            ValidationError: If ``local_path`` is absolute or climbs out with ``..``.
        """
        if local_path and not is_safe_rel_path(local_path):
            raise ValidationError(
                "Attachment path must stay inside the data directory",
                field="local_path",
                value=local_path,
                code=ErrorCode.PATH_TRAVERSAL_DETECTED,
            )
        with self.session_factory.write("create_attachment") as session:
            self._require_note(session, note_id)
            now = utc_timestamp()
            db_attachment = DBAttachment(
                note_id=note_id,
                external_id=external_id,
                hash=content_hash,
                filename=filename,
                mime=mime,
                size=size,
                local_path=normalize_rel_path(local_path),
                source_url=source_url,
                is_attachment=1,
                created_at=now,
                updated_at=now,
            )
            session.add(db_attachment)
            session.commit()
            return self._to_model(db_attachment)

    def import_attachment(self, note_id: int, source: Union[str, Path]) -> Attachment:
        """Copy a local file into ``attachments/<id>/`` and attach it to a note."""
        source = Path(source)
        data = self._read_source(source)
        return self.import_attachment_bytes(
            note_id, source.name, data, mimetypes.guess_type(source.name)[0]
        )

    def import_attachment_bytes(
        self,
        note_id: int,
        filename: str,
        data: bytes,
        mime: Optional[str] = None,
    ) -> Attachment:
        """Write ``data`` as a new attachment of ``note_id``.

        The row and the blob appear together: if the blob cannot be written
        the row is rolled back, and if the commit fails the blob is removed.

        Raises:
            NoteNotFoundError: If the note does not exist.
            FileStoreError: If the data is too large or cannot be written.
        """
        if len(data) > self.settings.max_file_bytes:
            raise FileStoreError(
                f"Attachment exceeds maximum size of {self.settings.max_file_bytes} bytes",
                operation="import_attachment",
                code=ErrorCode.FILE_TOO_LARGE,
            )
        name = safe_filename(filename or "", fallback="attachment")
        resolved_mime = mime or mimetypes.guess_type(name)[0] or DEFAULT_MIME

        target: Optional[Path] = None
        with self.session_factory.write("import_attachment") as session:
            self._require_note(session, note_id)
            now = utc_timestamp()
            db_attachment = DBAttachment(
                note_id=note_id,
                hash=hashlib.sha256(data).hexdigest(),
                filename=name,
                mime=resolved_mime,
                size=len(data),
                local_path="",
                is_attachment=1,
                created_at=now,
                updated_at=now,
            )
            session.add(db_attachment)
            session.flush()

            rel_path = f"{ATTACHMENTS_DIR}/{db_attachment.id}/{name}"
            target = self.data_dir / rel_path
            self._write_atomic(target, data, operation="import_attachment")
            db_attachment.local_path = rel_path
            try:
                session.commit()
            except Exception:
                pending = self.pending_deletions()
                pending.add(rel_path)
                pending.apply()
                raise

            logger.info(
                f"Attached '{name}' ({len(data)} bytes) to note {note_id} "
                f"as attachment {db_attachment.id}"
            )
            return self._to_model(db_attachment)

    def get_attachment(self, attachment_id: int) -> Optional[Attachment]:
        with self.session_factory.read("get_attachment") as session:
            row = session.get(DBAttachment, attachment_id)
            return self._to_model(row) if row else None

    def get_attachment_by_path(self, local_path: str) -> Optional[Attachment]:
        with self.session_factory.read("get_attachment") as session:
            row = session.scalar(
                select(DBAttachment).where(
                    DBAttachment.local_path == normalize_rel_path(local_path)
                )
            )
            return self._to_model(row) if row else None

    def list_attachments(self, note_id: int) -> List[Attachment]:
        with self.session_factory.read("list_attachments") as session:
            rows = session.scalars(
                select(DBAttachment)
                .where(DBAttachment.note_id == note_id)
                .order_by(DBAttachment.id)
            ).all()
            return [self._to_model(row) for row in rows]

    def delete_attachment(self, attachment_id: int) -> bool:
        """Delete an attachment row and, after commit, its blob.

        Returns:
            False when no such attachment existed.
        """
        pending = self.pending_deletions()
        with self.session_factory.write(
            "delete_attachment", ErrorCode.STORAGE_DELETE_FAILED
        ) as session:
            row = session.get(DBAttachment, attachment_id)
            if row is None:
                return False
            pending.add(row.local_path or "")
            session.delete(row)
            session.commit()
        pending.apply()
        logger.info(f"Deleted attachment {attachment_id}")
        return True

    def attachment_path(self, attachment_id: int) -> Path:
        """Absolute path of an attachment blob.

        Raises:
            AttachmentNotFoundError: If the row is missing, has no stored
                path, or points outside the data directory.
        """
        attachment = self.get_attachment(attachment_id)
        if attachment is None or not attachment.local_path:
            raise AttachmentNotFoundError(attachment_id)
        path = (self.data_dir / attachment.local_path).resolve()
        if self.data_dir.resolve() not in path.parents:
            raise ValidationError(
                "Attachment path escapes the data directory",
                field="local_path",
                value=attachment.local_path,
                code=ErrorCode.PATH_TRAVERSAL_DETECTED,
            )
        return path

    def read_attachment_bytes(self, attachment_id: int) -> bytes:
        path = self.attachment_path(attachment_id)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise AttachmentNotFoundError(
                attachment_id,
                f"File for attachment {attachment_id} is missing",
                code=ErrorCode.ATTACHMENT_FILE_MISSING,
            ) from e
        except OSError as e:
            raise FileStoreError(
                f"Failed to read attachment {attachment_id}: {e}",
                operation="read_attachment",
                path=str(path),
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e

    def read_attachment_text(
        self, attachment_id: int, max_bytes: Optional[int] = None
    ) -> str:
        """Attachment contents decoded as UTF-8, invalid bytes replaced."""
        data = self.read_attachment_bytes(attachment_id)
        if max_bytes is not None:
            data = data[:max_bytes]
        return data.decode("utf-8", errors="replace")

    def save_attachment_as(self, attachment_id: int, dest: Union[str, Path]) -> Path:
        """Copy an attachment blob to ``dest`` outside the store."""
        source = self.attachment_path(attachment_id)
        if not source.exists():
            raise AttachmentNotFoundError(
                attachment_id,
                f"File for attachment {attachment_id} is missing",
                code=ErrorCode.ATTACHMENT_FILE_MISSING,
            )
        dest = Path(dest)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, dest)
        except OSError as e:
            raise FileStoreError(
                f"Failed to save attachment {attachment_id}: {e}",
                operation="save_attachment_as",
                path=str(dest),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        return dest

    # ------------------------------------------------------------------
    # In-transaction bookkeeping used by the note repository
    # ------------------------------------------------------------------

    def sync_note_files(
        self, session: Session, note_id: int, content: str
    ) -> List[str]:
        """Make the note's file references a function of its current content.

        Every referenced path is registered (idempotent by path), then the
        note's join rows are replaced wholesale.

        Returns:
            The referenced paths, sorted.
        """
        paths = extract_note_files(content)
        session.execute(
            text("DELETE FROM note_files WHERE note_id = :note_id"), {"note_id": note_id}
        )
        for file_path in paths:
            session.execute(
                text("""
                    INSERT INTO ocr_files (file_path, attempts_left)
                    VALUES (:path, :attempts)
                    ON CONFLICT(file_path) DO NOTHING
                """),
                {"path": file_path, "attempts": self.settings.ocr_max_attempts},
            )
            file_id = session.execute(
                text("SELECT id FROM ocr_files WHERE file_path = :path"),
                {"path": file_path},
            ).scalar()
            session.execute(
                text("""
                    INSERT OR IGNORE INTO note_files (note_id, file_id)
                    VALUES (:note_id, :file_id)
                """),
                {"note_id": note_id, "file_id": file_id},
            )
        return paths

    def cleanup_note_attachments(
        self,
        session: Session,
        note_id: int,
        content: str,
        pending: PendingDeletions,
    ) -> List[int]:
        """Delete attachments of ``note_id`` whose marker left the content.

        Returns:
            Ids of the removed attachments; their blobs are queued in ``pending``.
        """
        keep: Set[int] = extract_attachment_ids(content)
        rows = session.execute(
            text("SELECT id, local_path FROM attachments WHERE note_id = :note_id"),
            {"note_id": note_id},
        ).fetchall()
        removed = []
        for attachment_id, local_path in rows:
            if attachment_id in keep:
                continue
            session.execute(
                text("DELETE FROM attachments WHERE id = :id"), {"id": attachment_id}
            )
            pending.add(local_path or "")
            removed.append(attachment_id)
        if removed:
            logger.debug(f"Note {note_id}: removed unreferenced attachments {removed}")
        return removed

    def queue_note_attachments(
        self, session: Session, note_id: int, pending: PendingDeletions
    ) -> None:
        """Queue every attachment blob of a note that is about to be deleted."""
        paths = session.execute(
            text("SELECT local_path FROM attachments WHERE note_id = :note_id"),
            {"note_id": note_id},
        ).scalars()
        for local_path in paths:
            pending.add(local_path or "")

    def sweep_orphan_files(self, session: Session, pending: PendingDeletions) -> int:
        """Delete registry rows no note references and queue their blobs."""
        orphans = session.execute(text("""
            SELECT f.id, f.file_path
            FROM ocr_files f
            WHERE NOT EXISTS (SELECT 1 FROM note_files nf WHERE nf.file_id = f.id)
        """)).fetchall()
        for file_id, file_path in orphans:
            session.execute(text("DELETE FROM ocr_files WHERE id = :id"), {"id": file_id})
            pending.add_file(file_path)
        if orphans:
            logger.debug(f"Swept {len(orphans)} orphaned files")
        return len(orphans)

    def resync_all_note_files(self, session: Session) -> int:
        """Rebuild file references for every note from its content."""
        rows = session.execute(select(DBNote.id, DBNote.content)).all()
        for note_id, content in rows:
            self.sync_note_files(session, note_id, content or "")
        return len(rows)

    def collect_garbage(self) -> int:
        """Rebuild every note's file references and remove orphaned files.

        Returns:
            Number of registry rows removed.
        """
        pending = self.pending_deletions()
        with self.session_factory.write(
            "collect_garbage", ErrorCode.STORAGE_DELETE_FAILED
        ) as session:
            self.resync_all_note_files(session)
            swept = self.sweep_orphan_files(session, pending)
            session.commit()
        pending.apply()
        logger.info(f"Garbage collection removed {swept} orphaned files")
        return swept

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_model(row: DBAttachment) -> Attachment:
        return Attachment(
            id=row.id,
            note_id=row.note_id,
            filename=row.filename or "",
            mime=row.mime or "",
            size=row.size or 0,
            local_path=row.local_path or "",
        )

    @staticmethod
    def _require_note(session: Session, note_id: int) -> None:
        if session.get(DBNote, note_id) is None:
            raise NoteNotFoundError(note_id)

    @staticmethod
    def _resolve_extension(filename: Optional[str], mime: Optional[str]) -> str:
        """Pick the stored extension.

        Images prefer the MIME-derived extension because pasted images often
        arrive with a generic filename; everything else prefers the filename.
        """
        from_name = ext_from_filename(filename) if filename else None
        from_mime = None
        if mime:
            guessed = mimetypes.guess_extension(mime)
            from_mime = guessed.lstrip(".") if guessed else None
        if mime and mime.startswith("image/"):
            return from_mime or from_name or DEFAULT_EXT
        return from_name or from_mime or DEFAULT_EXT

    def _unique_name(self, data: bytes) -> str:
        with self._counter_lock:
            nonce = next(self._counter)
        digest = hashlib.sha256()
        digest.update(data)
        digest.update(str(time.time_ns()).encode())
        digest.update(str(nonce).encode())
        return digest.hexdigest()

    @staticmethod
    def _write_atomic(target: Path, data: bytes, operation: str) -> None:
        """Write to a staging file next to ``target`` and rename it into place."""
        staging = target.with_name(target.name + ".tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(staging, "wb") as f:
                f.write(data)
            os.replace(staging, target)
        except OSError as e:
            try:
                staging.unlink()
            except OSError:
                pass
            raise FileStoreError(
                f"Failed to write file: {e}",
                operation=operation,
                path=str(target),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    @staticmethod
    def _read_source(source: Path) -> bytes:
        try:
            return source.read_bytes()
        except FileNotFoundError as e:
            raise FileStoreError(
                f"File not found: {source.name}",
                operation="read_source",
                path=str(source),
                code=ErrorCode.FILE_NOT_FOUND,
                original_error=e,
            ) from e
        except OSError as e:
            raise FileStoreError(
                f"Failed to read {source.name}: {e}",
                operation="read_source",
                path=str(source),
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e

