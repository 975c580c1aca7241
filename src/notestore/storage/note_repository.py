"""Repository for notes: CRUD, trash lifecycle and listing.

Every mutating operation is one transaction that writes the note row,
re-derives its text projection, re-syncs its embedded-file references and
sweeps the file registry. Blob removal implied by the sweep happens only
after the commit succeeded. A database failure rolls the whole transaction
back and surfaces as ``StorageError``.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import bindparam, select, text
from sqlalchemy.orm import Session

from notestore.config import StoreConfig, config
from notestore.exceptions import (ErrorCode, IntegrityViolationError,
                                  NotebookNotFoundError, NoteNotFoundError)
from notestore.models.db_models import DBNote, DBNotebook
from notestore.models.schema import (Active, Note, NoteCounts, NoteLinkItem,
                                     NoteListItem, Trashed, utc_timestamp)
from notestore.observability import traced
from notestore.storage.file_store import FileStore, PendingDeletions
from notestore.storage.notebook_repository import NotebookRepository
from notestore.storage.text_index import TextIndex
from notestore.utils import escape_like_pattern

logger = logging.getLogger(__name__)

# Marks "leave the notebook as it is" in update()
KEEP_NOTEBOOK: Any = object()

_LIST_COLUMNS = (
    "SELECT n.id, n.title, substr(n.content, 1, :preview) AS content, "
    "n.updated_at, n.notebook_id FROM notes n"
)


class NoteRepository:
    """Notes and their lifecycle.

    Args:
        session_factory: SQLAlchemy session factory.
        text_index: Projection writer and search engine.
        file_store: Embedded-file and attachment bookkeeping.
        notebooks: Used to resolve notebook subtrees for listing and search.
        settings: Store configuration.
    """

    def __init__(
        self,
        session_factory,
        text_index: TextIndex,
        file_store: FileStore,
        notebooks: NotebookRepository,
        settings: StoreConfig = config,
    ):
        self.session_factory = session_factory
        self.text_index = text_index
        self.file_store = file_store
        self.notebooks = notebooks
        self.settings = settings

    @staticmethod
    def _db_note_to_model(db_note: DBNote) -> Note:
        if db_note.deleted_at is not None:
            lifecycle = Trashed(
                deleted_at=db_note.deleted_at,
                from_notebook_id=db_note.deleted_from_notebook_id,
            )
        else:
            lifecycle = Active(notebook_id=db_note.notebook_id)
        return Note(
            id=db_note.id,
            title=db_note.title,
            content=db_note.content,
            created_at=db_note.created_at,
            updated_at=db_note.updated_at,
            lifecycle=lifecycle,
            external_id=db_note.external_id,
            meta=db_note.meta,
            content_hash=db_note.content_hash,
            content_size=db_note.content_size,
            sync_status=db_note.sync_status or 0,
            remote_id=db_note.remote_id,
        )

    # ------------------------------------------------------------------
    # Single-note lifecycle
    # ------------------------------------------------------------------

    @traced("create_note")
    def create(
        self,
        title: str,
        content: str,
        notebook_id: Optional[int] = None,
        external_id: Optional[str] = None,
        meta: Optional[str] = None,
        content_hash: Optional[str] = None,
        content_size: Optional[int] = None,
        created_at: Optional[int] = None,
        updated_at: Optional[int] = None,
    ) -> Note:
        """Create an active note.

        Importers may pass original timestamps and metadata; otherwise both
        timestamps are the current time.

        Raises:
            NotebookNotFoundError: If ``notebook_id`` does not exist.
        """
        now = utc_timestamp()
        pending = self.file_store.pending_deletions()
        with self.session_factory.write("create_note") as session:
            if notebook_id is not None:
                self._require_notebook(session, notebook_id)
            db_note = DBNote(
                title=title,
                content=content,
                created_at=created_at if created_at is not None else now,
                updated_at=updated_at if updated_at is not None else now,
                notebook_id=notebook_id,
                external_id=external_id,
                meta=meta,
                content_hash=content_hash,
                content_size=content_size,
            )
            session.add(db_note)
            session.flush()

            self._write_derived(session, db_note.id, title, content, pending)
            session.commit()
            note = self._db_note_to_model(db_note)

        pending.apply()
        logger.info(f"Created note {note.id} '{title[:50]}'")
        return note

    def get(self, note_id: int) -> Optional[Note]:
        """Fetch a note, trashed or not."""
        with self.session_factory.read("get_note") as session:
            db_note = session.get(DBNote, note_id)
            return self._db_note_to_model(db_note) if db_note else None

    @traced("update_note")
    def update(
        self,
        note_id: int,
        title: str,
        content: str,
        notebook_id: Any = KEEP_NOTEBOOK,
    ) -> Note:
        """Save new title and content.

        Attachments whose marker no longer appears in the content are
        deleted, along with embedded files no note references anymore.

        Args:
            note_id: Note to update.
            title: New title.
            content: New HTML content.
            notebook_id: New notebook (None = unfiled). Omit to keep the
                current one. Ignored for trashed notes, which stay trashed.

        Raises:
            NoteNotFoundError: If the note does not exist.
            NotebookNotFoundError: If the requested notebook does not exist.
        """
        pending = self.file_store.pending_deletions()
        with self.session_factory.write("update_note") as session:
            db_note = session.get(DBNote, note_id)
            if db_note is None:
                raise NoteNotFoundError(note_id)

            db_note.title = title
            db_note.content = content
            db_note.updated_at = utc_timestamp()
            if db_note.deleted_at is None and notebook_id is not KEEP_NOTEBOOK:
                if notebook_id is not None:
                    self._require_notebook(session, notebook_id)
                db_note.notebook_id = notebook_id
            session.flush()

            self.file_store.cleanup_note_attachments(session, note_id, content, pending)
            self._write_derived(session, note_id, title, content, pending)
            session.commit()
            note = self._db_note_to_model(db_note)

        pending.apply()
        return note

    @traced("move_note")
    def move_to_notebook(self, note_id: int, notebook_id: Optional[int]) -> Note:
        """File an active note under another notebook, or unfile it.

        Raises:
            NoteNotFoundError: If the note does not exist.
            IntegrityViolationError: If the note is in the trash.
            NotebookNotFoundError: If the notebook does not exist.
        """
        with self.session_factory.write("move_note") as session:
            db_note = session.get(DBNote, note_id)
            if db_note is None:
                raise NoteNotFoundError(note_id)
            if db_note.deleted_at is not None:
                raise IntegrityViolationError(
                    "A trashed note cannot be moved; restore it first",
                    entity="note",
                    entity_id=note_id,
                    code=ErrorCode.NOTE_VALIDATION_FAILED,
                )
            if notebook_id is not None:
                self._require_notebook(session, notebook_id)
            db_note.notebook_id = notebook_id
            session.commit()
            return self._db_note_to_model(db_note)

    @traced("trash_note")
    def trash(self, note_id: int) -> bool:
        """Move a note to the trash, remembering its notebook.

        Returns:
            False if the note was already in the trash.

        Raises:
            NoteNotFoundError: If the note does not exist.
        """
        with self.session_factory.write("trash_note") as session:
            result = session.execute(
                text("""
                    UPDATE notes
                    SET deleted_at = :now,
                        deleted_from_notebook_id = notebook_id,
                        notebook_id = NULL
                    WHERE id = :id AND deleted_at IS NULL
                """),
                {"now": utc_timestamp(), "id": note_id},
            )
            if result.rowcount == 0:
                if session.get(DBNote, note_id) is None:
                    raise NoteNotFoundError(note_id)
                return False
            session.commit()
        logger.info(f"Trashed note {note_id}")
        return True

    @traced("restore_note")
    def restore(self, note_id: int) -> Note:
        """Bring a note back from the trash.

        The note returns to the notebook it was trashed from when that
        notebook still exists, and becomes unfiled otherwise. Restoring an
        active note changes nothing.

        Raises:
            NoteNotFoundError: If the note does not exist.
        """
        with self.session_factory.write("restore_note") as session:
            db_note = self._restore_in_session(session, note_id)
            session.commit()
            return self._db_note_to_model(db_note)

    @traced("restore_all_notes")
    def restore_all(self) -> int:
        """Restore every trashed note in one transaction.

        Returns:
            Number of notes restored.
        """
        with self.session_factory.write("restore_all_notes") as session:
            ids = self._trashed_ids(session)
            for note_id in ids:
                self._restore_in_session(session, note_id)
            session.commit()
        if ids:
            logger.info(f"Restored {len(ids)} notes from trash")
        return len(ids)

    @traced("delete_note")
    def delete(self, note_id: int) -> bool:
        """Permanently delete a note with its attachments and projection.

        Returns:
            False if the note did not exist.
        """
        pending = self.file_store.pending_deletions()
        with self.session_factory.write(
            "delete_note", ErrorCode.STORAGE_DELETE_FAILED
        ) as session:
            if not self._delete_in_session(session, note_id, pending):
                return False
            session.commit()
        pending.apply()
        logger.info(f"Deleted note {note_id}")
        return True

    @traced("empty_trash")
    def empty_trash(self) -> int:
        """Permanently delete every trashed note in one transaction.

        Returns:
            Number of notes deleted.
        """
        pending = self.file_store.pending_deletions()
        with self.session_factory.write(
            "empty_trash", ErrorCode.STORAGE_DELETE_FAILED
        ) as session:
            ids = self._trashed_ids(session)
            for note_id in ids:
                self._delete_in_session(session, note_id, pending)
            session.commit()
        pending.apply()
        if ids:
            logger.info(f"Emptied trash: {len(ids)} notes deleted")
        return len(ids)

    # ------------------------------------------------------------------
    # Listing and lookup
    # ------------------------------------------------------------------

    def list_notes(self, notebook_id: Optional[int] = None) -> List[NoteListItem]:
        """Active notes, newest first.

        Args:
            notebook_id: Restrict to this notebook and everything below it.
        """
        params: Dict[str, Any] = {"preview": self.settings.list_preview_chars}
        sql = _LIST_COLUMNS + " WHERE n.deleted_at IS NULL"
        if notebook_id is not None:
            ids = self.notebooks.descendant_ids(notebook_id)
            if not ids:
                return []
            sql += " AND n.notebook_id IN :notebook_ids"
            params["notebook_ids"] = ids
        sql += " ORDER BY n.updated_at DESC, n.created_at DESC, n.id DESC"

        statement = text(sql)
        if notebook_id is not None:
            statement = statement.bindparams(bindparam("notebook_ids", expanding=True))
        return self._fetch_list(statement, params)

    def list_trashed(self) -> List[NoteListItem]:
        """Trashed notes, most recently trashed first."""
        return self._fetch_list(
            text(
                _LIST_COLUMNS
                + " WHERE n.deleted_at IS NOT NULL"
                + " ORDER BY n.deleted_at DESC, n.updated_at DESC, n.id DESC"
            ),
            {"preview": self.settings.list_preview_chars},
        )

    def list_by_tag(self, tag_id: int) -> List[NoteListItem]:
        """Active notes carrying ``tag_id`` itself (not its sub-tags)."""
        return self._fetch_list(
            text(
                _LIST_COLUMNS
                + " JOIN note_tags nt ON nt.note_id = n.id"
                + " WHERE nt.tag_id = :tag_id AND n.deleted_at IS NULL"
                + " ORDER BY n.updated_at DESC, n.created_at DESC, n.id DESC"
            ),
            {"preview": self.settings.list_preview_chars, "tag_id": tag_id},
        )

    @traced("search_notes")
    def search(
        self,
        query: str,
        notebook_id: Optional[int] = None,
        literal: Optional[bool] = None,
    ) -> List[NoteListItem]:
        """Full-text search over note text and OCR text.

        Args:
            query: Search text.
            notebook_id: Restrict to this notebook and everything below it.
            literal: True searches the text as a phrase, False as FTS5
                syntax. Detected from the query when omitted.
        """
        notebook_ids = None
        if notebook_id is not None:
            notebook_ids = self.notebooks.descendant_ids(notebook_id)
        return self.text_index.search(query, notebook_ids=notebook_ids, literal=literal)

    def search_by_title(self, query: str, limit: int = 20) -> List[NoteLinkItem]:
        """Case-insensitive substring match on titles of active notes."""
        trimmed = (query or "").strip()
        if not trimmed:
            return []
        with self.session_factory.read("search_by_title") as session:
            rows = session.execute(
                text("""
                    SELECT id, title, notebook_id, external_id
                    FROM notes
                    WHERE deleted_at IS NULL
                      AND LOWER(title) LIKE LOWER(:pattern) ESCAPE '\\'
                    ORDER BY updated_at DESC
                    LIMIT :limit
                """),
                {"pattern": f"%{escape_like_pattern(trimmed)}%", "limit": max(limit, 1)},
            ).fetchall()
        return [
            NoteLinkItem(id=row[0], title=row[1], notebook_id=row[2], external_id=row[3])
            for row in rows
        ]

    def counts(self) -> NoteCounts:
        with self.session_factory.read("count_notes") as session:
            total = session.execute(
                text("SELECT COUNT(*) FROM notes WHERE deleted_at IS NULL")
            ).scalar()
            trashed = session.execute(
                text("SELECT COUNT(*) FROM notes WHERE deleted_at IS NOT NULL")
            ).scalar()
            per_notebook = session.execute(text("""
                SELECT notebook_id, COUNT(*)
                FROM notes
                WHERE notebook_id IS NOT NULL AND deleted_at IS NULL
                GROUP BY notebook_id
            """)).fetchall()
        return NoteCounts(
            total=total or 0,
            trashed=trashed or 0,
            per_notebook={row[0]: row[1] for row in per_notebook},
        )

    def get_id_by_external_id(self, external_id: str) -> Optional[int]:
        """Id of the active note imported with ``external_id``, if any."""
        with self.session_factory.read("get_id_by_external_id") as session:
            return session.scalar(
                select(DBNote.id)
                .where(DBNote.external_id == external_id, DBNote.deleted_at.is_(None))
                .limit(1)
            )

    def set_external_id(self, note_id: int, external_id: str) -> None:
        with self.session_factory.write("set_external_id") as session:
            db_note = session.get(DBNote, note_id)
            if db_note is None:
                raise NoteNotFoundError(note_id)
            db_note.external_id = external_id
            session.commit()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _write_derived(
        self,
        session: Session,
        note_id: int,
        title: str,
        content: str,
        pending: PendingDeletions,
    ) -> None:
        """Projection, file references and registry sweep for a saved note."""
        self.text_index.upsert(session, note_id, title, content)
        self.file_store.sync_note_files(session, note_id, content)
        self.file_store.sweep_orphan_files(session, pending)

    def _restore_in_session(self, session: Session, note_id: int) -> DBNote:
        db_note = session.get(DBNote, note_id)
        if db_note is None:
            raise NoteNotFoundError(note_id)
        if db_note.deleted_at is None:
            return db_note

        target = db_note.deleted_from_notebook_id
        if target is not None and session.get(DBNotebook, target) is None:
            logger.debug(f"Notebook {target} of note {note_id} is gone, restoring unfiled")
            target = None
        db_note.notebook_id = target
        db_note.deleted_at = None
        db_note.deleted_from_notebook_id = None
        session.flush()
        return db_note

    def _delete_in_session(
        self, session: Session, note_id: int, pending: PendingDeletions
    ) -> bool:
        db_note = session.get(DBNote, note_id)
        if db_note is None:
            return False
        self.file_store.queue_note_attachments(session, note_id, pending)
        self.text_index.delete(session, note_id)
        session.delete(db_note)
        session.flush()
        # note_files rows went with the note (ON DELETE CASCADE)
        self.file_store.sweep_orphan_files(session, pending)
        return True

    @staticmethod
    def _trashed_ids(session: Session) -> List[int]:
        return list(
            session.scalars(
                select(DBNote.id)
                .where(DBNote.deleted_at.isnot(None))
                .order_by(DBNote.id)
            ).all()
        )

    @staticmethod
    def _require_notebook(session: Session, notebook_id: int) -> None:
        if session.get(DBNotebook, notebook_id) is None:
            raise NotebookNotFoundError(notebook_id)

    def _fetch_list(self, statement, params: Dict[str, Any]) -> List[NoteListItem]:
        with self.session_factory.read("list_notes") as session:
            rows = session.execute(statement, params).fetchall()
        return [
            NoteListItem(
                id=row[0],
                title=row[1],
                content=row[2] or "",
                updated_at=row[3],
                notebook_id=row[4],
            )
            for row in rows
        ]
