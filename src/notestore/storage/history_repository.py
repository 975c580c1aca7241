"""Repository for the note-open history log."""
import logging
from typing import List

from sqlalchemy import text

from notestore.exceptions import ErrorCode
from notestore.models.schema import NoteHistoryItem, utc_timestamp

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class HistoryRepository:
    """Append-only log of opened notes.

    Entries copy the note, notebook and stack titles at open time so the
    log stays readable after those are renamed or deleted.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def add_entry(self, note_id: int, min_gap_seconds: int = 0) -> bool:
        """Record that a note was opened.

        Args:
            note_id: Note that was opened.
            min_gap_seconds: Skip the entry when the same note was logged
                less than this many seconds ago.

        Returns:
            True if an entry was written. Unknown notes are ignored.
        """
        now = utc_timestamp()
        with self.session_factory.write("add_history_entry") as session:
            if min_gap_seconds > 0:
                last = session.execute(
                    text("""
                        SELECT opened_at FROM note_history
                        WHERE note_id = :note_id
                        ORDER BY opened_at DESC LIMIT 1
                    """),
                    {"note_id": note_id},
                ).scalar()
                if last is not None and now - last < min_gap_seconds:
                    return False

            row = session.execute(
                text("""
                    SELECT n.title, n.notebook_id, nb.name, nb.parent_id, stack.name
                    FROM notes n
                    LEFT JOIN notebooks nb ON nb.id = n.notebook_id
                    LEFT JOIN notebooks stack ON stack.id = nb.parent_id
                    WHERE n.id = :note_id
                """),
                {"note_id": note_id},
            ).first()
            if row is None:
                return False

            session.execute(
                text("""
                    INSERT INTO note_history
                        (note_id, opened_at, note_title, notebook_id,
                         notebook_name, stack_id, stack_name)
                    VALUES (:note_id, :now, :title, :notebook_id,
                            :notebook_name, :stack_id, :stack_name)
                """),
                {
                    "note_id": note_id,
                    "now": now,
                    "title": row[0],
                    "notebook_id": row[1],
                    "notebook_name": row[2],
                    "stack_id": row[3],
                    "stack_name": row[4],
                },
            )
            session.commit()
        return True

    def list(self, limit: int = 50, offset: int = 0) -> List[NoteHistoryItem]:
        """Entries, most recent first."""
        with self.session_factory.read("list_history") as session:
            rows = session.execute(
                text("""
                    SELECT id, note_id, opened_at, note_title, notebook_id,
                           notebook_name, stack_id, stack_name
                    FROM note_history
                    ORDER BY opened_at DESC, id DESC
                    LIMIT :limit OFFSET :offset
                """),
                {"limit": limit, "offset": max(offset, 0)},
            ).fetchall()
        return [
            NoteHistoryItem(
                id=row[0],
                note_id=row[1],
                opened_at=row[2],
                note_title=row[3],
                notebook_id=row[4],
                notebook_name=row[5],
                stack_id=row[6],
                stack_name=row[7],
            )
            for row in rows
        ]

    def clear(self) -> None:
        with self.session_factory.write(
            "clear_history", ErrorCode.STORAGE_DELETE_FAILED
        ) as session:
            session.execute(text("DELETE FROM note_history"))
            session.commit()

    def cleanup(self, days: int) -> int:
        """Drop entries older than ``days``; a non-positive value keeps everything.

        Returns:
            Number of entries removed.
        """
        if days <= 0:
            return 0
        cutoff = utc_timestamp() - days * SECONDS_PER_DAY
        with self.session_factory.write(
            "cleanup_history", ErrorCode.STORAGE_DELETE_FAILED
        ) as session:
            result = session.execute(
                text("DELETE FROM note_history WHERE opened_at < :cutoff"),
                {"cutoff": cutoff},
            )
            session.commit()
        if result.rowcount:
            logger.info(f"Removed {result.rowcount} history entries older than {days} days")
        return result.rowcount
