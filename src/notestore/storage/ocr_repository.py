"""OCR work queue over the embedded-file registry.

An external OCR worker asks for pending files, then reports either the
recognized text or a failure. Failures consume one attempt; a file with no
attempts left stays registered but is never handed out again.
"""
import logging
from typing import List

from sqlalchemy import text

from notestore.models.schema import OcrFileItem, OcrStats, utc_timestamp
from notestore.observability import traced
from notestore.storage.file_store import FileStore

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ("png", "jpg", "jpeg", "gif", "webp", "bmp", "jfif", "tif", "tiff")

# Registered files worth running OCR on: image extension or image attachment
OCR_IMAGE_FILTER = "(" + " OR ".join(
    [f"lower(f.file_path) LIKE '%.{ext}'" for ext in IMAGE_EXTENSIONS]
    + ["lower(a.mime) LIKE 'image/%'"]
) + ")"

_ATTACHMENT_JOIN = "LEFT JOIN attachments a ON a.local_path = ('files/' || f.file_path)"


class OcrRepository:
    """Pending-file queue and recognized-text storage for the OCR worker."""

    def __init__(self, session_factory, file_store: FileStore):
        self.session_factory = session_factory
        self.file_store = file_store

    def needs_backfill(self) -> bool:
        """True when notes exist but their file references were never recorded."""
        with self.session_factory.read("ocr_backfill_check") as session:
            notes = session.execute(text("SELECT COUNT(*) FROM notes")).scalar()
            if not notes:
                return False
            note_files = session.execute(text("SELECT COUNT(*) FROM note_files")).scalar()
            ocr_files = session.execute(text("SELECT COUNT(*) FROM ocr_files")).scalar()
        return note_files == 0 or ocr_files == 0

    def backfill(self) -> int:
        """Record file references for every note from its content."""
        with self.session_factory.write("ocr_backfill") as session:
            count = self.file_store.resync_all_note_files(session)
            session.commit()
        logger.info(f"Backfilled file references for {count} notes")
        return count

    @traced("ocr_pending_files")
    def get_pending_files(self, limit: int = 10) -> List[OcrFileItem]:
        """Image-like files with no OCR text and attempts left, oldest first."""
        if self.needs_backfill():
            self.backfill()
        with self.session_factory.read("ocr_pending_files") as session:
            rows = session.execute(
                text(f"""
                    SELECT f.id, f.file_path, a.mime, f.attempts_left
                    FROM ocr_files f
                    LEFT JOIN ocr_text t ON t.file_id = f.id
                    {_ATTACHMENT_JOIN}
                    WHERE t.file_id IS NULL
                      AND f.attempts_left > 0
                      AND {OCR_IMAGE_FILTER}
                    ORDER BY f.id ASC
                    LIMIT :limit
                """),
                {"limit": max(limit, 1)},
            ).fetchall()
        return [
            OcrFileItem(file_id=row[0], file_path=row[1], mime=row[2], attempts_left=row[3])
            for row in rows
        ]

    def upsert_text(self, file_id: int, lang: str, ocr_text: str, text_hash: str) -> None:
        """Store recognized text for a file, replacing earlier results."""
        with self.session_factory.write("ocr_upsert_text") as session:
            session.execute(
                text("""
                    INSERT INTO ocr_text (file_id, lang, text, hash, updated_at)
                    VALUES (:file_id, :lang, :text, :hash, :now)
                    ON CONFLICT(file_id) DO UPDATE SET
                        lang = excluded.lang,
                        text = excluded.text,
                        hash = excluded.hash,
                        updated_at = excluded.updated_at
                """),
                {
                    "file_id": file_id,
                    "lang": lang,
                    "text": ocr_text,
                    "hash": text_hash,
                    "now": utc_timestamp(),
                },
            )
            session.commit()

    def mark_failed(self, file_id: int, message: str) -> None:
        """Consume one attempt and remember the error."""
        with self.session_factory.write("ocr_mark_failed") as session:
            session.execute(
                text("""
                    UPDATE ocr_files
                    SET attempts_left = MAX(attempts_left - 1, 0),
                        last_error = :message
                    WHERE id = :id
                """),
                {"message": message, "id": file_id},
            )
            session.commit()
        logger.debug(f"OCR failed for file {file_id}: {message}")

    def stats(self) -> OcrStats:
        if self.needs_backfill():
            self.backfill()
        with self.session_factory.read("ocr_stats") as session:
            total = session.execute(text(f"""
                SELECT COUNT(*) FROM ocr_files f
                {_ATTACHMENT_JOIN}
                WHERE {OCR_IMAGE_FILTER}
            """)).scalar()
            done = session.execute(text(f"""
                SELECT COUNT(*) FROM ocr_text t
                JOIN ocr_files f ON f.id = t.file_id
                {_ATTACHMENT_JOIN}
                WHERE {OCR_IMAGE_FILTER}
            """)).scalar()
            pending = session.execute(text(f"""
                SELECT COUNT(*) FROM ocr_files f
                LEFT JOIN ocr_text t ON t.file_id = f.id
                {_ATTACHMENT_JOIN}
                WHERE t.file_id IS NULL AND f.attempts_left > 0 AND {OCR_IMAGE_FILTER}
            """)).scalar()
        return OcrStats(total=total or 0, done=done or 0, pending=pending or 0)
