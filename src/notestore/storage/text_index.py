"""Plain-text projection and full-text search over notes and OCR text.

The projection (``notes_text``) is derived from note HTML and written in
the same transaction as the note row. FTS5 tables are kept in sync with
their content tables by triggers. Search unions note-text matches with
OCR matches reached through the embedded-file registry.
"""
import logging
import re
import sqlite3
from typing import Any, Callable, Collection, Dict, List, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError
from sqlalchemy.orm import Session

from notestore.exceptions import ErrorCode, SearchError
from notestore.models.db_models import rebuild_fts_index
from notestore.models.schema import NoteListItem
from notestore.utils import escape_like_pattern

logger = logging.getLogger(__name__)

# Tokens of context on each side of a match in search snippets
SNIPPET_TOKENS = 20

_TEXT_MATCHES_SQL = """
    SELECT n.id, n.title,
           snippet(notes_fts, 1, '', '', '...', {tokens}) AS content,
           n.updated_at, n.notebook_id
    FROM notes_fts
    JOIN notes n ON n.id = notes_fts.rowid
    WHERE notes_fts MATCH :query
      AND n.deleted_at IS NULL
""".format(tokens=SNIPPET_TOKENS)

_OCR_MATCHES_SQL = """
    SELECT n.id, n.title, '' AS content, n.updated_at, n.notebook_id
    FROM ocr_fts
    JOIN note_files nf ON nf.file_id = ocr_fts.rowid
    JOIN notes n ON n.id = nf.note_id
    WHERE ocr_fts MATCH :query
      AND n.deleted_at IS NULL
"""

_TEXT_LIKE_SQL = """
    SELECT n.id, n.title, t.plain_text AS content, n.updated_at, n.notebook_id
    FROM notes_text t
    JOIN notes n ON n.id = t.note_id
    WHERE n.deleted_at IS NULL
      AND (t.title LIKE :term ESCAPE '\\' OR t.plain_text LIKE :term ESCAPE '\\')
"""

_OCR_LIKE_SQL = """
    SELECT n.id, n.title, '' AS content, n.updated_at, n.notebook_id
    FROM ocr_text o
    JOIN note_files nf ON nf.file_id = o.file_id
    JOIN notes n ON n.id = nf.note_id
    WHERE n.deleted_at IS NULL
      AND o.text LIKE :term ESCAPE '\\'
"""

_NOTEBOOK_FILTER = " AND n.notebook_id IN :notebook_ids"


class TextIndex:
    """Text projection and FTS5 search with graceful degradation.

    Args:
        engine: SQLAlchemy engine used for database access.
        session_factory: Store session factory. Search uses bare read
            sessions so it can fall back on FTS5 errors itself.
    """

    def __init__(
        self,
        engine: Any,
        session_factory: Callable,
    ) -> None:
        self.engine = engine
        self._session_factory = session_factory
        self.available: bool = True

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    @staticmethod
    def derive(content: str) -> str:
        """Strip markup from note HTML.

        Characters between ``<`` and ``>`` are dropped, non-breaking spaces
        become spaces and runs of whitespace collapse to a single space.
        Applying it to its own output returns the same string.
        """
        if not content:
            return ""
        out = []
        in_tag = False
        for ch in content:
            if ch == "<":
                in_tag = True
            elif ch == ">":
                in_tag = False
            elif not in_tag:
                out.append(ch)
        return " ".join("".join(out).replace("\u00a0", " ").split())

    def upsert(self, session: Session, note_id: int, title: str, content: str) -> str:
        """Write the projection for a note inside the caller's transaction.

        Returns:
            The derived plain text.
        """
        plain = self.derive(content)
        session.execute(
            text("""
                INSERT INTO notes_text (note_id, title, plain_text)
                VALUES (:note_id, :title, :plain)
                ON CONFLICT(note_id) DO UPDATE SET
                    title = excluded.title,
                    plain_text = excluded.plain_text
            """),
            {"note_id": note_id, "title": title, "plain": plain},
        )
        return plain

    @staticmethod
    def delete(session: Session, note_id: int) -> None:
        session.execute(
            text("DELETE FROM notes_text WHERE note_id = :note_id"),
            {"note_id": note_id},
        )

    def get_plain_text(self, note_id: int) -> Optional[str]:
        with self._session_factory.read("get_plain_text") as session:
            return session.execute(
                text("SELECT plain_text FROM notes_text WHERE note_id = :note_id"),
                {"note_id": note_id},
            ).scalar()

    # ------------------------------------------------------------------
    # Public query API
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        notebook_ids: Optional[Collection[int]] = None,
        literal: Optional[bool] = None,
    ) -> List[NoteListItem]:
        """Full-text search over note text and OCR text.

        Args:
            query: Search query. Plain text is matched as a phrase; explicit
                FTS5 syntax (AND/OR/NOT/NEAR, quotes, prefix ``*``, column
                filters) is passed through.
            notebook_ids: Restrict results to notes filed in these notebooks.
            literal: None = auto-detect, True = escape, False = preserve syntax.
                An auto-detected syntax query that matches nothing is
                retried as a quoted phrase, so plain text containing an
                upper-case AND/OR/NOT still finds itself.

        Returns:
            One item per matching non-trashed note, most recently updated first.
        """
        if not query or not query.strip():
            return []
        if notebook_ids is not None and not notebook_ids:
            return []

        if not self.available:
            logger.debug("FTS5 unavailable, using fallback search")
            return self._fallback_search(query, notebook_ids)

        detected = literal is None
        if detected:
            literal = self._should_escape(query)
        safe_query = self._escape_query(query) if literal else query

        params: Dict[str, Any] = {"query": safe_query}
        if notebook_ids is not None:
            params["notebook_ids"] = list(notebook_ids)

        try:
            with self._session_factory() as session:
                text_rows = session.execute(
                    self._statement(_TEXT_MATCHES_SQL, notebook_ids), params
                ).fetchall()
                ocr_rows = session.execute(
                    self._statement(_OCR_MATCHES_SQL, notebook_ids), params
                ).fetchall()

        except (sqlite3.OperationalError, SQLAlchemyOperationalError) as e:
            logger.warning(
                f"FTS5 query failed for '{query}': {e}. Using fallback search."
            )
            return self._fallback_search(query, notebook_ids)

        except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
            error_msg = str(e).lower()
            if "malformed" in error_msg or "corrupt" in error_msg:
                logger.error(
                    f"FTS5 corruption detected: {e}. Attempting auto-rebuild..."
                )
                if self._attempt_recovery():
                    logger.info("FTS5 rebuilt successfully, retrying search")
                    return self.search(query, notebook_ids, literal)
                logger.error("FTS5 recovery failed. Disabling FTS5 for this session.")
                self.available = False
                return self._fallback_search(query, notebook_ids)
            logger.error(f"FTS5 database error: {e}. Using fallback search.")
            return self._fallback_search(query, notebook_ids)

        results = self._merge(text_rows, ocr_rows)
        if not results and detected and not literal:
            logger.debug(f"No FTS5 matches for '{query}', retrying as a phrase")
            return self.search(query, notebook_ids, literal=True)
        return results

    def rebuild(self) -> int:
        """Rebuild the FTS5 indexes from their content tables."""
        return rebuild_fts_index(self.engine)

    def reset_availability(self) -> bool:
        """Re-enable FTS5 after manual repair."""
        try:
            with self._session_factory.writer() as session:
                session.execute(
                    text("INSERT INTO notes_fts(notes_fts) VALUES('integrity-check')")
                )
                session.commit()
            self.available = True
            logger.info("FTS5 availability reset, FTS5 is now enabled")
            return True
        except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
            logger.error(f"FTS5 still unavailable: {e}")
            self.available = False
            return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _statement(base_sql: str, notebook_ids: Optional[Collection[int]]):
        if notebook_ids is None:
            return text(base_sql)
        return text(base_sql + _NOTEBOOK_FILTER).bindparams(
            bindparam("notebook_ids", expanding=True)
        )

    @staticmethod
    def _merge(text_rows, ocr_rows) -> List[NoteListItem]:
        """Union both result streams, one item per note id."""
        merged: Dict[int, NoteListItem] = {}
        for rows, is_ocr in ((text_rows, False), (ocr_rows, True)):
            for row in rows:
                current = merged.get(row[0])
                if current is None:
                    merged[row[0]] = NoteListItem(
                        id=row[0],
                        title=row[1],
                        content=row[2] or "",
                        updated_at=row[3],
                        notebook_id=row[4],
                        ocr_match=is_ocr,
                    )
                    continue
                if not current.content and row[2]:
                    current.content = row[2]
                current.ocr_match = current.ocr_match or is_ocr
        return sorted(
            merged.values(), key=lambda item: (item.updated_at, item.id), reverse=True
        )

    @staticmethod
    def _should_escape(query: str) -> bool:
        """Auto-detect whether a query needs FTS5 escaping."""
        FTS5_KEYWORDS = {"AND", "OR", "NOT", "NEAR"}
        words = query.upper().split()
        if any(kw in words for kw in FTS5_KEYWORDS):
            return False
        if query.count('"') >= 2:
            return False
        if re.search(r"\b\w+\*", query):
            return False
        if re.search(r"\b\w+:", query):
            return False
        return True

    @staticmethod
    def _escape_query(query: str) -> str:
        """Escape query for FTS5 literal matching (quoted phrase)."""
        result = query.replace('"', '""')
        result = re.sub(r"[*^]", "", result)
        return f'"{result}"'

    @staticmethod
    def _snippet_around(plain: str, query: str) -> str:
        """Cut a snippet of ``plain`` around the first occurrence of ``query``."""
        if not plain:
            return ""
        words = plain.split(" ")
        needle = query.lower()
        position = plain.lower().find(needle)
        if position < 0:
            start = 0
        else:
            start = plain[:position].count(" ")
        first = max(start - SNIPPET_TOKENS // 2, 0)
        last = min(first + SNIPPET_TOKENS, len(words))
        snippet = " ".join(words[first:last])
        if first > 0:
            snippet = "..." + snippet
        if last < len(words):
            snippet = snippet + "..."
        return snippet

    def _fallback_search(
        self, query: str, notebook_ids: Optional[Collection[int]] = None
    ) -> List[NoteListItem]:
        """LIKE-based fallback when FTS5 is unavailable or rejects the query."""
        stripped = query.strip()
        term = f"%{escape_like_pattern(stripped)}%"
        params: Dict[str, Any] = {"term": term}
        if notebook_ids is not None:
            params["notebook_ids"] = list(notebook_ids)

        try:
            with self._session_factory() as session:
                text_rows = session.execute(
                    self._statement(_TEXT_LIKE_SQL, notebook_ids), params
                ).fetchall()
                ocr_rows = session.execute(
                    self._statement(_OCR_LIKE_SQL, notebook_ids), params
                ).fetchall()
        except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
            raise SearchError(
                f"Fallback text search failed: {e}",
                query=query,
                code=ErrorCode.SEARCH_FAILED,
            ) from e

        text_rows = [
            (row[0], row[1], self._snippet_around(row[2], stripped), row[3], row[4])
            for row in text_rows
        ]
        results = self._merge(text_rows, ocr_rows)
        logger.debug(
            f"Fallback search returned {len(results)} results for query '{query}'"
        )
        return results

    def _attempt_recovery(self) -> bool:
        """Attempt to recover FTS5 by rebuilding the indexes."""
        try:
            count = self.rebuild()
            logger.info(f"FTS5 index rebuilt with {count} notes")
            return True
        except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
            logger.error(f"FTS5 rebuild failed: {e}")
            return False
