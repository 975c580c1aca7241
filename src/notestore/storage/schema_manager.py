"""Schema versioning and idempotent migrations for the store database.

Every step is additive and safe to re-run: a fresh database and a database
written by an older release go through the same path. Each step commits in
its own transaction so a failure never leaves a step half-applied.
"""
import logging
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from notestore.exceptions import (ErrorCode, MigrationError, NoteStoreError,
                                  StorageError, ValidationError)
from notestore.models.db_models import (ADDED_COLUMNS, FTS_DDL, INDEX_DDL,
                                        Base, write_engine)
from notestore.models.schema import NotebookKind
from notestore.storage.content_scanner import FILES_PREFIX, LEGACY_FILES_SCHEME
from notestore.storage.text_index import TextIndex

logger = logging.getLogger(__name__)

# Bump when a step below starts producing new structure
SCHEMA_VERSION = 5

# Tables whose ids come from sqlite_sequence
_SEQUENCE_TABLES = {
    name for name, table in Base.metadata.tables.items()
    if table.dialect_options["sqlite"].get("autoincrement")
}


class SchemaManager:
    """Brings a database file to the current schema.

    Args:
        engine: Engine bound to the store database.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def migrate(self) -> int:
        """Run every migration step in order.

        Returns:
            The schema version the database is at afterwards.

        Raises:
            MigrationError: If any step fails, or the database was written
                by a newer release.
        """
        steps: List[Tuple[str, Callable[[Connection], None]]] = [
            ("ensure_tables", self._ensure_tables),
            ("add_missing_columns", self._add_missing_columns),
            ("ensure_indexes", self._ensure_indexes),
            ("record_version", self._record_version),
            ("migrate_legacy_file_scheme", self._migrate_legacy_file_scheme),
            ("normalize_notebooks", self._normalize_notebooks),
            ("backfill_text", self._backfill_text),
        ]

        start_version = self._run_step("check_version", self._check_version)
        if start_version < SCHEMA_VERSION:
            logger.info(
                f"Migrating schema from version {start_version} to {SCHEMA_VERSION}"
            )

        for name, step in steps:
            self._run_step(name, step)

        logger.debug(f"Schema is at version {SCHEMA_VERSION}")
        return SCHEMA_VERSION

    def current_version(self) -> Optional[int]:
        """Stored schema version, or None when the table does not exist yet."""
        with self.engine.connect() as conn:
            if not self._table_exists(conn, "schema_version"):
                return None
            return conn.execute(text("SELECT MAX(version) FROM schema_version")).scalar()

    def repair_sequences(self, *tables: str) -> None:
        """Reset ``sqlite_sequence`` counters to each table's ``MAX(id)``.

        Importers call this after inserting rows with explicit ids so the
        next autoincrement id does not collide.
        """
        unknown = [t for t in tables if t not in _SEQUENCE_TABLES]
        if unknown:
            raise ValidationError(
                f"Tables without an id sequence: {', '.join(unknown)}",
                field="tables",
                value=unknown,
            )
        try:
            with write_engine(self.engine).begin() as conn:
                for table in tables:
                    conn.execute(
                        text("DELETE FROM sqlite_sequence WHERE name = :name"),
                        {"name": table},
                    )
                    conn.execute(
                        text(
                            "INSERT INTO sqlite_sequence (name, seq) "
                            f"SELECT :name, COALESCE(MAX(id), 0) FROM {table}"
                        ),
                        {"name": table},
                    )
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to repair id sequences",
                operation="repair_sequences",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        logger.info(f"Repaired id sequences for: {', '.join(tables)}")

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _run_step(self, name: str, step: Callable[[Connection], object]):
        try:
            with write_engine(self.engine).begin() as conn:
                return step(conn)
        except NoteStoreError:
            raise
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Migration step '{name}' failed: {e}")
            raise MigrationError(
                f"Migration step '{name}' failed: {e}",
                step=name,
                version=SCHEMA_VERSION,
                original_error=e,
            ) from e

    def _check_version(self, conn: Connection) -> int:
        """Create the version table if absent and return the stored version.

        A database without the table but with a ``notes`` table predates
        versioning and starts at 1 so it migrates forward.
        """
        if not self._table_exists(conn, "schema_version"):
            initial = 1 if self._table_exists(conn, "notes") else 0
            conn.execute(text("CREATE TABLE schema_version (version INTEGER NOT NULL)"))
            conn.execute(
                text("INSERT INTO schema_version (version) VALUES (:v)"), {"v": initial}
            )
            return initial

        version = conn.execute(text("SELECT MAX(version) FROM schema_version")).scalar()
        if version is None:
            version = 1 if self._table_exists(conn, "notes") else 0
            conn.execute(
                text("INSERT INTO schema_version (version) VALUES (:v)"), {"v": version}
            )
        if version > SCHEMA_VERSION:
            raise MigrationError(
                f"Database schema version {version} is newer than supported "
                f"version {SCHEMA_VERSION}",
                step="check_version",
                version=version,
                code=ErrorCode.SCHEMA_TOO_NEW,
            )
        return version

    @staticmethod
    def _ensure_tables(conn: Connection) -> None:
        Base.metadata.create_all(conn, checkfirst=True)

    @staticmethod
    def _add_missing_columns(conn: Connection) -> None:
        """Add columns introduced after the first schema version.

        SQLite has no ADD COLUMN IF NOT EXISTS, so the table is inspected first.
        """
        inspector = inspect(conn)
        existing: Dict[str, set] = {}
        for table, column, ddl in ADDED_COLUMNS:
            if table not in existing:
                existing[table] = {col["name"] for col in inspector.get_columns(table)}
            if column in existing[table]:
                continue
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
            existing[table].add(column)
            logger.info(f"Added column {table}.{column}")

    def _ensure_indexes(self, conn: Connection) -> None:
        had_fts = self._table_exists(conn, "notes_fts") and self._table_exists(conn, "ocr_fts")
        for ddl in INDEX_DDL:
            conn.execute(text(ddl))
        for ddl in FTS_DDL:
            conn.execute(text(ddl))
        if not had_fts:
            # Content tables may already hold rows the new indexes never saw
            conn.execute(text("INSERT INTO notes_fts(notes_fts) VALUES('rebuild')"))
            conn.execute(text("INSERT INTO ocr_fts(ocr_fts) VALUES('rebuild')"))

    @staticmethod
    def _record_version(conn: Connection) -> None:
        conn.execute(text("DELETE FROM schema_version"))
        conn.execute(
            text("INSERT INTO schema_version (version) VALUES (:v)"),
            {"v": SCHEMA_VERSION},
        )

    @staticmethod
    def _migrate_legacy_file_scheme(conn: Connection) -> None:
        """Rewrite ``notes-file://files/`` URLs in note content to ``files/``."""
        rows = conn.execute(
            text("SELECT id, title, content FROM notes WHERE content LIKE :pattern"),
            {"pattern": f"%{LEGACY_FILES_SCHEME}%"},
        ).fetchall()
        for note_id, title, content in rows:
            rewritten = content.replace(LEGACY_FILES_SCHEME, FILES_PREFIX)
            conn.execute(
                text("UPDATE notes SET content = :content WHERE id = :id"),
                {"content": rewritten, "id": note_id},
            )
            _write_projection(conn, note_id, title, rewritten)
        if rows:
            logger.info(f"Rewrote legacy file URLs in {len(rows)} notes")

    @staticmethod
    def _normalize_notebooks(conn: Connection) -> None:
        """Infer kind, parent and dense sibling order for every notebook.

        Roots become stacks, every other node is re-parented to its root
        stack. Cycles and dangling parents are broken by promoting the node
        where the parent chain breaks to a root.
        """
        rows = conn.execute(
            text("SELECT id, name, parent_id, notebook_type, sort_order FROM notebooks")
        ).fetchall()
        if not rows:
            return

        parents: Dict[int, Optional[int]] = {row[0]: row[2] for row in rows}
        promoted = 0
        roots: Dict[int, int] = {}
        for node_id in sorted(parents):
            while True:
                current = node_id
                visited = {current}
                broken = False
                while parents[current] is not None:
                    parent = parents[current]
                    if parent not in parents:
                        broken = True
                        break
                    if parent in visited:
                        current = parent
                        broken = True
                        break
                    visited.add(parent)
                    current = parent
                if not broken:
                    roots[node_id] = current
                    break
                parents[current] = None
                promoted += 1

        changed = 0
        desired: Dict[int, Tuple[Optional[int], str]] = {}
        for node_id, name, parent_id, kind, sort_order in rows:
            root = roots[node_id]
            if root == node_id:
                want = (None, NotebookKind.STACK.value)
            else:
                want = (root, NotebookKind.NOTEBOOK.value)
            desired[node_id] = want
            if (parent_id, kind) != want:
                conn.execute(
                    text(
                        "UPDATE notebooks SET parent_id = :parent, notebook_type = :kind "
                        "WHERE id = :id"
                    ),
                    {"parent": want[0], "kind": want[1], "id": node_id},
                )
                changed += 1

        groups: Dict[Optional[int], List[Tuple[int, str, int]]] = {}
        for node_id, name, _parent, _kind, sort_order in rows:
            groups.setdefault(desired[node_id][0], []).append(
                (sort_order or 0, name or "", node_id)
            )
        renumbered = 0
        for members in groups.values():
            if sorted(m[0] for m in members) == list(range(len(members))):
                continue
            for index, (order, _name, node_id) in enumerate(sorted(members)):
                if order != index:
                    conn.execute(
                        text("UPDATE notebooks SET sort_order = :o WHERE id = :id"),
                        {"o": index, "id": node_id},
                    )
            renumbered += 1

        if promoted or changed or renumbered:
            logger.info(
                f"Normalized notebooks: {changed} re-leveled, {promoted} broken "
                f"parent chains, {renumbered} sibling groups renumbered"
            )

    @staticmethod
    def _backfill_text(conn: Connection) -> None:
        notes = conn.execute(text("SELECT COUNT(*) FROM notes")).scalar() or 0
        projected = conn.execute(text("SELECT COUNT(*) FROM notes_text")).scalar() or 0
        if projected >= notes:
            return
        rows = conn.execute(text("""
            SELECT n.id, n.title, n.content
            FROM notes n
            LEFT JOIN notes_text t ON t.note_id = n.id
            WHERE t.note_id IS NULL
        """)).fetchall()
        for note_id, title, content in rows:
            _write_projection(conn, note_id, title, content)
        logger.info(f"Backfilled text projection for {len(rows)} notes")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _table_exists(conn: Connection, name: str) -> bool:
        found = conn.execute(
            text("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = :name"),
            {"name": name},
        ).first()
        return found is not None


def _write_projection(conn: Connection, note_id: int, title: str, content: str) -> None:
    conn.execute(
        text("""
            INSERT INTO notes_text (note_id, title, plain_text)
            VALUES (:note_id, :title, :plain)
            ON CONFLICT(note_id) DO UPDATE SET
                title = excluded.title,
                plain_text = excluded.plain_text
        """),
        {"note_id": note_id, "title": title or "", "plain": TextIndex.derive(content or "")},
    )
