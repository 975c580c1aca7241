"""SQLAlchemy database models for the note store.

Tables are declared here so ``create_all`` can build a fresh database.
Secondary indexes, the FTS5 virtual tables and their triggers are plain
DDL (see ``INDEX_DDL`` and ``FTS_DDL``) because they must also be applied
to databases whose tables predate these models.
"""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import (Column, ForeignKey, Integer, Table, Text, create_engine,
                        event, text)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

from notestore.config import StoreConfig, config
from notestore.exceptions import ErrorCode, StorageError
from notestore.models.schema import utc_timestamp

# Create base class for SQLAlchemy models
Base = declarative_base()

# AUTOINCREMENT keeps ids monotonic and gives importers a sqlite_sequence row to repair
_AUTOINCREMENT = {"sqlite_autoincrement": True}

# Single-row table holding the schema version
schema_version = Table(
    "schema_version",
    Base.metadata,
    Column("version", Integer, nullable=False),
)

# Association table for tags and notes
note_tags = Table(
    "note_tags",
    Base.metadata,
    Column("note_id", Integer, ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)

# Association table for notes and the embedded files their content references
note_files = Table(
    "note_files",
    Base.metadata,
    Column("note_id", Integer, ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True),
    Column("file_id", Integer, ForeignKey("ocr_files.id", ondelete="CASCADE"), primary_key=True),
)


class DBNotebook(Base):
    """Database model for a stack or notebook."""
    __tablename__ = "notebooks"
    __table_args__ = _AUTOINCREMENT
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    created_at = Column(Integer, nullable=False, default=utc_timestamp)
    parent_id = Column(Integer, ForeignKey("notebooks.id", ondelete="CASCADE"))
    notebook_type = Column(Text, nullable=False, server_default="stack")
    sort_order = Column(Integer, nullable=False, server_default=text("0"))
    external_id = Column(Text)

    def __repr__(self) -> str:
        return (
            f"<Notebook(id={self.id}, name='{self.name}', "
            f"type='{self.notebook_type}', parent={self.parent_id})>"
        )


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    __table_args__ = _AUTOINCREMENT
    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(Integer, nullable=False, default=utc_timestamp)
    updated_at = Column(Integer, nullable=False, default=utc_timestamp)
    sync_status = Column(Integer, server_default=text("0"))
    remote_id = Column(Text)
    notebook_id = Column(Integer, ForeignKey("notebooks.id", ondelete="SET NULL"))
    external_id = Column(Text)
    meta = Column(Text)
    content_hash = Column(Text)
    content_size = Column(Integer)
    deleted_at = Column(Integer)
    deleted_from_notebook_id = Column(Integer)

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id={self.id}, title='{self.title}')>"


class DBNoteText(Base):
    """Plain-text projection of a note, the content table behind notes_fts."""
    __tablename__ = "notes_text"
    note_id = Column(
        Integer,
        ForeignKey("notes.id", ondelete="CASCADE"),
        primary_key=True,
        autoincrement=False,
    )
    title = Column(Text, nullable=False)
    plain_text = Column(Text, nullable=False)


class DBOcrFile(Base):
    """Registry entry for an embedded file referenced from note content."""
    __tablename__ = "ocr_files"
    __table_args__ = _AUTOINCREMENT
    id = Column(Integer, primary_key=True, autoincrement=True)
    file_path = Column(Text, nullable=False, unique=True)
    attempts_left = Column(Integer, nullable=False, server_default=text("3"))
    last_error = Column(Text)

    def __repr__(self) -> str:
        return f"<OcrFile(id={self.id}, path='{self.file_path}')>"


class DBOcrText(Base):
    """Recognized text for a registered file, the content table behind ocr_fts."""
    __tablename__ = "ocr_text"
    file_id = Column(
        Integer,
        ForeignKey("ocr_files.id", ondelete="CASCADE"),
        primary_key=True,
        autoincrement=False,
    )
    lang = Column(Text, nullable=False)
    text = Column(Text, nullable=False)
    hash = Column(Text, nullable=False)
    updated_at = Column(Integer, nullable=False, default=utc_timestamp)


class DBTag(Base):
    """Database model for a tag."""
    __tablename__ = "tags"
    __table_args__ = _AUTOINCREMENT
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    parent_id = Column(Integer, ForeignKey("tags.id", ondelete="CASCADE"))
    created_at = Column(Integer, nullable=False, default=utc_timestamp)
    updated_at = Column(Integer, nullable=False, default=utc_timestamp)
    external_id = Column(Text)

    def __repr__(self) -> str:
        """Return string representation of tag."""
        return f"<Tag(id={self.id}, name='{self.name}', parent={self.parent_id})>"


class DBAttachment(Base):
    """Database model for an attachment owned by one note."""
    __tablename__ = "attachments"
    __table_args__ = _AUTOINCREMENT
    id = Column(Integer, primary_key=True, autoincrement=True)
    note_id = Column(Integer, ForeignKey("notes.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(Text)
    hash = Column(Text)
    filename = Column(Text)
    mime = Column(Text)
    size = Column(Integer)
    width = Column(Integer)
    height = Column(Integer)
    local_path = Column(Text)
    source_url = Column(Text)
    is_attachment = Column(Integer)
    created_at = Column(Integer, default=utc_timestamp)
    updated_at = Column(Integer, default=utc_timestamp)

    def __repr__(self) -> str:
        return f"<Attachment(id={self.id}, note={self.note_id}, file='{self.filename}')>"


class DBNoteHistory(Base):
    """Append-only note-open log entry."""
    __tablename__ = "note_history"
    __table_args__ = _AUTOINCREMENT
    id = Column(Integer, primary_key=True, autoincrement=True)
    note_id = Column(Integer, nullable=False)
    opened_at = Column(Integer, nullable=False)
    note_title = Column(Text, nullable=False)
    notebook_id = Column(Integer)
    notebook_name = Column(Text)
    stack_id = Column(Integer)
    stack_name = Column(Text)


# Columns added after the first schema version: (table, column, DDL type clause)
ADDED_COLUMNS = [
    ("notebooks", "parent_id", "INTEGER REFERENCES notebooks(id) ON DELETE CASCADE"),
    ("notebooks", "notebook_type", "TEXT NOT NULL DEFAULT 'stack'"),
    ("notebooks", "sort_order", "INTEGER NOT NULL DEFAULT 0"),
    ("notebooks", "external_id", "TEXT"),
    ("notes", "sync_status", "INTEGER DEFAULT 0"),
    ("notes", "remote_id", "TEXT"),
    ("notes", "external_id", "TEXT"),
    ("notes", "meta", "TEXT"),
    ("notes", "content_hash", "TEXT"),
    ("notes", "content_size", "INTEGER"),
    ("notes", "deleted_at", "INTEGER"),
    ("notes", "deleted_from_notebook_id", "INTEGER"),
    ("tags", "external_id", "TEXT"),
    ("ocr_files", "attempts_left", "INTEGER NOT NULL DEFAULT 3"),
    ("ocr_files", "last_error", "TEXT"),
]

INDEX_DDL = [
    "CREATE INDEX IF NOT EXISTS idx_notes_notebook_id ON notes(notebook_id)",
    "CREATE INDEX IF NOT EXISTS idx_notes_updated_at ON notes(updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_notes_deleted_at ON notes(deleted_at)",
    "CREATE INDEX IF NOT EXISTS idx_notes_external_id ON notes(external_id)",
    "CREATE INDEX IF NOT EXISTS idx_notebooks_parent_id ON notebooks(parent_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_tags_parent_name ON tags(parent_id, name)",
    "CREATE INDEX IF NOT EXISTS idx_attachments_note_id ON attachments(note_id)",
    "CREATE INDEX IF NOT EXISTS idx_note_files_file_id ON note_files(file_id)",
    "CREATE INDEX IF NOT EXISTS idx_note_history_opened_at ON note_history(opened_at)",
    "CREATE INDEX IF NOT EXISTS idx_note_history_note_id ON note_history(note_id)",
]

# External-content FTS5 tables; rowid is the note id / file id
FTS_DDL = [
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts
    USING fts5(title, plain_text, content='notes_text', content_rowid='note_id')
    """,
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS ocr_fts
    USING fts5(text, content='ocr_text', content_rowid='file_id')
    """,
    """
    CREATE TRIGGER IF NOT EXISTS notes_text_ai AFTER INSERT ON notes_text BEGIN
        INSERT INTO notes_fts(rowid, title, plain_text)
        VALUES (new.note_id, new.title, new.plain_text);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS notes_text_ad AFTER DELETE ON notes_text BEGIN
        INSERT INTO notes_fts(notes_fts, rowid, title, plain_text)
        VALUES ('delete', old.note_id, old.title, old.plain_text);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS notes_text_au AFTER UPDATE ON notes_text BEGIN
        INSERT INTO notes_fts(notes_fts, rowid, title, plain_text)
        VALUES ('delete', old.note_id, old.title, old.plain_text);
        INSERT INTO notes_fts(rowid, title, plain_text)
        VALUES (new.note_id, new.title, new.plain_text);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS ocr_text_ai AFTER INSERT ON ocr_text BEGIN
        INSERT INTO ocr_fts(rowid, text) VALUES (new.file_id, new.text);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS ocr_text_ad AFTER DELETE ON ocr_text BEGIN
        INSERT INTO ocr_fts(ocr_fts, rowid, text) VALUES ('delete', old.file_id, old.text);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS ocr_text_au AFTER UPDATE ON ocr_text BEGIN
        INSERT INTO ocr_fts(ocr_fts, rowid, text) VALUES ('delete', old.file_id, old.text);
        INSERT INTO ocr_fts(rowid, text) VALUES (new.file_id, new.text);
    END
    """,
]


# Execution option that makes a connection open its transactions with BEGIN IMMEDIATE
WRITE_OPTION = "notestore_write"


def create_store_engine(db_url: str, settings: StoreConfig = config) -> Engine:
    """Create the engine for the store database with hardened configuration.

    Applies SQLite settings for crash resilience and concurrent access:
    - WAL (Write-Ahead Logging) so readers never block the single writer
    - NORMAL synchronous mode (good balance of safety vs speed)
    - foreign_keys=ON so cascades and SET NULL actions fire
    - a busy timeout so contending writers wait instead of failing
    - QueuePool for connection reuse with size limits
    - a deferred BEGIN for reads, and BEGIN IMMEDIATE for connections
      carrying ``WRITE_OPTION`` so a read-then-write transaction takes the
      write lock up front instead of failing on upgrade

    Args:
        db_url: SQLAlchemy URL of the database file.
        settings: Store configuration (pool sizing and timeouts).

    Returns:
        The configured engine.
    """
    engine = create_engine(
        db_url,
        poolclass=QueuePool,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        pool_recycle=3600,     # Recycle connections after 1 hour
        pool_pre_ping=True,    # Validate connections before use
        connect_args={
            "timeout": settings.busy_timeout,
            "check_same_thread": False,
        },
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself (see the "begin" listener below)
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={int(settings.busy_timeout * 1000)}")
        # Increase cache size for better performance (negative = KB)
        cursor.execute("PRAGMA cache_size=-64000")  # 64MB cache
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        if conn.get_execution_options().get(WRITE_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")

    return engine


def write_engine(engine: Engine) -> Engine:
    """View of ``engine`` whose transactions start with BEGIN IMMEDIATE.

    Shares the connection pool and event listeners of ``engine``.
    """
    return engine.execution_options(**{WRITE_OPTION: True})


def rebuild_fts_index(engine: Engine) -> int:
    """Rebuild both FTS5 indexes from their content tables.

    Useful after bulk imports or when an index is suspected to be out of sync.

    Returns:
        Number of note projections indexed.
    """
    with write_engine(engine).begin() as conn:
        conn.execute(text("INSERT INTO notes_fts(notes_fts) VALUES('rebuild')"))
        conn.execute(text("INSERT INTO ocr_fts(ocr_fts) VALUES('rebuild')"))
        count = conn.execute(text("SELECT COUNT(*) FROM notes_text")).scalar()

    return count or 0


def _storage_error(
    e: SQLAlchemyError, operation: str, code: ErrorCode
) -> StorageError:
    if isinstance(e, (PoolTimeoutError, DisconnectionError)):
        code = ErrorCode.STORAGE_CONNECTION_FAILED
    return StorageError(
        f"Database error during {operation}",
        operation=operation,
        code=code,
        original_error=e,
    )


class SessionFactory:
    """Opens sessions on the store database.

    Read sessions begin with a deferred BEGIN and run alongside the single
    writer under WAL. Write sessions begin with BEGIN IMMEDIATE, so writers
    queue on the busy timeout. A write session holds the write lock until it
    closes: never open a second write session while one is open on the same
    thread.

    ``read`` and ``write`` are the repository entry points: database
    failures inside them surface as ``StorageError`` and the transaction is
    rolled back. Calling the factory directly returns a bare read session
    that lets SQLAlchemy errors through, for callers that handle them.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._reader = sessionmaker(bind=engine, expire_on_commit=False)
        self._writer = sessionmaker(bind=write_engine(engine), expire_on_commit=False)

    def __call__(self) -> Session:
        return self._reader()

    def writer(self) -> Session:
        """Bare write session; SQLAlchemy errors are not translated."""
        return self._writer()

    @contextmanager
    def read(self, operation: str) -> Iterator[Session]:
        with self._reader() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                raise _storage_error(e, operation, ErrorCode.STORAGE_READ_FAILED) from e

    @contextmanager
    def write(
        self, operation: str, code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED
    ) -> Iterator[Session]:
        """Write session for ``operation``; commit explicitly inside the block.

        Args:
            operation: Name reported in the ``StorageError``.
            code: Error code for database failures (deletes pass
                ``STORAGE_DELETE_FAILED``).
        """
        with self._writer() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                session.rollback()
                raise _storage_error(e, operation, code) from e


def get_session_factory(engine: Engine) -> SessionFactory:
    """Get a session factory for the database."""
    return SessionFactory(engine)
