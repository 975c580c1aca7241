"""Public entry point: opens a data directory and wires the repositories."""
import logging
from pathlib import Path
from typing import List, Optional, Union

import httpx
from sqlalchemy.engine import Engine

from notestore.config import StoreConfig, config
from notestore.exceptions import MigrationError
from notestore.models.db_models import create_store_engine, get_session_factory
from notestore.models.schema import OcrFileItem
from notestore.services.export_service import ExportService
from notestore.storage.file_store import FileStore
from notestore.storage.history_repository import HistoryRepository
from notestore.storage.note_repository import NoteRepository
from notestore.storage.notebook_repository import NotebookRepository
from notestore.storage.ocr_repository import OcrRepository
from notestore.storage.schema_manager import SchemaManager
from notestore.storage.tag_repository import TagRepository
from notestore.storage.text_index import TextIndex

logger = logging.getLogger(__name__)


class NoteStore:
    """The note store for one data directory.

    Use ``NoteStore.open`` rather than the constructor: it runs schema
    migrations before anything else can touch the database.

    Attributes:
        notebooks: Stack/notebook hierarchy.
        notes: Note CRUD, trash and listing.
        tags: Tag tree and note tagging.
        files: Embedded files and attachments.
        ocr: OCR work queue.
        history: Note-open log.
        text_index: Text projection and full-text search.
        exporter: Full export to a folder.
    """

    def __init__(
        self,
        engine: Engine,
        data_dir: Path,
        settings: StoreConfig = config,
        http_client: Optional[httpx.Client] = None,
    ):
        self.engine = engine
        self.data_dir = Path(data_dir)
        self.settings = settings
        self.session_factory = get_session_factory(engine)
        self.schema = SchemaManager(engine)

        self.text_index = TextIndex(engine, self.session_factory)
        self.notebooks = NotebookRepository(self.session_factory)
        self.files = FileStore(self.data_dir, self.session_factory, settings, http_client)
        self.notes = NoteRepository(
            self.session_factory, self.text_index, self.files, self.notebooks, settings
        )
        self.tags = TagRepository(self.session_factory)
        self.ocr = OcrRepository(self.session_factory, self.files)
        self.history = HistoryRepository(self.session_factory)
        self.exporter = ExportService(self.session_factory, self.data_dir)

    @classmethod
    def open(
        cls,
        data_dir: Optional[Union[str, Path]] = None,
        settings: StoreConfig = config,
        http_client: Optional[httpx.Client] = None,
    ) -> "NoteStore":
        """Open (creating if needed) the store in ``data_dir``.

        Args:
            data_dir: Data directory. Defaults to ``settings.data_dir``.
            settings: Store configuration.
            http_client: Client for downloads, mainly for tests.

        Raises:
            MigrationError: If the database cannot be brought to the current
                schema. The store is not usable in that case.
        """
        resolved = settings.get_data_dir(Path(data_dir) if data_dir is not None else None)
        engine = create_store_engine(settings.get_db_url(resolved), settings)
        try:
            SchemaManager(engine).migrate()
        except MigrationError:
            engine.dispose()
            logger.error(f"Could not open note store at {resolved}")
            raise
        logger.info(f"Opened note store at {resolved}")
        return cls(engine, resolved, settings, http_client)

    def close(self) -> None:
        """Release every pooled database connection."""
        self.engine.dispose()
        logger.debug(f"Closed note store at {self.data_dir}")

    def __enter__(self) -> "NoteStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Collaborator entry points
    # ------------------------------------------------------------------

    def get_ocr_pending_files(self, limit: int = 10) -> List[OcrFileItem]:
        return self.ocr.get_pending_files(limit)

    def upsert_ocr_text(self, file_id: int, lang: str, ocr_text: str, text_hash: str) -> None:
        self.ocr.upsert_text(file_id, lang, ocr_text, text_hash)

    def mark_ocr_failed(self, file_id: int, message: str) -> None:
        self.ocr.mark_failed(file_id, message)

    def repair_sequences(self, *tables: str) -> None:
        """Reset id counters after an importer inserted rows with explicit ids."""
        self.schema.repair_sequences(*tables)
