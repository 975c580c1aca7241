"""Storage layer for the note store."""

from notestore.storage.file_store import FileStore, PendingDeletions
from notestore.storage.history_repository import HistoryRepository
from notestore.storage.note_repository import NoteRepository
from notestore.storage.notebook_repository import NotebookRepository
from notestore.storage.ocr_repository import OcrRepository
from notestore.storage.schema_manager import SchemaManager
from notestore.storage.tag_repository import TagRepository
from notestore.storage.text_index import TextIndex

__all__ = [
    "FileStore",
    "PendingDeletions",
    "HistoryRepository",
    "NoteRepository",
    "NotebookRepository",
    "OcrRepository",
    "SchemaManager",
    "TagRepository",
    "TextIndex",
]
