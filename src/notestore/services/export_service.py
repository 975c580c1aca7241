"""Full export of the store to a self-describing folder.

Layout of an export::

    notestore-export-<YYYYmmdd-HHMMSS>[-<n>]/
        manifest.json           every table, rows in id order
        notes/<id>.html         note content with canonical files/ URLs
        notes/<id>.meta.json    note row without content
        attachments/...         attachment blobs
        files/...               embedded-file blobs

Copy failures of individual items are collected in the report instead of
aborting the export.
"""
import datetime
import itertools
import json
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import text

from notestore.exceptions import ErrorCode, StorageError, ValidationError
from notestore.models.schema import ExportReport
from notestore.observability import timed_operation
from notestore.storage.content_scanner import FILES_PREFIX, normalize_file_urls
from notestore.storage.file_store import ATTACHMENTS_DIR
from notestore.utils import normalize_rel_path, strip_prefix_repeated

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "1.0"
EXPORT_DIR_PREFIX = "notestore-export-"

_TABLE_QUERIES = {
    "notebooks": """
        SELECT id, name, created_at, parent_id, notebook_type, sort_order, external_id
        FROM notebooks ORDER BY id ASC
    """,
    "notes": """
        SELECT id, title, content, created_at, updated_at, sync_status, remote_id,
               notebook_id, external_id, meta, content_hash, content_size,
               deleted_at, deleted_from_notebook_id
        FROM notes ORDER BY id ASC
    """,
    "notes_text": "SELECT note_id, title, plain_text FROM notes_text ORDER BY note_id ASC",
    "tags": """
        SELECT id, name, parent_id, created_at, updated_at, external_id
        FROM tags ORDER BY id ASC
    """,
    "note_tags": "SELECT note_id, tag_id FROM note_tags ORDER BY note_id ASC, tag_id ASC",
    "attachments": """
        SELECT id, note_id, external_id, hash, filename, mime, size, width, height,
               local_path, source_url, is_attachment, created_at, updated_at
        FROM attachments ORDER BY id ASC
    """,
    "ocr_files": """
        SELECT id, file_path, attempts_left, last_error FROM ocr_files ORDER BY id ASC
    """,
    "note_files": "SELECT note_id, file_id FROM note_files ORDER BY note_id ASC, file_id ASC",
    "ocr_text": """
        SELECT file_id, lang, text, hash, updated_at FROM ocr_text ORDER BY file_id ASC
    """,
    "note_history": """
        SELECT id, note_id, opened_at, note_title, notebook_id, notebook_name,
               stack_id, stack_name
        FROM note_history ORDER BY id ASC
    """,
}


class ExportService:
    """Writes the whole store (rows and blobs) to a folder.

    Args:
        session_factory: SQLAlchemy session factory.
        data_dir: Data directory holding the files/ and attachments/ trees.
    """

    def __init__(self, session_factory, data_dir: Path):
        self.session_factory = session_factory
        self.data_dir = Path(data_dir)

    def export(self, dest_dir: Union[str, Path]) -> ExportReport:
        """Export everything into a new timestamped folder under ``dest_dir``.

        Raises:
            ValidationError: If ``dest_dir`` is empty.
            StorageError: If the export folder cannot be created or the
                manifest cannot be written.
        """
        if not str(dest_dir).strip():
            raise ValidationError("Export folder is empty", field="dest_dir")

        stamp = datetime.datetime.now(datetime.timezone.utc).strftime("%Y%m%d-%H%M%S")
        export_root = Path(dest_dir) / f"{EXPORT_DIR_PREFIX}{stamp}"

        with timed_operation("export", dest=str(dest_dir)) as op:
            try:
                export_root = self._new_export_root(Path(dest_dir), stamp)
                for sub in ("notes", ATTACHMENTS_DIR, "files"):
                    (export_root / sub).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(
                    f"Cannot create export folder: {e}",
                    operation="export",
                    path=str(export_root),
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e

            tables = self._read_tables()
            errors: List[str] = []

            notes = [self._export_note(export_root, row, errors) for row in tables["notes"]]
            attachments = [
                self._export_attachment(export_root, row, errors)
                for row in tables["attachments"]
            ]
            images = 0
            ocr_files = []
            for row in tables["ocr_files"]:
                entry = self._export_file(export_root, row, errors)
                if entry.pop("_copied"):
                    images += 1
                ocr_files.append(entry)

            manifest = {
                "version": MANIFEST_VERSION,
                "exported_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
                **tables,
                "notes": notes,
                "attachments": attachments,
                "ocr_files": ocr_files,
            }
            manifest_path = export_root / "manifest.json"
            try:
                manifest_path.write_text(
                    json.dumps(manifest, indent=2, ensure_ascii=False), encoding="utf-8"
                )
            except OSError as e:
                raise StorageError(
                    f"Cannot write export manifest: {e}",
                    operation="export",
                    path=str(manifest_path),
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e

            report = ExportReport(
                export_root=str(export_root),
                manifest_path=str(manifest_path),
                notes=len(notes),
                notebooks=len(tables["notebooks"]),
                tags=len(tables["tags"]),
                attachments=sum(1 for a in attachments if a["export_path"]),
                images=images,
                errors=errors,
            )
            op["notes"] = report.notes
            op["errors"] = len(errors)

        if errors:
            logger.warning(f"Export finished with {len(errors)} errors: {errors[:5]}")
        logger.info(f"Exported {report.notes} notes to {export_root}")
        return report

    @staticmethod
    def _new_export_root(dest_dir: Path, stamp: str) -> Path:
        """Create an empty export folder, suffixing ``-2``, ``-3``... when the stamp is taken."""
        dest_dir.mkdir(parents=True, exist_ok=True)
        for n in itertools.count(1):
            suffix = "" if n == 1 else f"-{n}"
            candidate = dest_dir / f"{EXPORT_DIR_PREFIX}{stamp}{suffix}"
            try:
                candidate.mkdir()
            except FileExistsError:
                continue
            return candidate

    def _read_tables(self) -> Dict[str, List[Dict[str, Any]]]:
        """Read every table in one transaction so the snapshot is consistent."""
        with self.session_factory.read("export") as session:
            return {
                name: [dict(row._mapping) for row in session.execute(text(sql))]
                for name, sql in _TABLE_QUERIES.items()
            }

    @staticmethod
    def _export_note(
        export_root: Path, row: Dict[str, Any], errors: List[str]
    ) -> Dict[str, Any]:
        note_id = row["id"]
        entry = {key: value for key, value in row.items() if key != "content"}
        entry["content_path"] = f"notes/{note_id}.html"
        entry["meta_path"] = f"notes/{note_id}.meta.json"

        try:
            (export_root / entry["content_path"]).write_text(
                normalize_file_urls(row["content"] or ""), encoding="utf-8"
            )
        except OSError as e:
            errors.append(f"note {note_id} html: {e}")
        try:
            (export_root / entry["meta_path"]).write_text(
                json.dumps(entry, indent=2, ensure_ascii=False), encoding="utf-8"
            )
        except OSError as e:
            errors.append(f"note {note_id} meta: {e}")
        return entry

    def _export_attachment(
        self, export_root: Path, row: Dict[str, Any], errors: List[str]
    ) -> Dict[str, Any]:
        entry = dict(row)
        local_path = row["local_path"]
        export_path: Optional[str] = None
        if local_path:
            cleaned = strip_prefix_repeated(normalize_rel_path(local_path), FILES_PREFIX)
            if not cleaned.startswith(f"{ATTACHMENTS_DIR}/"):
                cleaned = f"{ATTACHMENTS_DIR}/{cleaned}"
            if self._copy(self.data_dir / local_path, export_root, cleaned,
                          f"attachment {row['id']}", errors):
                export_path = cleaned
        entry["export_path"] = export_path
        return entry

    def _export_file(
        self, export_root: Path, row: Dict[str, Any], errors: List[str]
    ) -> Dict[str, Any]:
        entry = dict(row)
        rel = normalize_rel_path(row["file_path"])
        entry["export_path"] = f"{FILES_PREFIX}{rel}"
        entry["_copied"] = self._copy(
            self.data_dir / "files" / rel, export_root, entry["export_path"],
            f"file {row['id']}", errors,
        )
        return entry

    def _copy(
        self,
        source: Path,
        export_root: Path,
        export_rel: str,
        label: str,
        errors: List[str],
    ) -> bool:
        target = (export_root / export_rel).resolve()
        if export_root.resolve() not in target.parents:
            errors.append(f"{label} copy: path escapes export folder")
            return False
        if self.data_dir.resolve() not in source.resolve().parents:
            errors.append(f"{label} copy: path escapes data directory")
            return False
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)
        except OSError as e:
            errors.append(f"{label} copy: {e}")
            return False
        return True
