"""Data models for the note store."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


def utc_timestamp() -> int:
    """Current time as integer seconds since the Unix epoch.

    Every timestamp column in the database uses this representation.
    """
    return int(time.time())


class NotebookKind(str, Enum):
    """Level of a node in the notebook tree."""
    STACK = "stack"          # Top-level grouping node, never has a parent
    NOTEBOOK = "notebook"    # Second-level node, always under a stack


class Notebook(BaseModel):
    """A stack or notebook in the two-level hierarchy."""

    id: int = Field(..., description="Notebook ID")
    name: str = Field(..., description="Display name")
    parent_id: Optional[int] = Field(default=None, description="Parent stack ID")
    kind: NotebookKind = Field(default=NotebookKind.STACK, description="Tree level")
    sort_order: int = Field(default=0, description="Dense position among siblings")
    created_at: int = Field(default_factory=utc_timestamp)
    external_id: Optional[str] = Field(default=None)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @model_validator(mode="after")
    def _validate_level(self) -> "Notebook":
        """A stack has no parent and a notebook always has one."""
        if self.kind == NotebookKind.STACK and self.parent_id is not None:
            raise ValueError("A stack cannot have a parent")
        if self.kind == NotebookKind.NOTEBOOK and self.parent_id is None:
            raise ValueError("A notebook must belong to a stack")
        return self


class Active(BaseModel):
    """Lifecycle state of a note that is not in the trash."""

    state: Literal["active"] = "active"
    notebook_id: Optional[int] = Field(default=None, description="None means unfiled")

    model_config = {"frozen": True}


class Trashed(BaseModel):
    """Lifecycle state of a soft-deleted note."""

    state: Literal["trashed"] = "trashed"
    deleted_at: int = Field(..., description="When the note was trashed")
    from_notebook_id: Optional[int] = Field(
        default=None, description="Notebook to restore into, if it still exists"
    )

    model_config = {"frozen": True}


NoteLifecycle = Annotated[Union[Active, Trashed], Field(discriminator="state")]


class Note(BaseModel):
    """A note with its rich HTML content."""

    id: int = Field(..., description="Note ID")
    title: str = Field(..., description="Title of the note")
    content: str = Field(default="", description="Rich HTML content")
    created_at: int = Field(default_factory=utc_timestamp)
    updated_at: int = Field(default_factory=utc_timestamp)
    lifecycle: NoteLifecycle = Field(default_factory=Active)
    external_id: Optional[str] = Field(default=None)
    meta: Optional[str] = Field(default=None, description="Opaque JSON owned by importers")
    content_hash: Optional[str] = Field(default=None)
    content_size: Optional[int] = Field(default=None)
    sync_status: int = Field(default=0)
    remote_id: Optional[str] = Field(default=None)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @property
    def is_trashed(self) -> bool:
        return isinstance(self.lifecycle, Trashed)

    @property
    def notebook_id(self) -> Optional[int]:
        """Current notebook, always None while trashed."""
        if isinstance(self.lifecycle, Active):
            return self.lifecycle.notebook_id
        return None


class NoteListItem(BaseModel):
    """A row in a note list or search result."""

    id: int
    title: str
    content: str = Field(default="", description="Content preview or search snippet")
    updated_at: int
    notebook_id: Optional[int] = None
    ocr_match: bool = Field(default=False, description="Matched through OCR text")


class NoteLinkItem(BaseModel):
    """Minimal note reference used for title lookups and note links."""

    id: int
    title: str
    notebook_id: Optional[int] = None
    external_id: Optional[str] = None


class NoteCounts(BaseModel):
    """Note totals for the sidebar."""

    total: int = 0
    trashed: int = 0
    per_notebook: Dict[int, int] = Field(default_factory=dict)


class Tag(BaseModel):
    """A node in the tag tree."""

    id: int
    name: str
    parent_id: Optional[int] = None
    created_at: int = Field(default_factory=utc_timestamp)
    updated_at: int = Field(default_factory=utc_timestamp)
    external_id: Optional[str] = None

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Tag name cannot be empty")
        return v


class Attachment(BaseModel):
    """An explicit file attached to exactly one note."""

    id: int
    note_id: int
    filename: str = ""
    mime: str = ""
    size: int = 0
    local_path: str = Field(default="", description="Path relative to the data directory")


class OcrFileItem(BaseModel):
    """An embedded file waiting for OCR."""

    file_id: int
    file_path: str = Field(..., description="Path relative to the files/ root")
    mime: Optional[str] = None
    attempts_left: int = 0


class OcrStats(BaseModel):
    """OCR progress over image-like registered files."""

    total: int = 0
    done: int = 0
    pending: int = 0


class NoteHistoryItem(BaseModel):
    """One entry of the note-open log, with titles captured at open time."""

    id: int
    note_id: int
    opened_at: int
    note_title: str
    notebook_id: Optional[int] = None
    notebook_name: Optional[str] = None
    stack_id: Optional[int] = None
    stack_name: Optional[str] = None


@dataclass(frozen=True)
class StoredFile:
    """Result of writing a new embedded file.

    Attributes:
        rel_path: Path relative to the files/ root, e.g. ``ab/ab12....png``.
        hash: SHA-256 hex digest of the stored bytes.
        mime: Resolved content type.
    """

    rel_path: str
    hash: str
    mime: str

    @property
    def src(self) -> str:
        """Canonical value for an ``src`` attribute in note content."""
        return f"files/{self.rel_path}"


@dataclass
class ExportReport:
    """Summary of an export run.

    Attributes:
        export_root: Folder the export was written to.
        manifest_path: Location of manifest.json.
        errors: Per-item failures that did not stop the export.
    """

    export_root: str
    manifest_path: str
    notes: int = 0
    notebooks: int = 0
    tags: int = 0
    attachments: int = 0
    images: int = 0
    errors: List[str] = field(default_factory=list)
