"""Custom exceptions for the note store.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Three families are surfaced to
callers: integrity violations (rejected before any write), storage
failures (the enclosing transaction is rolled back) and migration
failures (fatal to opening the store). Post-commit cleanup problems are
logged and never raised.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_VALIDATION_FAILED = 1002

    # Notebook errors (2xxx)
    NOTEBOOK_NOT_FOUND = 2001
    NOTEBOOK_INVALID_PARENT = 2002
    NOTEBOOK_INVALID_MOVE = 2003

    # Tag errors (3xxx)
    TAG_NOT_FOUND = 3001
    TAG_INVALID = 3002
    TAG_CYCLE = 3003

    # Attachment errors (35xx)
    ATTACHMENT_NOT_FOUND = 3501
    ATTACHMENT_FILE_MISSING = 3502

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_CONNECTION_FAILED = 4004

    # File store errors (41xx)
    FILE_EMPTY = 4101
    FILE_TOO_LARGE = 4102
    FILE_NOT_FOUND = 4103
    DOWNLOAD_FAILED = 4104

    # Search errors (5xxx)
    SEARCH_FAILED = 5001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    PATH_TRAVERSAL_DETECTED = 7005

    # Migration errors (8xxx)
    MIGRATION_FAILED = 8001
    SCHEMA_TOO_NEW = 8002


class NoteStoreError(Exception):
    """Base exception for all note store errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class IntegrityViolationError(NoteStoreError):
    """Raised when a request would break a store invariant.

    Nothing has been written when this is raised.
    """

    def __init__(
        self,
        message: str,
        entity: Optional[str] = None,
        entity_id: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details: Dict[str, Any] = {}
        if entity:
            details["entity"] = entity
        if entity_id is not None:
            details["entity_id"] = entity_id

        super().__init__(message, code=code, details=details)
        self.entity = entity
        self.entity_id = entity_id


class NoteNotFoundError(IntegrityViolationError):
    """Raised when a note cannot be found."""

    def __init__(self, note_id: int, message: Optional[str] = None):
        super().__init__(
            message or f"Note with ID '{note_id}' not found",
            entity="note",
            entity_id=note_id,
            code=ErrorCode.NOTE_NOT_FOUND,
        )
        self.note_id = note_id


class NotebookNotFoundError(IntegrityViolationError):
    """Raised when a notebook cannot be found."""

    def __init__(self, notebook_id: int, message: Optional[str] = None):
        super().__init__(
            message or f"Notebook with ID '{notebook_id}' not found",
            entity="notebook",
            entity_id=notebook_id,
            code=ErrorCode.NOTEBOOK_NOT_FOUND,
        )
        self.notebook_id = notebook_id


class HierarchyViolationError(IntegrityViolationError):
    """Raised when a notebook operation would break the stack/notebook tree.

    Covers a stack acquiring a parent, a notebook becoming parentless and a
    notebook placed under anything other than a stack.
    """

    def __init__(
        self,
        message: str,
        notebook_id: Optional[int] = None,
        parent_id: Optional[int] = None,
        code: ErrorCode = ErrorCode.NOTEBOOK_INVALID_PARENT
    ):
        super().__init__(message, entity="notebook", entity_id=notebook_id, code=code)
        if parent_id is not None:
            self.details["parent_id"] = parent_id
        self.parent_id = parent_id


class TagError(IntegrityViolationError):
    """Raised for tag-related errors."""

    def __init__(
        self,
        message: str,
        tag_id: Optional[int] = None,
        code: ErrorCode = ErrorCode.TAG_INVALID
    ):
        super().__init__(message, entity="tag", entity_id=tag_id, code=code)
        self.tag_id = tag_id


class AttachmentNotFoundError(IntegrityViolationError):
    """Raised when an attachment row or its file cannot be found."""

    def __init__(
        self,
        attachment_id: int,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.ATTACHMENT_NOT_FOUND
    ):
        super().__init__(
            message or f"Attachment with ID '{attachment_id}' not found",
            entity="attachment",
            entity_id=attachment_id,
            code=code,
        )
        self.attachment_id = attachment_id


class ValidationError(NoteStoreError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class StorageError(NoteStoreError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class FileStoreError(StorageError):
    """Raised when a file cannot be validated, fetched or written."""


class SearchError(NoteStoreError):
    """Raised for search-related errors."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_FAILED
    ):
        details = {}
        if query:
            details["query"] = query[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.query = query


class MigrationError(NoteStoreError):
    """Raised when the schema cannot be brought to the current version.

    Fatal to opening the store. Steps that completed before the failure
    stay committed; each is idempotent so the next open resumes safely.
    """

    def __init__(
        self,
        message: str,
        step: Optional[str] = None,
        version: Optional[int] = None,
        code: ErrorCode = ErrorCode.MIGRATION_FAILED,
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {}
        if step:
            details["step"] = step
        if version is not None:
            details["version"] = version
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.step = step
        self.version = version
        self.original_error = original_error
