"""Configuration module for the note store."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the default data directory
_USER_ENV = Path.home() / ".notestore" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# Embedded files and attachments larger than this are rejected
DEFAULT_MAX_FILE_BYTES = 25 * 1024 * 1024

# Warn when the pool allows more connections than SQLite handles comfortably
_POOL_WARN_CONNECTIONS = 32


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class StoreConfig(BaseModel):
    """Configuration for the note store."""

    # Root of the persisted layout: notes.db, files/ and attachments/
    data_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTESTORE_DATA_DIR", str(Path.home() / ".notestore" / "data"))
        )
    )
    database_name: str = Field(
        default_factory=lambda: os.getenv("NOTESTORE_DATABASE_NAME", "notes.db")
    )
    # File storage limits
    max_file_bytes: int = Field(
        default_factory=lambda: int(
            os.getenv("NOTESTORE_MAX_FILE_BYTES", str(DEFAULT_MAX_FILE_BYTES))
        )
    )
    download_timeout: float = Field(
        default_factory=lambda: float(os.getenv("NOTESTORE_DOWNLOAD_TIMEOUT", "10"))
    )
    # Connection pool configuration
    pool_size: int = Field(
        default_factory=lambda: int(os.getenv("NOTESTORE_POOL_SIZE", "5"))
    )
    max_overflow: int = Field(
        default_factory=lambda: int(os.getenv("NOTESTORE_MAX_OVERFLOW", "10"))
    )
    pool_timeout: float = Field(
        default_factory=lambda: float(os.getenv("NOTESTORE_POOL_TIMEOUT", "30"))
    )
    # Seconds a writer waits on a locked database before failing
    busy_timeout: float = Field(
        default_factory=lambda: float(os.getenv("NOTESTORE_BUSY_TIMEOUT", "30"))
    )
    # OCR queue: attempts granted to a newly registered file
    ocr_max_attempts: int = Field(
        default_factory=lambda: int(os.getenv("NOTESTORE_OCR_MAX_ATTEMPTS", "3"))
    )
    # Characters of content returned with list results
    list_preview_chars: int = Field(default=4000)
    # Logging configuration
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTESTORE_LOG_LEVEL", "INFO").upper()
    )
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTESTORE_LOG_DIR"))
            if os.getenv("NOTESTORE_LOG_DIR")
            else None
        )
    )
    log_to_console: bool = Field(
        default_factory=lambda: _env_flag("NOTESTORE_LOG_CONSOLE", "true")
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "StoreConfig":
        """Validate numeric limits and warn about oversized pools."""
        if self.max_file_bytes < 1:
            raise ValueError("max_file_bytes must be >= 1")
        if self.pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        if self.max_overflow < 0:
            raise ValueError("max_overflow must be >= 0")
        if self.busy_timeout < 0:
            raise ValueError("busy_timeout must be >= 0")
        if self.ocr_max_attempts < 0:
            raise ValueError("ocr_max_attempts must be >= 0")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {self.log_level}")

        if self.pool_size + self.max_overflow > _POOL_WARN_CONNECTIONS:
            logger.warning(
                "Connection pool (pool_size=%d, max_overflow=%d) exceeds %d "
                "connections; SQLite allows a single writer so extra "
                "connections only queue on the write lock.",
                self.pool_size,
                self.max_overflow,
                _POOL_WARN_CONNECTIONS,
            )
        return self

    def get_data_dir(self, data_dir: Optional[Path] = None) -> Path:
        """Resolve the data directory and make sure it exists."""
        path = Path(data_dir) if data_dir is not None else self.data_dir
        path = path.expanduser()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_database_path(self, data_dir: Optional[Path] = None) -> Path:
        """Get the absolute path of the database file."""
        return self.get_data_dir(data_dir) / self.database_name

    def get_db_url(self, data_dir: Optional[Path] = None) -> str:
        """Get the database URL for SQLite."""
        return f"sqlite:///{self.get_database_path(data_dir)}"


# Create a global config instance
config = StoreConfig()
