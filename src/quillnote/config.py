"""Configuration module for the Quillnote server."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from quillnote import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, lives alongside the default database
_USER_ENV = Path.home() / ".quillnote" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# Share tokens shorter than this carry less than ~140 bits of entropy
MIN_SHARE_TOKEN_LENGTH = 24


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class QuillnoteConfig(BaseModel):
    """Configuration for the Quillnote server."""

    # Base directory for the project
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("QUILLNOTE_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("QUILLNOTE_DATABASE_PATH", "data/db/quillnote.db")
        )
    )
    # When True, uses in-memory SQLite (nothing survives a restart)
    in_memory_db: bool = Field(
        default_factory=lambda: _env_flag("QUILLNOTE_IN_MEMORY_DB", "false")
    )
    # Media storage: "local" keeps one directory per bucket under storage_dir,
    # "s3" talks to any S3-compatible object store
    storage_backend: str = Field(
        default_factory=lambda: os.getenv("QUILLNOTE_STORAGE_BACKEND", "local").lower()
    )
    storage_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("QUILLNOTE_STORAGE_DIR", "data/media"))
    )
    # Public URLs for media are "<public_base_url>/<bucket>/<path>"
    public_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "QUILLNOTE_PUBLIC_BASE_URL", "http://localhost:8000/media"
        )
    )
    s3_endpoint: Optional[str] = Field(
        default_factory=lambda: os.getenv("QUILLNOTE_S3_ENDPOINT") or None
    )
    s3_access_key: Optional[str] = Field(
        default_factory=lambda: os.getenv("QUILLNOTE_S3_ACCESS_KEY") or None
    )
    s3_secret_key: Optional[str] = Field(
        default_factory=lambda: os.getenv("QUILLNOTE_S3_SECRET_KEY") or None
    )
    s3_region: str = Field(
        default_factory=lambda: os.getenv("QUILLNOTE_S3_REGION", "auto")
    )
    s3_addressing_style: str = Field(
        default_factory=lambda: os.getenv("QUILLNOTE_S3_ADDRESSING_STYLE", "path")
    )
    # Sharing configuration
    share_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "QUILLNOTE_SHARE_BASE_URL", "http://localhost:8000"
        )
    )
    share_token_length: int = Field(
        default_factory=lambda: int(os.getenv("QUILLNOTE_SHARE_TOKEN_LENGTH", "24"))
    )
    # When set, shared notes are fetched from "<functions_url>/get-shared-note"
    # over HTTP instead of in-process
    functions_url: Optional[str] = Field(
        default_factory=lambda: os.getenv("QUILLNOTE_FUNCTIONS_URL") or None
    )
    functions_timeout: float = Field(
        default_factory=lambda: float(os.getenv("QUILLNOTE_FUNCTIONS_TIMEOUT", "10"))
    )
    default_share_expiry_days: int = Field(
        default_factory=lambda: int(os.getenv("QUILLNOTE_SHARE_EXPIRY_DAYS", "7"))
    )
    # Seconds of inactivity before a pending edit is flushed
    autosave_delay: float = Field(
        default_factory=lambda: float(os.getenv("QUILLNOTE_AUTOSAVE_DELAY", "2.0"))
    )
    # Caller identity for the single-user MCP surface. The identity provider
    # is external; this is whoever it authenticated.
    user_id: Optional[str] = Field(
        default_factory=lambda: os.getenv("QUILLNOTE_USER_ID") or None
    )
    user_email: Optional[str] = Field(
        default_factory=lambda: os.getenv("QUILLNOTE_USER_EMAIL") or None
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("QUILLNOTE_SERVER_NAME", "quillnote"))
    server_version: str = Field(default=__version__)
    host: str = Field(default_factory=lambda: os.getenv("QUILLNOTE_HOST", "127.0.0.1"))
    port: int = Field(default_factory=lambda: int(os.getenv("QUILLNOTE_PORT", "8000")))

    @model_validator(mode="after")
    def _validate_settings(self) -> "QuillnoteConfig":
        """Reject settings that would weaken share links or break auto-save."""
        if self.share_token_length < MIN_SHARE_TOKEN_LENGTH:
            raise ValueError(
                f"share_token_length must be >= {MIN_SHARE_TOKEN_LENGTH}"
            )
        if self.autosave_delay <= 0:
            raise ValueError("autosave_delay must be > 0")
        if self.storage_backend not in ("local", "s3"):
            raise ValueError("storage_backend must be 'local' or 's3'")
        if not 1 <= self.default_share_expiry_days <= 365:
            logger.warning(
                "Default share expiry of %d days is outside 1..365; using 7",
                self.default_share_expiry_days,
            )
            self.default_share_expiry_days = 7
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        if self.in_memory_db:
            return "sqlite://"
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_storage_dir(self) -> Path:
        """Get the absolute media directory, creating it if needed."""
        storage_dir = self.get_absolute_path(self.storage_dir)
        storage_dir.mkdir(parents=True, exist_ok=True)
        return storage_dir


# Create a global config instance
config = QuillnoteConfig()
