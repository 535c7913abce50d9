"""Configuration module for the Graphon index.

Settings are read from the environment when an ``IndexConfig`` is created and
the resulting object is passed to every component that needs it.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from graphon_index import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives reinstalls
_USER_ENV = Path.home() / ".graphon" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

EMBEDDING_POLICIES = ("eager", "deferred", "disabled")

DEFAULT_DATABASE_NAME = "index.db"


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class IndexConfig(BaseModel):
    """Configuration for one vault's index."""

    # Vault location
    vault_path: Path = Field(
        default_factory=lambda: Path(os.getenv("GRAPHON_VAULT_PATH", "."))
    )
    # Database configuration; None means <vault>/<metadata_dir_name>/index.db
    database_path: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("GRAPHON_DATABASE_PATH"))
            if os.getenv("GRAPHON_DATABASE_PATH")
            else None
        )
    )
    # Scanner configuration
    metadata_dir_name: str = Field(
        default_factory=lambda: os.getenv("GRAPHON_METADATA_DIR", ".graphon")
    )
    note_extensions: List[str] = Field(
        default_factory=lambda: _env_list("GRAPHON_NOTE_EXTENSIONS", ".md,.txt")
    )
    ignored_names: List[str] = Field(
        default_factory=lambda: _env_list("GRAPHON_IGNORED_NAMES", "node_modules")
    )
    # Sync configuration
    sync_debounce_seconds: float = Field(
        default_factory=lambda: float(os.getenv("GRAPHON_SYNC_DEBOUNCE", "0.3"))
    )
    # When True, file-system notifications (watchdog) trigger sync passes
    watch_enabled: bool = Field(
        default_factory=lambda: _env_flag("GRAPHON_WATCH", "false")
    )
    # Embedding / semantic search configuration
    embeddings_enabled: bool = Field(
        default_factory=lambda: _env_flag("GRAPHON_EMBEDDINGS_ENABLED", "false")
    )
    embedding_model: str = Field(
        default_factory=lambda: os.getenv(
            "GRAPHON_EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2"
        )
    )
    embedding_max_tokens: int = Field(
        default_factory=lambda: int(os.getenv("GRAPHON_EMBEDDING_MAX_TOKENS", "256"))
    )
    embedding_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("GRAPHON_EMBEDDING_TIMEOUT", "30"))
    )
    # eager: embed on every content change; deferred: embed after the pass;
    # disabled: never embed
    embedding_policy: str = Field(
        default_factory=lambda: os.getenv("GRAPHON_EMBEDDING_POLICY", "eager").lower()
    )
    embedding_model_cache_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("GRAPHON_EMBEDDING_CACHE_DIR"))
            if os.getenv("GRAPHON_EMBEDDING_CACHE_DIR")
            else None
        )
    )
    # ONNX execution provider preference: "auto", "cpu" or a comma-separated list
    onnx_providers: str = Field(
        default_factory=lambda: os.getenv("GRAPHON_ONNX_PROVIDERS", "auto")
    )
    # Query limits
    search_limit: int = Field(
        default_factory=lambda: int(os.getenv("GRAPHON_SEARCH_LIMIT", "20"))
    )
    related_limit: int = Field(
        default_factory=lambda: int(os.getenv("GRAPHON_RELATED_LIMIT", "5"))
    )
    semantic_limit: int = Field(
        default_factory=lambda: int(os.getenv("GRAPHON_SEMANTIC_LIMIT", "10"))
    )
    # Server configuration
    server_name: str = Field(
        default_factory=lambda: os.getenv("GRAPHON_SERVER_NAME", "graphon-index")
    )
    server_version: str = Field(default=__version__)

    @field_validator("note_extensions", mode="after")
    @classmethod
    def _normalize_extensions(cls, value: List[str]) -> List[str]:
        """Lower-case extensions and make sure each has a leading dot."""
        normalized = []
        for ext in value:
            ext = ext.strip().lower()
            if not ext:
                continue
            if not ext.startswith("."):
                ext = f".{ext}"
            if ext not in normalized:
                normalized.append(ext)
        return normalized

    @model_validator(mode="after")
    def _validate_limits(self) -> "IndexConfig":
        """Reject values the sync and query layers cannot work with."""
        if not self.note_extensions:
            raise ValueError("note_extensions must contain at least one extension")
        if self.sync_debounce_seconds < 0:
            raise ValueError("sync_debounce_seconds must be >= 0")
        if self.embedding_timeout_seconds <= 0:
            raise ValueError("embedding_timeout_seconds must be > 0")
        if self.embedding_max_tokens < 16:
            raise ValueError("embedding_max_tokens must be >= 16")
        if self.embedding_policy not in EMBEDDING_POLICIES:
            raise ValueError(
                f"embedding_policy must be one of {', '.join(EMBEDDING_POLICIES)}, "
                f"got {self.embedding_policy!r}"
            )
        for name in ("search_limit", "related_limit", "semantic_limit"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.metadata_dir_name in ("", ".", ".."):
            raise ValueError("metadata_dir_name must be a plain folder name")
        return self

    def get_vault_path(self) -> Path:
        """Get the absolute, resolved vault root."""
        return self.vault_path.expanduser().resolve()

    def get_database_path(self) -> Path:
        """Get the absolute path of this vault's database file."""
        if self.database_path is None:
            return self.get_vault_path() / self.metadata_dir_name / DEFAULT_DATABASE_NAME
        path = self.database_path.expanduser()
        if path.is_absolute():
            return path
        return self.get_vault_path() / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_database_path()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    @property
    def semantic_enabled(self) -> bool:
        """Whether notes should be embedded at all."""
        return self.embeddings_enabled and self.embedding_policy != "disabled"
