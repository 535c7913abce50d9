"""Data models for the Graphon index.

Write-side models (scanner output, extraction results, per-file updates)
and read-side result models returned by the query engine. Result models
serialize with camelCase aliases, which is what the UI consumes.
"""

import datetime
from dataclasses import dataclass, field
from datetime import timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


class FileNode(BaseModel):
    """One entry of the vault tree shown in the file explorer."""

    name: str = Field(..., description="Entry name including extension")
    path: str = Field(..., description="Vault-relative POSIX path")
    type: Literal["file", "folder"] = Field(..., description="Entry kind")
    children: List["FileNode"] = Field(default_factory=list)

    model_config = {"frozen": True}


@dataclass(frozen=True)
class NoteCandidate:
    """A note file found by the scanner."""

    path: str
    absolute_path: Path


@dataclass
class ScanResult:
    """Output of one vault walk: the display tree and the flat note list."""

    tree: List[FileNode] = field(default_factory=list)
    candidates: List[NoteCandidate] = field(default_factory=list)


class TaskItem(BaseModel):
    """A checkbox task parsed out of a note."""

    content: str
    completed: bool = False

    model_config = {"frozen": True}


class ExtractedNote(BaseModel):
    """Everything the index derives from a note's raw text."""

    title: str
    content: str = Field(default="", description="Plain text used for full-text search")
    links: List[str] = Field(default_factory=list, description="Wiki-link targets")
    tasks: List[TaskItem] = Field(default_factory=list)


class FileMetadata(BaseModel):
    """Identity and timestamps of an indexed file."""

    id: str
    path: str
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)


@dataclass(frozen=True)
class IndexedFile:
    """A file row joined with the title from its search record."""

    id: str
    path: str
    title: str


@dataclass
class NoteUpdate:
    """All writes belonging to one file's content change.

    ``embedding`` is written when present. When it is None and
    ``drop_embedding`` is set, any stored (now stale) embedding is removed.
    """

    metadata: FileMetadata
    checksum: str
    extracted: ExtractedNote
    embedding: Optional[np.ndarray] = None
    embedding_model: Optional[str] = None
    drop_embedding: bool = True


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        """Dump with the camelCase keys the UI expects."""
        return self.model_dump(by_alias=True, mode="json")


class SearchHit(_CamelModel):
    """A full-text search result."""

    id: str
    title: str
    path: str
    highlight: str = ""
    score: float = 0.0


class GraphNode(_CamelModel):
    """A note (or ghost reference) in the link graph."""

    id: str
    title: str
    path: str = ""
    group: str = ""
    exists: bool = True
    link_count: int = 0


class GraphEdge(_CamelModel):
    source: str
    target: str


class GraphData(_CamelModel):
    nodes: List[GraphNode] = Field(default_factory=list)
    edges: List[GraphEdge] = Field(default_factory=list)


class ScoredNote(_CamelModel):
    """A note ranked by embedding similarity."""

    id: str
    title: str
    path: str
    score: float


class TaskRecord(_CamelModel):
    """A task together with the note it lives in."""

    id: int
    content: str
    completed: bool
    file_path: str
    file_title: str


class SyncReport(_CamelModel):
    """Summary of one completed sync pass."""

    added: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0
    failed: int = 0
    embedded: int = 0
    duration_ms: float = 0.0
    started_at: datetime.datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime.datetime] = None

    @property
    def changed(self) -> bool:
        """Whether the pass wrote anything to the index."""
        return bool(self.added or self.updated or self.removed or self.embedded)

    def summary(self) -> str:
        return (
            f"added={self.added} updated={self.updated} removed={self.removed} "
            f"unchanged={self.unchanged} failed={self.failed} "
            f"embedded={self.embedded} ({self.duration_ms:.1f}ms)"
        )
