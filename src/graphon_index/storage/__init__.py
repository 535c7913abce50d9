"""Storage layer for the Graphon index."""

from graphon_index.storage.embedding_repository import EmbeddingRepository
from graphon_index.storage.file_access import VaultFileAccess
from graphon_index.storage.file_repository import FileRepository
from graphon_index.storage.fts_index import FtsIndex
from graphon_index.storage.index_store import IndexStore
from graphon_index.storage.link_repository import LinkRepository
from graphon_index.storage.note_extractor import NoteExtractor
from graphon_index.storage.scanner import VaultScanner
from graphon_index.storage.todo_repository import TodoRepository

__all__ = [
    "EmbeddingRepository",
    "FileRepository",
    "FtsIndex",
    "IndexStore",
    "LinkRepository",
    "NoteExtractor",
    "TodoRepository",
    "VaultFileAccess",
    "VaultScanner",
]
