"""
Graphon Index - the vault index and query engine for a local-first notes app.
This package keeps a SQLite knowledge base (relational rows, an FTS5 full-text
table and note embeddings) synchronized with a folder of plain-text notes, and
answers full-text, link-graph, related-notes, semantic and task queries over it.

This version uses synchronous operations with a background sync thread.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("graphon-index")
except PackageNotFoundError:
    __version__ = "0.3.0"
