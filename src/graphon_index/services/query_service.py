"""Query engine over the vault index.

Read-only: full-text search, the link graph with ghost nodes, related
notes and semantic search by embedding similarity, and task aggregation.
Queries run on their own pooled connections and never wait for a sync
pass (WAL readers see the last committed state).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np
from sqlalchemy.exc import SQLAlchemyError

from graphon_index.exceptions import EmbeddingError, ErrorCode, QueryError
from graphon_index.models.db_models import read_snapshot
from graphon_index.models.schema import (GraphData, GraphEdge, GraphNode,
                                         IndexedFile, ScoredNote, SearchHit,
                                         TaskRecord)
from graphon_index.observability import traced
from graphon_index.storage.embedding_repository import EmbeddingRepository
from graphon_index.storage.file_repository import FileRepository
from graphon_index.storage.fts_index import FtsIndex
from graphon_index.storage.link_repository import LinkRepository
from graphon_index.storage.todo_repository import TodoRepository
from graphon_index.utils import note_stem, strip_note_extension

if TYPE_CHECKING:
    from graphon_index.services.embedding_service import EmbeddingService

logger = logging.getLogger(__name__)

NodeClassifier = Callable[[GraphNode], str]

GHOST_GROUP = "ghost"
ROOT_GROUP = "root"


def folder_classifier(node: GraphNode) -> str:
    """Group real notes by top-level folder; ghosts get their own group."""
    if not node.exists:
        return GHOST_GROUP
    if "/" in node.path:
        return node.path.split("/", 1)[0]
    return ROOT_GROUP


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> Optional[float]:
    """dot(a, b) / (|a| |b|), or None when either vector has zero length."""
    norm = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if norm == 0.0:
        return None
    return float(np.dot(a, b) / norm)


def rank_by_similarity(
    query: np.ndarray,
    candidates: Iterable[Tuple[str, str, np.ndarray]],
    limit: int,
    exclude_id: Optional[str] = None,
) -> List[Tuple[str, str, float]]:
    """Rank (file_id, path, vector) candidates by cosine similarity to ``query``.

    Vectors of a different dimension are not comparable and are skipped.
    Ordering is score descending, then path ascending.
    """
    scored: List[Tuple[str, str, float]] = []
    for file_id, path, vector in candidates:
        if file_id == exclude_id or vector.shape != query.shape:
            continue
        score = cosine_similarity(query, vector)
        if score is not None:
            scored.append((file_id, path, score))
    scored.sort(key=lambda item: (-item[2], item[1]))
    return scored[:limit]


class QueryService:
    """Answers the UI's queries against the index.

    Args:
        session_factory: SQLAlchemy session factory.
        fts_index: Full-text index used by ``search``.
        embedding_service: Embeds free-text queries; None disables semantic search.
        classifier: Assigns each graph node its ``group``.
        search_limit: Maximum full-text hits.
        related_limit: Maximum related notes.
        semantic_limit: Maximum semantic search results.
    """

    def __init__(
        self,
        session_factory,
        fts_index: FtsIndex,
        embedding_service: Optional[EmbeddingService] = None,
        classifier: NodeClassifier = folder_classifier,
        search_limit: int = 20,
        related_limit: int = 5,
        semantic_limit: int = 10,
    ) -> None:
        self.session_factory = session_factory
        self.fts_index = fts_index
        self.embedding_service = embedding_service
        self.classifier = classifier
        self.search_limit = search_limit
        self.related_limit = related_limit
        self.semantic_limit = semantic_limit

        self.files = FileRepository(session_factory)
        self.links = LinkRepository(session_factory)
        self.todos = TodoRepository(session_factory, self.files)
        self.embeddings = EmbeddingRepository(session_factory)

    @traced("search")
    def search(self, query: str) -> List[SearchHit]:
        """Full-text search with highlighted snippets, best match first."""
        if not query or not query.strip():
            return []
        try:
            return self.fts_index.search(query, limit=self.search_limit)
        except QueryError as e:
            logger.warning(f"Search failed for '{query}': {e}")
            return []

    @traced("graph")
    def graph(self) -> GraphData:
        """Build the link graph.

        Every indexed file is a node. Its id is the path without extension,
        or the full path when another file shares that extensionless path
        (``A.md`` and ``A.txt``). A link target that matches no file is a
        ghost node. Targets match case-insensitively against a file's path
        without extension, its full path, or its file name without extension,
        in that order of preference; among several matches the first path in
        sorted order wins.
        """
        try:
            with read_snapshot(self.session_factory) as session:
                files = self.files.get_all(session)
                links = self.links.get_all(session)
        except SQLAlchemyError as e:
            logger.error(f"Graph query failed: {e}")
            return GraphData()

        shared: Dict[str, int] = {}
        for indexed in files:
            key = strip_note_extension(indexed.path)
            shared[key] = shared.get(key, 0) + 1

        nodes: Dict[str, GraphNode] = {}
        node_by_file: Dict[str, str] = {}
        by_path_no_ext: Dict[str, str] = {}
        by_path: Dict[str, str] = {}
        by_stem: Dict[str, str] = {}
        for indexed in files:
            without_ext = strip_note_extension(indexed.path)
            node_id = indexed.path if shared[without_ext] > 1 else without_ext
            nodes[node_id] = GraphNode(
                id=node_id, title=indexed.title, path=indexed.path, exists=True
            )
            node_by_file[indexed.id] = node_id
            by_path_no_ext.setdefault(without_ext.lower(), node_id)
            by_path.setdefault(indexed.path.lower(), node_id)
            by_stem.setdefault(note_stem(indexed.path).lower(), node_id)

        ghosts: Dict[str, str] = {}
        edges: Dict[Tuple[str, str], None] = {}
        for source_file_id, target in links:
            source = node_by_file.get(source_file_id)
            if source is None:
                continue
            key = target.lower()
            resolved = by_path_no_ext.get(key) or by_path.get(key) or by_stem.get(key)
            if resolved is None:
                # Ghost spellings differing only in case collapse to the first seen
                resolved = ghosts.setdefault(key, target)
                if resolved not in nodes:
                    nodes[resolved] = GraphNode(
                        id=resolved, title=resolved, path="", exists=False
                    )
            if resolved == source:
                continue
            edges[(source, resolved)] = None

        degree: Dict[str, int] = {}
        for source, target in edges:
            degree[source] = degree.get(source, 0) + 1
            degree[target] = degree.get(target, 0) + 1

        result_nodes = []
        for node in nodes.values():
            node = node.model_copy(update={"link_count": degree.get(node.id, 0)})
            result_nodes.append(node.model_copy(update={"group": self.classifier(node)}))

        return GraphData(
            nodes=result_nodes,
            edges=[GraphEdge(source=s, target=t) for s, t in edges],
        )

    @traced("related_notes")
    def related_notes(self, path: str) -> List[ScoredNote]:
        """Notes whose embeddings are closest to the note at ``path``.

        Returns [] when the note is unknown or has no embedding.
        """
        try:
            indexed = self.files.get_by_path(path)
            if indexed is None:
                return []
            vector = self.embeddings.get_vector(indexed.id)
            if vector is None:
                return []
            ranked = rank_by_similarity(
                vector, self.embeddings.get_all(), self.related_limit, exclude_id=indexed.id
            )
            return self._scored_notes(ranked)
        except SQLAlchemyError as e:
            logger.error(f"Related notes query failed for {path}: {e}")
            return []

    @traced("semantic_search")
    def semantic_search(self, query: str) -> List[ScoredNote]:
        """Rank embedded notes by similarity to a free-text query.

        Raises:
            QueryError: If no embedding service is configured, or the
                provider fails or times out.
        """
        if not query or not query.strip():
            return []
        if self.embedding_service is None:
            raise QueryError(
                "Semantic search is not available: embeddings are disabled",
                query=query,
                code=ErrorCode.SEMANTIC_UNAVAILABLE,
            )
        try:
            query_vector = np.asarray(self.embedding_service.embed(query), dtype=np.float32)
        except EmbeddingError as e:
            raise QueryError(
                f"Semantic search failed: {e.message}",
                query=query,
                code=(
                    ErrorCode.SEMANTIC_UNAVAILABLE
                    if e.code == ErrorCode.EMBEDDING_MODEL_LOAD_FAILED
                    else ErrorCode.QUERY_FAILED
                ),
                original_error=e,
            ) from e

        try:
            ranked = rank_by_similarity(
                query_vector, self.embeddings.get_all(), self.semantic_limit
            )
            return self._scored_notes(ranked)
        except SQLAlchemyError as e:
            raise QueryError(
                f"Semantic search failed: {e}",
                query=query,
                code=ErrorCode.QUERY_FAILED,
                original_error=e,
            ) from e

    @traced("get_all_tasks")
    def get_all_tasks(self) -> List[TaskRecord]:
        """Every task of every note, ordered by note path then position."""
        try:
            return self.todos.get_all()
        except SQLAlchemyError as e:
            logger.error(f"Task query failed: {e}")
            return []

    def _scored_notes(self, ranked: List[Tuple[str, str, float]]) -> List[ScoredNote]:
        titles = self.files.get_titles()
        return [
            ScoredNote(
                id=file_id,
                title=titles.get(file_id) or note_stem(path),
                path=path,
                score=score,
            )
            for file_id, path, score in ranked
        ]

    def list_indexed(self) -> List[IndexedFile]:
        return self.files.get_all()
