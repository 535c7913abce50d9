"""FTS5 full-text search index for vault notes.

Encapsulates search record maintenance, FTS5 querying, graceful
degradation to LIKE scans, and recovery from a corrupted FTS table.
"""
import logging
import re
import sqlite3
from typing import Any, Callable, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError
from sqlalchemy.orm import Session

from graphon_index.exceptions import ErrorCode, QueryError
from graphon_index.models.db_models import reset_search_table
from graphon_index.models.schema import SearchHit
from graphon_index.utils import escape_like_pattern

logger = logging.getLogger(__name__)

# Characters with meaning in FTS5 query syntax
FTS_SPECIAL_CHARS = re.compile(r'[*":()^{}\[\]+\-]')

HIGHLIGHT_OPEN = "<b>"
HIGHLIGHT_CLOSE = "</b>"
SNIPPET_ELLIPSIS = "..."
SNIPPET_TOKENS = 10


def query_terms(query: str) -> List[str]:
    """Split a user query into plain words with FTS5 syntax removed."""
    return FTS_SPECIAL_CHARS.sub(" ", query or "").split()


def build_match_query(query: str) -> str:
    """Turn user input into an FTS5 MATCH expression.

    Each word becomes a quoted prefix term and the terms are ANDed:
    ``milk (fresh)`` -> ``"milk"* "fresh"*``. Returns "" for queries that
    have no words left.
    """
    return " ".join(f'"{term}"*' for term in query_terms(query))


def make_snippet(content: str, terms: List[str], tokens: int = SNIPPET_TOKENS) -> str:
    """Build a highlight around the first term occurrence.

    Approximates FTS5 ``snippet()`` for the LIKE fallback path.
    """
    words = content.split()
    lowered = [t.lower() for t in terms]
    for index, word in enumerate(words):
        if any(t in word.lower() for t in lowered):
            start = max(0, index - tokens // 2)
            end = min(len(words), start + tokens)
            window = [
                f"{HIGHLIGHT_OPEN}{w}{HIGHLIGHT_CLOSE}"
                if any(t in w.lower() for t in lowered) else w
                for w in words[start:end]
            ]
            prefix = SNIPPET_ELLIPSIS if start > 0 else ""
            suffix = SNIPPET_ELLIPSIS if end < len(words) else ""
            return f"{prefix}{' '.join(window)}{suffix}"
    return ""


class FtsIndex:
    """FTS5 full-text search index with graceful degradation.

    Args:
        engine: SQLAlchemy engine used for database access.
        session_factory: Callable returning a context-manager session.
        on_reset: Called after the FTS table had to be recreated, so the
            owner can schedule a re-index.
    """

    def __init__(
        self,
        engine: Any,
        session_factory: Callable,
        on_reset: Optional[Callable[[], None]] = None,
    ) -> None:
        self.engine = engine
        self._session_factory = session_factory
        self.on_reset = on_reset
        self.available: bool = True

    # ------------------------------------------------------------------
    # Search records
    # ------------------------------------------------------------------

    @staticmethod
    def replace(session: Session, file_id: str, path: str, title: str, content: str) -> None:
        """Replace the search record of a file (delete + insert)."""
        session.execute(text("DELETE FROM notes_fts WHERE id = :id"), {"id": file_id})
        session.execute(
            text(
                "INSERT INTO notes_fts (id, path, title, content) "
                "VALUES (:id, :path, :title, :content)"
            ),
            {"id": file_id, "path": path, "title": title, "content": content},
        )

    @staticmethod
    def delete(session: Session, file_id: str) -> None:
        session.execute(text("DELETE FROM notes_fts WHERE id = :id"), {"id": file_id})

    def count(self) -> int:
        with self._session_factory() as session:
            return session.execute(text("SELECT COUNT(*) FROM notes_fts")).scalar() or 0

    # ------------------------------------------------------------------
    # Public query API
    # ------------------------------------------------------------------

    def search(self, query: str, limit: int = 20) -> List[SearchHit]:
        """Full-text search over path, title and content.

        Args:
            query: Free text typed by the user; FTS5 syntax is neutralized.
            limit: Maximum results.

        Returns:
            Hits ordered by BM25 relevance (best first), each with a
            ``<b>``-highlighted snippet.
        """
        match_query = build_match_query(query)
        if not match_query:
            return []

        if not self.available:
            logger.debug("FTS5 unavailable, using fallback search")
            return self._fallback_text_search(query, limit)

        sql = text(f"""
            SELECT
                id, title, path,
                bm25(notes_fts) AS rank,
                snippet(notes_fts, 3, '{HIGHLIGHT_OPEN}', '{HIGHLIGHT_CLOSE}',
                        '{SNIPPET_ELLIPSIS}', {SNIPPET_TOKENS}) AS snippet
            FROM notes_fts
            WHERE notes_fts MATCH :query
            ORDER BY rank
            LIMIT :limit
        """)

        hits: List[SearchHit] = []
        with self._session_factory() as session:
            try:
                result = session.execute(sql, {"query": match_query, "limit": limit})
                for row in result.fetchall():
                    snippet = row[4] or ""
                    hits.append(SearchHit(
                        id=row[0],
                        title=row[1],
                        path=row[2],
                        highlight=snippet if HIGHLIGHT_OPEN in snippet else row[1],
                        score=-float(row[3]),
                    ))

            except (sqlite3.OperationalError, SQLAlchemyOperationalError) as e:
                logger.warning(
                    f"FTS5 query failed for '{query}': {e}. Using fallback search."
                )
                return self._fallback_text_search(query, limit)

            except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
                error_msg = str(e).lower()
                if "malformed" in error_msg or "corrupt" in error_msg:
                    logger.error(
                        f"FTS5 corruption detected: {e}. Recreating search table..."
                    )
                    if not self._attempt_recovery():
                        logger.error(
                            "FTS5 recovery failed. Disabling FTS5 for this session."
                        )
                        self.available = False
                    return []
                logger.error(f"FTS5 database error: {e}. Using fallback search.")
                return self._fallback_text_search(query, limit)

        return hits

    # ------------------------------------------------------------------
    # Fallback & recovery
    # ------------------------------------------------------------------

    def _fallback_text_search(self, query: str, limit: int = 20) -> List[SearchHit]:
        """LIKE-based fallback when the FTS5 MATCH path fails."""
        terms = query_terms(query)
        clauses = []
        params: dict = {"limit": limit}
        for i, term in enumerate(terms):
            params[f"t{i}"] = f"%{escape_like_pattern(term)}%"
            clauses.append(
                f"(title LIKE :t{i} ESCAPE '\\' OR content LIKE :t{i} ESCAPE '\\' "
                f"OR path LIKE :t{i} ESCAPE '\\')"
            )
        sql = text(f"""
            SELECT id, title, path, content
            FROM notes_fts
            WHERE {' AND '.join(clauses)}
            ORDER BY path
            LIMIT :limit
        """)

        hits: List[SearchHit] = []
        try:
            with self._session_factory() as session:
                for row in session.execute(sql, params).fetchall():
                    title = row[1] or ""
                    title_match = any(t.lower() in title.lower() for t in terms)
                    snippet = make_snippet(row[3] or "", terms)
                    hits.append(SearchHit(
                        id=row[0],
                        title=title,
                        path=row[2],
                        highlight=snippet or title,
                        score=2.0 if title_match else 1.0,
                    ))
        except SQLAlchemyDatabaseError as e:
            raise QueryError(
                f"Fallback text search failed: {e}",
                query=query,
                code=ErrorCode.QUERY_FAILED,
                original_error=e,
            ) from e

        hits.sort(key=lambda h: -h.score)
        logger.debug(
            f"Fallback search returned {len(hits)} results for query '{query}'"
        )
        return hits

    def _attempt_recovery(self) -> bool:
        """Recreate the FTS table and ask the owner to re-index."""
        try:
            reset_search_table(self.engine)
        except SQLAlchemyDatabaseError as e:
            logger.error(f"FTS5 rebuild failed: {e}")
            return False
        if self.on_reset is not None:
            self.on_reset()
        return True
