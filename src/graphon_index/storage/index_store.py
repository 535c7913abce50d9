"""Index store: atomic per-file writes to the vault index."""
import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from graphon_index.exceptions import ErrorCode, StoreError
from graphon_index.models.db_models import DBFile, DBLink, DBNoteEmbedding, DBTodo
from graphon_index.models.schema import FileMetadata, NoteUpdate, TaskItem, utc_now
from graphon_index.storage.fts_index import FtsIndex

logger = logging.getLogger(__name__)


def vector_to_blob(vector: np.ndarray) -> bytes:
    """Serialize an embedding as little-endian float32 bytes."""
    return np.asarray(vector, dtype="<f4").tobytes()


def blob_to_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype="<f4")


class IndexStore:
    """Write side of the index.

    Every operation accepts an optional ``session``. Without one it runs in
    its own transaction; with one the caller owns commit and rollback, which
    is how ``apply_note`` groups a file's writes into a single transaction.
    """

    def __init__(self, engine, session_factory, fts_index: Optional[FtsIndex] = None):
        self.engine = engine
        self.session_factory = session_factory
        self.fts_index = fts_index or FtsIndex(engine, session_factory)

    @contextmanager
    def _transaction(
        self,
        session: Optional[Session],
        operation: str,
        file_id: Optional[str] = None,
    ) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        with self.session_factory() as own:
            try:
                yield own
                own.commit()
            except SQLAlchemyError as e:
                own.rollback()
                raise StoreError(
                    f"{operation} failed: {e}",
                    operation=operation,
                    file_id=file_id,
                    code=(
                        ErrorCode.STORAGE_DELETE_FAILED
                        if operation.startswith("delete")
                        else ErrorCode.STORAGE_WRITE_FAILED
                    ),
                    original_error=e,
                ) from e

    # ------------------------------------------------------------------
    # Per-file operations
    # ------------------------------------------------------------------

    def upsert_file(
        self, metadata: FileMetadata, checksum: str, session: Optional[Session] = None
    ) -> bool:
        """Insert or update a file row.

        Returns:
            True if the row was inserted or its checksum changed, False if
            the stored checksum already matches (nothing is written).
        """
        with self._transaction(session, "upsert_file", metadata.id) as s:
            db_file = s.get(DBFile, metadata.id)
            if db_file is None:
                s.add(DBFile(
                    id=metadata.id,
                    path=metadata.path,
                    checksum=checksum,
                    created_at=metadata.created_at,
                    updated_at=metadata.updated_at,
                ))
                s.flush()
                return True
            if db_file.checksum == checksum and db_file.path == metadata.path:
                return False
            db_file.checksum = checksum
            db_file.path = metadata.path
            db_file.updated_at = metadata.updated_at
            s.flush()
            return True

    def replace_links(
        self, file_id: str, targets: Sequence[str], session: Optional[Session] = None
    ) -> None:
        with self._transaction(session, "replace_links", file_id) as s:
            s.execute(delete(DBLink).where(DBLink.source_file_id == file_id))
            for target in dict.fromkeys(targets):
                s.add(DBLink(source_file_id=file_id, target_identifier=target))
            s.flush()

    def replace_todos(
        self, file_id: str, todos: Sequence[TaskItem], session: Optional[Session] = None
    ) -> None:
        with self._transaction(session, "replace_todos", file_id) as s:
            s.execute(delete(DBTodo).where(DBTodo.file_id == file_id))
            now = utc_now()
            for position, todo in enumerate(todos):
                s.add(DBTodo(
                    file_id=file_id,
                    content=todo.content,
                    completed=todo.completed,
                    position=position,
                    created_at=now,
                ))
            s.flush()

    def upsert_embedding(
        self,
        file_id: str,
        vector: np.ndarray,
        model_name: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> None:
        """Store a file's embedding, replacing any previous one."""
        blob = vector_to_blob(vector)
        with self._transaction(session, "upsert_embedding", file_id) as s:
            s.merge(DBNoteEmbedding(
                file_id=file_id,
                vector=blob,
                dimension=len(blob) // 4,
                model_name=model_name,
                updated_at=utc_now(),
            ))
            s.flush()

    def upsert_embedding_if_current(
        self,
        file_id: str,
        checksum: str,
        vector: np.ndarray,
        model_name: Optional[str] = None,
    ) -> bool:
        """Store an embedding computed outside a sync pass.

        The write happens only if the file still has ``checksum``; a file
        that changed (or vanished) since the vector was computed is left alone.
        """
        with self._transaction(None, "upsert_embedding", file_id) as s:
            current = s.scalar(select(DBFile.checksum).where(DBFile.id == file_id))
            if current != checksum:
                return False
            self.upsert_embedding(file_id, vector, model_name, session=s)
            return True

    def delete_embedding(self, file_id: str, session: Optional[Session] = None) -> None:
        with self._transaction(session, "delete_embedding", file_id) as s:
            s.execute(delete(DBNoteEmbedding).where(DBNoteEmbedding.file_id == file_id))

    def replace_search_record(
        self,
        file_id: str,
        path: str,
        title: str,
        content: str,
        session: Optional[Session] = None,
    ) -> None:
        with self._transaction(session, "replace_search_record", file_id) as s:
            self.fts_index.replace(s, file_id, path, title, content)

    def delete_file(self, file_id: str, session: Optional[Session] = None) -> bool:
        """Delete a file and everything derived from it.

        Links, todos and the embedding go through ON DELETE CASCADE; the
        search record lives in an FTS table and is deleted explicitly.

        Returns:
            True if a file row was deleted.
        """
        with self._transaction(session, "delete_file", file_id) as s:
            self.fts_index.delete(s, file_id)
            result = s.execute(delete(DBFile).where(DBFile.id == file_id))
            return bool(result.rowcount)

    def apply_note(self, update: NoteUpdate) -> bool:
        """Write all rows of one file's content change in one transaction.

        Returns:
            False if the stored checksum already matched (no writes).

        Raises:
            StoreError: The whole update is rolled back.
        """
        file_id = update.metadata.id
        with self._transaction(None, "apply_note", file_id) as s:
            if not self.upsert_file(update.metadata, update.checksum, session=s):
                return False
            extracted = update.extracted
            self.replace_links(file_id, extracted.links, session=s)
            self.replace_todos(file_id, extracted.tasks, session=s)
            self.replace_search_record(
                file_id, update.metadata.path, extracted.title, extracted.content, session=s
            )
            if update.embedding is not None:
                self.upsert_embedding(
                    file_id, update.embedding, update.embedding_model, session=s
                )
            elif update.drop_embedding:
                self.delete_embedding(file_id, session=s)
        logger.debug(
            f"Indexed {update.metadata.path}: {len(update.extracted.links)} links, "
            f"{len(update.extracted.tasks)} tasks"
        )
        return True

    # ------------------------------------------------------------------
    # Bookkeeping reads used by the sync coordinator
    # ------------------------------------------------------------------

    def get_checksums(self) -> Dict[str, Tuple[str, str]]:
        """Map every indexed path to its (file_id, checksum)."""
        with self.session_factory() as session:
            rows = session.execute(select(DBFile.path, DBFile.id, DBFile.checksum))
            return {path: (file_id, checksum) for path, file_id, checksum in rows}

    def get_checksum(self, file_id: str) -> Optional[str]:
        with self.session_factory() as session:
            return session.scalar(select(DBFile.checksum).where(DBFile.id == file_id))

    def count_files(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count()).select_from(DBFile)) or 0

    def files_without_embedding(self) -> List[Tuple[str, str, str]]:
        """(file_id, path, checksum) of files that have no embedding, by path."""
        with self.session_factory() as session:
            rows = session.execute(
                select(DBFile.id, DBFile.path, DBFile.checksum)
                .outerjoin(DBNoteEmbedding, DBNoteEmbedding.file_id == DBFile.id)
                .where(DBNoteEmbedding.file_id.is_(None))
                .order_by(DBFile.path)
            )
            return [tuple(row) for row in rows]
