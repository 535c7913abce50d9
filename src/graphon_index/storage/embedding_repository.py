"""Repository for stored note embeddings."""
import logging
from typing import List, Optional, Tuple

import numpy as np
from sqlalchemy import func, select

from graphon_index.models.db_models import DBFile, DBNoteEmbedding
from graphon_index.storage.index_store import blob_to_vector

logger = logging.getLogger(__name__)


class EmbeddingRepository:
    """Read access to note embeddings for similarity ranking."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get_vector(self, file_id: str) -> Optional[np.ndarray]:
        with self.session_factory() as session:
            blob = session.scalar(
                select(DBNoteEmbedding.vector).where(DBNoteEmbedding.file_id == file_id)
            )
        return None if blob is None else blob_to_vector(blob)

    def get_all(self) -> List[Tuple[str, str, np.ndarray]]:
        """(file_id, path, vector) for every embedded file, ordered by path."""
        with self.session_factory() as session:
            rows = session.execute(
                select(DBFile.id, DBFile.path, DBNoteEmbedding.vector)
                .join(DBNoteEmbedding, DBNoteEmbedding.file_id == DBFile.id)
                .order_by(DBFile.path)
            )
            return [(file_id, path, blob_to_vector(blob)) for file_id, path, blob in rows]

    def count(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count()).select_from(DBNoteEmbedding)) or 0
