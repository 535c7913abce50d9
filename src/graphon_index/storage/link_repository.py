"""Repository for link retrieval."""
import logging
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from graphon_index.models.db_models import DBFile, DBLink

logger = logging.getLogger(__name__)


class LinkRepository:
    """Read access to wiki-links between files.

    Link targets are stored as written in the note and may name a note
    that does not exist. Writes go through the IndexStore.
    """

    def __init__(self, session_factory):
        """Initialize the link repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    def get_all(self, session: Optional[Session] = None) -> List[Tuple[str, str]]:
        """Every link as (source file ID, target identifier), ordered by source path."""
        if session is None:
            with self.session_factory() as session:
                return self.get_all(session)
        rows = session.execute(
            select(DBLink.source_file_id, DBLink.target_identifier)
            .join(DBFile, DBFile.id == DBLink.source_file_id)
            .order_by(DBFile.path, DBLink.target_identifier)
        )
        return [(source, target) for source, target in rows]

    def get_outgoing(self, file_id: str) -> List[str]:
        """Get the link targets of a file.

        Args:
            file_id: The source file ID.

        Returns:
            Target identifiers in alphabetical order.
        """
        with self.session_factory() as session:
            return list(session.scalars(
                select(DBLink.target_identifier)
                .where(DBLink.source_file_id == file_id)
                .order_by(DBLink.target_identifier)
            ))

    def count(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count()).select_from(DBLink)) or 0
