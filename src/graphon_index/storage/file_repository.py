"""Repository for reading indexed files."""
import logging
from typing import Dict, List, Optional

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from graphon_index.models.db_models import DBFile
from graphon_index.models.schema import IndexedFile
from graphon_index.utils import note_stem

logger = logging.getLogger(__name__)


class FileRepository:
    """Read access to indexed files and their titles.

    Titles live in the full-text table; a file without a search record
    falls back to its file name. Methods taking ``session`` read inside the
    caller's session (e.g. one ``read_snapshot``) instead of opening their own.
    """

    def __init__(self, session_factory):
        """Initialize the file repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    def get_titles(self, session: Optional[Session] = None) -> Dict[str, str]:
        """Map file ID to title for every search record."""
        if session is None:
            with self.session_factory() as session:
                return self.get_titles(session)
        rows = session.execute(text("SELECT id, title FROM notes_fts"))
        return {file_id: title for file_id, title in rows}

    def get_all(self, session: Optional[Session] = None) -> List[IndexedFile]:
        """All indexed files ordered by path."""
        if session is None:
            with self.session_factory() as session:
                return self.get_all(session)
        titles = self.get_titles(session)
        rows = session.execute(select(DBFile.id, DBFile.path).order_by(DBFile.path))
        return [
            IndexedFile(id=file_id, path=path, title=titles.get(file_id) or note_stem(path))
            for file_id, path in rows
        ]

    def get_by_path(self, path: str) -> Optional[IndexedFile]:
        with self.session_factory() as session:
            file_id = session.scalar(select(DBFile.id).where(DBFile.path == path))
            if file_id is None:
                return None
            title = session.execute(
                text("SELECT title FROM notes_fts WHERE id = :id"), {"id": file_id}
            ).scalar()
        return IndexedFile(id=file_id, path=path, title=title or note_stem(path))
