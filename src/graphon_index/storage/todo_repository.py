"""Repository for task retrieval."""
import logging
from typing import List

from sqlalchemy import select

from graphon_index.models.db_models import DBFile, DBTodo, read_snapshot
from graphon_index.models.schema import TaskRecord
from graphon_index.storage.file_repository import FileRepository
from graphon_index.utils import note_stem

logger = logging.getLogger(__name__)


class TodoRepository:
    """Read access to the tasks of all indexed notes."""

    def __init__(self, session_factory, file_repository: FileRepository = None):
        self.session_factory = session_factory
        self.file_repository = file_repository or FileRepository(session_factory)

    def get_all(self) -> List[TaskRecord]:
        """Every task joined to its file, ordered by file path then position."""
        with read_snapshot(self.session_factory) as session:
            titles = self.file_repository.get_titles(session)
            rows = session.execute(
                select(DBTodo.id, DBTodo.content, DBTodo.completed, DBFile.id, DBFile.path)
                .join(DBFile, DBFile.id == DBTodo.file_id)
                .order_by(DBFile.path, DBTodo.position, DBTodo.id)
            )
            return [
                TaskRecord(
                    id=todo_id,
                    content=content,
                    completed=bool(completed),
                    file_path=path,
                    file_title=titles.get(file_id) or note_stem(path),
                )
                for todo_id, content, completed, file_id, path in rows
            ]
