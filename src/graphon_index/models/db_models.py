"""SQLAlchemy database models and schema management for the Graphon index."""
import datetime
import logging
from contextlib import contextmanager
from typing import Callable, Iterator, List, Tuple

from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Integer,
                        LargeBinary, String, Text, create_engine, event, inspect,
                        text)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool

from graphon_index.exceptions import ErrorCode, StoreError
from graphon_index.models.schema import utc_now

logger = logging.getLogger(__name__)

# Create base class for SQLAlchemy models
Base = declarative_base()


class DBFile(Base):
    """Database model for an indexed note file."""
    __tablename__ = "files"
    id = Column(String(16), primary_key=True)
    path = Column(String(1024), unique=True, nullable=False, index=True)
    checksum = Column(String(32), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    # Relationships; rows are removed by ON DELETE CASCADE in the database
    links = relationship("DBLink", back_populates="source", passive_deletes=True)
    todos = relationship(
        "DBTodo", back_populates="file", passive_deletes=True,
        order_by="DBTodo.position",
    )
    embedding = relationship(
        "DBNoteEmbedding", back_populates="file", passive_deletes=True,
        uselist=False,
    )

    def __repr__(self) -> str:
        """Return string representation of file."""
        return f"<File(id='{self.id}', path='{self.path}')>"


class DBLink(Base):
    """A wiki-link from a file to a target that may not resolve."""
    __tablename__ = "links"
    source_file_id = Column(
        String(16), ForeignKey("files.id", ondelete="CASCADE"),
        primary_key=True, index=True,
    )
    target_identifier = Column(String(1024), primary_key=True)

    source = relationship("DBFile", back_populates="links")

    def __repr__(self) -> str:
        return f"<Link(source='{self.source_file_id}', target='{self.target_identifier}')>"


class DBTodo(Base):
    """A checkbox task found in a file."""
    __tablename__ = "todos"
    id = Column(Integer, primary_key=True, autoincrement=True)
    file_id = Column(
        String(16), ForeignKey("files.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    content = Column(Text, nullable=False)
    completed = Column(Boolean, nullable=False, default=False)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    file = relationship("DBFile", back_populates="todos")

    def __repr__(self) -> str:
        return f"<Todo(id={self.id}, file='{self.file_id}', completed={self.completed})>"


class DBNoteEmbedding(Base):
    """The embedding vector of a file, stored as little-endian float32 bytes."""
    __tablename__ = "note_embeddings"
    file_id = Column(
        String(16), ForeignKey("files.id", ondelete="CASCADE"), primary_key=True,
    )
    vector = Column(LargeBinary, nullable=False)
    dimension = Column(Integer, nullable=True)
    model_name = Column(String(255), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, nullable=True)

    file = relationship("DBFile", back_populates="embedding")

    def __repr__(self) -> str:
        return f"<NoteEmbedding(file='{self.file_id}', dimension={self.dimension})>"


class DBSchemaVersion(Base):
    """Single-row record of the applied schema version."""
    __tablename__ = "schema_version"
    version = Column(Integer, primary_key=True)
    applied_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)


_BASE_TABLES = [
    DBFile.__table__,
    DBLink.__table__,
    DBTodo.__table__,
    DBNoteEmbedding.__table__,
]


def _column_names(conn: Connection, table: str) -> List[str]:
    return [col["name"] for col in inspect(conn).get_columns(table)]


def _add_missing_columns(conn: Connection, table: str, columns: List[Tuple[str, str]]) -> None:
    """Add columns that a legacy table lacks.

    SQLite doesn't support IF NOT EXISTS for ADD COLUMN, so we check
    the schema first. Safe to run multiple times.
    """
    existing = _column_names(conn, table)
    for name, ddl in columns:
        if name not in existing:
            logger.info(f"Adding column {table}.{name}")
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))


def _migrate_base_tables(conn: Connection) -> None:
    """Migration 1: files, links, todos, note_embeddings."""
    Base.metadata.create_all(conn, tables=_BASE_TABLES)


def _migrate_search_table(conn: Connection) -> None:
    """Migration 2: the FTS5 table backing full-text search.

    A legacy ``notes_fts`` without the ``id`` column cannot be updated per
    file; it is dropped and recreated.
    """
    if inspect(conn).has_table("notes_fts"):
        columns = [row[1] for row in conn.execute(text("PRAGMA table_info(notes_fts)"))]
        if "id" in columns:
            return
        logger.warning("Dropping legacy notes_fts table without id column")
        conn.execute(text("DROP TABLE notes_fts"))
    _create_search_table(conn)


def _migrate_todo_position(conn: Connection) -> None:
    """Migration 3: ordinal of each task within its note."""
    _add_missing_columns(conn, "todos", [
        ("position", "INTEGER NOT NULL DEFAULT 0"),
    ])


def _migrate_embedding_metadata(conn: Connection) -> None:
    """Migration 4: dimension and model of stored embeddings."""
    _add_missing_columns(conn, "note_embeddings", [
        ("dimension", "INTEGER"),
        ("model_name", "VARCHAR(255)"),
        ("updated_at", "DATETIME"),
    ])
    conn.execute(text(
        "UPDATE note_embeddings SET dimension = length(vector) / 4 "
        "WHERE dimension IS NULL"
    ))


# Ordered schema steps: (version, description, step)
MIGRATIONS: List[Tuple[int, str, Callable[[Connection], None]]] = [
    (1, "base tables", _migrate_base_tables),
    (2, "full-text search table", _migrate_search_table),
    (3, "todo position column", _migrate_todo_position),
    (4, "embedding dimension and model columns", _migrate_embedding_metadata),
]

SCHEMA_VERSION = MIGRATIONS[-1][0]


def _create_search_table(conn: Connection) -> None:
    conn.execute(text("""
        CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts USING fts5(
            id UNINDEXED,
            path,
            title,
            content
        )
    """))
    # Files indexed before the table existed have no search record; clearing
    # their checksum makes the next sync pass re-extract them.
    if inspect(conn).has_table("files"):
        conn.execute(text("UPDATE files SET checksum = ''"))


def get_schema_version(conn: Connection) -> int:
    """Return the applied schema version, 0 for a new or legacy database."""
    if not inspect(conn).has_table("schema_version"):
        return 0
    return conn.execute(text("SELECT MAX(version) FROM schema_version")).scalar() or 0


def run_migrations(engine: Engine) -> int:
    """Apply every pending migration step in order.

    A database with tables but no version record is treated as legacy and
    runs every step; each step tolerates already-present objects.

    Returns:
        The schema version after migrating.

    Raises:
        StoreError: If a step fails. Later steps are not attempted.
    """
    with engine.connect() as conn:
        current = get_schema_version(conn)
        if current == 0 and inspect(conn).has_table("files"):
            logger.info("Legacy index database detected, upgrading schema")

    for version, description, step in MIGRATIONS:
        if version <= current:
            continue
        try:
            with engine.begin() as conn:
                step(conn)
                DBSchemaVersion.__table__.create(conn, checkfirst=True)
                conn.execute(text("DELETE FROM schema_version"))
                conn.execute(
                    DBSchemaVersion.__table__.insert().values(
                        version=version, applied_at=utc_now()
                    )
                )
        except SQLAlchemyError as e:
            raise StoreError(
                f"Schema migration {version} ({description}) failed: {e}",
                operation="migrate",
                code=ErrorCode.SCHEMA_MIGRATION_FAILED,
                original_error=e,
            ) from e
        logger.info(f"Applied schema migration {version}: {description}")
        current = version
    return current


def init_db(db_url: str) -> Engine:
    """Create the engine for a vault's index and bring its schema up to date.

    Applies SQLite settings for crash resilience and concurrent reads:
    - WAL (Write-Ahead Logging) so readers never block on the sync writer
    - NORMAL synchronous mode (good balance of safety vs speed)
    - foreign keys enforced so derived rows cascade with their file
    - busy timeout instead of immediate "database is locked" errors
    - QueuePool with pre-ping to detect stale connections
    """
    # SQLite is single-writer, so a small pool is ideal
    engine = create_engine(
        db_url,
        poolclass=QueuePool,
        pool_size=5,           # Base pool size (concurrent reads)
        max_overflow=10,       # Allow up to 15 total connections under load
        pool_timeout=30,       # Wait up to 30s for a connection
        pool_recycle=3600,     # Recycle connections after 1 hour
        pool_pre_ping=True,    # Validate connections before use
        connect_args={"check_same_thread": False},
    )

    # Apply WAL mode and other PRAGMA settings on every connection
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        # Negative = KB
        cursor.execute("PRAGMA cache_size=-64000")
        cursor.close()

    run_migrations(engine)
    return engine


def reset_search_table(engine: Engine) -> None:
    """Drop and recreate the FTS5 table.

    Every file loses its search record and its checksum, so the next sync
    pass rebuilds the full-text index from the notes on disk.
    """
    with engine.begin() as conn:
        conn.execute(text("DROP TABLE IF EXISTS notes_fts"))
        _create_search_table(conn)
    logger.info("Full-text search table recreated; files will be re-indexed")


def get_session_factory(engine: Engine):
    """Get a session factory for the database."""
    return sessionmaker(bind=engine)


@contextmanager
def read_snapshot(session_factory) -> Iterator[Session]:
    """Session whose queries all see the same committed state.

    pysqlite does not open a transaction for SELECT statements, so the read
    transaction is started with an explicit BEGIN. A sync pass committing in
    the meantime is invisible until the session closes.
    """
    with session_factory() as session:
        session.connection().exec_driver_sql("BEGIN")
        try:
            yield session
        finally:
            session.rollback()
