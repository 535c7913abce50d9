"""Exception hierarchy for the Graphon index.

Every error carries an ``ErrorCode`` and a ``details`` dict so that the MCP
server and the CLI can report it without parsing messages. The category of
the exception decides how far a failure reaches: ``ScanError`` aborts a sync
pass, while ``ExtractError`` and ``StoreError`` only cost one file.
"""
from enum import Enum
from typing import Any, Dict, Optional

_MAX_DETAIL_LENGTH = 200


class ErrorCode(Enum):
    """Machine-readable error codes, grouped by component."""

    # Scanner (1xxx)
    SCAN_ROOT_MISSING = 1001
    SCAN_DIRECTORY_UNREADABLE = 1002

    # Extractor (2xxx)
    EXTRACT_FAILED = 2001
    EXTRACT_DECODE_FAILED = 2002
    EXTRACT_READ_FAILED = 2003
    EXTRACT_EMBEDDING_FAILED = 2004

    # Index store (4xxx)
    STORAGE_WRITE_FAILED = 4001
    STORAGE_DELETE_FAILED = 4002
    SCHEMA_MIGRATION_FAILED = 4004

    # Query engine (5xxx)
    QUERY_FAILED = 5001
    SEMANTIC_UNAVAILABLE = 5003

    # Configuration (6xxx)
    CONFIG_INVALID = 6001

    # Input validation (7xxx)
    VALIDATION_FAILED = 7001
    PATH_TRAVERSAL_DETECTED = 7002

    # Embedding provider (8xxx)
    EMBEDDING_MODEL_LOAD_FAILED = 8001
    EMBEDDING_INFERENCE_FAILED = 8002
    EMBEDDING_TIMEOUT = 8003


def _details(original_error: Optional[BaseException] = None, **values: Any) -> Dict[str, Any]:
    """Build a details dict, dropping empty values and clipping long text."""
    details = {key: value for key, value in values.items() if value is not None and value != ""}
    if original_error is not None:
        details["original_error"] = str(original_error)[:_MAX_DETAIL_LENGTH]
    return details


class GraphonIndexError(Exception):
    """Base class for all Graphon index errors.

    Attributes:
        message: Human-readable message
        code: Machine-readable error code
        details: Extra context (paths, operation names, the underlying error)
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        text = f"[{self.code.name}] {self.message}"
        if not self.details:
            return text
        return f"{text} ({', '.join(f'{k}={v}' for k, v in self.details.items())})"


class ScanError(GraphonIndexError):
    """The vault (or a directory inside it) could not be listed.

    Fatal to the sync pass that hit it; nothing is deleted and the next
    trigger retries.
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.SCAN_DIRECTORY_UNREADABLE,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message, code=code, details=_details(original_error, path=path))
        self.path = path
        self.original_error = original_error


class ExtractError(GraphonIndexError):
    """One note could not be read, decoded or embedded; it is skipped this pass."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.EXTRACT_FAILED,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message, code=code, details=_details(original_error, path=path))
        self.path = path
        self.original_error = original_error


class StoreError(GraphonIndexError):
    """A write to the index database failed; the file's transaction was rolled back."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        file_id: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            code=code,
            details=_details(original_error, operation=operation, file_id=file_id),
        )
        self.operation = operation
        self.file_id = file_id
        self.original_error = original_error


class QueryError(GraphonIndexError):
    """A read-side query failed or its backing capability is unavailable."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.QUERY_FAILED,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            code=code,
            details=_details(original_error, query=query[:100] if query else None),
        )
        self.query = query
        self.original_error = original_error


class EmbeddingError(GraphonIndexError):
    """The embedding provider failed to load, infer or answer in time."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.EMBEDDING_INFERENCE_FAILED,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message, code=code, details=_details(original_error, operation=operation))
        self.operation = operation
        self.original_error = original_error


class ConfigurationError(GraphonIndexError):
    """Settings are unusable, e.g. the vault folder does not exist."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID
    ):
        super().__init__(message, code=code, details=_details(config_key=config_key))
        self.config_key = config_key


class ValidationError(GraphonIndexError):
    """Caller input was rejected."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        super().__init__(
            message,
            code=code,
            details=_details(field=field, value=str(value)[:100] if value is not None else None),
        )
        self.field = field
        self.value = value


class PathTraversalError(ValidationError):
    """A note path would resolve outside the vault root."""

    def __init__(self, path: str):
        super().__init__(
            f"Path escapes the vault root: {path}",
            field="path",
            value=path,
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
        )
        self.path = path
