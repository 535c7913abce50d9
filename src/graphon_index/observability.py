"""Logging setup and in-process operation metrics for the Graphon index.

Sync passes, queries and MCP tool calls run inside ``timed_operation`` (or a
``@traced`` method). Each run is logged at DEBUG level with a short
correlation ID and folded into the process-wide ``metrics`` collector, whose
summary is reported by the ``status`` command.
"""
import functools
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

ROOT_LOGGER_NAME = "graphon_index"
LOG_FILE_NAME = "graphon-index.log"
DEFAULT_LOG_DIR = Path.home() / ".graphon" / "logs"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

F = TypeVar("F", bound=Callable[..., Any])


def _has_handler(target: logging.Logger, kind: type) -> bool:
    for handler in target.handlers:
        if kind is logging.StreamHandler and isinstance(handler, logging.FileHandler):
            continue
        if isinstance(handler, kind):
            return True
    return False


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Attach a rotating log file (and optionally stderr) to the package logger.

    Calling it again does not stack duplicate handlers; only the level is
    updated.

    Args:
        log_dir: Directory for ``graphon-index.log``. Defaults to ~/.graphon/logs/
        level: Logging level for the ``graphon_index`` logger hierarchy
        max_bytes: Size at which the log file is rotated
        backup_count: Number of rotated files kept
        console: Also log to stderr

    Returns:
        The log directory in use
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / LOG_FILE_NAME

    package_logger = logging.getLogger(ROOT_LOGGER_NAME)
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    new_handlers = []
    if not _has_handler(package_logger, RotatingFileHandler):
        new_handlers.append(RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        ))
    if console and not _has_handler(package_logger, logging.StreamHandler):
        # Defaults to stderr; stdout belongs to the MCP stdio transport
        new_handlers.append(logging.StreamHandler())
    for handler in new_handlers:
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
    for handler in package_logger.handlers:
        handler.setLevel(level)

    package_logger.info(f"Logging to {log_file} (rotate at {max_bytes} bytes, keep {backup_count})")
    return log_path


@dataclass
class OperationStats:
    """Running totals for one named operation."""
    count: int = 0
    errors: int = 0
    total_ms: float = 0.0
    fastest_ms: Optional[float] = None
    slowest_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    def add(self, duration_ms: float, error: Optional[str]) -> None:
        self.count += 1
        self.total_ms += duration_ms
        if self.fastest_ms is None or duration_ms < self.fastest_ms:
            self.fastest_ms = duration_ms
        self.slowest_ms = max(self.slowest_ms, duration_ms)
        if error is not None:
            self.errors += 1
            self.last_error = error
            self.last_error_at = datetime.now(timezone.utc)

    def snapshot(self) -> Dict[str, Any]:
        successes = self.count - self.errors
        return {
            "count": self.count,
            "success_count": successes,
            "error_count": self.errors,
            "success_rate": successes / self.count if self.count else 0,
            "avg_duration_ms": round(self.total_ms / self.count, 2) if self.count else 0,
            "min_duration_ms": round(self.fastest_ms or 0.0, 2),
            "max_duration_ms": round(self.slowest_ms, 2),
            "last_error": self.last_error,
            "last_error_time": self.last_error_at.isoformat() if self.last_error_at else None,
        }


class MetricsCollector:
    """Thread-safe per-operation timings and error counts.

    Operation names are free-form: the sync coordinator records
    ``sync_pass``, the query engine ``search``, ``graph`` and so on, and the
    MCP server one entry per tool.
    """

    def __init__(self) -> None:
        self._stats: Dict[str, OperationStats] = {}
        self._lock = Lock()
        self._since = datetime.now(timezone.utc)

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None
    ) -> None:
        """Fold one finished operation into the totals.

        Args:
            operation: Operation name, e.g. 'sync_pass'
            duration_ms: Wall time in milliseconds
            success: Whether it completed without raising
            error: Error text for failed operations
        """
        with self._lock:
            stats = self._stats.setdefault(operation, OperationStats())
            stats.add(duration_ms, None if success else (error or "unknown error"))

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every operation's totals, keyed by name."""
        with self._lock:
            return {name: stats.snapshot() for name, stats in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Totals across all operations since start (or the last reset)."""
        with self._lock:
            total = sum(s.count for s in self._stats.values())
            errors = sum(s.errors for s in self._stats.values())
            return {
                "uptime_seconds": (datetime.now(timezone.utc) - self._since).total_seconds(),
                "total_operations": total,
                "total_success": total - errors,
                "total_errors": errors,
                "overall_success_rate": (total - errors) / total if total else 1.0,
                "operations_tracked": list(self._stats),
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._since = datetime.now(timezone.utc)


metrics = MetricsCollector()


def _describe(values: Dict[str, Any]) -> str:
    return ", ".join(f"{key}={value}" for key, value in values.items())


@contextmanager
def timed_operation(operation: str, **context) -> Iterator[Dict[str, Any]]:
    """Time a block, log it and record it in ``metrics``.

    Exceptions propagate unchanged and are recorded as failures.

    Args:
        operation: Operation name used as the metrics key
        **context: Extra values logged with the START line

    Yields:
        A dict for result details (e.g. ``op["result_count"] = 3``); it also
        carries the ``correlation_id`` used in the log lines.

    Example:
        with timed_operation("sync_pass") as op:
            report = run_pass()
            op["changed"] = report.added + report.updated
    """
    correlation_id = uuid.uuid4().hex[:8]
    details: Dict[str, Any] = {"correlation_id": correlation_id}
    logger.debug(f"[{correlation_id}] START {operation} ({_describe(context)})")

    error: Optional[str] = None
    started = time.perf_counter()
    try:
        yield details
    except Exception as e:
        error = str(e)
        raise
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        metrics.record_operation(operation, elapsed_ms, error is None, error)
        outcome = "OK" if error is None else f"ERROR: {error}"
        extra = {k: v for k, v in details.items() if k != "correlation_id"}
        logger.debug(
            f"[{correlation_id}] END {operation} ({elapsed_ms:.2f}ms) [{outcome}] {_describe(extra)}"
        )


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Decorator form of ``timed_operation`` for query methods.

    A ``path`` or ``query`` keyword argument is logged as context, and the
    length of a sized return value as ``result_count``.
    """
    def decorator(func: F) -> F:
        name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            context = {}
            for key in ("path", "query"):
                if kwargs.get(key):
                    context[key] = str(kwargs[key])[:50]
                    break
            with timed_operation(name, **context) as op:
                result = func(*args, **kwargs)
                if hasattr(result, "__len__"):
                    op["result_count"] = len(result)
                return result

        return wrapper  # type: ignore
    return decorator
