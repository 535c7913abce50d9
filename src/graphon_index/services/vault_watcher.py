"""File-system watcher that triggers sync passes.

Optional: requires the ``watch`` extra (watchdog). Edits made through the
application call ``notify_changed`` directly; the watcher covers changes
made by other programs.
"""

import logging
from pathlib import Path
from typing import Callable, Optional

from graphon_index.storage.scanner import VaultScanner

logger = logging.getLogger(__name__)


class VaultChangeHandler:
    """Filters file-system events down to changes that affect the index."""

    def __init__(self, vault_path: Path, scanner: VaultScanner, on_change: Callable[[str], None]):
        self.vault_path = Path(vault_path).resolve()
        self.scanner = scanner
        self.on_change = on_change
        self.stats = {"events": 0, "relevant": 0}

    def _relative(self, path: str) -> Optional[str]:
        try:
            return Path(path).resolve().relative_to(self.vault_path).as_posix()
        except ValueError:
            return None

    def _is_relevant(self, path: str, is_directory: bool) -> Optional[str]:
        relative = self._relative(path)
        if relative is None or relative == ".":
            return None
        if is_directory:
            # A deleted or moved folder takes its notes with it
            parts = Path(relative).parts
            if any(self.scanner.is_skipped_name(part) for part in parts):
                return None
            return relative
        return relative if self.scanner.is_note_path(relative) else None

    def dispatch(self, event) -> None:
        """Handle one watchdog event."""
        self.stats["events"] += 1
        event_type = event.event_type
        if event_type not in ("created", "modified", "deleted", "moved"):
            return
        is_directory = bool(event.is_directory)
        if is_directory and event_type in ("created", "modified"):
            return  # Notes inside produce their own events

        paths = [str(event.src_path)]
        if event_type == "moved" and getattr(event, "dest_path", None):
            paths.append(str(event.dest_path))

        for path in paths:
            relative = self._is_relevant(path, is_directory)
            if relative is not None:
                self.stats["relevant"] += 1
                logger.debug(f"Vault change: {event_type} {relative}")
                self.on_change(relative)
                return


class VaultWatcher:
    """Runs a watchdog observer over the vault while started."""

    def __init__(self, vault_path: Path, scanner: VaultScanner, on_change: Callable[[str], None]):
        self.vault_path = Path(vault_path)
        self.handler = VaultChangeHandler(vault_path, scanner, on_change)
        self._observer = None

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        """Start watching.

        Raises:
            ImportError: If watchdog is not installed.
        """
        if self._observer is not None:
            return
        try:
            from watchdog.events import FileSystemEventHandler
            from watchdog.observers import Observer
        except ImportError:
            raise ImportError(
                "watchdog is required for file watching. "
                "Install with: pip install graphon-index[watch]"
            )

        handler = self.handler

        class _WatchdogHandler(FileSystemEventHandler):
            def on_any_event(self, event):
                handler.dispatch(event)

        observer = Observer()
        observer.schedule(_WatchdogHandler(), str(self.vault_path), recursive=True)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info(f"Watching vault: {self.vault_path}")

    def stop(self, timeout: float = 5.0) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=timeout)
        self._observer = None
        logger.info("Vault watcher stopped")
