"""Sync coordinator: keeps the index consistent with the vault on disk.

A sync pass scans the vault, compares each note's checksum with the stored
one and writes only what changed: new notes are inserted, changed notes
have every derived row replaced in one transaction, vanished notes are
deleted with cascade. Passes are debounced, run on a background thread
and never overlap; triggers that arrive mid-pass collapse into a single
follow-up pass.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from graphon_index.exceptions import (EmbeddingError, ErrorCode, ExtractError,
                                      GraphonIndexError, ScanError, StoreError,
                                      ValidationError)
from graphon_index.models.schema import (ExtractedNote, FileMetadata, NoteCandidate,
                                         NoteUpdate, SyncReport, utc_now)
from graphon_index.observability import timed_operation
from graphon_index.services.embedding_service import EmbeddingService
from graphon_index.storage.file_access import VaultFileAccess
from graphon_index.storage.index_store import IndexStore
from graphon_index.storage.note_extractor import NoteExtractor
from graphon_index.storage.scanner import VaultScanner
from graphon_index.utils import content_checksum, file_id_for_path

logger = logging.getLogger(__name__)

SyncListener = Callable[[SyncReport], None]


def embedding_text(extracted: ExtractedNote) -> str:
    """The text a note is embedded from: its title followed by its content."""
    return f"{extracted.title}\n\n{extracted.content}".strip()


# =============================================================================
# Embedding policies
# =============================================================================

class NoEmbeddingPolicy:
    """Never computes embeddings. Content changes still drop stale vectors."""

    name = "disabled"
    model_name: Optional[str] = None

    def embed_for_update(self, path: str, extracted: ExtractedNote) -> Optional[np.ndarray]:
        return None

    def after_pass(
        self, store: IndexStore, file_access: VaultFileAccess, extractor: NoteExtractor
    ) -> int:
        return 0


class _ServiceEmbeddingPolicy(NoEmbeddingPolicy):
    """Shared backfill logic for policies backed by an EmbeddingService."""

    def __init__(self, embedding_service: EmbeddingService, batch_size: int = 16):
        self.embedding_service = embedding_service
        self.model_name = embedding_service.model_name
        self.batch_size = batch_size

    def after_pass(
        self, store: IndexStore, file_access: VaultFileAccess, extractor: NoteExtractor
    ) -> int:
        """Embed every indexed file that has no embedding yet.

        A vector is written only if the file's checksum still matches the
        content it was computed from.
        """
        missing = store.files_without_embedding()
        embedded = 0
        for start in range(0, len(missing), self.batch_size):
            batch: List[Tuple[str, str, str]] = []
            for file_id, path, checksum in missing[start:start + self.batch_size]:
                try:
                    raw = file_access.read(path)
                    if raw is None or content_checksum(raw) != checksum:
                        continue  # Changed since the pass; the next pass handles it
                    text = embedding_text(extractor.extract(raw, path))
                except (ExtractError, ValidationError) as e:
                    logger.warning(f"Skipping embedding of {path}: {e}")
                    continue
                if text:
                    batch.append((file_id, checksum, text))
            if not batch:
                continue
            try:
                vectors = self.embedding_service.embed_batch([text for _, _, text in batch])
            except EmbeddingError as e:
                logger.warning(f"Embedding backfill stopped: {e}")
                return embedded
            for (file_id, checksum, _), vector in zip(batch, vectors):
                try:
                    if store.upsert_embedding_if_current(
                        file_id, checksum, vector, self.model_name
                    ):
                        embedded += 1
                except StoreError as e:
                    logger.warning(f"Could not store embedding for {file_id}: {e}")
        if embedded:
            logger.info(f"Embedded {embedded} notes after sync pass")
        return embedded


class EagerEmbeddingPolicy(_ServiceEmbeddingPolicy):
    """Embeds each changed note inside the pass, before its transaction."""

    name = "eager"

    def embed_for_update(self, path: str, extracted: ExtractedNote) -> Optional[np.ndarray]:
        text = embedding_text(extracted)
        if not text:
            return None
        try:
            return self.embedding_service.embed(text)
        except EmbeddingError as e:
            raise ExtractError(
                f"Embedding failed for {path}: {e.message}",
                path=path,
                code=ErrorCode.EXTRACT_EMBEDDING_FAILED,
                original_error=e,
            ) from e


class DeferredEmbeddingPolicy(_ServiceEmbeddingPolicy):
    """Writes text-derived rows first and embeds changed notes after the pass."""

    name = "deferred"


def make_embedding_policy(
    policy_name: str, embedding_service: Optional[EmbeddingService]
) -> NoEmbeddingPolicy:
    """Build the policy named in the configuration."""
    if embedding_service is None or policy_name == "disabled":
        return NoEmbeddingPolicy()
    if policy_name == "deferred":
        return DeferredEmbeddingPolicy(embedding_service)
    return EagerEmbeddingPolicy(embedding_service)


# =============================================================================
# Coordinator
# =============================================================================

class SyncCoordinator:
    """Drives sync passes for one vault.

    Args:
        scanner: Walks the vault.
        file_access: Reads note contents.
        extractor: Derives title, content, links and tasks.
        store: Index write side.
        embedding_policy: When and whether notes are embedded.
        debounce_seconds: Quiet period before a triggered pass starts.
    """

    def __init__(
        self,
        scanner: VaultScanner,
        file_access: VaultFileAccess,
        extractor: NoteExtractor,
        store: IndexStore,
        embedding_policy: Optional[NoEmbeddingPolicy] = None,
        debounce_seconds: float = 0.3,
    ) -> None:
        self.scanner = scanner
        self.file_access = file_access
        self.extractor = extractor
        self.store = store
        self.embedding_policy = embedding_policy or NoEmbeddingPolicy()
        self.debounce_seconds = debounce_seconds

        self._cond = threading.Condition()
        self._timer: Optional[threading.Timer] = None
        self._running = False
        self._rerun = False
        self._closed = False

        self._listeners: List[SyncListener] = []
        self._listeners_lock = threading.Lock()

        self.last_report: Optional[SyncReport] = None
        self.last_error: Optional[str] = None
        self.pass_count = 0

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe(self, callback: SyncListener) -> Callable[[], None]:
        """Register a callback for every completed pass.

        Returns:
            A callable that removes the subscription.
        """
        with self._listeners_lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, report: SyncReport) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(report)
            except Exception:
                logger.exception(f"Sync listener {listener!r} failed")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        with self._cond:
            return self._running

    def trigger(self) -> None:
        """Request a pass. Starts/resets the debounce timer.

        While a pass is running, the request is remembered and exactly one
        follow-up pass runs after it, however many triggers arrived.
        """
        with self._cond:
            if self._closed:
                return
            if self._running:
                self._rerun = True
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._on_timer)
            self._timer.daemon = True  # Don't block process exit
            self._timer.start()

    def notify_changed(self, path: Optional[str] = None) -> None:
        """Called after a confirmed note write, delete or rename."""
        logger.debug(f"Change notified: {path or '<vault>'}")
        self.trigger()

    def _on_timer(self) -> None:
        """Timer thread body: run passes until no follow-up is pending."""
        with self._cond:
            if self._timer is not threading.current_thread():
                return  # Superseded by a newer trigger, or closed
            self._timer = None
            if self._running:
                self._rerun = True
                return
            self._running = True
        self._background_loop()

    def _background_loop(self) -> None:
        while True:
            try:
                self._run_pass()
            except ScanError as e:
                logger.error(f"Sync pass aborted: {e}")
            except Exception:
                logger.exception("Sync pass failed")
            with self._cond:
                if self._rerun and not self._closed:
                    self._rerun = False
                    continue
                self._running = False
                self._cond.notify_all()
                return

    def sync_now(self) -> SyncReport:
        """Run a pass on the caller's thread.

        Waits for a pass in progress to finish first; passes never overlap.

        Raises:
            ScanError: If the vault cannot be walked.
        """
        with self._cond:
            while self._running:
                self._cond.wait()
            self._running = True
            if self._timer is not None:
                # This pass covers whatever the pending trigger asked for
                self._timer.cancel()
                self._timer = None
        try:
            return self._run_pass()
        finally:
            with self._cond:
                if self._rerun and not self._closed:
                    self._rerun = False
                    threading.Thread(
                        target=self._background_loop,
                        name="graphon-sync",
                        daemon=True,
                    ).start()
                else:
                    self._running = False
                    self._cond.notify_all()

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no pass is running or scheduled.

        Returns:
            True if idle, False if the timeout expired first.
        """
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._running and self._timer is None and not self._rerun,
                timeout=timeout,
            )

    def close(self, timeout: Optional[float] = 10.0) -> None:
        """Cancel pending triggers and wait for a running pass to finish."""
        with self._cond:
            self._closed = True
            self._rerun = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._cond.notify_all()
            self._cond.wait_for(lambda: not self._running, timeout=timeout)

    # ------------------------------------------------------------------
    # The pass
    # ------------------------------------------------------------------

    def _run_pass(self) -> SyncReport:
        started = time.perf_counter()
        report = SyncReport(started_at=utc_now())
        try:
            with timed_operation("sync_pass") as op:
                self._sync_files(report)
                report.embedded += self.embedding_policy.after_pass(
                    self.store, self.file_access, self.extractor
                )
                op["changed"] = report.changed
        except GraphonIndexError as e:
            self.last_error = str(e)
            raise

        report.duration_ms = (time.perf_counter() - started) * 1000
        report.finished_at = utc_now()
        self.last_report = report
        self.last_error = None
        self.pass_count += 1
        logger.info(f"Sync pass complete: {report.summary()}")
        self._emit(report)
        return report

    def _sync_files(self, report: SyncReport) -> None:
        scan = self.scanner.scan()
        known = self.store.get_checksums()
        present = set()

        for candidate in scan.candidates:
            try:
                outcome = self._sync_file(candidate, known.get(candidate.path), report)
            except (ExtractError, StoreError, ValidationError) as e:
                # The note still exists; keep whatever is indexed for it
                present.add(candidate.path)
                report.failed += 1
                logger.warning(f"Skipping {candidate.path}: {e}")
                continue
            if outcome is None:
                continue  # Vanished between scan and read
            present.add(candidate.path)
            if outcome == "added":
                report.added += 1
            elif outcome == "updated":
                report.updated += 1
            else:
                report.unchanged += 1

        for path, (file_id, _) in known.items():
            if path in present:
                continue
            try:
                if self.store.delete_file(file_id):
                    report.removed += 1
                    logger.debug(f"Removed {path} from index")
            except StoreError as e:
                report.failed += 1
                logger.warning(f"Could not remove {path}: {e}")

    def _sync_file(
        self,
        candidate: NoteCandidate,
        known: Optional[Tuple[str, str]],
        report: SyncReport,
    ) -> Optional[str]:
        raw = self.file_access.read(candidate.path)
        if raw is None:
            return None
        checksum = content_checksum(raw)
        if known is not None and known[1] == checksum:
            return "unchanged"

        extracted = self.extractor.extract(raw, candidate.path)
        vector = self.embedding_policy.embed_for_update(candidate.path, extracted)
        update = NoteUpdate(
            metadata=FileMetadata(id=file_id_for_path(candidate.path), path=candidate.path),
            checksum=checksum,
            extracted=extracted,
            embedding=vector,
            embedding_model=self.embedding_policy.model_name,
            drop_embedding=True,
        )
        self.store.apply_note(update)
        if vector is not None:
            report.embedded += 1
        return "added" if known is None else "updated"

    def status(self) -> Dict[str, object]:
        """Snapshot of coordinator state for status reporting."""
        with self._cond:
            running = self._running
            scheduled = self._timer is not None or self._rerun
        return {
            "running": running,
            "scheduled": scheduled,
            "passes": self.pass_count,
            "embedding_policy": self.embedding_policy.name,
            "last_report": self.last_report.to_json_dict() if self.last_report else None,
            "last_error": self.last_error,
        }
