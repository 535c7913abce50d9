"""Vault service: one vault's index, sync coordinator and query surface.

This is the object the application (MCP server, CLI, UI bridge) talks to.
Everything it needs is built from an explicit IndexConfig.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from graphon_index.config import IndexConfig
from graphon_index.exceptions import ConfigurationError
from graphon_index.models.db_models import get_schema_version, get_session_factory, init_db
from graphon_index.models.schema import (FileNode, GraphData, ScoredNote, SearchHit,
                                         SyncReport, TaskRecord)
from graphon_index.observability import metrics
from graphon_index.services.embedding_service import EmbeddingService
from graphon_index.services.embedding_types import EmbeddingProvider
from graphon_index.services.query_service import NodeClassifier, QueryService, folder_classifier
from graphon_index.services.sync_service import SyncCoordinator, make_embedding_policy
from graphon_index.services.vault_watcher import VaultWatcher
from graphon_index.storage.file_access import VaultFileAccess
from graphon_index.storage.fts_index import FtsIndex
from graphon_index.storage.index_store import IndexStore
from graphon_index.storage.note_extractor import NoteExtractor
from graphon_index.storage.scanner import VaultScanner

logger = logging.getLogger(__name__)


class VaultService:
    """Wires the index components for one vault.

    Args:
        config: Index configuration (vault path, database, embeddings, limits).
        embedding_provider: Overrides the ONNX provider built from config.
            Supplying one enables embeddings unless the policy is "disabled".
        classifier: Assigns graph nodes to groups.
    """

    def __init__(
        self,
        config: IndexConfig,
        embedding_provider: Optional[EmbeddingProvider] = None,
        classifier: NodeClassifier = folder_classifier,
    ) -> None:
        self.config = config
        self.vault_path = config.get_vault_path()
        if not self.vault_path.is_dir():
            raise ConfigurationError(
                f"Vault folder does not exist: {self.vault_path}", config_key="vault_path"
            )

        self.engine = init_db(config.get_db_url())
        self.session_factory = get_session_factory(self.engine)

        self.scanner = VaultScanner(
            self.vault_path,
            note_extensions=config.note_extensions,
            metadata_dir_name=config.metadata_dir_name,
            ignored_names=config.ignored_names,
        )
        self.file_access = VaultFileAccess(self.vault_path, self.scanner)
        self.extractor = NoteExtractor()
        self.fts_index = FtsIndex(self.engine, self.session_factory, on_reset=self._on_search_reset)
        self.store = IndexStore(self.engine, self.session_factory, self.fts_index)

        self.embedding_service = self._build_embedding_service(embedding_provider)
        self.coordinator = SyncCoordinator(
            self.scanner,
            self.file_access,
            self.extractor,
            self.store,
            embedding_policy=make_embedding_policy(
                config.embedding_policy, self.embedding_service
            ),
            debounce_seconds=config.sync_debounce_seconds,
        )
        self.query = QueryService(
            self.session_factory,
            self.fts_index,
            embedding_service=self.embedding_service,
            classifier=classifier,
            search_limit=config.search_limit,
            related_limit=config.related_limit,
            semantic_limit=config.semantic_limit,
        )
        self.watcher: Optional[VaultWatcher] = None
        if config.watch_enabled:
            self.watcher = VaultWatcher(self.vault_path, self.scanner, self.notify_changed)

        logger.info(
            f"Vault service ready: vault={self.vault_path}, "
            f"database={config.get_database_path()}, "
            f"embeddings={self.coordinator.embedding_policy.name}"
        )

    def _build_embedding_service(
        self, provider: Optional[EmbeddingProvider]
    ) -> Optional[EmbeddingService]:
        if not self.config.semantic_enabled:
            return None
        if provider is None:
            from graphon_index.services.onnx_provider import OnnxEmbeddingProvider

            provider = OnnxEmbeddingProvider(
                model_id=self.config.embedding_model,
                max_length=self.config.embedding_max_tokens,
                cache_dir=self.config.embedding_model_cache_dir,
                providers=self.config.onnx_providers,
            )
        return EmbeddingService(
            provider,
            model_name=self.config.embedding_model,
            timeout=self.config.embedding_timeout_seconds,
        )

    def _on_search_reset(self) -> None:
        logger.warning("Full-text index was rebuilt; scheduling a re-index")
        self.coordinator.trigger()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, blocking: bool = False) -> Optional[SyncReport]:
        """Load the vault: run the initial sync pass and start the watcher.

        Args:
            blocking: Run the initial pass on this thread and return its
                report, instead of scheduling it in the background.
        """
        report = None
        if blocking:
            report = self.coordinator.sync_now()
        else:
            self.coordinator.trigger()
        if self.watcher is not None:
            self.watcher.start()
        return report

    def shutdown(self) -> None:
        """Stop watching, let a running pass finish, release resources."""
        if self.watcher is not None:
            self.watcher.stop()
        self.coordinator.close()
        if self.embedding_service is not None:
            self.embedding_service.shutdown()
        self.engine.dispose()
        logger.info(f"Vault service shut down: {self.vault_path}")

    def __enter__(self) -> "VaultService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # =========================================================================
    # Sync
    # =========================================================================

    def notify_changed(self, path: Optional[str] = None) -> None:
        """Tell the index that a note was written, deleted or renamed."""
        self.coordinator.notify_changed(path)

    def sync_now(self) -> SyncReport:
        return self.coordinator.sync_now()

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        return self.coordinator.wait_until_idle(timeout)

    def on_index_updated(self, callback: Callable[[SyncReport], None]) -> Callable[[], None]:
        """Subscribe to completed sync passes. Returns an unsubscribe callable."""
        return self.coordinator.subscribe(callback)

    # =========================================================================
    # Query surface
    # =========================================================================

    def list_files(self) -> List[FileNode]:
        return self.file_access.list()

    def read_file(self, path: str) -> Optional[str]:
        return self.file_access.read(path)

    def search_notes(self, query: str) -> List[SearchHit]:
        return self.query.search(query)

    def get_graph_data(self) -> GraphData:
        return self.query.graph()

    def get_all_tasks(self) -> List[TaskRecord]:
        return self.query.get_all_tasks()

    def get_related_notes(self, path: str) -> List[ScoredNote]:
        return self.query.related_notes(path)

    def semantic_search(self, query: str) -> List[ScoredNote]:
        return self.query.semantic_search(query)

    def status(self) -> Dict[str, Any]:
        """Index statistics, sync state and operation metrics."""
        with self.engine.connect() as conn:
            schema_version = get_schema_version(conn)
        embedding: Dict[str, Any] = {"enabled": self.embedding_service is not None}
        if self.embedding_service is not None:
            embedding["model"] = self.embedding_service.model_name
            embedding["loaded"] = self.embedding_service.embedder_loaded
            embedding["dimension"] = self.embedding_service.dimension
        return {
            "vault_path": str(self.vault_path),
            "database_path": str(self.config.get_database_path()),
            "schema_version": schema_version,
            "files": self.store.count_files(),
            "links": self.query.links.count(),
            "embeddings": self.query.embeddings.count(),
            "search_records": self.fts_index.count(),
            "search_available": self.fts_index.available,
            "watching": self.watcher is not None and self.watcher.is_running,
            "embedding": embedding,
            "sync": self.coordinator.status(),
            "metrics": metrics.get_summary(),
        }
