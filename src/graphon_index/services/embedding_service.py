"""Time-bounded access to an embedding provider.

The sync coordinator embeds notes through this service and the query engine
embeds search text through it. The model loads on first use; each call is
given ``timeout`` seconds, and any provider failure comes back as an
``EmbeddingError`` so callers have a single exception to handle.

Usage:
    service = EmbeddingService(provider, model_name="all-MiniLM-L6-v2", timeout=30)
    vector = service.embed("note text")
    service.shutdown()
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence, TypeVar

from graphon_index.exceptions import EmbeddingError, ErrorCode

if TYPE_CHECKING:
    import numpy as np

    from graphon_index.services.embedding_types import EmbeddingProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EmbeddingService:
    """Lazily loaded embedding provider with per-call timeouts.

    Inference runs on a two-thread pool so that a slow call can be given up
    on. A call that timed out is not interrupted; its worker finishes in
    the background and the result is discarded.

    Args:
        embedder: Any ``EmbeddingProvider``.
        model_name: Stored next to each vector; defaults to the provider's class name.
        timeout: Seconds allowed for one ``embed`` / ``embed_batch`` call.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        model_name: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self._embedder = embedder
        self.model_name = model_name or type(embedder).__name__
        self.timeout = timeout
        self._load_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="graphon-embed")
        self._closed = False

    @property
    def dimension(self) -> int:
        return self._embedder.dimension

    @property
    def embedder_loaded(self) -> bool:
        return self._embedder.is_loaded

    def _load(self) -> None:
        with self._load_lock:
            if self._embedder.is_loaded:
                return
            try:
                self._embedder.load()
            except Exception as e:
                raise EmbeddingError(
                    f"Failed to load embedding model {self.model_name}: {e}",
                    code=ErrorCode.EMBEDDING_MODEL_LOAD_FAILED,
                    operation="load",
                    original_error=e,
                ) from e
            logger.info(f"Embedding model {self.model_name} loaded (dimension {self.dimension})")

    def _loaded_then(self, work: Callable[[], T]) -> T:
        if not self._embedder.is_loaded:
            self._load()
        return work()

    def _call(self, operation: str, work: Callable[[], T]) -> T:
        """Run ``work`` on the pool, loading the model first if needed.

        The load counts against the same ``timeout`` as the call itself.
        """
        if self._closed:
            raise EmbeddingError(
                "Embedding service is shut down",
                code=ErrorCode.EMBEDDING_INFERENCE_FAILED,
                operation=operation,
            )
        future = self._pool.submit(self._loaded_then, work)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError as e:
            future.cancel()
            raise EmbeddingError(
                f"{operation} did not finish within {self.timeout}s",
                code=ErrorCode.EMBEDDING_TIMEOUT,
                operation=operation,
                original_error=e,
            ) from e
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(
                f"{operation} failed: {e}",
                code=ErrorCode.EMBEDDING_INFERENCE_FAILED,
                operation=operation,
                original_error=e,
            ) from e

    def embed(self, text: str) -> "np.ndarray":
        """Embed one text.

        Raises:
            EmbeddingError: Load failure, inference failure or timeout.
        """
        return self._call("embed", lambda: self._embedder.embed(text))

    def embed_batch(self, texts: Sequence[str], batch_size: int = 32) -> List["np.ndarray"]:
        """Embed several texts, one vector per text.

        Raises:
            EmbeddingError: Load failure, inference failure, timeout, or a
                provider that returned the wrong number of vectors.
        """
        if not texts:
            return []
        vectors = self._call("embed_batch", lambda: self._embedder.embed_batch(texts, batch_size))
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} texts",
                code=ErrorCode.EMBEDDING_INFERENCE_FAILED,
                operation="embed_batch",
            )
        return vectors

    def shutdown(self) -> None:
        """Stop the worker pool and unload the model."""
        self._closed = True
        self._pool.shutdown(wait=False)
        with self._load_lock:
            if self._embedder.is_loaded:
                self._embedder.unload()
        logger.info("Embedding service shut down")
