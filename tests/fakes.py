"""Embedding providers for tests.

No model is loaded. FakeEmbeddingProvider seeds a random generator with a
hash of the text, so equal texts give equal vectors and unrelated texts give
unrelated ones. BagOfWordsEmbeddingProvider puts one vocabulary word on each
axis, so notes sharing words are measurably similar.
"""
import hashlib
import threading
from typing import List, Optional, Sequence

import numpy as np


class FakeEmbeddingProvider:
    """Unit vectors seeded from a SHA-256 of the text."""

    def __init__(self, dim: int = 8) -> None:
        self._dim = dim
        self._loaded = False
        self.load_count = 0
        self.unload_count = 0
        self.embed_count = 0
        self.texts: List[str] = []

    @property
    def dimension(self) -> int:
        return self._dim

    def load(self) -> None:
        self._loaded = True
        self.load_count += 1

    def unload(self) -> None:
        self._loaded = False
        self.unload_count += 1

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def embed(self, text: str) -> np.ndarray:
        self.embed_count += 1
        self.texts.append(text)
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
        vector = np.random.default_rng(seed).standard_normal(self._dim)
        return (vector / np.linalg.norm(vector)).astype(np.float32)

    def embed_batch(self, texts: Sequence[str], batch_size: int = 32) -> List[np.ndarray]:
        return [self.embed(text) for text in texts]


class BagOfWordsEmbeddingProvider(FakeEmbeddingProvider):
    """One axis per vocabulary word; counts of each word in the text."""

    def __init__(self, vocabulary: Sequence[str]) -> None:
        super().__init__(dim=len(vocabulary))
        self.vocabulary = [word.lower() for word in vocabulary]

    def embed(self, text: str) -> np.ndarray:
        self.embed_count += 1
        self.texts.append(text)
        words = [w.strip(".,!?#[]").lower() for w in text.split()]
        return np.array(
            [float(words.count(word)) for word in self.vocabulary], dtype=np.float32
        )


class SlowEmbeddingProvider(FakeEmbeddingProvider):
    """Blocks inside ``embed`` until released, to exercise timeouts.

    With ``slow_marker`` set, only texts containing it block.
    """

    def __init__(self, dim: int = 8, slow_marker: Optional[str] = None) -> None:
        super().__init__(dim=dim)
        self.release = threading.Event()
        self.slow_marker = slow_marker

    def embed(self, text: str) -> np.ndarray:
        if self.slow_marker is None or self.slow_marker in text:
            self.release.wait(timeout=10)
        return super().embed(text)

    def embed_batch(self, texts: Sequence[str], batch_size: int = 32) -> List[np.ndarray]:
        if self.slow_marker is None or any(self.slow_marker in text for text in texts):
            self.release.wait(timeout=10)
        return super().embed_batch(texts, batch_size)


class SlowLoadingEmbeddingProvider(FakeEmbeddingProvider):
    """Blocks inside ``load`` until released, like a stalled model download."""

    def __init__(self, dim: int = 8) -> None:
        super().__init__(dim=dim)
        self.release = threading.Event()

    def load(self) -> None:
        self.release.wait(timeout=10)
        super().load()


class FailingEmbeddingProvider(FakeEmbeddingProvider):
    """Raises on load or on inference."""

    def __init__(self, dim: int = 8, fail_on_load: bool = False) -> None:
        super().__init__(dim=dim)
        self.fail_on_load = fail_on_load

    def load(self) -> None:
        if self.fail_on_load:
            raise RuntimeError("model files missing")
        super().load()

    def embed(self, text: str) -> np.ndarray:
        raise RuntimeError("inference exploded")

    def embed_batch(self, texts: Sequence[str], batch_size: int = 32) -> List[np.ndarray]:
        raise RuntimeError("inference exploded")
