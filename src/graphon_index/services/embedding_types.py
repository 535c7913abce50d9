"""Structural type for note embedders.

The ONNX provider and the test fakes satisfy it without inheriting from it.
Vector length is whatever ``dimension`` reports; nothing in the index
hard-codes it.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, List, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    import numpy as np


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns note text into fixed-length float vectors."""

    @property
    def dimension(self) -> int:
        ...

    @property
    def is_loaded(self) -> bool:
        ...

    def load(self) -> None:
        """Make the model ready; calling it when already loaded does nothing."""
        ...

    def unload(self) -> None:
        """Drop the model; safe to call when nothing is loaded."""
        ...

    def embed(self, text: str) -> np.ndarray:
        """One vector of shape (dimension,)."""
        ...

    def embed_batch(self, texts: Sequence[str], batch_size: int = 32) -> List[np.ndarray]:
        """One vector per input text, in input order."""
        ...
