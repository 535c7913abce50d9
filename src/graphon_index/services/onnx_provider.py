"""ONNX Runtime embedding provider.

Runs a sentence-transformers model's ONNX export with onnxruntime and the
HuggingFace ``tokenizers`` library; no torch involved. The default model is
all-MiniLM-L6-v2 (384 dimensions), pooled by averaging token vectors and
L2-normalized so that cosine similarity is a dot product.

onnxruntime, tokenizers and huggingface-hub come with the ``semantic`` extra
and are imported on first load, so the index runs without them when
embeddings are disabled.
"""

from __future__ import annotations

import importlib
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "sentence-transformers/all-MiniLM-L6-v2"

# import name -> distribution name
_OPTIONAL_MODULES = {
    "onnxruntime": "onnxruntime",
    "tokenizers": "tokenizers",
    "huggingface_hub": "huggingface-hub",
}
_modules: Dict[str, Any] = {}


def _ensure_imports() -> None:
    """Import the ``semantic`` extra, raising ImportError naming what is missing."""
    for module_name, dist_name in _OPTIONAL_MODULES.items():
        if module_name in _modules:
            continue
        try:
            _modules[module_name] = importlib.import_module(module_name)
        except ImportError as e:
            raise ImportError(
                f"{dist_name} is required for embeddings. "
                "Install with: pip install graphon-index[semantic]"
            ) from e


def resolve_providers(preference: str = "auto") -> List[str]:
    """Turn a provider preference into ONNX Runtime execution providers.

    Args:
        preference: "auto" (CUDA when present, always CPU last), "cpu", or a
            comma-separated list of provider names used as given.
    """
    _ensure_imports()
    choice = preference.strip().lower()
    if choice == "cpu":
        return ["CPUExecutionProvider"]
    if choice != "auto":
        return [name.strip() for name in preference.split(",") if name.strip()]
    available = _modules["onnxruntime"].get_available_providers()
    gpu = ["CUDAExecutionProvider"] if "CUDAExecutionProvider" in available else []
    return gpu + ["CPUExecutionProvider"]


def mean_pool(hidden_states: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
    """Average token vectors, ignoring padding, then L2-normalize each row."""
    mask = attention_mask[..., np.newaxis].astype(hidden_states.dtype)
    pooled = (hidden_states * mask).sum(axis=1) / np.maximum(mask.sum(axis=1), 1e-9)
    norms = np.maximum(np.linalg.norm(pooled, axis=1, keepdims=True), 1e-12)
    return (pooled / norms).astype(np.float32)


class OnnxEmbeddingProvider:
    """Note embedder backed by an ONNX Runtime inference session.

    The model export and its tokenizer are fetched from the HuggingFace Hub
    (and cached) the first time ``load`` or ``embed`` is called.

    Args:
        model_id: HuggingFace model ID.
        onnx_filename: ONNX file inside the model repository.
        max_length: Token limit; longer notes are truncated.
        cache_dir: Download cache; the Hub default when None.
        providers: Execution provider preference, see ``resolve_providers``.
    """

    def __init__(
        self,
        model_id: str = DEFAULT_MODEL_ID,
        onnx_filename: str = "onnx/model.onnx",
        max_length: int = 256,
        cache_dir: Optional[Path] = None,
        providers: str = "auto",
    ) -> None:
        self.model_id = model_id
        self.onnx_filename = onnx_filename
        self.max_length = max_length
        self.cache_dir = cache_dir
        self.providers = providers
        self._session = None
        self._tokenizer = None
        self._dimension = 384

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    def _download(self) -> Path:
        hub = _modules["huggingface_hub"]
        return Path(hub.snapshot_download(
            repo_id=self.model_id,
            allow_patterns=[self.onnx_filename, "tokenizer.json", "tokenizer_config.json"],
            cache_dir=str(self.cache_dir) if self.cache_dir else None,
        ))

    def load(self) -> None:
        """Fetch the model files and open the inference session."""
        if self.is_loaded:
            return
        _ensure_imports()
        ort = _modules["onnxruntime"]
        logger.info(f"Loading embedding model {self.model_id} ({self.onnx_filename})")

        model_dir = self._download()
        model_file = model_dir / self.onnx_filename
        if not model_file.exists():
            raise FileNotFoundError(f"{self.model_id} has no ONNX export at {self.onnx_filename}")

        tokenizer = _modules["tokenizers"].Tokenizer.from_file(str(model_dir / "tokenizer.json"))
        tokenizer.enable_truncation(max_length=self.max_length)
        tokenizer.enable_padding()

        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        execution_providers = resolve_providers(self.providers)
        if execution_providers == ["CPUExecutionProvider"]:
            # The CPU arena keeps peak memory between batches
            options.enable_cpu_mem_arena = False
        session = ort.InferenceSession(
            str(model_file), sess_options=options, providers=execution_providers
        )

        output_shape = session.get_outputs()[0].shape
        if isinstance(output_shape[-1], int):
            self._dimension = output_shape[-1]
        self._tokenizer = tokenizer
        self._session = session
        logger.info(
            f"Embedding model ready: dimension={self._dimension}, "
            f"providers={session.get_providers()}"
        )

    def unload(self) -> None:
        self._session = None
        self._tokenizer = None
        logger.info(f"Embedding model unloaded: {self.model_id}")

    def _encode(self, texts: Sequence[str]) -> np.ndarray:
        encodings = self._tokenizer.encode_batch(list(texts))
        input_ids = np.array([e.ids for e in encodings], dtype=np.int64)
        attention_mask = np.array([e.attention_mask for e in encodings], dtype=np.int64)

        wanted = {node.name for node in self._session.get_inputs()}
        feed = {"input_ids": input_ids, "attention_mask": attention_mask}
        if "token_type_ids" in wanted:
            feed["token_type_ids"] = np.zeros_like(input_ids)
        feed = {name: value for name, value in feed.items() if name in wanted}

        hidden_states = self._session.run(None, feed)[0]
        return mean_pool(hidden_states, attention_mask)

    def embed(self, text: str) -> np.ndarray:
        """Embed one note's text."""
        self.load()
        return self._encode([text])[0]

    def embed_batch(self, texts: Sequence[str], batch_size: int = 32) -> List[np.ndarray]:
        """Embed several texts, ``batch_size`` at a time."""
        self.load()
        vectors: List[np.ndarray] = []
        for start in range(0, len(texts), batch_size):
            vectors.extend(self._encode(texts[start:start + batch_size]))
        return vectors
