"""
Cortex Embeddings -- ONNX-based embedding generation for semantic search.

Provides:
- EmbeddingService.embed(text) → 384-dim unit vector (async)
- EmbeddingService.embed_batch(texts) → list of vectors (async)
- cosine_similarity(a, b) over equal-length vectors
- LRU cache for repeated texts

Uses bge-small-en-v1.5 via ONNX Runtime. Falls back to all-MiniLM-L6-v2 if
the bge model is not downloaded, or SentenceTransformers (PyTorch) if ONNX
is unavailable. There is no hash fallback: if no backend loads, embedding
calls raise EmbeddingUnavailableError and callers degrade to keyword search.
"""

import asyncio
import hashlib
import importlib.util
import logging
import os
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from cortex.errors import EmbeddingUnavailableError

__all__ = [
    "EmbeddingService",
    "cosine_similarity",
    "has_onnx_runtime",
    "has_sentence_transformers",
]

logger = logging.getLogger("cortex.embeddings")

EMBEDDING_DIM = 384

_ONNX_DEFAULT_DIR = "~/.cache/cortex/models/bge-small-en-v1.5-onnx"
_ONNX_FALLBACK_DIR = "~/.cache/cortex/models/all-MiniLM-L6-v2-onnx"
_ST_MODEL_NAME = "BAAI/bge-small-en-v1.5"

_CACHE_MAX = 512
_MAX_LOAD_ATTEMPTS = 3
_CIRCUIT_BREAKER_COOLDOWN_S = 300  # 5 minutes

# A custom encoder maps a batch of texts to a (n, dim) array-like.
Encoder = Callable[[List[str]], Any]


def has_onnx_runtime() -> bool:
    """Check if onnxruntime and tokenizers are importable."""
    return (
        importlib.util.find_spec("onnxruntime") is not None
        and importlib.util.find_spec("tokenizers") is not None
    )


def has_sentence_transformers() -> bool:
    """Check if sentence_transformers is importable."""
    return importlib.util.find_spec("sentence_transformers") is not None


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]. Raises ValueError on dimension mismatch.

    A zero-magnitude vector has similarity 0.0 with everything.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector dimensions differ: {va.shape[0]} vs {vb.shape[0]}")
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


def _onnx_encode(tokenizer, session, texts: List[str]) -> np.ndarray:
    """Encode texts using ONNX Runtime. Returns normalized embeddings."""
    batch = tokenizer.encode_batch(texts)
    ids = np.array([b.ids for b in batch], dtype=np.int64)
    mask = np.array([b.attention_mask for b in batch], dtype=np.int64)
    feed = {"input_ids": ids, "attention_mask": mask}
    input_names = {i.name for i in session.get_inputs()}
    if "token_type_ids" in input_names:
        feed["token_type_ids"] = np.zeros_like(ids)
    outputs = session.run(None, feed)
    embeddings = outputs[1] if len(outputs) > 1 else outputs[0]
    if embeddings.ndim == 3:
        mask_expanded = mask[:, :, np.newaxis].astype(np.float32)
        sum_emb = np.sum(embeddings * mask_expanded, axis=1)
        sum_mask = np.clip(np.sum(mask_expanded, axis=1), a_min=1e-9, a_max=None)
        embeddings = sum_emb / sum_mask
    return embeddings


def _normalize(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    return matrix / np.clip(norms, a_min=1e-9, a_max=None)


class EmbeddingService:
    """Lazily-initialized text embedder.

    The first embed call loads the model on a worker thread; concurrent
    callers await the same in-flight load. Failed loads count toward a
    circuit breaker (3 attempts, then a 5 minute cooldown).

    Pass ``encoder`` to use a custom backend (a callable mapping a list of
    texts to an (n, dim) array); it is used as-is, with no model loading.
    """

    def __init__(
        self,
        dimension: int = EMBEDDING_DIM,
        enabled: bool = True,
        model_dir: Optional[str] = None,
        encoder: Optional[Encoder] = None,
        cache_size: int = _CACHE_MAX,
    ):
        self.dimension = dimension
        self.enabled = enabled
        self._model_dir_override = model_dir
        self._custom_encoder = encoder
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()
        self._cache_size = cache_size

        self._encode: Optional[Encoder] = None
        self.backend: Optional[str] = None
        self.model_name: Optional[str] = None
        self._init_future: Optional[asyncio.Future] = None
        self._attempt_count = 0
        self._first_failure_time = 0.0
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    @property
    def ready(self) -> bool:
        return self._encode is not None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="embedding")
        return self._executor

    def _find_onnx_model_dir(self) -> Optional[Path]:
        """Locate model.onnx: explicit override, then bge-small, then MiniLM."""
        candidates = []
        if self._model_dir_override:
            candidates.append((Path(self._model_dir_override).expanduser(), None))
        candidates.append((Path(os.path.expanduser(_ONNX_DEFAULT_DIR)), "bge-small-en-v1.5"))
        candidates.append((Path(os.path.expanduser(_ONNX_FALLBACK_DIR)), "all-MiniLM-L6-v2"))
        for path, name in candidates:
            if (path / "model.onnx").exists() and (path / "tokenizer.json").exists():
                self.model_name = name or path.name
                return path
        return None

    def _load_backend(self) -> Encoder:
        """Load the best available backend. Runs on a worker thread."""
        if self._custom_encoder is not None:
            self.backend = "custom"
            self.model_name = getattr(self._custom_encoder, "__name__", "custom")
            return self._custom_encoder

        os.environ.setdefault("TQDM_DISABLE", "1")
        errors = []

        if has_onnx_runtime():
            onnx_dir = self._find_onnx_model_dir()
            if onnx_dir is not None:
                try:
                    import onnxruntime as ort
                    from tokenizers import Tokenizer

                    tokenizer = Tokenizer.from_file(str(onnx_dir / "tokenizer.json"))
                    tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
                    tokenizer.enable_truncation(max_length=512)
                    sess_opts = ort.SessionOptions()
                    sess_opts.log_severity_level = 4
                    sess_opts.enable_cpu_mem_arena = False
                    session = ort.InferenceSession(
                        str(onnx_dir / "model.onnx"),
                        sess_options=sess_opts,
                        providers=["CPUExecutionProvider"],
                    )
                    self.backend = "onnx"
                    logger.info("Loaded ONNX embedding model from %s", onnx_dir)
                    return lambda texts: _onnx_encode(tokenizer, session, texts)
                except Exception as e:
                    logger.warning(f"Failed to load ONNX model (attempt {self._attempt_count}): {e}")
                    errors.append(f"onnx: {e}")
            else:
                errors.append("onnx: no model.onnx found")

        if has_sentence_transformers():
            try:
                from sentence_transformers import SentenceTransformer

                model = SentenceTransformer(_ST_MODEL_NAME)
                self.backend = "sentence-transformers"
                self.model_name = _ST_MODEL_NAME
                logger.info("Loaded sentence-transformers model (PyTorch fallback)")
                return lambda texts: model.encode(texts, normalize_embeddings=True, batch_size=32)
            except Exception as e:
                logger.warning(f"Failed to load sentence-transformers: {e}")
                errors.append(f"sentence-transformers: {e}")

        if not errors:
            errors.append("no embedding backend installed (pip install cortex-memory[embeddings])")
        raise EmbeddingUnavailableError("; ".join(errors))

    def _check_circuit(self) -> None:
        if self._attempt_count < _MAX_LOAD_ATTEMPTS:
            return
        if self._first_failure_time and time.monotonic() - self._first_failure_time >= _CIRCUIT_BREAKER_COOLDOWN_S:
            logger.info("Circuit breaker cooldown expired, retrying model load")
            self._attempt_count = 0
            self._first_failure_time = 0.0
            return
        raise EmbeddingUnavailableError(
            f"embedding model failed to load {self._attempt_count} times; retry after cooldown"
        )

    async def init(self) -> None:
        """Load the model once. Concurrent callers share the in-flight load."""
        if self._encode is not None:
            return
        if not self.enabled:
            raise EmbeddingUnavailableError("embeddings disabled (CORTEX_SKIP_EMBEDDINGS)")

        if self._init_future is None:
            self._check_circuit()
            self._attempt_count += 1
            if self._attempt_count == 1:
                self._first_failure_time = time.monotonic()
            loop = asyncio.get_running_loop()
            self._init_future = loop.run_in_executor(self._get_executor(), self._load_backend)

        future = self._init_future
        try:
            encode = await asyncio.shield(future)
        except Exception:
            if self._init_future is future:
                self._init_future = None
            raise
        if self._encode is None:
            self._encode = encode
            self._attempt_count = 0
            self._first_failure_time = 0.0

    def reset(self) -> None:
        """Drop the loaded model, cache and circuit-breaker state."""
        self._encode = None
        self.backend = None
        self._init_future = None
        self._attempt_count = 0
        self._first_failure_time = 0.0
        self._cache.clear()

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    @staticmethod
    def _cache_key(text: str) -> str:
        return hashlib.md5(text.encode()).hexdigest()

    def _encode_batch_sync(self, texts: List[str]) -> List[List[float]]:
        matrix = np.asarray(self._encode(texts), dtype=np.float32)
        if matrix.ndim == 1:
            matrix = matrix.reshape(1, -1)
        if matrix.shape != (len(texts), self.dimension):
            raise EmbeddingUnavailableError(
                f"encoder returned shape {matrix.shape}, expected ({len(texts)}, {self.dimension})"
            )
        return _normalize(matrix).tolist()

    async def embed(self, text: str) -> List[float]:
        """Embed one text as a unit vector."""
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed several texts, serving repeats from the LRU cache."""
        texts = list(texts)
        if not texts:
            return []
        await self.init()

        results: Dict[int, List[float]] = {}
        missing: List[int] = []
        for i, text in enumerate(texts):
            cached = self._cache.get(self._cache_key(text))
            if cached is not None:
                self._cache.move_to_end(self._cache_key(text))
                results[i] = cached
            else:
                missing.append(i)

        if missing:
            loop = asyncio.get_running_loop()
            batch = [texts[i] for i in missing]
            try:
                vectors = await loop.run_in_executor(self._get_executor(), self._encode_batch_sync, batch)
            except EmbeddingUnavailableError:
                raise
            except Exception as e:
                raise EmbeddingUnavailableError(f"embedding failed: {e}") from e
            for i, vector in zip(missing, vectors):
                results[i] = vector
                self._cache[self._cache_key(texts[i])] = vector
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)

        return [results[i] for i in range(len(texts))]

    def info(self) -> Dict[str, Any]:
        """Backend status for stats/diagnostics."""
        return {
            "enabled": self.enabled,
            "backend": self.backend,
            "model": self.model_name,
            "model_loaded": self.ready,
            "onnx_available": has_onnx_runtime(),
            "sentence_transformers_available": has_sentence_transformers(),
            "dimension": self.dimension,
            "cache_size": len(self._cache),
        }

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
