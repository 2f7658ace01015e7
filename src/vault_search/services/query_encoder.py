"""Local query encoder for the embedding-store tier.

Resolves a sentence-embedding model from a model hint or a target
dimensionality, lazily loads it with ONNX Runtime, and encodes query
strings into mean-pooled, L2-normalized vectors that can be compared
against the precomputed note vectors.

Models (ONNX exports published under the Xenova namespace):
- Xenova/bge-small-en-v1.5 (384-dim, default)
- Xenova/bge-base-en-v1.5 (768-dim)
- Xenova/bge-m3 (1024-dim)

Usage:
    encoders = QueryEncoderCache(timeout=20.0)
    encode = await encoders.get_encoder(model_hint="TaylorAI/bge-micro-v2", dimension=384)
    vector = await encode("graph databases")
    encoders.invalidate()  # release the model
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

import numpy as np

from vault_search.exceptions import EmbeddingError, ErrorCode

if TYPE_CHECKING:
    from vault_search.services.embedding_types import EmbeddingProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelSpec:
    """A resolvable encoder model."""

    model_id: str
    dimension: int


BGE_SMALL = ModelSpec("Xenova/bge-small-en-v1.5", 384)
BGE_BASE = ModelSpec("Xenova/bge-base-en-v1.5", 768)
BGE_M3 = ModelSpec("Xenova/bge-m3", 1024)

DEFAULT_MODEL = BGE_SMALL

# Checked in order against the lowercased hint; first hit wins
_HINT_TABLE: Tuple[Tuple[Tuple[str, ...], ModelSpec], ...] = (
    (("bge-m3", "m3"), BGE_M3),
    (("bge-base", "base"), BGE_BASE),
    (("bge-small", "bge-micro", "small", "micro", "384"), BGE_SMALL),
)

_DIMENSION_TABLE: Dict[int, ModelSpec] = {
    BGE_SMALL.dimension: BGE_SMALL,
    BGE_BASE.dimension: BGE_BASE,
    BGE_M3.dimension: BGE_M3,
}


def pick_model(
    model_hint: Optional[str] = None, dimension: Optional[int] = None
) -> ModelSpec:
    """Resolve the encoder model.

    Hint substrings are matched first (e.g. "bge-m3", "bge-base",
    "TaylorAI/bge-micro-v2"), then the requested dimension (384/768/1024),
    falling back to the small general-purpose model.
    """
    hint = (model_hint or "").lower()
    if hint:
        for needles, spec in _HINT_TABLE:
            if any(needle in hint for needle in needles):
                return spec
    if dimension is not None and dimension in _DIMENSION_TABLE:
        return _DIMENSION_TABLE[dimension]
    return DEFAULT_MODEL


def mean_pool_and_normalize(
    token_embeddings: np.ndarray, attention_mask: np.ndarray
) -> np.ndarray:
    """Mean-pool token embeddings over the attention mask, then L2-normalize.

    Args:
        token_embeddings: (batch, seq_len, hidden) array.
        attention_mask: (batch, seq_len) array of 0/1.

    Returns:
        (batch, hidden) array of unit-length vectors.
    """
    mask = attention_mask.astype(np.float32)[:, :, np.newaxis]
    summed = (token_embeddings * mask).sum(axis=1)
    counts = np.maximum(mask.sum(axis=1), 1e-9)
    pooled = summed / counts

    norms = np.linalg.norm(pooled, axis=1, keepdims=True)
    norms = np.maximum(norms, 1e-12)  # Avoid division by zero
    return pooled / norms


# Lazy imports - these are optional dependencies
# These are populated by _ensure_imports()
_ort = None
_tokenizers = None
_hf_hub = None


def _ensure_imports() -> None:
    """Import optional dependencies, raising a clear error if missing."""
    global _ort, _tokenizers, _hf_hub
    if _ort is None:
        try:
            import onnxruntime as ort

            _ort = ort
        except ImportError:
            raise ImportError(
                "onnxruntime is required for query embeddings. "
                "Install with: pip install vault-search[semantic]"
            )
    if _tokenizers is None:
        try:
            import tokenizers as tok

            _tokenizers = tok
        except ImportError:
            raise ImportError(
                "tokenizers is required for query embeddings. "
                "Install with: pip install vault-search[semantic]"
            )
    if _hf_hub is None:
        try:
            import huggingface_hub as hfh

            _hf_hub = hfh
        except ImportError:
            raise ImportError(
                "huggingface-hub is required for query embeddings. "
                "Install with: pip install vault-search[semantic]"
            )


def _resolve_providers(preference: str = "auto") -> List[str]:
    """Resolve ONNX execution providers based on preference string.

    Args:
        preference: One of:
            - "auto": detect available providers (CUDA > CPU)
            - "cpu": force CPUExecutionProvider only
            - comma-separated list: use as-is

    Returns:
        Ordered list of provider names for ort.InferenceSession.
    """
    _ensure_imports()

    pref = preference.strip().lower()

    if pref == "cpu":
        return ["CPUExecutionProvider"]

    if pref == "auto":
        available = _ort.get_available_providers()
        providers = []
        if "CUDAExecutionProvider" in available:
            providers.append("CUDAExecutionProvider")
        # Always include CPU as fallback
        providers.append("CPUExecutionProvider")
        return providers

    return [p.strip() for p in preference.split(",") if p.strip()]


def _download_model_files(
    model_id: str,
    filenames: Sequence[str],
    cache_dir: Optional[Path] = None,
) -> Path:
    """Download model files from HuggingFace Hub and return the snapshot directory."""
    _ensure_imports()
    snapshot_dir = _hf_hub.snapshot_download(
        repo_id=model_id,
        allow_patterns=list(filenames),
        cache_dir=str(cache_dir) if cache_dir else None,
    )
    return Path(snapshot_dir)


class OnnxQueryEncoder:
    """Query encoder using direct ONNX Runtime inference.

    Loads a BERT-family sentence-embedding model from the HuggingFace Hub's
    /onnx/ folder and applies mean pooling plus L2 normalization, which is
    the pooling the precomputed note vectors were produced with.

    Args:
        model_id: HuggingFace model ID.
        dimension: Expected output dimensionality (corrected after load).
        onnx_filename: ONNX file within the repo; the FP32 export is used
            when the quantized file is missing.
        max_length: Maximum token length for truncation.
        cache_dir: Optional custom cache directory for model files.
        providers: Provider preference string ("auto", "cpu", or comma-separated).
    """

    _FALLBACK_ONNX = "onnx/model.onnx"

    def __init__(
        self,
        model_id: str = DEFAULT_MODEL.model_id,
        dimension: int = DEFAULT_MODEL.dimension,
        onnx_filename: str = "onnx/model_quantized.onnx",
        max_length: int = 512,
        cache_dir: Optional[Path] = None,
        providers: str = "auto",
    ) -> None:
        self._model_id = model_id
        self._dim = dimension
        self._onnx_filename = onnx_filename
        self._max_length = max_length
        self._cache_dir = cache_dir
        self._providers_pref = providers
        self._session: Optional[object] = None  # ort.InferenceSession
        self._tokenizer: Optional[object] = None  # tokenizers.Tokenizer

    @property
    def model_name(self) -> str:
        return self._model_id

    @property
    def dimension(self) -> int:
        return self._dim

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    def _locate_onnx(self) -> Tuple[Path, Path]:
        """Download model files, returning (snapshot_dir, onnx_path)."""
        patterns = [
            self._onnx_filename,
            f"{self._onnx_filename}_data",
            "tokenizer.json",
            "tokenizer_config.json",
        ]
        model_dir = _download_model_files(self._model_id, patterns, self._cache_dir)
        onnx_path = model_dir / self._onnx_filename
        if onnx_path.exists():
            return model_dir, onnx_path

        if self._onnx_filename == self._FALLBACK_ONNX:
            raise FileNotFoundError(
                f"ONNX model not found at {onnx_path}. "
                f"Check that {self._model_id} has an ONNX model at {self._onnx_filename}"
            )
        logger.warning(
            f"{self._onnx_filename} not found for {self._model_id}, "
            f"falling back to {self._FALLBACK_ONNX}"
        )
        model_dir = _download_model_files(
            self._model_id,
            [self._FALLBACK_ONNX, f"{self._FALLBACK_ONNX}_data"],
            self._cache_dir,
        )
        self._onnx_filename = self._FALLBACK_ONNX
        onnx_path = model_dir / self._FALLBACK_ONNX
        if not onnx_path.exists():
            raise FileNotFoundError(f"ONNX model not found at {onnx_path}")
        return model_dir, onnx_path

    def load(self) -> None:
        """Download and load the ONNX model and tokenizer."""
        if self._session is not None:
            return  # Already loaded

        _ensure_imports()
        logger.info(f"Loading query encoder: {self._model_id} [{self._onnx_filename}]")

        model_dir, onnx_path = self._locate_onnx()

        tokenizer = _tokenizers.Tokenizer.from_file(str(model_dir / "tokenizer.json"))
        tokenizer.enable_truncation(max_length=self._max_length)
        tokenizer.enable_padding(length=None)  # Dynamic padding per batch

        sess_options = _ort.SessionOptions()
        sess_options.graph_optimization_level = (
            _ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        )
        session = _ort.InferenceSession(
            str(onnx_path),
            sess_options=sess_options,
            providers=_resolve_providers(self._providers_pref),
        )

        # Detect actual dimension from model output shape
        outputs = session.get_outputs()
        if outputs and len(outputs[0].shape) >= 3 and isinstance(
            outputs[0].shape[-1], int
        ):
            self._dim = outputs[0].shape[-1]

        self._tokenizer = tokenizer
        self._session = session
        logger.info(
            f"Query encoder loaded: {self._model_id}, dim={self._dim}, "
            f"providers={session.get_providers()}"
        )

    def unload(self) -> None:
        """Release model from memory."""
        self._session = None
        self._tokenizer = None
        logger.info(f"Query encoder unloaded: {self._model_id}")

    def _tokenize(self, texts: Sequence[str]) -> dict:
        """Tokenize texts and return numpy arrays for ONNX input."""
        encodings = self._tokenizer.encode_batch(list(texts))
        max_len = max(len(e.ids) for e in encodings)

        input_ids = np.zeros((len(texts), max_len), dtype=np.int64)
        attention_mask = np.zeros((len(texts), max_len), dtype=np.int64)

        for i, encoding in enumerate(encodings):
            length = len(encoding.ids)
            input_ids[i, :length] = encoding.ids
            attention_mask[i, :length] = encoding.attention_mask

        return {"input_ids": input_ids, "attention_mask": attention_mask}

    def _forward(self, inputs: dict) -> np.ndarray:
        """Run ONNX inference and apply mean pooling + L2 normalization."""
        input_names = {inp.name for inp in self._session.get_inputs()}
        feed = {}
        if "input_ids" in input_names:
            feed["input_ids"] = inputs["input_ids"]
        if "attention_mask" in input_names:
            feed["attention_mask"] = inputs["attention_mask"]
        if "token_type_ids" in input_names:
            # BERT-family models expect token_type_ids (all zeros for one sequence)
            feed["token_type_ids"] = np.zeros_like(inputs["input_ids"])

        outputs = self._session.run(None, feed)
        return mean_pool_and_normalize(outputs[0], inputs["attention_mask"])

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text into a normalized dense vector."""
        if not self.is_loaded:
            self.load()
        return self._forward(self._tokenize([text]))[0]


ProviderFactory = Callable[[ModelSpec], "EmbeddingProvider"]
QueryEncodeFn = Callable[[str], Awaitable[List[float]]]


class QueryEncoderCache:
    """Holds at most one loaded encoder, keyed by resolved model name.

    The provider for a resolved model is built on first use and reused
    across calls. Resolving a different model unloads the previous one and
    swaps in the new provider. Inference runs in a worker thread, bounded
    by ``max_concurrency`` and a per-call ``timeout``.

    Args:
        provider_factory: Builds a provider for a ModelSpec. Defaults to
            OnnxQueryEncoder.
        timeout: Seconds allowed for one encode (including a first load).
        max_concurrency: Concurrent encodes allowed.
        cache_dir: Model download cache for the default factory.
        providers: ONNX provider preference for the default factory.
    """

    def __init__(
        self,
        provider_factory: Optional[ProviderFactory] = None,
        timeout: float = 20.0,
        max_concurrency: int = 1,
        cache_dir: Optional[Path] = None,
        providers: str = "auto",
    ) -> None:
        self._factory = provider_factory or (
            lambda spec: OnnxQueryEncoder(
                model_id=spec.model_id,
                dimension=spec.dimension,
                cache_dir=cache_dir,
                providers=providers,
            )
        )
        self._timeout = timeout
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._lock = threading.Lock()
        self._load_lock = threading.Lock()
        self._model_id: Optional[str] = None
        self._provider: Optional[EmbeddingProvider] = None

    @property
    def current_model(self) -> Optional[str]:
        """Model ID of the cached provider, if any."""
        return self._model_id

    def get_or_load(
        self, model_hint: Optional[str] = None, dimension: Optional[int] = None
    ) -> "EmbeddingProvider":
        """Return the provider for the resolved model, creating it if needed.

        The provider is constructed here but its weights load lazily on the
        first ``embed``.
        """
        spec = pick_model(model_hint, dimension)
        with self._lock:
            if self._provider is not None and self._model_id == spec.model_id:
                return self._provider
            previous = self._provider
            self._provider = self._factory(spec)
            self._model_id = spec.model_id
        if previous is not None and previous.is_loaded:
            logger.info(f"Swapping query encoder to {spec.model_id}")
            previous.unload()
        return self._provider

    def invalidate(self) -> None:
        """Drop (and unload) the cached provider."""
        with self._lock:
            provider = self._provider
            self._provider = None
            self._model_id = None
        if provider is not None and provider.is_loaded:
            provider.unload()

    def _embed_sync(self, provider: "EmbeddingProvider", text: str) -> List[float]:
        if not provider.is_loaded:
            with self._load_lock:
                if not provider.is_loaded:
                    try:
                        provider.load()
                    except Exception as e:
                        raise EmbeddingError(
                            f"Failed to load query encoder: {e}",
                            code=ErrorCode.EMBEDDING_MODEL_LOAD_FAILED,
                            operation="encoder_load",
                            original_error=e,
                        )
        try:
            vector = provider.embed(text)
        except Exception as e:
            raise EmbeddingError(
                f"Query encoding failed: {e}",
                code=ErrorCode.EMBEDDING_INFERENCE_FAILED,
                operation="encode",
                original_error=e,
            )
        return [float(x) for x in np.asarray(vector, dtype=np.float64).ravel()]

    async def get_encoder(
        self, model_hint: Optional[str] = None, dimension: Optional[int] = None
    ) -> QueryEncodeFn:
        """Resolve a model and return an async ``encode(text)`` function.

        Raises:
            EmbeddingError: From the returned function, on load failure,
                inference failure, or timeout.
        """
        provider = self.get_or_load(model_hint, dimension)

        async def encode(text: str) -> List[float]:
            async with self._semaphore:
                try:
                    return await asyncio.wait_for(
                        asyncio.to_thread(self._embed_sync, provider, text),
                        timeout=self._timeout,
                    )
                except asyncio.TimeoutError as e:
                    raise EmbeddingError(
                        f"Query encoding timed out after {self._timeout:.1f}s",
                        code=ErrorCode.EMBEDDING_TIMEOUT,
                        operation="encode",
                        original_error=e,
                    )

        return encode

    async def warmup(
        self, model_hint: Optional[str] = None, dimension: Optional[int] = None
    ) -> bool:
        """Load the model ahead of the first query. Failures are logged, not raised."""
        try:
            encode = await self.get_encoder(model_hint, dimension)
            await encode("warmup")
            return True
        except EmbeddingError as e:
            logger.warning(f"Query encoder warmup failed: {e}")
            return False


def default_encoder_cache() -> QueryEncoderCache:
    """Build an encoder cache from the global config."""
    from vault_search.config import config

    return QueryEncoderCache(
        timeout=config.embed_timeout_seconds,
        max_concurrency=config.embed_max_concurrency,
        cache_dir=config.embedding_cache_dir,
        providers=config.onnx_providers,
    )
