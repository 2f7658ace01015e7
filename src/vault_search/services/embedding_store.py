"""Precomputed note-vector store for the "files" retrieval tier.

Reads the vectors a Smart Connections-style environment writes to disk,
keeps them in memory behind a TTL, and answers two questions: which
stored vector belongs to a given note path (the anchor), and which notes
are nearest to a vector under cosine similarity.

On-disk layout: one JSON record per file, or many records per file
(a top-level list, a map of records, or an append-only ``.ajson`` file
of ``"key": record,`` lines), found under the store root or one of its
conventional subfolders. Parsing is best effort: a file that does not
yield both a path and a numeric vector is skipped, never fatal.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import numpy as np

from vault_search.exceptions import EmbeddingStoreError, ErrorCode
from vault_search.models.schema import NoteVector, RankedResult
from vault_search.utils import normalize_vault_path, resolve_path, to_posix

logger = logging.getLogger(__name__)

# Scanned in order; "" is the store root itself
CANDIDATE_SUBDIRECTORIES: Tuple[str, ...] = ("", "multi", "vectors", "cache")

VECTOR_FILE_SUFFIXES: Tuple[str, ...] = (".json", ".ajson")

VECTOR_KEYS: Tuple[str, ...] = ("embedding", "vector", "vec", "values")
MODEL_MAP_KEY = "embeddings"
PATH_KEYS: Tuple[str, ...] = ("path", "notePath", "filePath", "uri")

_RECORD_MARKERS = VECTOR_KEYS + PATH_KEYS + (MODEL_MAP_KEY,)


# =============================================================================
# Tolerant record parsing
# =============================================================================


def _as_vector(value: Any) -> Optional[Tuple[float, ...]]:
    """Return value as a float tuple if it is a non-empty list of finite numbers."""
    if not isinstance(value, (list, tuple)) or not value:
        return None
    components = []
    for entry in value:
        if isinstance(entry, bool) or not isinstance(entry, (int, float)):
            return None
        number = float(entry)
        if not math.isfinite(number):
            return None
        components.append(number)
    return tuple(components)


def _vector_from_entry(entry: Any) -> Optional[Tuple[float, ...]]:
    """A per-model entry is either a bare vector or an object carrying one."""
    vec = _as_vector(entry)
    if vec is not None:
        return vec
    if isinstance(entry, Mapping):
        for key in VECTOR_KEYS:
            vec = _as_vector(entry.get(key))
            if vec is not None:
                return vec
    return None


def _vector_from_model_map(
    models: Mapping[str, Any], preferred_model: Optional[str]
) -> Optional[Tuple[str, Tuple[float, ...]]]:
    if preferred_model and preferred_model in models:
        vec = _vector_from_entry(models[preferred_model])
        if vec is not None:
            return preferred_model, vec
    for model_name, entry in models.items():
        vec = _vector_from_entry(entry)
        if vec is not None:
            return str(model_name), vec
    return None


def _extract_vector(
    record: Mapping[str, Any], preferred_model: Optional[str]
) -> Optional[Tuple[Optional[str], Tuple[float, ...]]]:
    for key in VECTOR_KEYS:
        if key not in record:
            continue
        value = record[key]
        vec = _as_vector(value)
        if vec is not None:
            return None, vec
        if isinstance(value, Mapping):
            found = _vector_from_model_map(value, preferred_model)
            if found is not None:
                return found
    models = record.get(MODEL_MAP_KEY)
    if isinstance(models, Mapping):
        return _vector_from_model_map(models, preferred_model)
    return None


def _first_string(record: Mapping[str, Any], keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def normalize_note_vector(
    record: Any, fallback_id: str, preferred_model: Optional[str] = None
) -> Optional[NoteVector]:
    """Normalize one raw record into a NoteVector, or None if unusable.

    Vector aliases: ``embedding``, ``vector``, ``vec``, ``values``. Any of
    them may hold a per-model map instead of a list, and a record may carry
    a per-model ``embeddings`` map of ``{model: [..] | {vec: [..]}}``.
    Path aliases: ``path``, ``notePath``, ``filePath``, ``uri``.

    Args:
        record: Parsed JSON value for one record.
        fallback_id: Identifier used when the record has no ``id``.
        preferred_model: Model entry to pick from a per-model map, if present.
    """
    if not isinstance(record, Mapping):
        return None

    note_path = _first_string(record, PATH_KEYS)
    if note_path is None:
        return None

    found = _extract_vector(record, preferred_model)
    if found is None:
        return None
    map_model, vec = found

    record_id = record.get("id")
    model = record.get("model")
    title = record.get("title")
    tags = record.get("tags")

    return NoteVector(
        id=record_id if isinstance(record_id, str) and record_id else fallback_id,
        note_path=to_posix(note_path),
        vec=vec,
        title=title if isinstance(title, str) else None,
        tags=(
            tuple(t for t in tags if isinstance(t, str))
            if isinstance(tags, list)
            else None
        ),
        model=model if isinstance(model, str) and model else map_model,
    )


def _identifier_from_file_name(file_name: str) -> str:
    for suffix in VECTOR_FILE_SUFFIXES:
        if file_name.endswith(suffix):
            return file_name[: -len(suffix)]
    return file_name


def _decode_json(text: str, file_name: str) -> Any:
    """Decode a vector file; ``.ajson`` bodies are wrapped into one object."""
    try:
        return json.loads(text)
    except ValueError:
        if not file_name.endswith(".ajson"):
            raise
    body = text.strip().rstrip(",")
    return json.loads("{" + body + "}")


def _iter_records(data: Any, base_id: str) -> Iterable[Tuple[str, Any]]:
    if isinstance(data, Mapping):
        if any(key in data for key in _RECORD_MARKERS):
            yield base_id, data
            return
        records = [value for value in data.values() if isinstance(value, Mapping)]
    elif isinstance(data, list):
        records = [value for value in data if isinstance(value, Mapping)]
    else:
        return
    for ordinal, record in enumerate(records):
        yield f"{base_id}#{ordinal}", record


def parse_vector_file(
    text: str, file_name: str, preferred_model: Optional[str] = None
) -> List[NoteVector]:
    """Parse the contents of one vector file into zero or more NoteVectors.

    Malformed content yields an empty list rather than an error.
    """
    try:
        data = _decode_json(text, file_name)
    except ValueError:
        logger.debug(f"Skipping unparseable vector file: {file_name}")
        return []

    base_id = _identifier_from_file_name(file_name)
    vectors = []
    for record_id, record in _iter_records(data, base_id):
        vector = normalize_note_vector(record, record_id, preferred_model)
        if vector is not None:
            vectors.append(vector)
    if not vectors:
        logger.debug(f"No usable vector records in {file_name}")
    return vectors


# =============================================================================
# Loading
# =============================================================================


def _vector_files(directory: Path) -> List[Path]:
    try:
        return sorted(
            p
            for p in directory.iterdir()
            if p.is_file() and p.name.endswith(VECTOR_FILE_SUFFIXES)
        )
    except OSError:
        return []


def load_vectors(
    directory: Union[str, Path], preferred_model: Optional[str] = None
) -> List[NoteVector]:
    """Load every vector found under the store root and its candidate subfolders.

    The first loaded vector fixes the store's dimensionality; vectors of any
    other length are skipped.

    Raises:
        EmbeddingStoreError: If no vectors were found.
    """
    root = Path(directory).expanduser()
    vectors: List[NoteVector] = []
    dimension: Optional[int] = None
    skipped_files = 0
    skipped_dimension = 0

    for subdirectory in CANDIDATE_SUBDIRECTORIES:
        folder = root / subdirectory if subdirectory else root
        for file_path in _vector_files(folder):
            try:
                text = file_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.debug(f"Skipping unreadable vector file {file_path}: {e}")
                skipped_files += 1
                continue
            parsed = parse_vector_file(text, file_path.name, preferred_model)
            if not parsed:
                skipped_files += 1
            for vector in parsed:
                if dimension is None:
                    dimension = vector.dimension
                if vector.dimension != dimension:
                    skipped_dimension += 1
                    continue
                vectors.append(vector)

    if skipped_files or skipped_dimension:
        logger.debug(
            f"Vector load from {root}: skipped {skipped_files} files without "
            f"usable records, {skipped_dimension} vectors with dimension != {dimension}"
        )

    if not vectors:
        raise EmbeddingStoreError(
            f"No embeddings found in {root}",
            directory=str(root),
            code=ErrorCode.STORE_EMPTY,
        )
    return vectors


@dataclass
class VectorSnapshot:
    """An immutable list of loaded vectors plus lazily built similarity matrix."""

    directory: str
    loaded_at: float
    vectors: Tuple[NoteVector, ...]
    _matrix: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def dimension(self) -> int:
        return self.vectors[0].dimension if self.vectors else 0

    @property
    def model_hint(self) -> Optional[str]:
        """Model name of the first vector that declares one."""
        for vector in self.vectors:
            if vector.model:
                return vector.model
        return None

    def matrix(self) -> np.ndarray:
        """Row-normalized (n, dim) matrix of every vector."""
        if self._matrix is None:
            raw = np.asarray([v.vec for v in self.vectors], dtype=np.float64)
            norms = np.linalg.norm(raw, axis=1, keepdims=True)
            self._matrix = raw / np.maximum(norms, 1e-12)
        return self._matrix


VectorLoader = Callable[[Path], List[NoteVector]]


class EmbeddingStore:
    """TTL-cached access to the vectors under one store directory.

    A call reloads only when the directory changed, the TTL is <= 0, or
    ``now - loaded_at >= ttl``. Reloads swap the whole snapshot; a failed
    reload leaves the previous snapshot in place and re-raises.

    Args:
        directory: Default store root (``SMART_ENV_DIR``).
        ttl: Seconds a loaded snapshot stays fresh.
        loader: Synchronous loader, run in a worker thread.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        directory: Optional[Union[str, Path]] = None,
        ttl: float = 60.0,
        loader: Optional[VectorLoader] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._directory = str(directory) if directory else None
        self._ttl = ttl
        self._loader: VectorLoader = loader or load_vectors
        self._clock = clock
        self._snapshot: Optional[VectorSnapshot] = None

    @property
    def snapshot(self) -> Optional[VectorSnapshot]:
        """The last successfully loaded snapshot, fresh or not."""
        return self._snapshot

    def _is_fresh(self, directory: str, now: float) -> bool:
        snapshot = self._snapshot
        if snapshot is None or snapshot.directory != directory:
            return False
        if self._ttl <= 0:
            return False
        return now - snapshot.loaded_at < self._ttl

    async def get_or_load(
        self, directory: Optional[Union[str, Path]] = None
    ) -> VectorSnapshot:
        """Return the cached snapshot, reloading when stale.

        Raises:
            EmbeddingStoreError: If no directory is configured or the load
                finds no vectors.
        """
        target = str(directory) if directory else self._directory
        if not target:
            raise EmbeddingStoreError(
                "SMART_ENV_DIR is not configured",
                code=ErrorCode.STORE_NOT_CONFIGURED,
            )

        now = self._clock()
        if self._is_fresh(target, now):
            return self._snapshot

        vectors = await asyncio.to_thread(self._loader, Path(target))
        snapshot = VectorSnapshot(
            directory=target, loaded_at=now, vectors=tuple(vectors)
        )
        self._snapshot = snapshot
        logger.info(
            f"Loaded {len(snapshot.vectors)} vectors (dim={snapshot.dimension}) "
            f"from {target}"
        )
        return snapshot

    def invalidate(self) -> None:
        """Forget the cached snapshot so the next call reloads."""
        self._snapshot = None


# =============================================================================
# Lookup and ranking
# =============================================================================


def find_anchor(
    vectors: Sequence[NoteVector], path: str
) -> Optional[NoteVector]:
    """Find the stored vector for a note path.

    Exact match on the normalized path wins. Otherwise a case- and
    diacritic-insensitive suffix match is tried, which must resolve to
    exactly one distinct stored path; ambiguous matches return None.
    """
    by_path: Dict[str, NoteVector] = {}
    for vector in vectors:
        by_path.setdefault(normalize_vault_path(vector.note_path), vector)

    resolved = resolve_path(by_path.keys(), path)
    if resolved is None:
        logger.debug(f"No unique stored vector for anchor '{path}'")
        return None
    return by_path[resolved]


def rank_by_similarity(
    query_vec: Sequence[float],
    snapshot: VectorSnapshot,
    limit: int,
    exclude_path: Optional[str] = None,
) -> List[RankedResult]:
    """Rank stored notes by cosine similarity to ``query_vec``.

    Sorting is stable (ties keep load order), results are de-duplicated by
    path, and every vector stored for ``exclude_path`` is skipped.

    Raises:
        EmbeddingStoreError: If ``query_vec`` does not match the store dimension.
    """
    if len(query_vec) != snapshot.dimension:
        raise EmbeddingStoreError(
            f"Query vector has dimension {len(query_vec)}, "
            f"store has {snapshot.dimension}",
            directory=snapshot.directory,
            code=ErrorCode.DIMENSION_MISMATCH,
        )

    query = np.asarray(query_vec, dtype=np.float64)
    norm = float(np.linalg.norm(query))
    if norm == 0.0:
        scores = np.zeros(len(snapshot.vectors))
    else:
        scores = snapshot.matrix() @ (query / norm)

    excluded = normalize_vault_path(exclude_path) if exclude_path else None
    seen = set()
    results: List[RankedResult] = []
    for index in np.argsort(-scores, kind="stable"):
        vector = snapshot.vectors[int(index)]
        key = normalize_vault_path(vector.note_path)
        if key == excluded or key in seen:
            continue
        seen.add(key)
        results.append(
            RankedResult(
                path=vector.note_path,
                score=float(np.clip(scores[index], -1.0, 1.0)),
                title=vector.title,
            )
        )
        if len(results) >= limit:
            break
    return results
