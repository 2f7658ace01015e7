"""Data models for the vault search service."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator


class SearchMethod(str, Enum):
    """Retrieval tier that produced a search outcome."""

    PLUGIN = "plugin"  # Remote semantic-search endpoint
    FILES = "files"  # Local precomputed embedding store
    LEXICAL = "lexical"  # TF-IDF over cached note content


class SearchMode(str, Enum):
    """Configured tier selection."""

    AUTO = "auto"  # plugin -> files -> lexical
    PLUGIN = "plugin"  # plugin -> lexical
    FILES = "files"  # files -> lexical
    LEXICAL = "lexical"  # lexical only

    @property
    def allows_plugin(self) -> bool:
        return self in (SearchMode.AUTO, SearchMode.PLUGIN)

    @property
    def allows_files(self) -> bool:
        return self in (SearchMode.AUTO, SearchMode.FILES)


@dataclass(frozen=True)
class NoteVector:
    """A precomputed embedding for one note.

    Attributes:
        id: Record identifier (explicit id, or derived from the file name).
        note_path: Vault path of the note, "/"-separated.
        vec: The embedding components.
        title: Optional note title.
        tags: Optional note tags.
        model: Name of the model that produced the vector, when known.
    """

    id: str
    note_path: str
    vec: Tuple[float, ...]
    title: Optional[str] = None
    tags: Optional[Tuple[str, ...]] = None
    model: Optional[str] = None

    @property
    def dimension(self) -> int:
        return len(self.vec)


@dataclass(frozen=True)
class CacheEntry:
    """Cached note content with its modification time (epoch ms)."""

    content: str
    mtime: float


class RankedResult(BaseModel):
    """One ranked note. Scores are tier-specific and not comparable across tiers."""

    path: str = Field(..., description="Vault path of the note")
    score: float = Field(..., description="Tier-specific relevance score")
    title: Optional[str] = Field(default=None, description="Display title")
    preview: Optional[str] = Field(default=None, description="Short content preview")

    model_config = {"frozen": True}


class SearchOutcome(BaseModel):
    """Provenance-tagged result shared by every retrieval tier."""

    method: SearchMethod = Field(..., description="Tier that produced the results")
    results: List[RankedResult] = Field(default_factory=list)
    encoder: Optional[str] = Field(default=None, description="Model/encoder used")
    dim: Optional[int] = Field(default=None, description="Vector dimensionality")
    pool_size: Optional[int] = Field(
        default=None, description="Number of candidates scored"
    )
    took_ms: float = Field(default=0.0, description="Wall time for the search")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the external JSON contract (camelCase, no empty fields)."""
        data: Dict[str, Any] = {
            "method": self.method.value,
            "results": [r.model_dump(exclude_none=True) for r in self.results],
            "tookMs": round(self.took_ms, 2),
        }
        if self.encoder is not None:
            data["encoder"] = self.encoder
        if self.dim is not None:
            data["dim"] = self.dim
        if self.pool_size is not None:
            data["poolSize"] = self.pool_size
        return data


class SearchRequest(BaseModel):
    """Normalized search input.

    Blank strings are treated as absent. ``limit`` is clamped by the router
    using the configured bounds, so any integer is accepted here.
    """

    query: Optional[str] = None
    from_path: Optional[str] = None
    limit: Optional[int] = None

    @field_validator("query", "from_path", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            value = str(value)
        value = value.strip()
        return value or None

    @field_validator("limit", mode="before")
    @classmethod
    def _coerce_limit(cls, value: Any) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @property
    def is_empty(self) -> bool:
        return self.query is None and self.from_path is None
