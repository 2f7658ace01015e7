"""Type protocols for the retrieval pipeline's collaborators.

Defines the structural contracts that production implementations and
test fakes must satisfy. Uses Protocol (PEP 544) for structural
subtyping - implementations don't need to inherit from these.

This module is importable without numpy installed (annotations are
deferred via __future__).
"""
from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Literal,
    Protocol,
    runtime_checkable,
)

if TYPE_CHECKING:
    import numpy as np

    from vault_search.services.lexical_ranker import LexicalDocument

ContentFormat = Literal["json", "text"]

# Async callable returning the lexical corpus; replaces the content cache
DocumentSource = Callable[[], Awaitable[List["LexicalDocument"]]]


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Contract for encoding query text into a dense vector."""

    @property
    def model_name(self) -> str:
        """Identifier of the underlying model."""
        ...

    @property
    def dimension(self) -> int:
        """Dimensionality of produced vectors."""
        ...

    def load(self) -> None:
        """Load model into memory. May be called multiple times (idempotent)."""
        ...

    def unload(self) -> None:
        """Release model from memory. May be called multiple times (idempotent)."""
        ...

    @property
    def is_loaded(self) -> bool:
        """Whether the model is currently loaded in memory."""
        ...

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text into a dense vector.

        Args:
            text: Input text to embed.

        Returns:
            1-D numpy array of shape (dimension,), mean-pooled and L2-normalized.
        """
        ...


@runtime_checkable
class VaultClient(Protocol):
    """Contract for the vault access collaborator.

    Paths are vault-relative and "/"-separated. Implementations raise
    ``NoteNotFoundError`` for missing files or directories and
    ``StorageError`` for every other failure.
    """

    async def list_files(self, dir_path: str) -> List[str]:
        """List the entries of a directory.

        Args:
            dir_path: Directory to list; "" or "/" is the vault root.

        Returns:
            Entry names relative to ``dir_path``. Directories end with "/".
        """
        ...

    async def get_file_content(
        self, path: str, content_format: ContentFormat = "json"
    ) -> Dict[str, Any]:
        """Fetch a note.

        Returns:
            ``{"content": str, "stat": {"mtime": number}}``.
        """
        ...
