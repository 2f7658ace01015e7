"""In-memory cache of vault note content for the lexical tier.

State machine: idle -> building -> ready. A build walks the vault through
the injected ``VaultClient``, then fetches every note and stores a
``CacheEntry`` keyed by its normalized vault path. Readers never wait on a
build: they see whatever has been cached so far.
"""

import asyncio
import logging
import posixpath
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Set

from vault_search.config import config
from vault_search.exceptions import (
    ErrorCode,
    NoteNotFoundError,
    StorageError,
)
from vault_search.models.schema import CacheEntry
from vault_search.observability import timed_operation
from vault_search.services.embedding_types import VaultClient
from vault_search.services.lexical_ranker import LexicalDocument
from vault_search.utils import normalize_vault_path

logger = logging.getLogger(__name__)

PROGRESS_LOG_INTERVAL = 50


def _entry_from_payload(path: str, payload: object) -> CacheEntry:
    """Validate a ``{content, stat: {mtime}}`` payload into a CacheEntry."""
    content = payload.get("content") if isinstance(payload, dict) else None
    stat = payload.get("stat") if isinstance(payload, dict) else None
    mtime = stat.get("mtime") if isinstance(stat, dict) else None
    if not isinstance(content, str) or isinstance(mtime, bool) or not isinstance(
        mtime, (int, float)
    ):
        raise StorageError(
            "Note payload is missing content or stat.mtime",
            operation="get_file_content",
            path=path,
            code=ErrorCode.NOTE_PAYLOAD_INVALID,
        )
    return CacheEntry(content=content, mtime=float(mtime))


class VaultContentCache:
    """Builds and serves a ``path -> CacheEntry`` map of the vault's notes.

    Args:
        vault: Listing/fetch collaborator.
        note_extension: Only files with this extension (case-insensitive)
            are cached.
    """

    def __init__(self, vault: VaultClient, note_extension: str = ".md"):
        self._vault = vault
        self._note_extension = note_extension.lower()
        self._entries: Dict[str, CacheEntry] = {}
        self._ready = False
        self._building = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, vault: VaultClient) -> "VaultContentCache":
        return cls(vault, note_extension=config.note_extension)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def is_ready(self) -> bool:
        return self._ready

    def is_building(self) -> bool:
        return self._building

    def get_cache(self) -> Mapping[str, CacheEntry]:
        """Read-only live view of the cache."""
        return MappingProxyType(self._entries)

    def get_entry(self, path: str) -> Optional[CacheEntry]:
        return self._entries.get(normalize_vault_path(path))

    def size(self) -> int:
        return len(self._entries)

    def documents(self) -> List[LexicalDocument]:
        """Snapshot of the cached notes as a lexical corpus, in insertion order."""
        return [
            LexicalDocument(path=path, text=entry.content)
            for path, entry in list(self._entries.items())
        ]

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def _is_note(self, name: str) -> bool:
        return name.lower().endswith(self._note_extension)

    async def _collect_notes(
        self, dir_path: str, visited: Set[str], is_root: bool = False
    ) -> List[str]:
        """Recursively list note paths under ``dir_path``.

        Raises:
            Exception: Whatever the collaborator raised, only when the root
                listing fails.
        """
        directory = normalize_vault_path(dir_path)
        if directory in visited:
            logger.warning(
                f"Cycle detected or directory already visited during cache "
                f"build: '{directory or '/'}'. Skipping."
            )
            return []
        visited.add(directory)

        try:
            entries = await self._vault.list_files(directory)
        except NoteNotFoundError:
            if is_root:
                raise
            logger.warning(f"Directory not found during cache build, skipping: {directory}")
            return []
        except Exception as e:
            if is_root:
                raise
            logger.error(f"Failed to list directory during cache build: {directory}: {e}")
            return []

        notes: List[str] = []
        for entry in entries:
            full_path = normalize_vault_path(posixpath.join(directory, entry))
            if entry.endswith("/"):
                notes.extend(await self._collect_notes(full_path, visited))
            elif self._is_note(entry):
                notes.append(full_path)
        return notes

    async def build_cache(self, force: bool = False) -> None:
        """Walk the vault and cache every note.

        A call while a build is running is a no-op, as is a call on a ready
        cache unless ``force`` is set. Per-file failures are logged and
        skipped; a failed root listing leaves the cache not ready. Never
        raises for collaborator errors.
        """
        if self._building:
            logger.warning("Cache build already in progress. Skipping.")
            return
        if self._ready and not force:
            logger.info("Cache already built. Skipping.")
            return

        self._building = True
        self._ready = False
        previous = set(self._entries)
        logger.info("Starting vault cache build")
        try:
            with timed_operation("content_cache.build") as op:
                try:
                    note_paths = await self._collect_notes("", set(), is_root=True)
                except Exception as e:
                    logger.error(
                        f"Critical error during vault cache build; cache not ready: {e}"
                    )
                    op["root_failed"] = True
                    return

                total = len(note_paths)
                logger.info(f"Found {total} notes to cache")
                failures = 0
                for index, path in enumerate(note_paths, start=1):
                    try:
                        payload = await self._vault.get_file_content(path, "json")
                        self._entries[path] = _entry_from_payload(path, payload)
                    except Exception as e:
                        failures += 1
                        logger.error(f"Failed to cache file: {path}. Skipping. Error: {e}")
                    if index % PROGRESS_LOG_INTERVAL == 0 or index == total:
                        logger.info(f"Caching progress: {index}/{total} files processed")

                # Entries added by refresh_entry during the build are kept
                for stale in previous.difference(note_paths):
                    self._entries.pop(stale, None)

                self._ready = True
                op["cached"] = len(self._entries)
                op["failures"] = failures
                logger.info(
                    f"Vault cache build completed: {len(self._entries)} notes cached, "
                    f"{failures} failures"
                )
        finally:
            self._building = False

    def start_background_build(self, force: bool = False) -> asyncio.Task:
        """Schedule ``build_cache`` as a detached task on the running loop."""
        if self._task is not None and not self._task.done():
            return self._task
        self._task = asyncio.create_task(self.build_cache(force=force))
        return self._task

    # ------------------------------------------------------------------
    # Single-entry maintenance
    # ------------------------------------------------------------------

    async def refresh_entry(self, path: str) -> Optional[CacheEntry]:
        """Re-fetch one note after a write.

        Returns the new entry, or None if the note no longer exists (its
        entry is dropped).

        Raises:
            StorageError: If the fetch fails for any other reason.
        """
        key = normalize_vault_path(path)
        try:
            payload = await self._vault.get_file_content(key, "json")
        except NoteNotFoundError:
            if self._entries.pop(key, None) is not None:
                logger.info(f"Removed deleted note from cache: {key}")
            return None
        entry = _entry_from_payload(key, payload)
        self._entries[key] = entry
        logger.debug(f"Refreshed cache entry: {key}")
        return entry

    def remove_entry(self, path: str) -> bool:
        """Drop one entry. Returns whether it was present."""
        return self._entries.pop(normalize_vault_path(path), None) is not None
