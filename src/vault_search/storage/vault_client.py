"""Vault access collaborators: listing and fetching notes.

Two implementations of the ``VaultClient`` protocol:

- ``ObsidianRestVault`` talks to the Obsidian Local REST API over httpx.
- ``LocalVault`` reads a vault directory straight from the filesystem.

Both return vault-relative "/"-separated names, mark directories with a
trailing "/", raise ``NoteNotFoundError`` for missing paths and
``StorageError`` for everything else.
"""

import asyncio
import logging
import os
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

import httpx

from vault_search.config import config
from vault_search.exceptions import ErrorCode, NoteNotFoundError, StorageError
from vault_search.services.embedding_types import ContentFormat
from vault_search.utils import normalize_vault_path

logger = logging.getLogger(__name__)

NOTE_JSON_MEDIA_TYPE = "application/vnd.olrapi.note+json"
MARKDOWN_MEDIA_TYPE = "text/markdown"

DEFAULT_TIMEOUT = 15.0


def _mtime_from_headers(response: httpx.Response) -> float:
    """Epoch milliseconds from Last-Modified, or 0 when absent/invalid."""
    header = response.headers.get("Last-Modified")
    if not header:
        return 0.0
    try:
        return parsedate_to_datetime(header).timestamp() * 1000.0
    except (TypeError, ValueError):
        return 0.0


class ObsidianRestVault:
    """Vault collaborator backed by the Obsidian Local REST API.

    Args:
        base_url: REST API base URL.
        api_key: Bearer credential.
        timeout: Per-request timeout in seconds.
        verify_ssl: TLS certificate verification (the plugin ships a
            self-signed certificate).
        client: Optional shared ``httpx.AsyncClient``; one is created lazily
            otherwise and closed by ``aclose()``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        verify_ssl: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_config(cls) -> "ObsidianRestVault":
        return cls(
            base_url=config.obsidian_base_url,
            api_key=config.obsidian_api_key,
            verify_ssl=config.obsidian_verify_ssl,
        )

    async def __aenter__(self) -> "ObsidianRestVault":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout, verify=self.verify_ssl
            )
        return self._client

    def _headers(self, accept: str) -> Dict[str, str]:
        headers = {"Accept": accept}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get(
        self, url_path: str, accept: str, operation: str, path: str
    ) -> httpx.Response:
        try:
            response = await self._http().get(
                f"{self.base_url}{url_path}", headers=self._headers(accept)
            )
        except httpx.HTTPError as e:
            raise StorageError(
                f"Request to Obsidian REST API failed: {e}",
                operation=operation,
                path=path,
                code=ErrorCode.STORAGE_CONNECTION_FAILED,
                original_error=e,
            ) from e

        if response.status_code == 404:
            raise NoteNotFoundError(path)
        if not response.is_success:
            raise StorageError(
                f"Obsidian REST API returned HTTP {response.status_code}",
                operation=operation,
                path=path,
                code=(
                    ErrorCode.STORAGE_LIST_FAILED
                    if operation == "list_files"
                    else ErrorCode.STORAGE_READ_FAILED
                ),
            )
        return response

    async def list_files(self, dir_path: str) -> List[str]:
        directory = normalize_vault_path(dir_path)
        url_path = f"/vault/{quote(directory)}/" if directory else "/vault/"
        response = await self._get(
            url_path, "application/json", "list_files", directory or "/"
        )
        try:
            body = response.json()
        except ValueError as e:
            raise StorageError(
                "Directory listing is not JSON",
                operation="list_files",
                path=directory or "/",
                code=ErrorCode.NOTE_PAYLOAD_INVALID,
                original_error=e,
            ) from e

        files = body.get("files") if isinstance(body, dict) else None
        if not isinstance(files, list):
            raise StorageError(
                "Directory listing has no 'files' array",
                operation="list_files",
                path=directory or "/",
                code=ErrorCode.NOTE_PAYLOAD_INVALID,
            )
        return [entry for entry in files if isinstance(entry, str)]

    async def get_file_content(
        self, path: str, content_format: ContentFormat = "json"
    ) -> Dict[str, Any]:
        note_path = normalize_vault_path(path)
        accept = NOTE_JSON_MEDIA_TYPE if content_format == "json" else MARKDOWN_MEDIA_TYPE
        response = await self._get(
            f"/vault/{quote(note_path)}", accept, "get_file_content", note_path
        )

        if content_format != "json":
            return {
                "content": response.text,
                "stat": {"mtime": _mtime_from_headers(response)},
            }

        try:
            body = response.json()
        except ValueError as e:
            raise StorageError(
                "Note payload is not JSON",
                operation="get_file_content",
                path=note_path,
                code=ErrorCode.NOTE_PAYLOAD_INVALID,
                original_error=e,
            ) from e
        if not isinstance(body, dict):
            raise StorageError(
                "Note payload is not an object",
                operation="get_file_content",
                path=note_path,
                code=ErrorCode.NOTE_PAYLOAD_INVALID,
            )
        return body


class LocalVault:
    """Vault collaborator reading notes from a directory on disk.

    Symlinked directories are not listed, so traversal cannot loop
    through the filesystem.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser().resolve()

    def _resolve(self, vault_path: str) -> Path:
        relative = normalize_vault_path(vault_path)
        target = (self.root / relative).resolve() if relative else self.root
        if target != self.root and self.root not in target.parents:
            raise StorageError(
                "Path escapes the vault root",
                operation="resolve",
                path=vault_path,
                code=ErrorCode.VALIDATION_FAILED,
            )
        return target

    def _list_sync(self, dir_path: str) -> List[str]:
        directory = self._resolve(dir_path)
        if not directory.is_dir():
            raise NoteNotFoundError(dir_path or "/")
        entries = []
        try:
            with os.scandir(directory) as it:
                for entry in it:
                    if entry.is_dir(follow_symlinks=False):
                        entries.append(f"{entry.name}/")
                    elif entry.is_file():
                        entries.append(entry.name)
        except OSError as e:
            raise StorageError(
                f"Cannot list directory: {e}",
                operation="list_files",
                path=dir_path or "/",
                code=ErrorCode.STORAGE_LIST_FAILED,
                original_error=e,
            ) from e
        return sorted(entries)

    def _read_sync(self, path: str, content_format: ContentFormat) -> Dict[str, Any]:
        file_path = self._resolve(path)
        if not file_path.is_file():
            raise NoteNotFoundError(path)
        try:
            content = file_path.read_text(encoding="utf-8")
            stat = file_path.stat()
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(
                f"Cannot read note: {e}",
                operation="get_file_content",
                path=path,
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e
        result: Dict[str, Any] = {
            "content": content,
            "stat": {"mtime": stat.st_mtime * 1000.0},
        }
        if content_format == "json":
            result["path"] = normalize_vault_path(path)
        return result

    async def list_files(self, dir_path: str) -> List[str]:
        return await asyncio.to_thread(self._list_sync, dir_path)

    async def get_file_content(
        self, path: str, content_format: ContentFormat = "json"
    ) -> Dict[str, Any]:
        return await asyncio.to_thread(self._read_sync, path, content_format)
