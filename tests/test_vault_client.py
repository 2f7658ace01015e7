"""Tests for the vault collaborators."""
import os

import httpx
import pytest

from vault_search.exceptions import ErrorCode, NoteNotFoundError, StorageError
from vault_search.services.embedding_types import VaultClient
from vault_search.storage.content_cache import VaultContentCache
from vault_search.storage.vault_client import LocalVault, ObsidianRestVault


@pytest.fixture
def vault_dir(tmp_path):
    (tmp_path / "Inbox").mkdir()
    (tmp_path / "Inbox" / "idea.md").write_text("an idea", encoding="utf-8")
    (tmp_path / "Projects" / "deep").mkdir(parents=True)
    (tmp_path / "Projects" / "deep" / "plan.md").write_text("a plan", encoding="utf-8")
    (tmp_path / "root.md").write_text("root note", encoding="utf-8")
    return tmp_path


class TestLocalVault:
    """Tests for the filesystem vault."""

    def test_satisfies_protocol(self, vault_dir):
        assert isinstance(LocalVault(vault_dir), VaultClient)

    @pytest.mark.anyio
    async def test_list_root(self, vault_dir):
        entries = await LocalVault(vault_dir).list_files("")
        assert entries == ["Inbox/", "Projects/", "root.md"]

    @pytest.mark.anyio
    async def test_list_subdirectory(self, vault_dir):
        vault = LocalVault(vault_dir)
        assert await vault.list_files("Projects") == ["deep/"]
        assert await vault.list_files("/Projects/deep/") == ["plan.md"]

    @pytest.mark.anyio
    async def test_list_missing_directory(self, vault_dir):
        with pytest.raises(NoteNotFoundError):
            await LocalVault(vault_dir).list_files("Nope")

    @pytest.mark.anyio
    async def test_get_file_content(self, vault_dir):
        payload = await LocalVault(vault_dir).get_file_content("Inbox/idea.md")

        assert payload["content"] == "an idea"
        expected = os.stat(vault_dir / "Inbox" / "idea.md").st_mtime * 1000
        assert payload["stat"]["mtime"] == pytest.approx(expected)

    @pytest.mark.anyio
    async def test_get_missing_file(self, vault_dir):
        with pytest.raises(NoteNotFoundError):
            await LocalVault(vault_dir).get_file_content("Inbox/gone.md")

    @pytest.mark.anyio
    async def test_path_escape_rejected(self, vault_dir):
        with pytest.raises(StorageError):
            await LocalVault(vault_dir / "Inbox").get_file_content("../root.md")

    @pytest.mark.anyio
    async def test_symlinked_directories_not_listed(self, vault_dir):
        try:
            os.symlink(vault_dir, vault_dir / "Inbox" / "loop", target_is_directory=True)
        except (OSError, NotImplementedError):
            pytest.skip("symlinks not supported")

        assert await LocalVault(vault_dir).list_files("Inbox") == ["idea.md"]

    @pytest.mark.anyio
    async def test_feeds_content_cache(self, vault_dir):
        cache = VaultContentCache(LocalVault(vault_dir))
        await cache.build_cache()
        assert set(cache.get_cache()) == {
            "Inbox/idea.md",
            "Projects/deep/plan.md",
            "root.md",
        }


def rest_vault(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ObsidianRestVault("http://obsidian.test/", "secret", client=http)


class TestObsidianRestVault:
    """Tests for the Local REST API collaborator."""

    @pytest.mark.anyio
    async def test_list_root(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"files": ["Inbox/", "root.md", 7]})

        entries = await rest_vault(handler).list_files("/")

        assert entries == ["Inbox/", "root.md"]
        assert seen[0].url.path == "/vault/"
        assert seen[0].headers["Authorization"] == "Bearer secret"

    @pytest.mark.anyio
    async def test_list_subdirectory_url(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"files": []})

        await rest_vault(handler).list_files("My Notes/Daily")
        assert seen[0].url.path == "/vault/My Notes/Daily/"

    @pytest.mark.anyio
    async def test_list_not_found(self):
        vault = rest_vault(lambda request: httpx.Response(404))
        with pytest.raises(NoteNotFoundError):
            await vault.list_files("Missing")

    @pytest.mark.anyio
    async def test_list_server_error(self):
        vault = rest_vault(lambda request: httpx.Response(500))
        with pytest.raises(StorageError) as exc_info:
            await vault.list_files("")
        assert exc_info.value.code == ErrorCode.STORAGE_LIST_FAILED

    @pytest.mark.anyio
    async def test_list_bad_payload(self):
        vault = rest_vault(lambda request: httpx.Response(200, json={"nope": 1}))
        with pytest.raises(StorageError) as exc_info:
            await vault.list_files("")
        assert exc_info.value.code == ErrorCode.NOTE_PAYLOAD_INVALID

    @pytest.mark.anyio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(StorageError) as exc_info:
            await rest_vault(handler).list_files("")
        assert exc_info.value.code == ErrorCode.STORAGE_CONNECTION_FAILED

    @pytest.mark.anyio
    async def test_get_note_json(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200,
                json={"content": "body", "path": "a.md", "stat": {"mtime": 123}},
            )

        payload = await rest_vault(handler).get_file_content("a.md")

        assert payload["content"] == "body"
        assert payload["stat"]["mtime"] == 123
        assert seen[0].headers["Accept"] == "application/vnd.olrapi.note+json"

    @pytest.mark.anyio
    async def test_get_note_text(self):
        def handler(request):
            return httpx.Response(
                200,
                text="# Title",
                headers={"Last-Modified": "Tue, 14 Nov 2023 22:13:20 GMT"},
            )

        payload = await rest_vault(handler).get_file_content("a.md", "text")

        assert payload["content"] == "# Title"
        assert payload["stat"]["mtime"] == 1_700_000_000_000.0

    @pytest.mark.anyio
    async def test_get_note_not_found(self):
        vault = rest_vault(lambda request: httpx.Response(404))
        with pytest.raises(NoteNotFoundError):
            await vault.get_file_content("gone.md")

    @pytest.mark.anyio
    async def test_aclose_leaves_injected_client_open(self):
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"files": []}))
        )
        async with ObsidianRestVault("http://obsidian.test", client=http) as vault:
            await vault.list_files("")
        assert not http.is_closed
        await http.aclose()
