"""Common test fixtures for the vault search pipeline."""

import tempfile
from pathlib import Path

import pytest

from tests.fakes import FakeEmbeddingProvider, FakeVault, write_vector
from vault_search.config import config
from vault_search.observability import metrics


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def smart_env_dir():
    """Temporary embedding store root."""
    with tempfile.TemporaryDirectory() as env_dir:
        yield Path(env_dir)


@pytest.fixture
def test_config(smart_env_dir, monkeypatch):
    """Configure with test values (auto-restored even on crash)."""
    monkeypatch.setattr(config, "smart_env_dir", smart_env_dir)
    monkeypatch.setattr(config, "smart_env_cache_ttl", 60.0)
    monkeypatch.setattr(config, "search_mode", "auto")
    monkeypatch.setattr(config, "obsidian_api_key", None)
    monkeypatch.setattr(config, "query_embedding_enabled", False)
    monkeypatch.setattr(config, "query_embedding_model", None)
    yield config


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Keep the global metrics collector isolated per test."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def abc_store(smart_env_dir):
    """Store where B is closer to A than C is."""
    write_vector(smart_env_dir, "a.json", {"path": "A.md", "vec": [1.0, 0.0, 0.0]})
    write_vector(smart_env_dir, "b.json", {"path": "B.md", "vec": [0.9, 0.1, 0.0]})
    write_vector(smart_env_dir, "c.json", {"path": "C.md", "vec": [0.0, 1.0, 0.0]})
    return smart_env_dir


@pytest.fixture
def fake_embedder():
    """Create a FakeEmbeddingProvider with the small model's dimension."""
    return FakeEmbeddingProvider(dim=384)


@pytest.fixture
def fake_vault():
    """A small vault with nested folders."""
    return FakeVault(
        {
            "Inbox/idea.md": "Spaced repetition helps memory retention",
            "Projects/garden.md": "Tomatoes need sun and water",
            "Projects/notes/recall.md": "Active recall and spaced repetition",
            "readme.txt": "not a note",
        }
    )
