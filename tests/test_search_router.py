"""Tests for the tiered QueryRouter.

The remote tier is served by httpx.MockTransport, the files tier reads
vectors written to a temporary store, and the lexical corpus comes from
an in-memory document source or a FakeVault-backed content cache.
"""
import asyncio
import time

import httpx
import pytest

from tests.fakes import FakeEmbeddingProvider, write_vector
from vault_search.models.schema import SearchMethod, SearchMode
from vault_search.services.embedding_store import EmbeddingStore
from vault_search.services.lexical_ranker import LexicalDocument
from vault_search.services.query_encoder import BGE_M3, BGE_SMALL, QueryEncoderCache
from vault_search.services.remote_search import RemoteSearchClient
from vault_search.services.search_router import QueryRouter
from vault_search.storage.content_cache import VaultContentCache

CORPUS = [
    LexicalDocument("A.md", "spaced repetition improves memory"),
    LexicalDocument("B.md", "spaced repetition and active recall"),
    LexicalDocument("C.md", "tomato garden watering schedule"),
]


def corpus_source(docs=CORPUS):
    async def source():
        return list(docs)

    return source


def remote_client(handler, timeout=1.0, attempts=3):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RemoteSearchClient(
        "http://obsidian.test", "secret", timeout=timeout, attempts=attempts, client=http
    )


def encoder_cache(dim=3):
    built = []

    def factory(spec):
        provider = FakeEmbeddingProvider(dim=dim, model_name=spec.model_id)
        built.append(provider)
        return provider

    return QueryEncoderCache(provider_factory=factory, timeout=5.0), built


def paths(outcome):
    return [r.path for r in outcome.results]


class TestEmptyRequest:
    @pytest.mark.anyio
    async def test_no_query_no_path(self):
        router = QueryRouter(document_source=corpus_source())

        outcome = await router.search()

        assert outcome.method == SearchMethod.LEXICAL
        assert outcome.results == []
        assert 0 <= outcome.took_ms < 1000

    @pytest.mark.anyio
    async def test_blank_strings_are_absent(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=[])

        router = QueryRouter(
            remote=remote_client(handler), document_source=corpus_source()
        )
        outcome = await router.search(query="   ", from_path="")

        assert outcome.method == SearchMethod.LEXICAL
        assert outcome.results == []
        assert calls == []


class TestPluginTier:
    """Tests for the remote tier and its fallbacks."""

    @pytest.mark.anyio
    async def test_plugin_results_returned(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"path": "X.md", "score": 0.9},
                        {"path": "X.md", "score": 0.8},
                        {"path": "Y.md", "score": 0.7},
                    ],
                    "encoder": "bge-micro",
                    "dim": 384,
                    "poolSize": 50,
                    "tookMs": 42,
                },
            )

        router = QueryRouter(remote=remote_client(handler))
        outcome = await router.search(query="memory", limit=5)

        assert outcome.method == SearchMethod.PLUGIN
        assert paths(outcome) == ["X.md", "Y.md"]
        assert outcome.encoder == "bge-micro"
        assert outcome.pool_size == 50
        assert outcome.took_ms == 42

    @pytest.mark.anyio
    async def test_plugin_results_truncated_to_limit(self):
        def handler(request):
            return httpx.Response(
                200, json=[{"path": f"{i}.md", "score": 1 - i / 10} for i in range(5)]
            )

        router = QueryRouter(remote=remote_client(handler))
        outcome = await router.search(query="memory", limit=2)
        assert paths(outcome) == ["0.md", "1.md"]

    @pytest.mark.anyio
    async def test_unauthorized_falls_back_after_one_attempt(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401)

        router = QueryRouter(
            remote=remote_client(handler), document_source=corpus_source()
        )
        outcome = await router.search(query="spaced repetition")

        assert len(calls) == 1
        assert outcome.method != SearchMethod.PLUGIN
        assert outcome.method == SearchMethod.LEXICAL
        assert paths(outcome) == ["A.md", "B.md", "C.md"]

    @pytest.mark.anyio
    async def test_server_errors_retried_then_fall_back(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        router = QueryRouter(
            remote=remote_client(handler, attempts=3), document_source=corpus_source()
        )
        outcome = await router.search(query="tomato")

        assert len(calls) == 3
        assert outcome.method == SearchMethod.LEXICAL
        assert paths(outcome)[0] == "C.md"

    @pytest.mark.anyio
    async def test_hanging_remote_falls_back(self):
        calls = []

        async def handler(request):
            calls.append(request)
            await asyncio.sleep(10)
            return httpx.Response(200, json=[])

        router = QueryRouter(
            remote=remote_client(handler, timeout=0.05, attempts=2),
            document_source=corpus_source(),
        )
        started = time.perf_counter()
        outcome = await router.search(query="tomato")
        elapsed = time.perf_counter() - started

        assert len(calls) == 2
        assert elapsed >= 0.1
        assert elapsed < 5
        assert outcome.method == SearchMethod.LEXICAL

    @pytest.mark.anyio
    async def test_empty_remote_results_fall_back(self):
        router = QueryRouter(
            remote=remote_client(lambda r: httpx.Response(200, json={"results": []})),
            document_source=corpus_source(),
        )
        outcome = await router.search(query="tomato")
        assert outcome.method == SearchMethod.LEXICAL

    @pytest.mark.anyio
    async def test_from_path_only_skips_remote(self, abc_store):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=[{"path": "X.md", "score": 1}])

        router = QueryRouter(
            remote=remote_client(handler), store=EmbeddingStore(abc_store)
        )
        outcome = await router.search(from_path="A.md")

        assert calls == []
        assert outcome.method == SearchMethod.FILES


class TestFilesTier:
    """Tests for the local embedding tier."""

    @pytest.mark.anyio
    async def test_neighbors_of_anchor(self, abc_store):
        router = QueryRouter(store=EmbeddingStore(abc_store))

        outcome = await router.search(from_path="A.md")

        assert outcome.method == SearchMethod.FILES
        assert paths(outcome) == ["B.md", "C.md"]
        assert outcome.results[0].score > outcome.results[1].score
        assert outcome.dim == 3
        assert outcome.pool_size == 3

    @pytest.mark.anyio
    async def test_anchor_resolved_case_and_diacritic_insensitively(
        self, smart_env_dir
    ):
        write_vector(smart_env_dir, "e.json", {"path": "dir/ÉCOLE.md", "vec": [1, 0]})
        write_vector(smart_env_dir, "f.json", {"path": "dir/other.md", "vec": [1, 1]})
        router = QueryRouter(store=EmbeddingStore(smart_env_dir))

        outcome = await router.search(from_path="ecole.md")

        assert outcome.method == SearchMethod.FILES
        assert paths(outcome) == ["dir/other.md"]

    @pytest.mark.anyio
    async def test_encoder_reported_from_anchor_model(self, smart_env_dir):
        write_vector(
            smart_env_dir,
            "a.json",
            {"path": "A.md", "embeddings": {"bge-micro": {"vec": [1, 0]}}},
        )
        write_vector(smart_env_dir, "b.json", {"path": "B.md", "vec": [0, 1]})
        router = QueryRouter(store=EmbeddingStore(smart_env_dir))

        outcome = await router.search(from_path="A.md")

        assert outcome.encoder == "bge-micro"

    @pytest.mark.anyio
    async def test_unknown_anchor_falls_back_to_lexical(self, abc_store):
        router = QueryRouter(
            store=EmbeddingStore(abc_store), document_source=corpus_source()
        )
        outcome = await router.search(from_path="missing.md")
        assert outcome.method == SearchMethod.LEXICAL

    @pytest.mark.anyio
    async def test_only_anchor_in_store_falls_back(self, smart_env_dir):
        write_vector(smart_env_dir, "a.json", {"path": "A.md", "vec": [1, 0]})
        router = QueryRouter(
            store=EmbeddingStore(smart_env_dir), document_source=corpus_source()
        )
        outcome = await router.search(from_path="A.md")
        assert outcome.method == SearchMethod.LEXICAL

    @pytest.mark.anyio
    async def test_empty_store_falls_back(self, smart_env_dir):
        router = QueryRouter(
            store=EmbeddingStore(smart_env_dir), document_source=corpus_source()
        )
        outcome = await router.search(from_path="A.md")
        assert outcome.method == SearchMethod.LEXICAL

    @pytest.mark.anyio
    async def test_unconfigured_store_falls_back(self):
        router = QueryRouter(store=EmbeddingStore(None), document_source=corpus_source())
        outcome = await router.search(from_path="A.md")
        assert outcome.method == SearchMethod.LEXICAL

    @pytest.mark.anyio
    async def test_query_skipped_when_encoding_disabled(self, abc_store):
        cache, built = encoder_cache()
        router = QueryRouter(
            store=EmbeddingStore(abc_store),
            encoder=cache,
            query_embedding_enabled=False,
            document_source=corpus_source(),
        )

        outcome = await router.search(query="memory")

        assert outcome.method == SearchMethod.LEXICAL
        assert built == []

    @pytest.mark.anyio
    async def test_query_encoded_when_enabled(self, abc_store):
        cache, built = encoder_cache(dim=3)
        router = QueryRouter(
            store=EmbeddingStore(abc_store),
            encoder=cache,
            query_embedding_enabled=True,
        )

        outcome = await router.search(query="memory")

        assert outcome.method == SearchMethod.FILES
        assert sorted(paths(outcome)) == ["A.md", "B.md", "C.md"]
        assert outcome.encoder == BGE_SMALL.model_id
        assert built[0].embed_count == 1

    @pytest.mark.anyio
    async def test_configured_model_hint_used(self, abc_store):
        cache, _ = encoder_cache(dim=3)
        router = QueryRouter(
            store=EmbeddingStore(abc_store),
            encoder=cache,
            query_embedding_enabled=True,
            query_embedding_model="bge-m3",
        )

        outcome = await router.search(query="memory")

        assert outcome.encoder == BGE_M3.model_id

    @pytest.mark.anyio
    async def test_dimension_mismatch_falls_back(self, abc_store):
        cache, _ = encoder_cache(dim=5)
        router = QueryRouter(
            store=EmbeddingStore(abc_store),
            encoder=cache,
            query_embedding_enabled=True,
            document_source=corpus_source(),
        )

        outcome = await router.search(query="tomato")

        assert outcome.method == SearchMethod.LEXICAL
        assert paths(outcome)[0] == "C.md"

    @pytest.mark.anyio
    async def test_encoder_failure_falls_back(self, abc_store):
        provider = FakeEmbeddingProvider(dim=3)
        provider.fail_load = True
        router = QueryRouter(
            store=EmbeddingStore(abc_store),
            encoder=QueryEncoderCache(provider_factory=lambda spec: provider),
            query_embedding_enabled=True,
            document_source=corpus_source(),
        )

        outcome = await router.search(query="tomato")

        assert outcome.method == SearchMethod.LEXICAL


class TestLexicalTier:
    """Tests for the TF-IDF fallback."""

    @pytest.mark.anyio
    async def test_query_ranking(self):
        router = QueryRouter(document_source=corpus_source())

        outcome = await router.search(query="tomato watering")

        assert outcome.method == SearchMethod.LEXICAL
        assert paths(outcome)[0] == "C.md"
        top = outcome.results[0]
        assert top.title == "C"
        assert top.preview == "tomato garden watering schedule"

    @pytest.mark.anyio
    async def test_anchor_text_used_and_anchor_excluded(self):
        router = QueryRouter(document_source=corpus_source())

        outcome = await router.search(from_path="a.MD")

        assert paths(outcome) == ["B.md", "C.md"]
        assert outcome.results[0].score > outcome.results[1].score

    @pytest.mark.anyio
    async def test_unknown_anchor_uses_note_title(self):
        router = QueryRouter(document_source=corpus_source())

        outcome = await router.search(from_path="Notes/tomato.md")

        assert paths(outcome)[0] == "C.md"
        assert len(outcome.results) == 3

    @pytest.mark.anyio
    async def test_duplicate_paths_collapsed(self):
        docs = CORPUS + [LexicalDocument("C.md", "tomato again")]
        router = QueryRouter(document_source=corpus_source(docs))

        outcome = await router.search(query="tomato")

        assert paths(outcome).count("C.md") == 1

    @pytest.mark.anyio
    async def test_failing_document_source_gives_empty_result(self):
        async def broken():
            raise RuntimeError("corpus unavailable")

        router = QueryRouter(document_source=broken)
        outcome = await router.search(query="tomato")

        assert outcome.method == SearchMethod.LEXICAL
        assert outcome.results == []

    @pytest.mark.anyio
    async def test_no_corpus_gives_empty_result(self):
        outcome = await QueryRouter().search(query="tomato")
        assert outcome.method == SearchMethod.LEXICAL
        assert outcome.results == []

    @pytest.mark.anyio
    async def test_content_cache_corpus(self, fake_vault):
        cache = VaultContentCache(fake_vault)
        await cache.build_cache()
        router = QueryRouter(content_cache=cache)

        outcome = await router.search(from_path="Inbox/idea.md")

        assert paths(outcome)[0] == "Projects/notes/recall.md"
        assert "Inbox/idea.md" not in paths(outcome)

    @pytest.mark.anyio
    async def test_document_source_preferred_over_cache(self, fake_vault):
        cache = VaultContentCache(fake_vault)
        await cache.build_cache()
        router = QueryRouter(content_cache=cache, document_source=corpus_source())

        outcome = await router.search(query="tomato")

        assert set(paths(outcome)) == {"A.md", "B.md", "C.md"}


class TestModesAndLimits:
    @pytest.mark.anyio
    async def test_lexical_mode_skips_other_tiers(self, abc_store):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=[{"path": "X.md", "score": 1}])

        router = QueryRouter(
            mode="lexical",
            remote=remote_client(handler),
            store=EmbeddingStore(abc_store),
            document_source=corpus_source(),
        )
        outcome = await router.search(query="tomato", from_path="A.md")

        assert calls == []
        assert outcome.method == SearchMethod.LEXICAL

    @pytest.mark.anyio
    async def test_files_mode_skips_remote(self, abc_store):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=[{"path": "X.md", "score": 1}])

        router = QueryRouter(
            mode="files", remote=remote_client(handler), store=EmbeddingStore(abc_store)
        )
        outcome = await router.search(query="anything", from_path="A.md")

        assert calls == []
        assert outcome.method == SearchMethod.FILES

    @pytest.mark.anyio
    async def test_plugin_mode_skips_store(self, abc_store):
        router = QueryRouter(
            mode="plugin",
            remote=remote_client(lambda r: httpx.Response(404)),
            store=EmbeddingStore(abc_store),
            document_source=corpus_source(),
        )
        outcome = await router.search(query="tomato", from_path="A.md")
        assert outcome.method == SearchMethod.LEXICAL

    def test_invalid_mode_rejected(self):
        with pytest.raises(ValueError):
            QueryRouter(mode="everything")

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "limit, expected", [(1, 1), (0, 1), (-5, 1), (None, 2), ("nope", 2), (999, 3)]
    )
    async def test_limit_clamped(self, limit, expected):
        router = QueryRouter(
            document_source=corpus_source(), default_limit=2, max_limit=3
        )
        outcome = await router.search(query="spaced", limit=limit)
        assert len(outcome.results) == expected

    @pytest.mark.anyio
    async def test_outcome_serialization(self, abc_store):
        router = QueryRouter(store=EmbeddingStore(abc_store))

        data = (await router.search(from_path="A.md")).to_dict()

        assert data["method"] == "files"
        assert [r["path"] for r in data["results"]] == ["B.md", "C.md"]
        assert data["dim"] == 3
        assert data["poolSize"] == 3
        assert "tookMs" in data


class TestFromConfig:
    def test_wired_from_config(self, test_config, smart_env_dir):
        router = QueryRouter.from_config()

        assert router.mode == SearchMode.AUTO
        assert not router.remote.is_configured
        assert router.encoder is None
        assert router.query_embedding_enabled is False

    @pytest.mark.anyio
    async def test_store_reads_configured_directory(self, test_config, abc_store):
        router = QueryRouter.from_config()
        outcome = await router.search(from_path="A.md")
        assert paths(outcome) == ["B.md", "C.md"]
