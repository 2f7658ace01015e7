"""Tiered related-note search.

``QueryRouter.search`` tries, in order, the remote search endpoint
("plugin"), the local embedding store ("files"), and TF-IDF over cached
note content ("lexical"), returning the first tier that produces results.
Every tier failure is logged and swallowed; the worst outcome is an empty
lexical result.
"""

import logging
import time
from typing import Iterable, List, Optional

import httpx

from vault_search.config import config
from vault_search.exceptions import EmbeddingError, ErrorCode
from vault_search.models.schema import (
    RankedResult,
    SearchMethod,
    SearchMode,
    SearchOutcome,
    SearchRequest,
)
from vault_search.observability import timed_operation
from vault_search.services.embedding_store import (
    EmbeddingStore,
    find_anchor,
    rank_by_similarity,
)
from vault_search.services.embedding_types import DocumentSource
from vault_search.services.lexical_ranker import LexicalDocument, LexicalRanker
from vault_search.services.query_encoder import (
    QueryEncoderCache,
    default_encoder_cache,
)
from vault_search.services.remote_search import RemoteSearchClient
from vault_search.storage.content_cache import VaultContentCache
from vault_search.utils import (
    clamp_limit,
    make_preview,
    normalize_vault_path,
    note_title,
    resolve_path,
)

logger = logging.getLogger(__name__)


def _dedupe(results: Iterable[RankedResult]) -> List[RankedResult]:
    """Keep the first occurrence of each path."""
    seen = set()
    unique = []
    for result in results:
        key = normalize_vault_path(result.path)
        if key in seen:
            continue
        seen.add(key)
        unique.append(result)
    return unique


class QueryRouter:
    """Orchestrates the retrieval tiers.

    Collaborators are injected so each tier can be swapped or disabled:
    a missing ``remote`` skips the plugin tier, a missing ``store`` skips
    the files tier. The lexical corpus comes from ``document_source`` when
    given, else from ``content_cache``, else it is empty.

    Args:
        mode: "auto", "plugin", "files" or "lexical".
        remote: Remote search client.
        store: Embedding store for the files tier.
        encoder: Query encoder cache used when query embedding is enabled.
        content_cache: Note content cache feeding the lexical tier.
        document_source: Async callable returning the lexical corpus.
        query_embedding_enabled: Allow encoding free-text queries.
        query_embedding_model: Model hint overriding the store's own.
        default_limit: Limit used when the caller gives none.
        max_limit: Upper bound for the limit.
    """

    def __init__(
        self,
        mode: str = "auto",
        remote: Optional[RemoteSearchClient] = None,
        store: Optional[EmbeddingStore] = None,
        encoder: Optional[QueryEncoderCache] = None,
        content_cache: Optional[VaultContentCache] = None,
        document_source: Optional[DocumentSource] = None,
        query_embedding_enabled: bool = False,
        query_embedding_model: Optional[str] = None,
        default_limit: int = 10,
        max_limit: int = 100,
    ):
        self.mode = SearchMode(mode)
        self.remote = remote
        self.store = store
        self.encoder = encoder
        self.content_cache = content_cache
        self.document_source = document_source
        self.query_embedding_enabled = query_embedding_enabled
        self.query_embedding_model = query_embedding_model
        self.default_limit = default_limit
        self.max_limit = max_limit
        self.ranker = LexicalRanker()

    @classmethod
    def from_config(
        cls,
        content_cache: Optional[VaultContentCache] = None,
        document_source: Optional[DocumentSource] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "QueryRouter":
        """Build a router wired to the global config."""
        smart_env_dir = config.get_smart_env_dir()
        return cls(
            mode=config.search_mode,
            remote=RemoteSearchClient.from_config(client=http_client),
            store=EmbeddingStore(smart_env_dir, ttl=config.smart_env_cache_ttl),
            encoder=(
                default_encoder_cache() if config.query_embedding_enabled else None
            ),
            content_cache=content_cache,
            document_source=document_source,
            query_embedding_enabled=config.query_embedding_enabled,
            query_embedding_model=config.query_embedding_model,
            default_limit=config.default_limit,
            max_limit=config.max_limit,
        )

    async def search(
        self,
        query: Optional[str] = None,
        from_path: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> SearchOutcome:
        """Return related notes for a query and/or a reference note path.

        Never raises.
        """
        start = time.perf_counter()
        try:
            request = SearchRequest(query=query, from_path=from_path, limit=limit)
            with timed_operation(
                "search", mode=self.mode.value, has_query=request.query is not None,
                has_from_path=request.from_path is not None,
            ) as op:
                outcome = await self._search(request, start)
                op["method"] = outcome.method.value
                op["result_count"] = len(outcome.results)
        except Exception as e:
            logger.error(f"Search failed unexpectedly, returning empty result: {e}")
            outcome = SearchOutcome(method=SearchMethod.LEXICAL, results=[])

        if outcome.method is not SearchMethod.PLUGIN or not outcome.took_ms:
            outcome = outcome.model_copy(update={"took_ms": self._elapsed_ms(start)})
        return outcome

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return (time.perf_counter() - start) * 1000.0

    async def _search(self, request: SearchRequest, start: float) -> SearchOutcome:
        if request.is_empty:
            return SearchOutcome(method=SearchMethod.LEXICAL, results=[])

        limit = clamp_limit(request.limit, self.default_limit, self.max_limit)

        if self.mode.allows_plugin and request.query:
            outcome = await self._try_plugin(request.query, limit)
            if outcome is not None:
                return outcome

        if self.mode.allows_files:
            outcome = await self._try_files(request, limit)
            if outcome is not None:
                return outcome

        return await self._lexical(request, limit)

    # ------------------------------------------------------------------
    # Tier 1: remote
    # ------------------------------------------------------------------

    async def _try_plugin(self, query: str, limit: int) -> Optional[SearchOutcome]:
        if self.remote is None:
            return None
        try:
            with timed_operation("search.plugin", limit=limit) as op:
                response = await self.remote.request(query, limit)
                op["available"] = response is not None
        except Exception as e:
            logger.warning(f"Remote search failed, using fallback: {e}")
            return None

        if response is None or not response.results:
            logger.info("Remote search returned nothing, using fallback")
            return None

        return SearchOutcome(
            method=SearchMethod.PLUGIN,
            results=_dedupe(response.results)[:limit],
            encoder=response.encoder,
            dim=response.dim,
            pool_size=response.pool_size,
            took_ms=response.took_ms or 0.0,
        )

    # ------------------------------------------------------------------
    # Tier 2: local embeddings
    # ------------------------------------------------------------------

    async def _try_files(
        self, request: SearchRequest, limit: int
    ) -> Optional[SearchOutcome]:
        if self.store is None:
            return None
        if not request.from_path and not (
            request.query and self.query_embedding_enabled and self.encoder
        ):
            logger.debug("Files tier skipped: no anchor and query encoding disabled")
            return None

        try:
            with timed_operation("search.files", limit=limit) as op:
                outcome = await self._files(request, limit)
                op["result_count"] = len(outcome.results) if outcome else 0
        except Exception as e:
            logger.warning(f"Embedding store lookup failed, using lexical fallback: {e}")
            return None

        if outcome is None or not outcome.results:
            return None
        return outcome

    async def _files(
        self, request: SearchRequest, limit: int
    ) -> Optional[SearchOutcome]:
        snapshot = await self.store.get_or_load()

        if request.from_path:
            anchor = find_anchor(snapshot.vectors, request.from_path)
            if anchor is None:
                logger.info(f"No stored vector for '{request.from_path}'")
                return None
            results = rank_by_similarity(
                anchor.vec, snapshot, limit, exclude_path=anchor.note_path
            )
            encoder_name = anchor.model or snapshot.model_hint
        else:
            if self.encoder is None:
                raise EmbeddingError(
                    "Query encoding is disabled", code=ErrorCode.ENCODER_DISABLED
                )
            hint = self.query_embedding_model or snapshot.model_hint
            encode = await self.encoder.get_encoder(hint, snapshot.dimension)
            vector = await encode(request.query)
            results = rank_by_similarity(vector, snapshot, limit)
            encoder_name = self.encoder.current_model

        return SearchOutcome(
            method=SearchMethod.FILES,
            results=results,
            encoder=encoder_name,
            dim=snapshot.dimension,
            pool_size=len(snapshot.vectors),
        )

    # ------------------------------------------------------------------
    # Tier 3: lexical
    # ------------------------------------------------------------------

    async def _documents(self) -> List[LexicalDocument]:
        if self.document_source is not None:
            try:
                return list(await self.document_source())
            except Exception as e:
                logger.warning(f"Document source failed, lexical corpus is empty: {e}")
                return []
        if self.content_cache is not None:
            if not self.content_cache.is_ready():
                logger.debug(
                    f"Content cache not ready; ranking {self.content_cache.size()} "
                    f"cached notes"
                )
            return self.content_cache.documents()
        return []

    async def _lexical(self, request: SearchRequest, limit: int) -> SearchOutcome:
        with timed_operation("search.lexical", limit=limit) as op:
            docs = await self._documents()
            op["docs"] = len(docs)

            anchor_path = None
            if request.from_path:
                anchor_path = resolve_path((d.path for d in docs), request.from_path)
                if anchor_path is None:
                    anchor_path = normalize_vault_path(request.from_path)

            query_text = request.query
            if query_text is None:
                anchor_doc = next((d for d in docs if d.path == anchor_path), None)
                query_text = (
                    anchor_doc.text if anchor_doc is not None else note_title(anchor_path)
                )

            texts = {}
            for doc in docs:
                texts.setdefault(normalize_vault_path(doc.path), doc.text)
            excluded = normalize_vault_path(anchor_path) if anchor_path else None

            results = []
            for ranked in _dedupe(self.ranker.rank(query_text, docs)):
                key = normalize_vault_path(ranked.path)
                if key == excluded:
                    continue
                results.append(
                    ranked.model_copy(
                        update={
                            "title": note_title(ranked.path),
                            "preview": make_preview(texts.get(key)),
                        }
                    )
                )
                if len(results) >= limit:
                    break
            op["result_count"] = len(results)

        return SearchOutcome(method=SearchMethod.LEXICAL, results=results)
