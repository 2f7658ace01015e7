"""Client for the remote semantic-search endpoint (the "plugin" tier).

``POST {base}/search/smart`` with ``{"query", "limit"}`` and a bearer token.
A ``None`` return means the tier is unavailable (not configured, 401/403/404,
other non-2xx); transient failures (5xx, network errors, timeouts) are
retried and then raised as ``RemoteSearchError``.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, List, Optional

import httpx

from vault_search.config import config
from vault_search.exceptions import ErrorCode, RemoteSearchError
from vault_search.models.schema import RankedResult
from vault_search.services.retry import retry_async
from vault_search.utils import to_posix

logger = logging.getLogger(__name__)

SEARCH_ENDPOINT = "/search/smart"

# Statuses meaning the remote feature is absent or unauthorized
UNAVAILABLE_STATUSES = frozenset({401, 403, 404})

_PATH_KEYS = ("path", "filePath", "filename")


@dataclass
class RemoteSearchResponse:
    """Parsed remote reply; optional fields are None when the body omits them."""

    results: List[RankedResult] = field(default_factory=list)
    encoder: Optional[str] = None
    dim: Optional[int] = None
    pool_size: Optional[int] = None
    took_ms: Optional[float] = None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def parse_results(body: Any) -> List[RankedResult]:
    """Extract result items from a bare list or a ``{"results": [...]}`` body."""
    if isinstance(body, dict):
        raw = body.get("results")
    else:
        raw = body
    if not isinstance(raw, list):
        return []

    results = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        path = next(
            (item[k] for k in _PATH_KEYS if isinstance(item.get(k), str) and item[k]),
            None,
        )
        if path is None:
            continue
        score = _number(item.get("score"))
        preview = item.get("preview")
        title = item.get("title")
        results.append(
            RankedResult(
                path=to_posix(path),
                score=score if score is not None else 0.0,
                title=title if isinstance(title, str) else None,
                preview=preview if isinstance(preview, str) else None,
            )
        )
    return results


def parse_response(body: Any) -> RemoteSearchResponse:
    response = RemoteSearchResponse(results=parse_results(body))
    if isinstance(body, dict):
        encoder = body.get("encoder")
        if isinstance(encoder, str) and encoder:
            response.encoder = encoder
        dim = _number(body.get("dim"))
        if dim is not None:
            response.dim = int(dim)
        pool_size = _number(body.get("poolSize"))
        if pool_size is not None:
            response.pool_size = int(pool_size)
        response.took_ms = _number(body.get("tookMs"))
    return response


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, RemoteSearchError) and error.retryable


class RemoteSearchClient:
    """Bounded-retry client for the remote search endpoint.

    Args:
        base_url: Service base URL; the endpoint path is appended.
        api_key: Bearer credential. Without it every request returns None.
        timeout: Hard per-attempt limit in seconds.
        attempts: Total attempts for transient failures.
        backoff: Linear backoff base in seconds (0 retries immediately).
        verify_ssl: TLS certificate verification.
        client: Optional shared ``httpx.AsyncClient`` (not closed here).
    """

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        timeout: float = 15.0,
        attempts: int = 3,
        backoff: float = 0.0,
        verify_ssl: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self.verify_ssl = verify_ssl
        self._client = client

    @classmethod
    def from_config(cls, client: Optional[httpx.AsyncClient] = None) -> "RemoteSearchClient":
        return cls(
            base_url=config.obsidian_base_url,
            api_key=config.obsidian_api_key,
            timeout=config.plugin_timeout_seconds,
            attempts=config.plugin_attempts,
            backoff=config.plugin_backoff_seconds,
            verify_ssl=config.obsidian_verify_ssl,
            client=client,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}{SEARCH_ENDPOINT}"

    async def _post(
        self, client: httpx.AsyncClient, payload: dict
    ) -> httpx.Response:
        """One attempt. 5xx and transport failures raise retryable errors."""
        try:
            response = await client.post(
                self.endpoint,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.TimeoutException as e:
            raise RemoteSearchError(
                "Remote search timed out",
                code=ErrorCode.REMOTE_TIMEOUT,
                original_error=e,
            ) from e
        except httpx.TransportError as e:
            raise RemoteSearchError(
                f"Remote search network error: {e}",
                code=ErrorCode.REMOTE_NETWORK_ERROR,
                original_error=e,
            ) from e

        if 500 <= response.status_code < 600:
            raise RemoteSearchError(
                f"Remote search returned HTTP {response.status_code}",
                status=response.status_code,
                code=ErrorCode.REMOTE_SERVER_ERROR,
            )
        return response

    async def _post_with_retry(
        self, client: httpx.AsyncClient, payload: dict
    ) -> httpx.Response:
        try:
            return await retry_async(
                lambda: self._post(client, payload),
                attempts=self.attempts,
                timeout=self.timeout,
                should_retry=_is_retryable,
                backoff=self.backoff,
                operation="remote search",
            )
        except asyncio.TimeoutError as e:
            raise RemoteSearchError(
                f"Remote search timed out after {self.attempts} attempts "
                f"of {self.timeout}s",
                code=ErrorCode.REMOTE_RETRIES_EXHAUSTED,
                original_error=e,
            ) from e
        except RemoteSearchError as e:
            raise RemoteSearchError(
                f"Remote search failed after {self.attempts} attempts: {e.message}",
                status=e.status,
                code=ErrorCode.REMOTE_RETRIES_EXHAUSTED,
                original_error=e,
            ) from e

    async def request(
        self, query: str, limit: int
    ) -> Optional[RemoteSearchResponse]:
        """Run a remote search.

        Returns:
            The parsed response, or None when the tier is unavailable.

        Raises:
            RemoteSearchError: When every attempt failed transiently.
        """
        if not self.is_configured:
            logger.debug("Remote search skipped: base URL or API key not set")
            return None

        payload = {"query": query, "limit": limit}
        if self._client is not None:
            response = await self._post_with_retry(self._client, payload)
        else:
            async with httpx.AsyncClient(
                timeout=self.timeout, verify=self.verify_ssl
            ) as client:
                response = await self._post_with_retry(client, payload)

        status = response.status_code
        if status in UNAVAILABLE_STATUSES:
            logger.info(f"Remote search unavailable (HTTP {status})")
            return None
        if not response.is_success:
            logger.info(f"Remote search returned HTTP {status}, treating as unavailable")
            return None

        try:
            body = response.json()
        except ValueError:
            logger.warning("Remote search returned a non-JSON body")
            body = {}
        return parse_response(body)
