"""
Search index loader (Elasticsearch REST API over httpx).

Only produces and maintains the index's content: bulk indexing keyed by the
stable part document id, refresh, a cached document count and bulk delete by
integration. Querying is someone else's job.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

import httpx

from core.config import settings
from core.exceptions import RateLimitError, RetryExhaustedError, SearchIndexError
from ingestion.resilience.backoff import BackoffPolicy, retry_async

logger = logging.getLogger(__name__)

PARTS_INDEX_MAPPING = {
    "settings": {"number_of_shards": 1, "refresh_interval": "30s"},
    "mappings": {
        "properties": {
            "part_number": {"type": "keyword", "fields": {"text": {"type": "text"}}},
            "description": {"type": "text"},
            "brand": {"type": "keyword"},
            "supplier": {"type": "keyword"},
            "origin": {"type": "keyword"},
            "category": {"type": "keyword"},
            "price": {"type": "double"},
            "currency": {"type": "keyword"},
            "quantity": {"type": "integer"},
            "stock_status": {"type": "keyword"},
            "weight": {"type": "double"},
            "weight_unit": {"type": "keyword"},
            "delivery_days": {"type": "integer"},
            "integration_id": {"type": "long"},
            "integration_name": {"type": "keyword"},
            "file_name": {"type": "keyword"},
            "imported_at": {"type": "date"},
            "last_updated": {"type": "date"},
        }
    },
}


@dataclass
class IndexResult:
    indexed: int = 0
    errors: int = 0
    rate_limit_retries: int = 0
    error_samples: List[str] = field(default_factory=list)


class ElasticsearchIndexer:
    """
    Bulk writer for the parts search index.

    Attributes:
        index: Index name
        policy: Backoff applied when the cluster answers 429
        stats: Running totals (bulk requests, documents, errors, 429 retries)
    """

    # Per-item error reasons kept for diagnostics
    MAX_ERROR_SAMPLES = 5

    def __init__(
        self,
        base_url: str = None,
        index: str = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = None,
        policy: Optional[BackoffPolicy] = None,
        count_cache_ttl: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = (base_url or settings.ELASTICSEARCH_URL).rstrip("/")
        self.index = index or settings.ELASTICSEARCH_INDEX
        username = username if username is not None else settings.ELASTICSEARCH_USERNAME
        password = password if password is not None else settings.ELASTICSEARCH_PASSWORD
        self._auth = httpx.BasicAuth(username, password or "") if username else None
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.policy = policy or BackoffPolicy.from_settings()
        self.count_cache_ttl = (
            settings.DOC_COUNT_CACHE_TTL_SECONDS if count_cache_ttl is None else count_cache_ttl
        )
        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None
        self._count_cache: Dict[Any, Tuple[float, int]] = {}

        self.stats = {
            "bulk_requests": 0,
            "documents_indexed": 0,
            "document_errors": 0,
            "rate_limit_retries": 0,
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=self._auth,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Raises:
            RateLimitError: 429 from the cluster
            SearchIndexError: Transport failure or 5xx
        """
        try:
            response = await self._get_client().request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise SearchIndexError(
                f"Search index request failed: {type(e).__name__}",
                context={"index": self.index, "path": path},
                original_exception=e
            )

        if response.status_code == 429:
            raise RateLimitError(
                "Search index is throttling requests",
                context={"index": self.index, "path": path, "status_code": 429}
            )
        if response.status_code >= 500:
            raise SearchIndexError(
                f"Search index returned {response.status_code}",
                context={"index": self.index, "path": path, "status_code": response.status_code,
                         "response_body": response.text[:500]}
            )
        return response

    @staticmethod
    def _bulk_body(index: str, documents: List[Tuple[str, Dict[str, Any]]]) -> bytes:
        lines = []
        for doc_id, body in documents:
            lines.append(json.dumps({"index": {"_index": index, "_id": doc_id}}))
            lines.append(json.dumps(body, default=str))
        return ("\n".join(lines) + "\n").encode("utf-8")

    async def bulk_index(self, documents: List[Tuple[str, Dict[str, Any]]]) -> IndexResult:
        """
        Index (id, document) pairs in one bulk request.

        Per-document failures are counted, not raised. A 429 for the whole
        request is retried with exponential backoff inside this call.

        Returns:
            IndexResult with indexed/error counts and the 429 retries spent

        Raises:
            RateLimitError: Still throttled after every retry
            SearchIndexError: Transport failure, 4xx on the request or 5xx
        """
        result = IndexResult()
        if not documents:
            return result

        body = self._bulk_body(self.index, documents)

        def count_retry(attempt, delay, exc):
            result.rate_limit_retries += 1
            self.stats["rate_limit_retries"] += 1

        try:
            response = await retry_async(
                self._send,
                "POST",
                "/_bulk",
                content=body,
                headers={"Content-Type": "application/x-ndjson"},
                policy=self.policy,
                operation="search index bulk",
                retry_on=lambda e: isinstance(e, RateLimitError),
                on_retry=count_retry,
            )
        except RetryExhaustedError as e:
            raise RateLimitError(
                "Search index kept throttling bulk request",
                context={"index": self.index, "documents": len(documents),
                         "retries": result.rate_limit_retries},
                original_exception=e.original_exception
            )
        finally:
            self.stats["bulk_requests"] += 1

        if response.status_code >= 400:
            raise SearchIndexError(
                f"Bulk request rejected with {response.status_code}",
                context={"index": self.index, "status_code": response.status_code,
                         "response_body": response.text[:500]}
            )

        payload = response.json()
        items = payload.get("items", [])
        for item in items:
            outcome = next(iter(item.values()), {})
            if outcome.get("error") or outcome.get("status", 200) >= 300:
                result.errors += 1
                if len(result.error_samples) < self.MAX_ERROR_SAMPLES:
                    error = outcome.get("error") or {}
                    reason = error.get("reason") if isinstance(error, dict) else str(error)
                    result.error_samples.append(f"{outcome.get('_id')}: {reason}")
            else:
                result.indexed += 1

        self.stats["documents_indexed"] += result.indexed
        self.stats["document_errors"] += result.errors
        if result.errors:
            logger.warning(
                f"Bulk index: {result.errors}/{len(documents)} documents failed "
                f"(e.g. {result.error_samples[:1]})"
            )
        return result

    async def refresh(self) -> bool:
        """Make recent writes visible to searches."""
        response = await self._send("POST", f"/{self.index}/_refresh")
        return response.status_code < 300

    async def count(self, integration_id: Optional[int] = None) -> int:
        """Document count (optionally per integration), cached for a short TTL."""
        now = self._clock()
        cached = self._count_cache.get(integration_id)
        if cached is not None and now - cached[0] < self.count_cache_ttl:
            return cached[1]

        body = None
        if integration_id is not None:
            body = {"query": {"term": {"integration_id": integration_id}}}
        response = await self._send("POST", f"/{self.index}/_count", json=body)
        if response.status_code == 404:
            value = 0
        else:
            value = int(response.json().get("count", 0))
        self._count_cache[integration_id] = (now, value)
        return value

    async def has_documents(self) -> bool:
        return await self.count() > 0

    def invalidate_count_cache(self):
        self._count_cache.clear()

    async def delete_by_integration(self, integration_id: int) -> int:
        response = await self._send(
            "POST",
            f"/{self.index}/_delete_by_query",
            params={"conflicts": "proceed", "refresh": "true"},
            json={"query": {"term": {"integration_id": integration_id}}},
        )
        if response.status_code == 404:
            return 0
        deleted = int(response.json().get("deleted", 0))
        self.invalidate_count_cache()
        logger.info(f"Deleted {deleted} index documents for integration {integration_id}")
        return deleted

    async def ensure_index(self) -> bool:
        """Create the index with its mapping if missing. Returns True when created."""
        response = await self._send("HEAD", f"/{self.index}")
        if response.status_code == 200:
            return False
        response = await self._send("PUT", f"/{self.index}", json=PARTS_INDEX_MAPPING)
        if response.status_code >= 400:
            body = response.text
            if "resource_already_exists_exception" in body:
                return False
            raise SearchIndexError(
                f"Failed to create index {self.index}",
                context={"index": self.index, "status_code": response.status_code, "response_body": body[:500]}
            )
        logger.info(f"Created search index {self.index}")
        return True

    async def ping(self) -> bool:
        try:
            response = await self._send("GET", "/")
        except (SearchIndexError, RateLimitError) as e:
            logger.error(f"Search index unreachable: {e.message}")
            return False
        return response.status_code < 300
