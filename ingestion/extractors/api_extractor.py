"""
Paginated HTTP API source.

Each configured endpoint is one unit of work. Pages are fetched one at a
time and handed to the orchestrator as row chunks, so a long API walk never
holds more than one page of records.

Supports:
- Page, offset and cursor pagination (or a single request)
- api-key, bearer and basic authentication
- A per-integration request rate limit (requests per minute)
- Retry with exponential backoff on timeouts, transport errors, 429 and 5xx
"""

import asyncio
import collections
import re
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
import logging

import httpx

from core.config import settings
from core.exceptions import (
    APIExtractionError,
    AuthenticationError,
    NetworkError,
    RateLimitError,
    SyncError,
)
from ingestion.extractors.base import FileDescriptor, RowChunk, SourceExtractor
from ingestion.resilience.backoff import BackoffPolicy, retry_async
from schemas.integration import APIConfig, APIEndpoint

logger = logging.getLogger(__name__)

# Where records and cursors usually live when no path is configured
COMMON_DATA_PATHS = ("data", "results", "items", "records", "parts", "products", "response", "content")
COMMON_CURSOR_PATHS = ("next_cursor", "nextCursor", "cursor", "next", "pagination.next", "meta.next_cursor", "paging.next")

_INDEXED_PART_RE = re.compile(r"^(\w+)\[(\d+)\]$")


def extract_value(data: Any, path: Optional[str]) -> Any:
    """Follow a dotted path ("meta.items[0].id") into nested JSON."""
    if not path:
        return data
    current = data
    for part in path.split("."):
        if current is None:
            return None
        match = _INDEXED_PART_RE.match(part)
        if match:
            current = current.get(match.group(1)) if isinstance(current, dict) else None
            index = int(match.group(2))
            current = current[index] if isinstance(current, list) and index < len(current) else None
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def extract_records(data: Any, data_path: Optional[str] = None) -> List[Dict[str, Any]]:
    """Pull the record list out of a response body."""
    if data_path:
        records = extract_value(data, data_path)
    elif isinstance(data, list):
        records = data
    elif isinstance(data, dict):
        records = next(
            (data[p] for p in COMMON_DATA_PATHS if isinstance(data.get(p), list)),
            [data],
        )
    else:
        records = []

    if isinstance(records, dict):
        records = [records]
    if not isinstance(records, list):
        return []
    return [r for r in records if isinstance(r, dict)]


@dataclass
class Page:
    """One fetched page; next_cursor is None when the endpoint is exhausted"""
    records: List[Dict[str, Any]]
    next_cursor: Any = None


class RequestRateLimiter:
    """Sliding one-minute window allowing ``requests_per_minute`` requests."""

    WINDOW_SECONDS = 60.0

    def __init__(self, requests_per_minute: int, clock: Callable[[], float] = time.monotonic):
        self.limit = max(int(requests_per_minute), 1)
        self._clock = clock
        self._sent = collections.deque()
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            now = self._clock()
            while self._sent and now - self._sent[0] >= self.WINDOW_SECONDS:
                self._sent.popleft()

            if len(self._sent) >= self.limit:
                wait = self.WINDOW_SECONDS - (now - self._sent[0]) + 0.1
                logger.info(f"API rate limit reached, waiting {wait:.1f}s")
                await asyncio.sleep(wait)
                now = self._clock()
                while self._sent and now - self._sent[0] >= self.WINDOW_SECONDS:
                    self._sent.popleft()

            self._sent.append(self._clock())


class APIExtractor(SourceExtractor):
    """
    Extract part records from a paginated REST API.

    Attributes:
        config: Validated API settings (credentials held as SecretStr)
        policy: Backoff policy applied to every page request
        timeout: Request timeout in seconds
    """

    source_type = "api"

    def __init__(
        self,
        config: APIConfig,
        policy: Optional[BackoffPolicy] = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.policy = policy or BackoffPolicy.from_settings()
        self.timeout = timeout or config.timeout or settings.HTTP_TIMEOUT_SECONDS
        self.rate_limiter = RequestRateLimiter(config.rate_limit)
        self._transport = transport
        self._endpoints = {endpoint.label: endpoint for endpoint in config.endpoints}
        self.pages_fetched = 0

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        headers.update(self.config.headers)

        auth_type = self.config.auth_type
        if auth_type == "api-key" and self.config.api_key:
            headers[self.config.auth_header] = self.config.api_key.get_secret_value()
        elif auth_type == "bearer":
            secret = self.config.token or self.config.api_key
            if secret:
                headers["Authorization"] = f"Bearer {secret.get_secret_value()}"
        return headers

    def _auth(self) -> Optional[httpx.BasicAuth]:
        if self.config.auth_type == "basic" and self.config.username:
            password = self.config.password.get_secret_value() if self.config.password else ""
            return httpx.BasicAuth(self.config.username, password)
        return None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=self._headers(),
            auth=self._auth(),
            timeout=self.timeout,
            transport=self._transport,
        )

    def _params(self, endpoint: APIEndpoint, cursor: Any) -> Dict[str, Any]:
        pagination = self.config.pagination
        params = dict(endpoint.query_params)

        if pagination.type == "page":
            params[pagination.page_param] = cursor if cursor is not None else pagination.start_page
            params[pagination.limit_param] = pagination.page_size
        elif pagination.type == "offset":
            params[pagination.offset_param] = cursor or 0
            params[pagination.limit_param] = pagination.page_size
        elif pagination.type == "cursor" and cursor is not None:
            params[pagination.cursor_param] = cursor
        return params

    def _next_cursor(self, data: Any, records: List[Dict], cursor: Any) -> Any:
        pagination = self.config.pagination

        if pagination.type == "cursor":
            if pagination.cursor_path:
                return extract_value(data, pagination.cursor_path) or None
            for path in COMMON_CURSOR_PATHS:
                value = extract_value(data, path)
                if value:
                    return value
            return None

        if pagination.type in ("page", "offset"):
            if not records:
                return None
            total = extract_value(data, pagination.total_path) if pagination.total_path else None
            if pagination.type == "page":
                current = cursor if cursor is not None else pagination.start_page
                seen = (current - pagination.start_page + 1) * pagination.page_size
                next_cursor = current + 1
            else:
                current = cursor or 0
                seen = current + len(records)
                next_cursor = seen

            if isinstance(total, (int, float)):
                return next_cursor if seen < total else None
            return next_cursor if len(records) >= pagination.page_size else None

        return None

    async def _request(self, client: httpx.AsyncClient, endpoint: APIEndpoint, params: Dict[str, Any]) -> httpx.Response:
        url = endpoint.path
        await self.rate_limiter.acquire()
        try:
            response = await client.request(endpoint.method, url, params=params)
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Request timeout for {url}",
                context={"api_url": url, "timeout": self.timeout},
                original_exception=e
            )
        except httpx.TransportError as e:
            raise NetworkError(
                f"Network error for {url}",
                context={"api_url": url},
                original_exception=e
            )

        context = {"api_url": url, "status_code": response.status_code}
        if response.status_code in (401, 403):
            raise AuthenticationError(f"Authentication failed for {url}", context=context)
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                f"Rate limited by {url}",
                context=context,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None
            )
        if response.status_code >= 500:
            context["response_body"] = response.text[:500]
            raise NetworkError(f"Server error {response.status_code} from {url}", context=context)
        if response.status_code >= 400:
            context["response_body"] = response.text[:500]
            raise APIExtractionError(f"Request rejected with {response.status_code} by {url}", context=context)
        return response

    async def fetch_page(
        self,
        endpoint: APIEndpoint,
        cursor: Any = None,
        client: Optional[httpx.AsyncClient] = None
    ) -> Page:
        """
        Fetch a single page.

        Args:
            endpoint: Endpoint to query
            cursor: Page number, offset or opaque cursor (None for the first page)
            client: Open client to reuse within one endpoint walk

        Returns:
            Page with the records and the cursor of the next page (None when done)
        """
        if client is None:
            async with self._client() as own_client:
                return await self.fetch_page(endpoint, cursor, own_client)

        response = await self._request(client, endpoint, self._params(endpoint, cursor))
        try:
            data = response.json()
        except ValueError as e:
            raise APIExtractionError(
                "Failed to parse JSON response",
                context={"api_url": endpoint.path, "page": cursor, "response_body": response.text[:500]},
                original_exception=e
            )

        records = extract_records(data, endpoint.data_path or self.config.data_path)
        self.pages_fetched += 1
        return Page(records=records, next_cursor=self._next_cursor(data, records, cursor))

    async def list_files(self) -> List[FileDescriptor]:
        return [FileDescriptor(name=label) for label in self._endpoints]

    async def test_connection(self) -> Dict[str, Any]:
        """Fetch the first page of the first endpoint and report the outcome."""
        if not self._endpoints:
            return {"success": False, "message": "No endpoints configured", "error": "ConfigurationError"}
        endpoint = next(iter(self._endpoints.values()))
        try:
            page = await self.fetch_page(endpoint)
        except SyncError as e:
            return {"success": False, "message": e.message, "error": type(e).__name__}
        return {
            "success": True,
            "message": "Connection successful",
            "files_found": len(self._endpoints),
            "sample_records": len(page.records),
        }

    async def iter_row_chunks(self, descriptor: FileDescriptor) -> AsyncIterator[RowChunk]:
        endpoint = self._endpoints.get(descriptor.name)
        if endpoint is None:
            raise APIExtractionError(
                f"Unknown endpoint {descriptor.name}",
                context={"endpoint": descriptor.name}
            )

        max_pages = self.config.pagination.max_pages
        pages = 0
        cursor = None
        async with self._client() as client:
            while True:
                page = await retry_async(
                    self.fetch_page,
                    endpoint,
                    cursor,
                    client,
                    policy=self.policy,
                    operation=f"fetch {descriptor.name} page {pages + 1}",
                )
                pages += 1
                if page.records:
                    yield RowChunk(headers=None, rows=page.records)

                if page.next_cursor is None:
                    break
                if pages >= max_pages:
                    logger.warning(f"Reached max pages limit ({max_pages}) for {descriptor.name}")
                    break
                cursor = page.next_cursor

        logger.info(f"Fetched {pages} pages from {descriptor.name}")
