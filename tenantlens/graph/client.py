"""
Directory API Client

Async HTTP client with:
- Connection pooling
- Classification-aware retry with exponential backoff
- Retry-After support for throttled (429) responses
- Per-request timeout independent of the backoff timer
- Request/response logging
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx

logger = logging.getLogger(__name__)

FATAL_STATUS_CODES = (401, 403)
RATE_LIMIT_STATUS_CODE = 429
TRANSIENT_STATUS_CODES = (500, 502, 503, 504)

TokenProvider = Callable[[], Awaitable[str]]


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.base_delay * self.exponential_base ** attempt, self.max_delay)


class GraphAPIError(Exception):
    """Terminal error from the directory API. Not retried."""

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
        response: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.headers = dict(headers or {})
        self.response = response


class GraphAuthError(GraphAPIError):
    """401/403 - authorization problem, surfaced immediately."""


class GraphRateLimitError(GraphAPIError):
    """429 - throttled by the server."""

    retryable = True

    @property
    def retry_after(self) -> Optional[float]:
        for name, value in self.headers.items():
            if name.lower() == "retry-after":
                return parse_retry_after(value)
        return None


class GraphTransientError(GraphAPIError):
    """Timeouts, connection resets and 5xx gateway errors."""

    retryable = True


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header value.

    Accepts delta-seconds ("2", "1.5") or an HTTP-date. Returns seconds to
    wait, or None when the value is missing or unparseable.
    """
    if value is None:
        return None

    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring unparseable Retry-After header: {value!r}")
        return None

    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def classify_response(response: httpx.Response) -> GraphAPIError:
    """Build the classified error for a non-2xx response."""
    status = response.status_code
    try:
        body = response.json() if response.content else None
    except ValueError:
        body = response.text

    message = f"API request failed: {status}"
    if isinstance(body, dict):
        detail = body.get("error", {})
        if isinstance(detail, dict) and detail.get("message"):
            message = f"{message} ({detail['message']})"

    if status in FATAL_STATUS_CODES:
        error_class = GraphAuthError
    elif status == RATE_LIMIT_STATUS_CODE:
        error_class = GraphRateLimitError
    elif status in TRANSIENT_STATUS_CODES:
        error_class = GraphTransientError
    else:
        error_class = GraphAPIError

    return error_class(
        message,
        status_code=status,
        headers=response.headers,
        response=body,
    )


class GraphClient:
    """
    Async client for the directory API.

    Usage:
        client = GraphClient(token="...")

        users = await client.get("/users", {"$top": 999})
        skus = await client.get_all_pages("/subscribedSkus")

        await client.close()
    """

    BASE_URL = "https://graph.microsoft.com/v1.0"

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout: float = 30.0,
        max_connections: int = 20,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: API root (defaults to BASE_URL)
            token: Static bearer token (optional)
            token_provider: Coroutine function returning a bearer token,
                called before every request. Takes precedence over token.
            retry_config: Retry configuration (optional)
            timeout: Per-request timeout in seconds
            max_connections: Maximum concurrent connections
            transport: Custom httpx transport (used by tests)
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.retry_config = retry_config or RetryConfig()
        self._token = token
        self._token_provider = token_provider

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json"},
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max(1, max_connections // 2),
            ),
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

        self._closed = False
        self._stats = {
            "requests": 0,
            "attempts": 0,
            "retries": 0,
            "failures": 0,
        }

    async def get(
        self,
        path: str,
        query: Optional[Dict[str, Any]] = None,
        retry: bool = True,
    ) -> Any:
        """
        Make GET request to the API.

        Args:
            path: Path relative to the base URL (e.g. "/users") or an
                absolute URL (e.g. an @odata.nextLink)
            query: Query string parameters
            retry: Whether to retry retryable failures

        Returns:
            Decoded JSON body

        Raises:
            GraphAuthError: On 401/403
            GraphRateLimitError: On 429 after retries are exhausted
            GraphTransientError: On timeouts/5xx after retries are exhausted
            GraphAPIError: On any other failure
        """
        if self._closed:
            raise GraphAPIError("Client is closed")

        self._stats["requests"] += 1

        if retry:
            return await self._request_with_retry(path, query)
        return await self._attempt(path, query)

    async def get_all_pages(
        self,
        path: str,
        query: Optional[Dict[str, Any]] = None,
        max_pages: int = 10,
    ) -> List[Any]:
        """
        Follow @odata.nextLink and concatenate the "value" arrays.

        Every page goes through the same retry policy. Stops with a warning
        when max_pages is reached.
        """
        items: List[Any] = []
        next_url: Optional[str] = path
        params = query
        pages = 0

        while next_url:
            body = await self.get(next_url, params)
            items.extend(body.get("value", []) if isinstance(body, dict) else [])
            next_url = body.get("@odata.nextLink") if isinstance(body, dict) else None
            params = None  # nextLink already carries the query
            pages += 1

            if next_url and pages >= max_pages:
                logger.warning(f"Hit max pages limit ({max_pages}) for {path}, stopping pagination")
                break

        logger.debug(f"Fetched {len(items)} items from {path} in {pages} page(s)")
        return items

    async def _headers(self) -> Dict[str, str]:
        token = self._token
        if self._token_provider is not None:
            token = await self._token_provider()
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _make_request(self, url: str, params: Optional[Dict[str, Any]]) -> Any:
        """Make a single HTTP request."""
        response = await self._client.get(url, params=params, headers=await self._headers())

        if response.status_code >= 400:
            raise classify_response(response)

        if not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise GraphAPIError(
                f"Invalid JSON in response from {url}: {e}",
                status_code=response.status_code,
                headers=response.headers,
            ) from e

    async def _attempt(self, url: str, params: Optional[Dict[str, Any]]) -> Any:
        """One attempt, with transport errors mapped onto the error taxonomy."""
        self._stats["attempts"] += 1
        try:
            return await self._make_request(url, params)
        except httpx.TimeoutException as e:
            raise GraphTransientError(f"Request timed out: {e}") from e
        except (httpx.NetworkError, httpx.RemoteProtocolError) as e:
            raise GraphTransientError(f"Connection error: {e}") from e
        except httpx.HTTPError as e:
            raise GraphAPIError(f"HTTP error: {e}") from e

    async def _request_with_retry(self, url: str, params: Optional[Dict[str, Any]]) -> Any:
        """Make request with automatic retry on retryable failures."""
        max_retries = self.retry_config.max_retries
        last_exception: Optional[GraphAPIError] = None

        for attempt in range(max_retries + 1):
            logger.debug(f"GET {url} (attempt {attempt + 1}/{max_retries + 1})")
            try:
                return await self._attempt(url, params)
            except GraphAPIError as e:
                if not e.retryable:
                    self._stats["failures"] += 1
                    logger.error(f"GET {url} failed without retry: {e}")
                    raise
                last_exception = e

            if attempt >= max_retries:
                break

            delay = self._retry_delay(last_exception, attempt)
            self._stats["retries"] += 1
            logger.warning(
                f"GET {url} failed (attempt {attempt + 1}/{max_retries + 1}): {last_exception}. "
                f"Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)

        self._stats["failures"] += 1
        logger.error(f"GET {url} failed after {max_retries + 1} attempts: {last_exception}")
        raise last_exception

    def _retry_delay(self, error: GraphAPIError, attempt: int) -> float:
        """Server-supplied Retry-After wins over the backoff schedule."""
        if isinstance(error, GraphRateLimitError):
            retry_after = error.retry_after
            if retry_after is not None:
                return retry_after
        return self.retry_config.backoff(attempt)

    def get_stats(self) -> Dict[str, int]:
        """Get request statistics."""
        return dict(self._stats)

    async def close(self):
        """Close the HTTP client."""
        if not self._closed:
            await self._client.aclose()
            self._closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
