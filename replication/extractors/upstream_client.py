"""
Upstream listing API client with rate governance and retry logic.

This module wraps the OData listing API with:
- Token-bucket rate limiting and per-operation circuit breakers (RateGovernor)
- Server-directed waits on throttling (HTTP 429)
- Exponential backoff retry for timeouts, connection errors and 5xx responses
- Typed errors for authentication, missing resources and malformed bodies
- Bounded fan-out for media lookups across many listings
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from core.config import Settings, settings as default_settings
from core.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    NetworkError,
    RateLimitError,
    ResourceNotFoundError,
    ResponseFormatError,
    UpstreamError,
)
from replication.governor import (
    ENTITY_FETCH,
    MEDIA_FETCH,
    METADATA_FETCH,
    RateGovernor,
)
from schemas.replication import EntityPage

logger = logging.getLogger(__name__)

ENTITY_RESOURCE = "Property"
MEDIA_RESOURCE = "Media"

RETRY_AFTER_HEADERS = ("x-rate-limit-retry-after-seconds", "retry-after")
REMAINING_HEADER = "x-rate-limit-remaining"


def quote_key(value: str) -> str:
    """Escape a string literal for an OData $filter expression"""
    return str(value).replace("'", "''")


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    for header in RETRY_AFTER_HEADERS:
        raw = response.headers.get(header)
        if raw is None:
            continue
        try:
            seconds = float(raw)
        except ValueError:
            continue
        if seconds > 0:
            return seconds
    return None


def _media_sort_key(item: Dict[str, Any]):
    order = item.get("Order")
    try:
        order = int(float(order)) if order is not None and order != "" else None
    except (TypeError, ValueError):
        order = None
    return (order is None, order or 0, str(item.get("MediaKey") or ""))


class UpstreamClient:
    """
    Fetch listings, media and metadata from the upstream OData API.

    Every request passes through the shared RateGovernor. The retry loop
    classifies each outcome:

    - 429: neutral for the breaker; governor throttle wait, then retry
    - timeout: neutral; exponential backoff, then NetworkError
    - connection error / 5xx: breaker failure; backoff, then NetworkError
    - 404: neutral; ResourceNotFoundError (callers treat it as empty)
    - 401/403: breaker failure; AuthenticationError, not retried
    - other 4xx: breaker failure; UpstreamError, not retried

    Attributes:
        max_retries: Retry budget for each failure class
        max_page_size: Upper bound applied to $top
    """

    def __init__(
        self,
        governor: RateGovernor,
        config: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.config = config or default_settings
        self.governor = governor
        self.max_retries = self.config.MAX_RETRIES
        self.max_page_size = self.config.UPSTREAM_MAX_PAGE_SIZE
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.config.UPSTREAM_BASE_URL,
            headers=self._default_headers(),
            timeout=self.config.UPSTREAM_TIMEOUT
        )

    def _default_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.UPSTREAM_API_KEY:
            headers["Authorization"] = f"Bearer {self.config.UPSTREAM_API_KEY}"
        else:
            logger.warning("UPSTREAM_API_KEY is not set; requests will be unauthenticated")
        return headers

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    def _check_remaining(self, response: httpx.Response):
        remaining = response.headers.get(REMAINING_HEADER)
        if remaining is None:
            return
        try:
            remaining_count = int(float(remaining))
        except ValueError:
            return
        if remaining_count < self.config.RATE_LIMIT_LOW_WATERMARK:
            logger.warning(f"Rate limit running low: {remaining_count} requests remaining")

    async def _backoff(self, attempt: int, reason: str, url: str):
        delay = self.governor.backoff_delay(attempt)
        logger.warning(
            f"{reason} for {url}. Retrying in {delay:.1f}s "
            f"(attempt {attempt + 1}/{self.max_retries})"
        )
        await self._sleep(delay)

    async def _get_json(self, path: str, params: Dict[str, Any], operation: str) -> Any:
        """
        Perform one governed GET and decode the JSON body.

        Raises:
            CircuitOpenError: Breaker for the operation is open
            RateLimitError: Throttled beyond the retry budget
            NetworkError: Timeouts, connection errors or 5xx beyond the budget
            AuthenticationError: HTTP 401/403
            ResourceNotFoundError: HTTP 404
            ResponseFormatError: Body is not JSON
            UpstreamError: Any other 4xx
        """
        throttled = 0
        attempt = 0

        while True:
            await self.governor.acquire(operation)
            context = {"url": path, "operation": operation, "retry_count": attempt}

            try:
                response = await self._client.get(path, params=params)
            except httpx.TimeoutException as e:
                await self.governor.record_neutral(operation)
                if attempt >= self.max_retries:
                    raise NetworkError(
                        f"Request timeout after {attempt + 1} attempts",
                        context=context,
                        original_exception=e
                    )
                await self._backoff(attempt, "Request timeout", path)
                attempt += 1
                continue
            except httpx.RequestError as e:
                await self.governor.record_failure(operation)
                if attempt >= self.max_retries:
                    raise NetworkError(
                        f"Network error after {attempt + 1} attempts",
                        context=context,
                        original_exception=e
                    )
                await self._backoff(attempt, f"Network error ({type(e).__name__})", path)
                attempt += 1
                continue
            except BaseException:
                self.governor.release(operation)
                raise

            status = response.status_code
            context["status_code"] = status

            if status == 429:
                await self.governor.record_neutral(operation)
                retry_after = _parse_retry_after(response)
                remaining = response.headers.get(REMAINING_HEADER)
                if remaining is not None:
                    logger.warning(f"Rate limit remaining: {remaining} requests")
                if throttled >= self.max_retries:
                    raise RateLimitError(
                        f"Rate limit exceeded for {path}",
                        context=context,
                        retry_after=retry_after
                    )
                await self.governor.wait_for_throttle(operation, retry_after, throttled)
                throttled += 1
                continue

            if status == 404:
                await self.governor.record_neutral(operation)
                raise ResourceNotFoundError(f"Resource not found: {path}", context=context)

            if status in (401, 403):
                await self.governor.record_failure(operation)
                raise AuthenticationError(f"Authentication failed for {path}", context=context)

            if status >= 500:
                await self.governor.record_failure(operation)
                if attempt >= self.max_retries:
                    context["response_body"] = response.text[:500]
                    raise NetworkError(
                        f"Server error {status} after {attempt + 1} attempts",
                        context=context
                    )
                await self._backoff(attempt, f"Server error {status}", path)
                attempt += 1
                continue

            if status >= 400:
                await self.governor.record_failure(operation)
                context["response_body"] = response.text[:500]
                raise UpstreamError(f"Upstream rejected request with {status}", context=context)

            await self.governor.record_success(operation)
            self._check_remaining(response)

            try:
                return response.json()
            except ValueError as e:
                context["response_body"] = response.text[:500]
                raise ResponseFormatError(
                    "Failed to parse JSON response",
                    context=context,
                    original_exception=e
                )

    @staticmethod
    def _value_list(data: Any, path: str) -> List[Dict[str, Any]]:
        if not isinstance(data, dict) or not isinstance(data.get("value"), list):
            raise ResponseFormatError(
                "Expected an OData collection with a 'value' list",
                context={"url": path, "body_type": type(data).__name__}
            )
        return data["value"]

    async def fetch_entity_batch(
        self,
        last_timestamp: str,
        last_key: str,
        page_size: int
    ) -> EntityPage:
        """
        Fetch the next page of listings strictly after (last_timestamp, last_key).

        Args:
            last_timestamp: Watermark timestamp (ISO-8601)
            last_key: Tiebreak ListingKey at that timestamp
            page_size: Requested page size, clamped to the upstream maximum

        Returns:
            EntityPage; an empty page means end of stream
        """
        top = page_size
        if page_size > self.max_page_size:
            logger.warning(
                f"Requested batch size {page_size} exceeds upstream limit of "
                f"{self.max_page_size}. Using maximum allowed."
            )
            top = self.max_page_size

        params = {
            "$filter": (
                f"ModificationTimestamp gt {last_timestamp} or "
                f"(ModificationTimestamp eq {last_timestamp} and ListingKey gt '{quote_key(last_key)}')"
            ),
            "$orderby": "ModificationTimestamp,ListingKey",
            "$top": top,
        }

        try:
            data = await self._get_json(f"/{ENTITY_RESOURCE}", params, ENTITY_FETCH)
        except ResourceNotFoundError:
            logger.info("Entity batch returned 404, treating as end of stream")
            return EntityPage(items=[], count=0)

        items = self._value_list(data, ENTITY_RESOURCE)
        return EntityPage(items=items, count=len(items))

    async def fetch_media_for_entity(self, entity_id: str) -> List[Dict[str, Any]]:
        """Fetch all media for one listing, in display order"""
        params = {
            "$filter": f"ResourceRecordKey eq '{quote_key(entity_id)}' and ResourceName eq '{ENTITY_RESOURCE}'",
            "$orderby": "ModificationTimestamp,MediaKey",
        }

        try:
            data = await self._get_json(f"/{MEDIA_RESOURCE}", params, MEDIA_FETCH)
        except ResourceNotFoundError:
            logger.debug(f"No media found for listing {entity_id} (404 response)")
            return []

        items = self._value_list(data, MEDIA_RESOURCE)
        return sorted(items, key=_media_sort_key)

    async def fetch_media_for_entities(self, entity_ids: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        """
        Fetch media for many listings with bounded concurrency.

        A single listing's failure degrades to an empty result. An open
        circuit is re-raised so the caller can pause the cycle.

        Returns:
            Mapping of listing id to media list; listings without media are omitted
        """
        media_by_entity: Dict[str, List[Dict[str, Any]]] = {}
        chunk_size = max(1, self.config.MEDIA_FETCH_CONCURRENCY)

        for start in range(0, len(entity_ids), chunk_size):
            if start > 0 and self.config.MEDIA_BATCH_DELAY > 0:
                await self._sleep(self.config.MEDIA_BATCH_DELAY)

            chunk = entity_ids[start:start + chunk_size]
            results = await asyncio.gather(
                *(self.fetch_media_for_entity(entity_id) for entity_id in chunk),
                return_exceptions=True
            )

            for entity_id, result in zip(chunk, results):
                if isinstance(result, CircuitOpenError):
                    raise result
                if isinstance(result, BaseException) and not isinstance(result, Exception):
                    raise result
                if isinstance(result, Exception):
                    logger.warning(
                        f"Media fetch failed for listing {entity_id}: {result}",
                        extra={"error_context": getattr(result, "to_dict", lambda: {})()}
                    )
                    continue
                if result:
                    media_by_entity[entity_id] = result

        return media_by_entity

    async def fetch_metadata(self) -> Any:
        """Fetch the service metadata document as JSON"""
        return await self._get_json("/$metadata", {"$format": "json"}, METADATA_FETCH)
