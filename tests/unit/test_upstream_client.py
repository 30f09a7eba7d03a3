"""
Unit tests for the upstream OData client
"""

import asyncio
import logging

import httpx
import pytest

from core.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    NetworkError,
    RateLimitError,
    ResponseFormatError,
)
from replication.extractors.upstream_client import UpstreamClient, quote_key
from replication.governor import ENTITY_FETCH, MEDIA_FETCH, CircuitState, RateGovernor


class Upstream:
    """Scripted upstream: a handler per request, recorded requests"""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


def page(records, status=200, headers=None):
    return httpx.Response(status, json={"value": records}, headers=headers)


@pytest.fixture
def build_client(make_settings, fake_clock):
    """Create an UpstreamClient over a MockTransport"""

    def factory(handler, **overrides):
        config = make_settings(**overrides)
        governor = RateGovernor(config, clock=fake_clock, sleep=fake_clock.sleep)
        upstream = Upstream(handler)
        http = httpx.AsyncClient(
            base_url=config.UPSTREAM_BASE_URL,
            transport=httpx.MockTransport(upstream)
        )
        client = UpstreamClient(governor, config, client=http, sleep=fake_clock.sleep)
        return client, upstream, governor

    return factory


class TestEntityBatch:
    """Test listing page requests"""

    @pytest.mark.asyncio
    async def test_builds_keyset_filter_and_ordering(self, build_client):
        client, upstream, _ = build_client(lambda request: page([]))

        await client.fetch_entity_batch("2024-01-15T10:00:00Z", "X100", 500)

        request = upstream.requests[0]
        assert request.url.path == "/odata/Property"
        params = request.url.params
        assert params["$filter"] == (
            "ModificationTimestamp gt 2024-01-15T10:00:00Z or "
            "(ModificationTimestamp eq 2024-01-15T10:00:00Z and ListingKey gt 'X100')"
        )
        assert params["$orderby"] == "ModificationTimestamp,ListingKey"
        assert params["$top"] == "500"

    @pytest.mark.asyncio
    async def test_escapes_quotes_in_keys(self, build_client):
        client, upstream, _ = build_client(lambda request: page([]))

        await client.fetch_entity_batch("2024-01-15T10:00:00Z", "O'Brien", 10)

        assert "ListingKey gt 'O''Brien'" in upstream.requests[0].url.params["$filter"]
        assert quote_key("a''b") == "a''''b"

    @pytest.mark.asyncio
    async def test_clamps_page_size_with_warning(self, build_client, caplog):
        client, upstream, _ = build_client(lambda request: page([]))

        with caplog.at_level(logging.WARNING):
            await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 20000)

        assert upstream.requests[0].url.params["$top"] == "10000"
        assert "exceeds upstream limit" in caplog.text

    @pytest.mark.asyncio
    async def test_returns_page_with_count(self, build_client, listing_record):
        records = [listing_record("A"), listing_record("B")]
        client, _, governor = build_client(lambda request: page(records))

        result = await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 1000)

        assert result.count == 2
        assert [r["ListingKey"] for r in result.items] == ["A", "B"]
        assert governor.breaker(ENTITY_FETCH).failure_count == 0

    @pytest.mark.asyncio
    async def test_not_found_is_end_of_stream(self, build_client):
        client, _, governor = build_client(lambda request: httpx.Response(404))

        result = await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 1000)

        assert result.count == 0
        assert governor.breaker(ENTITY_FETCH).failure_count == 0

    @pytest.mark.asyncio
    async def test_body_without_value_list_is_format_error(self, build_client):
        client, _, _ = build_client(lambda request: httpx.Response(200, json={"items": []}))

        with pytest.raises(ResponseFormatError):
            await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 1000)

    @pytest.mark.asyncio
    async def test_non_json_body_is_format_error(self, build_client):
        client, _, _ = build_client(lambda request: httpx.Response(200, text="<html>maintenance</html>"))

        with pytest.raises(ResponseFormatError):
            await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 1000)


class TestRetryPolicy:
    """Test throttling, retries and breaker accounting"""

    @pytest.mark.asyncio
    async def test_throttle_waits_for_server_hint_then_retries(self, build_client, fake_clock, listing_record):
        responses = iter([
            httpx.Response(429, headers={"retry-after": "3"}),
            page([listing_record("A")]),
        ])
        client, upstream, governor = build_client(lambda request: next(responses))

        result = await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 1000)

        assert result.count == 1
        assert len(upstream.requests) == 2
        assert fake_clock.sleeps == [3.0]
        assert governor.breaker(ENTITY_FETCH).failure_count == 0

    @pytest.mark.asyncio
    async def test_vendor_retry_header_takes_precedence(self, build_client, fake_clock):
        responses = iter([
            httpx.Response(429, headers={"x-rate-limit-retry-after-seconds": "7", "retry-after": "3"}),
            page([]),
        ])
        client, _, _ = build_client(lambda request: next(responses))

        await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 1000)

        assert fake_clock.sleeps == [7.0]

    @pytest.mark.asyncio
    async def test_persistent_throttling_raises_rate_limit_error(self, build_client):
        client, upstream, governor = build_client(
            lambda request: httpx.Response(429, headers={"retry-after": "1"}),
            MAX_RETRIES=2
        )

        with pytest.raises(RateLimitError) as exc_info:
            await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 1000)

        assert exc_info.value.retry_after == 1.0
        assert len(upstream.requests) == 3
        assert governor.breaker(ENTITY_FETCH).state.value == "closed"

    @pytest.mark.asyncio
    async def test_timeouts_retry_with_backoff_then_fail(self, build_client, fake_clock):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client, upstream, governor = build_client(handler, MAX_RETRIES=2, RETRY_DELAY_BASE=0.5)

        with pytest.raises(NetworkError):
            await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 1000)

        assert len(upstream.requests) == 3
        assert fake_clock.sleeps == [0.5, 1.0]
        assert governor.breaker(ENTITY_FETCH).failure_count == 0

    @pytest.mark.asyncio
    async def test_other_request_errors_count_as_failures(self, build_client, fake_clock):
        def handler(request):
            raise httpx.TooManyRedirects("redirect loop", request=request)

        client, upstream, governor = build_client(handler, MAX_RETRIES=2, RETRY_DELAY_BASE=0.5)

        with pytest.raises(NetworkError):
            await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 1000)

        assert len(upstream.requests) == 3
        assert fake_clock.sleeps == [0.5, 1.0]
        assert governor.breaker(ENTITY_FETCH).failure_count == 3

    @pytest.mark.asyncio
    async def test_cancelled_trial_call_frees_its_slot(self, build_client, fake_clock):
        """A half-open trial cut off by a timeout must not block later trials"""
        respond = asyncio.Event()

        async def handler(request):
            await respond.wait()
            return page([])

        client, upstream, governor = build_client(
            handler,
            CIRCUIT_BREAKER_THRESHOLD=1,
            CIRCUIT_BREAKER_RESET_TIMEOUT=30.0,
            CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS=1
        )
        breaker = governor.breaker(MEDIA_FETCH)
        await breaker.record_failure()
        fake_clock.now += 31

        for _ in range(3):
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(client.fetch_media_for_entity("E1"), timeout=0.05)

        assert breaker.state == CircuitState.HALF_OPEN
        assert len(upstream.requests) == 3

        respond.set()
        assert await client.fetch_media_for_entity("E1") == []
        assert breaker.success_count == 1

    @pytest.mark.asyncio
    async def test_server_errors_open_the_circuit(self, build_client):
        client, upstream, governor = build_client(
            lambda request: httpx.Response(503, text="unavailable"),
            MAX_RETRIES=1,
            CIRCUIT_BREAKER_THRESHOLD=2
        )

        with pytest.raises(NetworkError):
            await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 1000)
        assert governor.breaker(ENTITY_FETCH).state.value == "open"

        with pytest.raises(CircuitOpenError):
            await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 1000)
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_server_error_recovers_on_retry(self, build_client, fake_clock):
        responses = iter([httpx.Response(502), page([])])
        client, upstream, governor = build_client(lambda request: next(responses))

        result = await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 1000)

        assert result.count == 0
        assert len(upstream.requests) == 2
        assert governor.breaker(ENTITY_FETCH).failure_count == 0

    @pytest.mark.asyncio
    async def test_authentication_failure_is_not_retried(self, build_client):
        client, upstream, _ = build_client(lambda request: httpx.Response(401))

        with pytest.raises(AuthenticationError):
            await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 1000)

        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_low_remaining_quota_is_logged(self, build_client, caplog):
        client, _, _ = build_client(lambda request: page([], headers={"x-rate-limit-remaining": "12"}))

        with caplog.at_level(logging.WARNING):
            await client.fetch_entity_batch("1970-01-01T00:00:00Z", "0", 1000)

        assert "12 requests remaining" in caplog.text


class TestMediaFetch:
    """Test media lookups"""

    @pytest.mark.asyncio
    async def test_media_for_entity_filters_and_sorts(self, build_client, media_item):
        items = [
            media_item("M3", "E1"),
            media_item("M2", "E1", order=2),
            media_item("M1", "E1", order=1),
        ]
        client, upstream, _ = build_client(lambda request: page(items))

        result = await client.fetch_media_for_entity("E1")

        assert [item["MediaKey"] for item in result] == ["M1", "M2", "M3"]
        params = upstream.requests[0].url.params
        assert upstream.requests[0].url.path == "/odata/Media"
        assert params["$filter"] == "ResourceRecordKey eq 'E1' and ResourceName eq 'Property'"
        assert params["$orderby"] == "ModificationTimestamp,MediaKey"

    @pytest.mark.asyncio
    async def test_media_not_found_is_empty(self, build_client):
        client, _, governor = build_client(lambda request: httpx.Response(404))

        assert await client.fetch_media_for_entity("E404") == []
        assert governor.breaker(MEDIA_FETCH).failure_count == 0

    @pytest.mark.asyncio
    async def test_fan_out_degrades_single_failures(self, build_client, media_item):
        def handler(request):
            media_filter = request.url.params["$filter"]
            if "'E2'" in media_filter:
                return httpx.Response(400, text="bad filter")
            if "'E3'" in media_filter:
                return page([])
            return page([media_item("M1", "E1")])

        client, _, _ = build_client(handler, MEDIA_FETCH_CONCURRENCY=2)

        result = await client.fetch_media_for_entities(["E1", "E2", "E3"])

        assert list(result) == ["E1"]
        assert result["E1"][0]["MediaKey"] == "M1"

    @pytest.mark.asyncio
    async def test_fan_out_reraises_open_circuit(self, build_client):
        client, _, governor = build_client(lambda request: page([]), CIRCUIT_BREAKER_THRESHOLD=1)
        await governor.record_failure(MEDIA_FETCH)

        with pytest.raises(CircuitOpenError):
            await client.fetch_media_for_entities(["E1", "E2"])

    @pytest.mark.asyncio
    async def test_fan_out_pauses_between_chunks(self, build_client, fake_clock):
        client, upstream, _ = build_client(
            lambda request: page([]),
            MEDIA_FETCH_CONCURRENCY=2,
            MEDIA_BATCH_DELAY=0.25
        )

        await client.fetch_media_for_entities(["E1", "E2", "E3", "E4", "E5"])

        assert len(upstream.requests) == 5
        assert fake_clock.sleeps == [0.25, 0.25]


class TestMetadata:

    @pytest.mark.asyncio
    async def test_fetch_metadata_requests_json(self, build_client):
        client, upstream, _ = build_client(lambda request: httpx.Response(200, json={"EntitySets": []}))

        result = await client.fetch_metadata()

        assert result == {"EntitySets": []}
        assert upstream.requests[0].url.path == "/odata/$metadata"
        assert upstream.requests[0].url.params["$format"] == "json"
