"""Unit tests for feed document retrieval."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from helpers import FEED_URL, build_rss

from feedsync.config import FetchConfig, Intermediary
from feedsync.errors import (
    AllRetrievalRoutesFailed,
    ErrorKind,
    FetchFailure,
    FetchTimeout,
)
from feedsync.fetch import (
    DirectFetcher,
    RelayFetcher,
    create_fetcher,
    unwrap_envelope,
    validate_feed_url,
)
from feedsync.parser import FeedDocumentParser

LATIN1_DOCUMENT = (
    '<?xml version="1.0" encoding="ISO-8859-1"?>'
    '<rss version="2.0"><channel><title>Cuisine</title>'
    "<item><title>Café crème</title><guid>cafe-1</guid>"
    "<description>Déjà vu à Noël</description></item>"
    "</channel></rss>"
)

RELAYS = (
    Intermediary("first", "https://relay-one.test/?u="),
    Intermediary("second", "https://relay-two.test/get?url=", envelope_field="contents"),
)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def relay_config(**overrides) -> FetchConfig:
    values = dict(restricted_network=True, retry_delay_ms=250, intermediaries=RELAYS)
    values.update(overrides)
    return FetchConfig(**values)


class TestDirectFetcherUnit:
    """Unit tests for DirectFetcher."""

    def test_returns_document_body(self):
        document = build_rss(1)

        def handler(request):
            assert str(request.url) == FEED_URL
            return httpx.Response(200, text=document)

        async def run():
            async with DirectFetcher(client=mock_client(handler)) as fetcher:
                return await fetcher.fetch_document(FEED_URL)

        assert asyncio.run(run()) == document.encode("utf-8")

    def test_declared_encoding_survives_the_fetch(self):
        """A Latin-1 feed without a charset header still parses correctly."""
        body = LATIN1_DOCUMENT.encode("latin-1")

        def handler(request):
            return httpx.Response(
                200, content=body, headers={"Content-Type": "application/rss+xml"}
            )

        async def run():
            fetcher = DirectFetcher(client=mock_client(handler))
            return await fetcher.fetch_document(FEED_URL)

        document = asyncio.run(run())

        assert document == body
        (raw,) = FeedDocumentParser().parse(document, FEED_URL)
        assert raw.title == "Café crème"
        assert raw.summary == "Déjà vu à Noël"

    def test_http_error_status_is_a_fetch_failure(self):
        def handler(request):
            return httpx.Response(404)

        async def run():
            fetcher = DirectFetcher(client=mock_client(handler))
            await fetcher.fetch_document(FEED_URL)

        with pytest.raises(FetchFailure) as exc_info:
            asyncio.run(run())

        assert exc_info.value.message == "HTTP 404: Not Found"
        assert exc_info.value.kind is ErrorKind.NETWORK_FAILURE

    def test_transport_error_is_a_fetch_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async def run():
            fetcher = DirectFetcher(client=mock_client(handler))
            await fetcher.fetch_document(FEED_URL)

        with pytest.raises(FetchFailure, match="ConnectError"):
            asyncio.run(run())

    def test_slow_response_times_out(self):
        async def handler(request):
            await asyncio.sleep(5)
            return httpx.Response(200, text="late")

        async def run():
            fetcher = DirectFetcher(client=mock_client(handler))
            await fetcher.fetch_document(FEED_URL, timeout_ms=50)

        with pytest.raises(FetchTimeout) as exc_info:
            asyncio.run(run())

        assert exc_info.value.message == "Request timeout after 50ms"
        assert exc_info.value.kind is ErrorKind.TIMEOUT

    def test_httpx_timeout_is_reported_as_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        async def run():
            fetcher = DirectFetcher(FetchConfig(timeout_ms=1500), client=mock_client(handler))
            await fetcher.fetch_document(FEED_URL)

        with pytest.raises(FetchTimeout, match="1500ms"):
            asyncio.run(run())

    @pytest.mark.parametrize(
        "url", ["ftp://example.com/feed", "file:///etc/passwd", "example.com/feed"]
    )
    def test_rejects_unsupported_schemes(self, url):
        def handler(request):
            raise AssertionError("no request expected")

        async def run():
            fetcher = DirectFetcher(client=mock_client(handler))
            await fetcher.fetch_document(url)

        with pytest.raises(FetchFailure, match="Unsupported feed URL scheme"):
            asyncio.run(run())


class TestRelayFetcherUnit:
    """Unit tests for RelayFetcher."""

    def test_first_intermediary_success_short_circuits(self):
        document = build_rss(1)
        seen = []

        def handler(request):
            seen.append(request.url.host)
            return httpx.Response(200, text=document)

        async def run():
            fetcher = RelayFetcher(relay_config(), client=mock_client(handler))
            return await fetcher.fetch_document(FEED_URL)

        assert asyncio.run(run()) == document.encode("utf-8")
        assert seen == ["relay-one.test"]

    def test_raw_relay_keeps_declared_encoding(self):
        body = LATIN1_DOCUMENT.encode("latin-1")

        def handler(request):
            return httpx.Response(
                200, content=body, headers={"Content-Type": "text/xml"}
            )

        async def run():
            fetcher = RelayFetcher(relay_config(), client=mock_client(handler))
            return await fetcher.fetch_document(FEED_URL)

        (raw,) = FeedDocumentParser().parse(asyncio.run(run()), FEED_URL)

        assert raw.title == "Café crème"

    def test_target_url_is_percent_encoded(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, text="ok")

        async def run():
            fetcher = RelayFetcher(relay_config(), client=mock_client(handler))
            await fetcher.fetch_document(FEED_URL)

        asyncio.run(run())

        assert seen == [
            "https://relay-one.test/?u=https%3A%2F%2Fexample.com%2Ffeed.xml"
        ]

    def test_falls_through_in_order_and_unwraps_envelope(self):
        document = build_rss(2)
        seen = []

        def handler(request):
            seen.append(request.url.host)
            if request.url.host == "relay-one.test":
                return httpx.Response(502)
            return httpx.Response(200, text=json.dumps({"contents": document}))

        async def run():
            fetcher = RelayFetcher(relay_config(), client=mock_client(handler))
            return await fetcher.fetch_document(FEED_URL)

        with patch("feedsync.fetch.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = asyncio.run(run())

        assert result == document
        assert seen == ["relay-one.test", "relay-two.test"]
        sleep.assert_awaited_once_with(0.25)

    def test_direct_fetch_is_last_resort(self):
        document = build_rss(3)
        seen = []

        def handler(request):
            seen.append(request.url.host)
            if request.url.host == "example.com":
                return httpx.Response(200, text=document)
            return httpx.Response(503)

        async def run():
            fetcher = RelayFetcher(relay_config(), client=mock_client(handler))
            return await fetcher.fetch_document(FEED_URL)

        with patch("feedsync.fetch.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = asyncio.run(run())

        assert result == document.encode("utf-8")
        assert seen == ["relay-one.test", "relay-two.test", "example.com"]
        # No pause after the final intermediary
        assert sleep.await_count == 1

    def test_all_routes_failed_lists_every_reason(self):
        def handler(request):
            if request.url.host == "relay-two.test":
                return httpx.Response(200, text=json.dumps({"status": "ok"}))
            return httpx.Response(500)

        async def run():
            fetcher = RelayFetcher(relay_config(), client=mock_client(handler))
            await fetcher.fetch_document(FEED_URL)

        with patch("feedsync.fetch.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(AllRetrievalRoutesFailed) as exc_info:
                asyncio.run(run())

        error = exc_info.value
        assert error.kind is ErrorKind.ALL_ROUTES_FAILED
        assert error.reasons == [
            "Intermediary 1 (first) failed: HTTP 500: Internal Server Error",
            "Intermediary 2 (second) failed: Envelope has no 'contents' payload",
            "Direct fetch failed: HTTP 500: Internal Server Error",
        ]
        assert error.message.startswith("All retrieval routes failed:\n")
        assert error.to_sync_error("feed-1").reasons == tuple(error.reasons)

    def test_intermediary_timeout_counts_as_failure(self):
        document = build_rss(4)

        async def handler(request):
            if request.url.host == "relay-one.test":
                await asyncio.sleep(5)
            return httpx.Response(200, text=json.dumps({"contents": document}))

        async def run():
            fetcher = RelayFetcher(
                relay_config(timeout_ms=50, retry_delay_ms=0), client=mock_client(handler)
            )
            return await fetcher.fetch_document(FEED_URL)

        assert asyncio.run(run()) == document


class TestFetchHelpersUnit:
    def test_unwrap_envelope_rejects_malformed_json(self):
        response = httpx.Response(
            200, text="<rss/>", request=httpx.Request("GET", "https://relay.test/")
        )

        with pytest.raises(FetchFailure, match="Malformed envelope"):
            unwrap_envelope(response, "contents")

    def test_unwrap_envelope_returns_payload(self):
        response = httpx.Response(
            200,
            text=json.dumps({"contents": "<rss/>"}),
            request=httpx.Request("GET", "https://relay.test/"),
        )

        assert unwrap_envelope(response, "contents") == "<rss/>"

    def test_validate_feed_url_accepts_http_and_https(self):
        validate_feed_url("http://example.com/feed")
        validate_feed_url("https://example.com/feed")

    def test_create_fetcher_picks_backend(self):
        client = mock_client(lambda request: httpx.Response(200))

        assert isinstance(create_fetcher(FetchConfig(), client=client), DirectFetcher)
        assert isinstance(
            create_fetcher(FetchConfig(restricted_network=True), client=client),
            RelayFetcher,
        )

    def test_shared_client_is_not_closed(self):
        client = mock_client(lambda request: httpx.Response(200))

        async def run():
            async with create_fetcher(client=client):
                pass
            return client.is_closed

        assert asyncio.run(run()) is False
