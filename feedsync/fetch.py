"""Retrieval of remote feed documents."""

import asyncio
from abc import ABC, abstractmethod
from urllib.parse import quote, urlparse

import httpx

from .config import FetchConfig, Intermediary
from .errors import AllRetrievalRoutesFailed, FetchFailure, FetchTimeout
from .logging_config import create_execution_logger

ALLOWED_SCHEMES = ("http", "https")


class DocumentFetcher(ABC):
    """Fetches a feed document; callers do not know which route is used."""

    def __init__(
        self,
        config: FetchConfig | None = None,
        client: httpx.AsyncClient | None = None,
        execution_id: str | None = None,
    ):
        """Initialize the fetcher.

        Args:
            config: Retrieval configuration (timeouts, intermediaries)
            client: Shared HTTP client; one is created and owned if omitted
            execution_id: Execution ID for logging context
        """
        self.config = config or FetchConfig()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": self.config.user_agent},
        )
        self.logger = create_execution_logger("fetcher", execution_id)

    @abstractmethod
    async def fetch_document(self, url: str, timeout_ms: int | None = None) -> str | bytes:
        """Return the document at ``url``.

        Raw routes return the undecoded body so the parser can honour the
        XML declaration's encoding; enveloped relays return decoded text.

        Raises:
            FetchTimeout: If no complete response arrives within ``timeout_ms``
            FetchFailure: If the document cannot be retrieved
        """

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "DocumentFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _get(self, url: str, timeout_ms: int) -> httpx.Response:
        timeout_seconds = timeout_ms / 1000
        try:
            # wait_for bounds the whole transfer and cancels it on expiry
            response = await asyncio.wait_for(
                self.client.get(url, timeout=timeout_seconds), timeout=timeout_seconds
            )
        except (TimeoutError, httpx.TimeoutException) as e:
            raise FetchTimeout(url, timeout_ms) from e
        except httpx.HTTPError as e:
            raise FetchFailure(f"{type(e).__name__}: {e}", url=url) from e

        if not response.is_success:
            raise FetchFailure(
                f"HTTP {response.status_code}: {response.reason_phrase}", url=url
            )
        return response

    async def _fetch_direct(self, url: str, timeout_ms: int) -> bytes:
        response = await self._get(url, timeout_ms)
        self.logger.info(
            "Feed downloaded successfully",
            feed_url=url,
            status_code=response.status_code,
            content_length=len(response.content),
        )
        return response.content


class DirectFetcher(DocumentFetcher):
    """Fetches documents straight from their origin."""

    async def fetch_document(self, url: str, timeout_ms: int | None = None) -> str | bytes:
        validate_feed_url(url)
        timeout_ms = timeout_ms or self.config.timeout_ms
        self.logger.info("Downloading feed content", feed_url=url)
        try:
            return await self._fetch_direct(url, timeout_ms)
        except FetchFailure as e:
            self.logger.error(
                f"Failed to download feed {url}: {e.message}",
                feed_url=url,
                error=e.message,
            )
            raise


class RelayFetcher(DocumentFetcher):
    """Fetches documents through retrieval intermediaries.

    Intermediaries are tried strictly in order, pausing ``retry_delay_ms``
    after each failure. A direct fetch is the last resort.
    """

    async def fetch_document(self, url: str, timeout_ms: int | None = None) -> str | bytes:
        validate_feed_url(url)
        timeout_ms = timeout_ms or self.config.timeout_ms
        intermediaries = self.config.intermediaries
        reasons: list[str] = []

        for index, intermediary in enumerate(intermediaries, 1):
            self.logger.debug(
                f"Trying intermediary {index}/{len(intermediaries)}: {intermediary.name}",
                feed_url=url,
            )
            try:
                document = await self._fetch_via(intermediary, url, timeout_ms)
            except FetchFailure as e:
                reason = f"Intermediary {index} ({intermediary.name}) failed: {e.message}"
                self.logger.warning(reason, feed_url=url)
                reasons.append(reason)
                if index < len(intermediaries):
                    await asyncio.sleep(self.config.retry_delay_ms / 1000)
                continue

            self.logger.info(
                f"Feed retrieved through intermediary {intermediary.name}",
                feed_url=url,
                content_length=len(document),
            )
            return document

        self.logger.warning(
            "All intermediaries failed, trying direct fetch", feed_url=url
        )
        try:
            return await self._fetch_direct(url, timeout_ms)
        except FetchFailure as e:
            reasons.append(f"Direct fetch failed: {e.message}")
            self.logger.error(
                f"All retrieval routes failed for {url}",
                feed_url=url,
                reasons=reasons,
            )
            raise AllRetrievalRoutesFailed(url, reasons) from e

    async def _fetch_via(
        self, intermediary: Intermediary, url: str, timeout_ms: int
    ) -> str | bytes:
        response = await self._get(intermediary.prefix + quote(url, safe=""), timeout_ms)
        if intermediary.envelope_field:
            return unwrap_envelope(response, intermediary.envelope_field)
        return response.content


def unwrap_envelope(response: httpx.Response, envelope_field: str) -> str:
    """Extract the document from a relay's JSON envelope."""
    try:
        data = response.json()
    except ValueError as e:
        raise FetchFailure(f"Malformed envelope: {e}", url=str(response.url)) from e

    payload = data.get(envelope_field) if isinstance(data, dict) else None
    if not isinstance(payload, str) or not payload:
        raise FetchFailure(
            f"Envelope has no '{envelope_field}' payload", url=str(response.url)
        )
    return payload


def validate_feed_url(url: str) -> None:
    try:
        scheme = urlparse(url).scheme
    except ValueError as e:
        raise FetchFailure(f"Invalid feed URL {url}: {e}", url=url) from e
    if scheme not in ALLOWED_SCHEMES:
        raise FetchFailure(f"Unsupported feed URL scheme: {url}", url=url)


def create_fetcher(
    config: FetchConfig | None = None,
    client: httpx.AsyncClient | None = None,
    execution_id: str | None = None,
) -> DocumentFetcher:
    """Pick the relay backend in restricted networks, the direct one otherwise."""
    config = config or FetchConfig()
    backend = RelayFetcher if config.restricted_network else DirectFetcher
    return backend(config, client=client, execution_id=execution_id)
