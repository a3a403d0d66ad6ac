"""Base HTTP crawler mapping transport failures to FetchError."""

from typing import Optional

import httpx
import structlog

from syosetu_translator.config import CrawlerConfig, get_config
from syosetu_translator.errors import FetchError, FetchErrorKind

logger = structlog.get_logger()

_NOT_FOUND_STATUSES = (404, 410)


class BaseCrawler:
    """Async HTTP client for one site.

    A single request per call; retry policy belongs to the pipeline.
    """

    def __init__(
        self,
        config: Optional[CrawlerConfig] = None,
        cookies: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[dict[str, str]] = None,
        http2: bool = False,
    ):
        """Initialize the crawler.

        Args:
            config: Crawler configuration, uses global config if None
            cookies: Cookies sent with every request
            transport: Custom httpx transport (tests use httpx.MockTransport)
            headers: Extra headers sent with every request
            http2: Negotiate HTTP/2 (needs the h2 package)
        """
        self.config = config or get_config().crawler
        self.cookies = cookies or {}
        self._transport = transport
        self.headers = headers or {}
        self.http2 = http2
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "BaseCrawler":
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout_seconds),
            headers={
                "User-Agent": self.config.user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": self.config.accept_language,
                **self.headers,
            },
            cookies=self.cookies,
            follow_redirects=True,
            http2=self.http2,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raise if not initialized."""
        if self._client is None:
            raise RuntimeError("Crawler not initialized. Use 'async with' context manager.")
        return self._client

    async def fetch(self, url: str) -> str:
        """GET a page and return it decoded as UTF-8.

        Raises:
            FetchError: NOT_FOUND for 404/410, NETWORK for anything else
        """
        try:
            response = await self.client.get(url)
        except httpx.TimeoutException as e:
            raise FetchError(FetchErrorKind.NETWORK, f"Timeout fetching {url}", url=url) from e
        except httpx.TransportError as e:
            raise FetchError(FetchErrorKind.NETWORK, f"{type(e).__name__}: {e}", url=url) from e

        if response.status_code in _NOT_FOUND_STATUSES:
            logger.warning("http_not_found", status=response.status_code, url=url)
            raise FetchError(
                FetchErrorKind.NOT_FOUND, f"HTTP {response.status_code} for {url}", url=url
            )
        if response.is_error:
            logger.warning("http_error", status=response.status_code, url=url)
            raise FetchError(
                FetchErrorKind.NETWORK, f"HTTP {response.status_code} for {url}", url=url
            )

        return response.content.decode("utf-8", errors="replace")
