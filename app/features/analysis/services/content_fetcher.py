import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from app.platform.config import settings
from app.platform.exceptions import FetchError, ProviderConfigError, ProviderError
from app.platform.utils.clock import utc_now

logger = logging.getLogger(__name__)

_TITLE_PATTERN = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_FIRST_PARAGRAPH_PATTERN = re.compile(r"^[^#\n].+$", re.MULTILINE)


def count_words(text: str) -> int:
    return len(text.split())


@dataclass
class FetchedContent:
    """Cleaned page content (markdown) plus basic metadata."""
    url: str
    title: str
    description: str
    content: str
    word_count: int
    fetched_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["fetched_at"] = self.fetched_at.isoformat()
        return data


def _raise_for_status(response: httpx.Response, provider: str, url: str) -> None:
    """Translate HTTP error statuses into FetchError with retry classification."""
    if response.is_success:
        return

    detail = {"url": url, "status": response.status_code, "body": response.text[:500]}
    message = f"{provider} API error: {response.status_code} {response.reason_phrase}"

    if response.status_code == 429:
        raise FetchError(message, detail, provider=provider, rate_limited=True)
    if response.status_code >= 500:
        raise FetchError(message, detail, provider=provider)
    if response.status_code in (401, 403) and provider == "firecrawl":
        raise ProviderConfigError(f"{message} (check FIRECRAWL_API_KEY)", detail, provider=provider)
    raise FetchError(message, detail, provider=provider, retryable=False)


class ContentFetcher:
    """
    Fetches a URL and returns cleaned markdown.

    Firecrawl is used when an API key is configured, Jina Reader otherwise
    (and as the fallback when Firecrawl fails). Each call makes at most one
    request per provider; retries are the caller's job.
    """

    def __init__(
        self,
        firecrawl_api_key: Optional[str] = None,
        firecrawl_api_url: Optional[str] = None,
        jina_reader_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.firecrawl_api_key = firecrawl_api_key
        self.firecrawl_api_url = firecrawl_api_url or settings.FIRECRAWL_API_URL
        self.jina_reader_url = (jina_reader_url or settings.JINA_READER_URL).rstrip("/")
        self.timeout = timeout or settings.FETCH_TIMEOUT_SECONDS
        self._client = client

    @classmethod
    def from_settings(cls) -> "ContentFetcher":
        return cls(
            firecrawl_api_key=settings.FIRECRAWL_API_KEY,
            firecrawl_api_url=settings.FIRECRAWL_API_URL,
            jina_reader_url=settings.JINA_READER_URL,
            timeout=settings.FETCH_TIMEOUT_SECONDS,
        )

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout, follow_redirects=True)
        return self._client

    def fetch(self, url: str) -> FetchedContent:
        if self.firecrawl_api_key:
            try:
                return self._fetch_with_firecrawl(url)
            except ProviderConfigError as e:
                logger.error(f"Firecrawl rejected the configured key for {url}: {e}. Falling back to Jina Reader")
            except ProviderError as e:
                logger.warning(f"Firecrawl failed for {url}: {e}. Falling back to Jina Reader")

        return self._fetch_with_jina(url)

    def _fetch_with_firecrawl(self, url: str) -> FetchedContent:
        if not self.firecrawl_api_key:
            raise ProviderConfigError("Firecrawl API key not configured", provider="firecrawl")

        logger.debug(f"Scraping {url} with Firecrawl")
        try:
            response = self._get_client().post(
                self.firecrawl_api_url,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.firecrawl_api_key}",
                },
                json={"url": url, "formats": ["markdown"], "onlyMainContent": True},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise FetchError("Request timeout while scraping with Firecrawl", {"url": url}, provider="firecrawl") from e
        except httpx.RequestError as e:
            raise FetchError(f"Failed to scrape with Firecrawl: {e}", {"url": url}, provider="firecrawl") from e

        _raise_for_status(response, "firecrawl", url)

        try:
            payload = response.json()
        except ValueError as e:
            raise FetchError(
                "Firecrawl returned a non-JSON body", {"url": url}, provider="firecrawl", retryable=False
            ) from e

        if not isinstance(payload, dict):
            payload = {}
        data = payload.get("data")
        if not payload.get("success") or not isinstance(data, dict):
            raise FetchError("Firecrawl returned unsuccessful response", {"url": url}, provider="firecrawl")

        markdown = data.get("markdown") or ""
        metadata = data.get("metadata") or {}
        return FetchedContent(
            url=url,
            title=metadata.get("title") or "Untitled",
            description=metadata.get("description") or "",
            content=markdown,
            word_count=count_words(markdown),
        )

    def _fetch_with_jina(self, url: str) -> FetchedContent:
        logger.debug(f"Scraping {url} with Jina Reader")
        try:
            response = self._get_client().get(
                f"{self.jina_reader_url}/{quote(url, safe='')}",
                headers={"Accept": "text/markdown", "X-Return-Format": "markdown"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise FetchError("Request timeout while scraping with Jina Reader", {"url": url}, provider="jina") from e
        except httpx.RequestError as e:
            raise FetchError(f"Failed to scrape with Jina Reader: {e}", {"url": url}, provider="jina") from e

        _raise_for_status(response, "jina", url)

        markdown = response.text
        title_match = _TITLE_PATTERN.search(markdown)
        description_match = _FIRST_PARAGRAPH_PATTERN.search(markdown)

        return FetchedContent(
            url=url,
            title=title_match.group(1).strip() if title_match else "Untitled",
            description=description_match.group(0)[:200] if description_match else "",
            content=markdown,
            word_count=count_words(markdown),
        )
