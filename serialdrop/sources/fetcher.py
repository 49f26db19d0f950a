"""Fetch chapter listings and chapter bodies from source sites.

Every request first acquires a permit from the domain rate limiter. Failures
are reported as :class:`~serialdrop.errors.Unreachable` (network, timeout,
HTTP status) or :class:`~serialdrop.errors.MalformedContent` (the document no
longer has the expected structure). The fetcher never writes state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, List

import httpx

from serialdrop.errors import ConfigurationError, MalformedContent, Unreachable
from serialdrop.models import Book, SourceKind
from serialdrop.parsing.extraction import Candidate, extract_body, extract_chapter_links, parse_feed

if TYPE_CHECKING:
    from serialdrop.pipeline.config import PipelinePoliteness
    from serialdrop.pipeline.rate_limit import DomainRateLimiter

logger = logging.getLogger(__name__)


def create_http_client(
    politeness: PipelinePoliteness,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Build the shared HTTP client for source requests."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(politeness.request_timeout_seconds),
        headers={"User-Agent": politeness.user_agent},
        follow_redirects=True,
        transport=transport,
    )


class SourceFetcher:
    """Rate-limited access to feeds, table-of-contents pages and chapter pages.

    The fetcher owns its HTTP client unless one is passed in. Use it as an
    async context manager, or call :meth:`aclose` when done.
    """

    def __init__(
        self,
        limiter: DomainRateLimiter,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.limiter = limiter
        self._owns_client = client is None
        self.client = client or create_http_client(limiter.politeness)

    async def __aenter__(self) -> "SourceFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _get(self, url: str) -> httpx.Response:
        await self.limiter.permit_for_url(url)
        try:
            response = await self.client.get(url)
        except httpx.TimeoutException as exc:
            raise Unreachable(f"Timed out fetching {url}", url=url) from exc
        except httpx.HTTPError as exc:
            raise Unreachable(f"Failed to fetch {url}: {exc}", url=url) from exc

        if not response.is_success:
            raise Unreachable(f"HTTP {response.status_code} fetching {url}", url=url)
        return response

    async def list_chapters(self, book: Book) -> List[Candidate]:
        """List the chapters currently published by a book's source.

        Raises:
            Unreachable: The source could not be fetched.
            MalformedContent: The source no longer parses.
            ConfigurationError: A page source has no chapter selector, or the source kind is unknown.
        """
        try:
            kind = SourceKind(book.source_kind)
        except ValueError as exc:
            raise ConfigurationError(f"Book {book.id} has unknown source kind {book.source_kind!r}") from exc
        if kind is SourceKind.PAGE and not book.chapter_selector:
            raise ConfigurationError(f"Book {book.id} is a page source without a chapter selector")

        response = await self._get(book.source_url)

        if kind is SourceKind.FEED:
            candidates = await asyncio.to_thread(
                parse_feed, response.content, book.source_url, book.author, book.title_prefix
            )
        else:
            candidates = await asyncio.to_thread(
                extract_chapter_links, response.text, str(response.url), book.chapter_selector, book.author
            )

        logger.debug("Listed %d chapters for %s from %s", len(candidates), book.name, book.source_url)
        return candidates

    async def fetch_body(self, chapter_url: str, selector: str | None = None) -> str:
        """Fetch a chapter page and cut out its body HTML.

        Raises:
            Unreachable: The page could not be fetched.
            MalformedContent: No body could be extracted.
        """
        response = await self._get(chapter_url)
        body = await asyncio.to_thread(extract_body, response.text, chapter_url, selector)
        if not body.strip():
            raise MalformedContent(f"Empty chapter body at {chapter_url}", url=chapter_url)
        return body


__all__ = ["Candidate", "SourceFetcher", "create_http_client"]
