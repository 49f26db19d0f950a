"""Chapter listing and chapter body extraction.

Feed sources are parsed with feedparser, table-of-contents pages and chapter
pages with BeautifulSoup. When a book has no body selector, the readable
content of a chapter page is extracted with trafilatura.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from html import escape
from typing import Any, List

import feedparser
import trafilatura
from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError

from serialdrop.errors import MalformedContent
from serialdrop.models import ChapterKind

from .urls import is_valid_http_url, normalize_url, resolve_url, should_skip_url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    """A chapter found in a source listing, not yet checked against storage.

    Attributes:
        url: Normalized chapter URL, the dedup key
        title: Chapter title
        author: Chapter author
        kind: How the chapter was listed
        published_at: Publish date from the feed, if any
    """
    url: str
    title: str
    author: str
    kind: ChapterKind = ChapterKind.FEED_ENTRY
    published_at: datetime | None = None


def parse_feed(content: bytes, feed_url: str, default_author: str, title_prefix: str | None = None) -> List[Candidate]:
    """Parse an RSS or Atom document into candidates.

    Candidates are emitted oldest-first. When every entry carries a publish
    date they are sorted by it; otherwise the document order is reversed, as
    feeds list their newest entries first.

    Raises:
        MalformedContent: The document is not a feed or has no usable entries.
    """
    parsed = feedparser.parse(content)
    entries = list(parsed.entries)
    if parsed.bozo and not entries:
        raise MalformedContent(
            f"Could not parse feed {feed_url}: {parsed.get('bozo_exception')}",
            url=feed_url,
        )
    if not entries:
        return []

    feed_title = (parsed.feed.get("title") or "").strip()
    prefix = title_prefix if title_prefix is not None else (f"{feed_title} - " if feed_title else None)

    candidates: list[Candidate] = []
    for entry in entries:
        link = entry.get("link")
        if not link or not is_valid_http_url(resolve_url(feed_url, link)):
            logger.debug("Skipping feed entry without a usable link in %s", feed_url)
            continue
        title = _strip_prefix((entry.get("title") or "").strip(), prefix)
        candidates.append(
            Candidate(
                url=normalize_url(resolve_url(feed_url, link)),
                title=title or link,
                author=(entry.get("author") or default_author).strip(),
                kind=ChapterKind.FEED_ENTRY,
                published_at=_entry_date(entry),
            )
        )

    if not candidates:
        raise MalformedContent(f"Feed {feed_url} has entries but none with a link", url=feed_url)

    if all(candidate.published_at is not None for candidate in candidates):
        # sorted() is stable, so entries sharing a date keep document order
        candidates = sorted(candidates, key=lambda c: c.published_at)
    else:
        candidates.reverse()
    return candidates


def extract_chapter_links(html: str, page_url: str, selector: str, default_author: str) -> List[Candidate]:
    """Extract chapter links from a table-of-contents page in document order.

    The selector may match the anchors themselves or elements containing them.

    Raises:
        MalformedContent: The selector is invalid or matches no chapter links.
    """
    soup = BeautifulSoup(html, "html.parser")

    base_url = page_url
    base_tag = soup.find("base", href=True)
    if base_tag is not None:
        base_url = resolve_url(page_url, base_tag["href"])

    try:
        nodes = soup.select(selector)
    except SelectorSyntaxError as exc:
        raise MalformedContent(f"Invalid chapter selector {selector!r}: {exc}", url=page_url) from exc

    candidates: list[Candidate] = []
    for node in nodes:
        anchor = node if node.name == "a" else node.find("a", href=True)
        if anchor is None or not anchor.get("href"):
            continue
        href = anchor["href"].strip()
        skip, reason = should_skip_url(href)
        if skip:
            logger.debug("Skipping link %s on %s: %s", href, page_url, reason)
            continue
        absolute_url = resolve_url(base_url, href)
        if not is_valid_http_url(absolute_url):
            continue
        url = normalize_url(absolute_url)
        title = _normalize_whitespace(anchor.get_text(" ", strip=True))
        candidates.append(
            Candidate(url=url, title=title or url, author=default_author, kind=ChapterKind.SCRAPED_PAGE)
        )

    if not candidates:
        raise MalformedContent(
            f"Selector {selector!r} matched no chapter links on {page_url}",
            url=page_url,
        )
    return candidates


def extract_body(html: str, url: str, selector: str | None = None) -> str:
    """Extract the chapter body as HTML.

    With a selector, the matched element is returned with hidden elements,
    scripts and styles removed. Without one, trafilatura extracts the main
    text which is wrapped back into paragraphs.

    Raises:
        MalformedContent: Nothing readable could be extracted.
    """
    if selector:
        soup = BeautifulSoup(html, "html.parser")
        try:
            node = soup.select_one(selector)
        except SelectorSyntaxError as exc:
            raise MalformedContent(f"Invalid body selector {selector!r}: {exc}", url=url) from exc
        if node is None:
            raise MalformedContent(f"Body selector {selector!r} matched nothing on {url}", url=url)
        _remove_hidden(node)
        if not node.get_text(strip=True):
            raise MalformedContent(f"Chapter body on {url} is empty", url=url)
        return str(node)

    extracted = trafilatura.extract(html, url=url)
    if not extracted:
        raise MalformedContent(f"No extractable text found on {url}", url=url)
    paragraphs = [block.strip() for block in extracted.split("\n") if block.strip()]
    return "\n".join(f"<p>{escape(paragraph)}</p>" for paragraph in paragraphs)


def _remove_hidden(node: Any) -> None:
    for hidden in node.find_all(["script", "style", "noscript"]):
        hidden.decompose()
    for hidden in node.find_all(attrs={"aria-hidden": "true"}):
        hidden.decompose()
    for hidden in node.find_all(style=lambda s: s and "display:none" in s.replace(" ", "").lower()):
        hidden.decompose()


def _entry_date(entry: Any) -> datetime | None:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if not parsed:
        return None
    return datetime(*parsed[:6], tzinfo=timezone.utc)


def _strip_prefix(title: str, prefix: str | None) -> str:
    if prefix and title.startswith(prefix):
        return title[len(prefix):].strip()
    return title


def _normalize_whitespace(value: str) -> str:
    return " ".join(value.split())


__all__ = ["Candidate", "extract_body", "extract_chapter_links", "parse_feed"]
