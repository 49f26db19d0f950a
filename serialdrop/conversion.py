"""Conversion of chapter groups into e-book artifacts.

The pipeline depends only on :class:`ConversionGateway`. The production
implementation shells out to Calibre's ``ebook-convert``.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from dataclasses import dataclass
from html import escape
from pathlib import Path
from typing import Protocol, Sequence

from .errors import ConversionFailure

logger = logging.getLogger(__name__)

EPUB_MEDIA_TYPE = "application/epub+zip"


@dataclass(frozen=True)
class ChapterContent:
    """One chapter ready for conversion."""

    title: str
    html: str


@dataclass(frozen=True)
class BookMetadata:
    """Metadata embedded in the produced e-book.

    ``title`` appears on the cover, ``series`` groups artifacts of one book in
    the reader's library.
    """

    title: str
    author: str
    series: str


class ConversionGateway(Protocol):
    async def convert(self, chapters: Sequence[ChapterContent], metadata: BookMetadata) -> bytes: ...


def build_aggregate_html(book_title: str, chapters: Sequence[ChapterContent]) -> str:
    """Join chapters into one document: the book title, then each chapter under its heading."""
    parts = [f"<h1>{escape(book_title)}</h1>"]
    for chapter in chapters:
        parts.append(f"<h2>{escape(chapter.title)}</h2>")
        parts.append(chapter.html)
    body = "\n".join(parts)
    return (
        "<!DOCTYPE html>\n"
        f'<html><head><meta charset="utf-8"><title>{escape(book_title)}</title></head>\n'
        f"<body>\n{body}\n</body></html>\n"
    )


def group_title(book_name: str, chapters: Sequence[ChapterContent]) -> str:
    """Cover title for a group: the book name and the first chapter's title."""
    if not chapters:
        return book_name
    return f"{book_name}: {chapters[0].title}"


class CalibreConverter:
    """Runs ``ebook-convert`` on an aggregated HTML document.

    Each conversion uses its own temporary directory, so concurrent runs do
    not share files.
    """

    def __init__(
        self,
        executable: str = "ebook-convert",
        *,
        timeout_seconds: float = 120.0,
        output_profile: str = "kindle_oasis",
    ) -> None:
        self.executable = executable
        self.timeout_seconds = timeout_seconds
        self.output_profile = output_profile

    def build_command(self, in_path: Path, out_path: Path, metadata: BookMetadata) -> list[str]:
        return [
            self.executable,
            str(in_path),
            str(out_path),
            "--authors",
            metadata.author,
            "--title",
            metadata.title,
            "--series",
            metadata.series,
            "--output-profile",
            self.output_profile,
            "--filter-css",
            "font-family,color,background",
        ]

    async def convert(self, chapters: Sequence[ChapterContent], metadata: BookMetadata) -> bytes:
        """Convert chapters into an EPUB.

        Raises:
            ConversionFailure: The converter is missing, exits non-zero, times
                out or produces no output.
        """
        html = build_aggregate_html(metadata.series, chapters)
        return await self.convert_document(html, metadata)

    async def convert_document(self, html: str, metadata: BookMetadata) -> bytes:
        workdir = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix="serialdrop-"))
        try:
            in_path = workdir / "in.html"
            out_path = workdir / "out.epub"
            await asyncio.to_thread(in_path.write_text, html, encoding="utf-8")
            data = await self._run(self.build_command(in_path, out_path, metadata), out_path)
        finally:
            await asyncio.to_thread(shutil.rmtree, workdir, ignore_errors=True)

        logger.info("Converted %r into %d bytes", metadata.title, len(data))
        return data

    async def _run(self, command: list[str], out_path: Path) -> bytes:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise ConversionFailure(
                f"Failed to start {self.executable}; is Calibre installed? ({exc})"
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ConversionFailure(
                f"{self.executable} timed out after {self.timeout_seconds:.0f}s"
            ) from exc

        logger.debug(
            "%s exited with %s; stdout=%r stderr=%r",
            self.executable,
            process.returncode,
            stdout[-2000:],
            stderr[-2000:],
        )
        if process.returncode != 0:
            raise ConversionFailure(
                f"{self.executable} failed with status {process.returncode}: "
                f"{stderr.decode('utf-8', errors='replace').strip()[-500:]}"
            )
        if not await asyncio.to_thread(out_path.is_file):
            raise ConversionFailure(f"{self.executable} produced no output")
        return await asyncio.to_thread(out_path.read_bytes)


async def build_verification_book(converter: ConversionGateway, code: str) -> bytes:
    """A one-page e-book carrying a Kindle e-mail verification code."""
    title = "Serialdrop Kindle Email Verification"
    chapter = ChapterContent(
        title="Verification code",
        html=(
            "<p>Thank you for using serialdrop. To verify your Kindle e-mail address, "
            f"enter the following code: <strong>{escape(code)}</strong></p>"
        ),
    )
    return await converter.convert([chapter], BookMetadata(title=title, author="Serialdrop", series=title))


__all__ = [
    "BookMetadata",
    "CalibreConverter",
    "ChapterContent",
    "ConversionGateway",
    "EPUB_MEDIA_TYPE",
    "build_aggregate_html",
    "build_verification_book",
    "group_title",
]
