"""Object store for chapter bodies and converted artifacts.

The pipeline records only ``(bucket, key)`` pointers in the relational store.
Any client offering ``put``/``get``/``exists`` coroutines can stand in for
:class:`FilesystemObjectStore`, e.g. an S3-compatible client.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import StorageFailure

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ObjectLocation:
    bucket: str
    key: str


class ObjectStore(Protocol):
    async def put(self, bucket: str, key: str, data: bytes) -> ObjectLocation: ...

    async def get(self, bucket: str, key: str) -> bytes: ...

    async def exists(self, bucket: str, key: str) -> bool: ...


class FilesystemObjectStore:
    """Stores objects as files under ``root/<bucket>/<key>``.

    Writes go to a temporary sibling first and are renamed into place, so a
    reader never sees a partial object and a repeated ``put`` to the same key
    simply replaces it.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root = self.root if self.root.is_absolute() else self.root.resolve()

    def _path(self, bucket: str, key: str) -> Path:
        path = (self.root / bucket / key).resolve()
        if self.root not in path.parents:
            raise StorageFailure(f"Object key escapes the store root: {bucket}/{key}")
        return path

    async def put(self, bucket: str, key: str, data: bytes) -> ObjectLocation:
        path = self._path(bucket, key)
        try:
            await asyncio.to_thread(_write_atomic_bytes, path, data)
        except OSError as exc:
            raise StorageFailure(f"Failed to store {bucket}/{key}: {exc}") from exc
        logger.debug("Stored %d bytes at %s/%s", len(data), bucket, key)
        return ObjectLocation(bucket=bucket, key=key)

    async def get(self, bucket: str, key: str) -> bytes:
        path = self._path(bucket, key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise StorageFailure(f"Failed to read {bucket}/{key}: {exc}") from exc

    async def exists(self, bucket: str, key: str) -> bool:
        path = self._path(bucket, key)
        return await asyncio.to_thread(path.is_file)


def chapter_body_key(book_id: uuid.UUID, url: str) -> str:
    """Deterministic key for a chapter body, so a retried ingest rewrites the same object."""
    digest = hashlib.sha256(url.encode("utf-8")).hexdigest()
    return f"chapters/{book_id}/{digest}.html"


def artifact_key(subscription_id: uuid.UUID, group_key: str, extension: str = "epub") -> str:
    return f"artifacts/{subscription_id}/{group_key}.{extension}"


def _write_atomic_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + f".{uuid.uuid4().hex}.tmp")
    tmp_path.write_bytes(data)
    tmp_path.replace(path)


__all__ = [
    "FilesystemObjectStore",
    "ObjectLocation",
    "ObjectStore",
    "artifact_key",
    "chapter_body_key",
]
