"""Image reference resolution.

Turns a platform-supplied image handle into something the tensor builder can
read directly: a local file path, or a URL to load. Content-provider handles
are not readable as raw byte streams by the decoder, so they are copied into
the cache directory first.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import uuid
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Protocol
from urllib.parse import unquote, urlsplit

from snaplabel.ml.errors import ImageReferenceError

if TYPE_CHECKING:
    from snaplabel.ml.inference import InferenceWorker

logger = logging.getLogger(__name__)

CONTENT_PREFIX = "content://"
FILE_PREFIX = "file://"
_REMOTE_PREFIXES = ("http://", "https://")


class HandleScheme(StrEnum):
    CONTENT_PROVIDER = "content_provider"
    FILE_PATH = "file_path"
    REMOTE_URL = "remote_url"


@dataclass(frozen=True)
class ImageHandle:
    """An opaque image reference as handed over by the picker."""

    scheme: HandleScheme
    raw: str

    @classmethod
    def from_uri(cls, uri: str) -> ImageHandle:
        """Infer the handle scheme from the URI prefix."""
        lowered = uri.lower()
        if lowered.startswith(CONTENT_PREFIX):
            return cls(HandleScheme.CONTENT_PROVIDER, uri)
        if lowered.startswith(_REMOTE_PREFIXES):
            return cls(HandleScheme.REMOTE_URL, uri)
        return cls(HandleScheme.FILE_PATH, uri)


@dataclass(frozen=True)
class ResolvedHandle:
    """A directly readable image source: exactly one of ``local_path`` or ``url``."""

    local_path: str | None = None
    url: str | None = None

    def __post_init__(self) -> None:
        if (self.local_path is None) == (self.url is None):
            raise ValueError("ResolvedHandle needs exactly one of local_path or url")


# ---------------------------------------------------------------------------
# Byte / file access
# ---------------------------------------------------------------------------


class ByteAccess(Protocol):
    """Protocol for raw byte access to local files and provider content."""

    def read_all_bytes(self, path: str, limit: int | None = None) -> bytes:
        """Read a whole file into memory, or at most ``limit + 1`` bytes when a limit is given."""
        ...

    def copy(self, src: str, dst: str) -> None:
        """Copy ``src`` byte for byte to ``dst``. Raises OSError on failure."""
        ...


def open_regular_file(path: str | Path) -> BinaryIO:
    """Open a regular file for reading; devices, FIFOs and directories are refused."""
    if not stat.S_ISREG(os.stat(path).st_mode):
        raise OSError(f"Not a regular file: {path}")
    return open(path, "rb")  # noqa: PTH123


class ContentProvider:
    """Media store addressed by ``content://<authority>/<path>`` URIs.

    Content lives under ``root/<authority>/<path>``. URIs that would escape
    the root are refused.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def locate(self, uri: str) -> Path:
        """Map a content URI onto the provider's backing file."""
        parts = urlsplit(uri)
        if parts.scheme.lower() != "content" or not parts.netloc:
            raise FileNotFoundError(f"Not a content URI: {uri}")
        target = (self._root / parts.netloc / unquote(parts.path).lstrip("/")).resolve()
        if not target.is_relative_to(self._root) or target == self._root:
            raise PermissionError(f"Content URI escapes provider root: {uri}")
        return target

    def open(self, uri: str) -> BinaryIO:
        """Open provider content as a binary stream."""
        return open_regular_file(self.locate(uri))

    def put(self, data: bytes, authority: str = "uploads", suffix: str = ".jpg") -> str:
        """Store bytes under a fresh name and return their content URI."""
        name = f"{uuid.uuid4().hex}{suffix}"
        directory = self._root / authority
        directory.mkdir(parents=True, exist_ok=True)
        (directory / name).write_bytes(data)
        return f"{CONTENT_PREFIX}{authority}/{name}"

    def remove(self, uri: str) -> None:
        """Delete provider content; missing content is ignored."""
        self.locate(uri).unlink(missing_ok=True)


class LocalByteAccess:
    """ByteAccess over the local filesystem, with content URIs served by a provider."""

    def __init__(self, provider: ContentProvider) -> None:
        self._provider = provider

    def read_all_bytes(self, path: str, limit: int | None = None) -> bytes:
        if path.lower().startswith(CONTENT_PREFIX):
            stream = self._provider.open(path)
        else:
            stream = open_regular_file(to_local_path(path))
        with stream:
            return stream.read() if limit is None else stream.read(limit + 1)

    def copy(self, src: str, dst: str) -> None:
        if src.lower().startswith(CONTENT_PREFIX):
            with self._provider.open(src) as source, open(dst, "wb") as target:  # noqa: PTH123
                shutil.copyfileobj(source, target)
        else:
            with open_regular_file(to_local_path(src)) as source, open(dst, "wb") as target:  # noqa: PTH123
                shutil.copyfileobj(source, target)


def to_local_path(path: str) -> str:
    """Filesystem path for a bare path or a ``file://`` URI."""
    if path.lower().startswith(FILE_PREFIX):
        return unquote(urlsplit(path).path)
    return path


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ImageResolver:
    """Converts image handles into readable sources."""

    def __init__(self, byte_access: ByteAccess, cache_dir: str | Path, worker: InferenceWorker) -> None:
        self._bytes = byte_access
        self._cache_dir = Path(cache_dir)
        self._worker = worker

    async def resolve(self, handle: ImageHandle) -> ResolvedHandle:
        """Resolve a handle. Content-provider handles are copied on every call.

        Raises:
            ImageReferenceError: If the content copy fails.
        """
        if handle.scheme is HandleScheme.REMOTE_URL:
            return ResolvedHandle(url=handle.raw)
        if handle.scheme is HandleScheme.FILE_PATH:
            return ResolvedHandle(local_path=handle.raw)

        destination = self.cache_path_for(handle.raw)
        try:
            await self._worker.run(self._copy_into_cache, handle.raw, destination)
        except OSError as exc:
            logger.warning("Copy of %s failed: %s", handle.raw, exc)
            raise ImageReferenceError(f"Could not copy {handle.raw}") from exc
        logger.info("Copied %s to %s", handle.raw, destination)
        return ResolvedHandle(local_path=str(destination))

    def cache_path_for(self, uri: str) -> Path:
        """Cache destination named after the URI's trailing path segment."""
        file_name = uri.rstrip().split("/")[-1]
        if file_name in ("", ".", ".."):
            raise ImageReferenceError(f"Content URI has no file name: {uri}")
        return self._cache_dir / file_name

    def _copy_into_cache(self, src: str, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        self._bytes.copy(src, str(destination))
