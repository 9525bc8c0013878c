"""
Durable storage for the metadata store and the content cache.

The store only relies on a read/write-blob contract with last-write-wins
semantics; `FileBlobStorage` keeps blobs as files below a root directory and
`MemoryBlobStorage` keeps them in a dict.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Dict, Protocol, runtime_checkable

from .logging_manager import get_logger

logger = get_logger(__name__)


class BlobNotFound(Exception):
    """Raised by `read_blob` when no blob exists at the path."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Blob not found: {path}")


@runtime_checkable
class BlobStorage(Protocol):
    async def read_blob(self, path: str) -> bytes:
        """Return the blob at `path` or raise BlobNotFound."""
        ...

    async def write_blob(self, path: str, data: bytes) -> None:
        """Replace the blob at `path`."""
        ...


class FileBlobStorage:
    """Blob storage backed by files under a root directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        root = self.root.resolve()
        if target != root and root not in target.parents:
            raise ValueError(f"Blob path escapes storage root: {path}")
        return target

    def _read(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            raise BlobNotFound(path) from None

    def _write(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        # Write to a sibling temp file first so readers never see a torn blob
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def read_blob(self, path: str) -> bytes:
        return await asyncio.to_thread(self._read, path)

    async def write_blob(self, path: str, data: bytes) -> None:
        await asyncio.to_thread(self._write, path, data)
        logger.debug(f"Wrote {len(data)} bytes to {path}")


class MemoryBlobStorage:
    """In-memory blob storage."""

    def __init__(self, blobs: Dict[str, bytes] | None = None):
        self.blobs: Dict[str, bytes] = dict(blobs or {})

    async def read_blob(self, path: str) -> bytes:
        try:
            return self.blobs[path]
        except KeyError:
            raise BlobNotFound(path) from None

    async def write_blob(self, path: str, data: bytes) -> None:
        self.blobs[path] = bytes(data)
