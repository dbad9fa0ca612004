"""
File-backed blob store.

Blobs live at ``<root>/<container>/<name>``. Writes go to a temp file in
the same directory and are renamed into place, so readers never see a
half-written board.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import aiofiles
import aiofiles.os

from ..exceptions import BlobIOError, BlobNotFoundError, ValidationError
from ..protocol import BlobStore


class LocalBlobStore(BlobStore):
    """BlobStore over a local directory tree."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def _path(self, container: str, name: str) -> Path:
        for part, label in ((container, "container"), (name, "name")):
            if not part or "/" in part or "\\" in part or part in (".", ".."):
                raise ValidationError(label, "must be a plain, non-empty path segment", part)
        return self.root / container / name

    async def read_blob(self, container: str, name: str) -> bytes:
        path = self._path(container, name)
        if not await aiofiles.os.path.exists(path):
            raise BlobNotFoundError(container, name)
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except OSError as e:
            raise BlobIOError("read_blob", str(path), e) from e

    async def write_blob(self, container: str, name: str, data: bytes) -> None:
        path = self._path(container, name)
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
        except OSError as e:
            raise BlobIOError("create_directory", str(path.parent), e) from e

        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_")
        try:
            os.close(fd)
            async with aiofiles.open(temp_path, "wb") as f:
                await f.write(data)
                await f.flush()
                os.fsync(f.fileno())
            await aiofiles.os.replace(temp_path, path)
        except Exception as e:
            try:
                await aiofiles.os.remove(temp_path)
            except OSError:
                pass
            raise BlobIOError("write_blob", str(path), e) from e

    async def exists(self, container: str, name: str) -> bool:
        return await aiofiles.os.path.exists(self._path(container, name))
