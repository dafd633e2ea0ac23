"""Local-disk storage service."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class DiskService:
    """Stores each key as a file under ``root/<k[0:2]>/<k[2:4]>/<key>``.

    Writes go to a temporary sibling file that is renamed into place, so a
    reader never observes a partially written object.
    """

    def __init__(self, name: str, root: Path | str) -> None:
        self._name = name
        self._root = Path(root)

    @property
    def name(self) -> str:
        return self._name

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Path:
        return self._root / key[0:2] / key[2:4] / key

    async def upload(self, key: str, io: BinaryIO) -> None:
        path = self.path_for(key)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        async with aiofiles.open(tmp_path, "wb") as f:
            while chunk := io.read(CHUNK_SIZE):
                await f.write(chunk)
        await aiofiles.os.replace(tmp_path, path)
        logger.debug("Uploaded %s to %s (%s)", key, self._name, path)

    async def delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            logger.debug("Delete of %s on %s: already gone", key, self._name)
            return
        logger.debug("Deleted %s from %s", key, self._name)

    async def exists(self, key: str) -> bool:
        return await aiofiles.os.path.exists(self.path_for(key))

    async def read(self, key: str) -> bytes:
        async with aiofiles.open(self.path_for(key), "rb") as f:
            return await f.read()
