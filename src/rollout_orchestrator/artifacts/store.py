"""
Artifact store: put/get objects and atomically publish a staged object tree
"""

import asyncio
import logging
import os
import shutil
from functools import partial
from pathlib import Path
from typing import Union

from ..utils.error_handling import ConfigurationError, StorageError

logger = logging.getLogger("rollout.app")


class ArtifactStore:
    """Interface consumed by the artifact pipeline"""

    scheme = "store"

    def uri_for(self, path: str) -> str:
        return f"{self.scheme}://{path.strip('/')}"

    def path_of(self, uri: str) -> str:
        prefix = f"{self.scheme}://"
        if not uri.startswith(prefix):
            raise ConfigurationError(f"URI {uri!r} does not belong to a {self.scheme} store")
        return uri[len(prefix):]

    async def put(self, data: bytes, path: str) -> str:
        raise NotImplementedError

    async def get(self, uri: str) -> bytes:
        raise NotImplementedError

    async def exists(self, uri: str) -> bool:
        raise NotImplementedError

    async def publish(self, tmp_uri: str, final_uri: str) -> str:
        raise NotImplementedError

    async def delete(self, uri: str):
        raise NotImplementedError


class LocalArtifactStore(ArtifactStore):
    """
    Filesystem-backed store rooted at a directory.

    Staged trees are published with a directory rename, which is atomic on a
    single filesystem: readers either see the complete tree or nothing.
    """

    scheme = "local"

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, uri: str) -> Path:
        path = (self.root / self.path_of(uri)).resolve()
        if self.root not in path.parents and path != self.root:
            raise ConfigurationError(f"URI {uri!r} escapes the artifact root")
        return path

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(func, *args))
        except OSError as e:
            raise StorageError(f"Artifact store I/O failed: {e}", cause=e) from e

    async def put(self, data: bytes, path: str) -> str:
        uri = self.uri_for(path)
        target = self._resolve(uri)

        def write():
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

        await self._run(write)
        return uri

    async def get(self, uri: str) -> bytes:
        return await self._run(self._resolve(uri).read_bytes)

    async def exists(self, uri: str) -> bool:
        return await self._run(self._resolve(uri).exists)

    async def publish(self, tmp_uri: str, final_uri: str) -> str:
        source = self._resolve(tmp_uri)
        target = self._resolve(final_uri)

        def rename():
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists():
                # a concurrent producer already published the same key
                shutil.rmtree(source, ignore_errors=True)
                return False
            os.rename(source, target)
            return True

        published = await self._run(rename)
        if not published:
            logger.info(f"Artifact {final_uri} already published, discarded staged copy {tmp_uri}")
        return final_uri

    async def delete(self, uri: str):
        target = self._resolve(uri)

        def remove():
            if target.is_dir():
                shutil.rmtree(target)
            elif target.exists():
                target.unlink()

        await self._run(remove)
