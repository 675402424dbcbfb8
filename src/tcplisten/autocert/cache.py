"""Persistent caches for automatically issued certificates and the account
key used with the certificate authority.
"""

import os

from abc import ABCMeta, abstractmethod
from tempfile import NamedTemporaryFile
from trio import to_thread
from typing import Union

from ..errors import CacheMiss

__all__ = ("Cache", "DirCache", "MemoryCache")


class Cache(metaclass=ABCMeta):
    """Interface specification for certificate caches.

    Keys are plain strings (hostnames or special names such as the key of
    the account); values are opaque byte strings.
    """

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Returns the data stored under the given key.

        Raises:
            CacheMiss: if there is no data stored under the given key
        """
        raise NotImplementedError

    @abstractmethod
    async def put(self, key: str, data: bytes) -> None:
        """Stores the given data under the given key, replacing any data that
        was stored there earlier.
        """
        raise NotImplementedError


class DirCache(Cache):
    """Certificate cache that stores each key in a separate file in a
    directory on the filesystem, so it survives restarts of the process.

    The directory is created with mode 0700 when the first item is stored
    in it; files are written atomically with mode 0600.
    """

    def __init__(self, path: Union[str, os.PathLike] = "."):
        """Constructor.

        Parameters:
            path: the directory to store the cached items in
        """
        self._path = os.fspath(path) or "."

    @property
    def path(self) -> str:
        """The directory where the cached items are stored."""
        return self._path

    def _path_for(self, key: str) -> str:
        if not key or key.startswith(".") or os.sep in key or "/" in key:
            raise ValueError(f"invalid cache key: {key!r}")
        return os.path.join(self._path, key)

    async def get(self, key: str) -> bytes:
        return await to_thread.run_sync(self._get, key)

    async def put(self, key: str, data: bytes) -> None:
        await to_thread.run_sync(self._put, key, data)

    def _get(self, key: str) -> bytes:
        try:
            with open(self._path_for(key), "rb") as fp:
                return fp.read()
        except FileNotFoundError:
            raise CacheMiss(key) from None

    def _put(self, key: str, data: bytes) -> None:
        path = self._path_for(key)
        os.makedirs(self._path, mode=0o700, exist_ok=True)

        # NamedTemporaryFile creates the file with mode 0600
        with NamedTemporaryFile(
            dir=self._path, prefix=f".{key}.", suffix=".tmp", delete=False
        ) as fp:
            try:
                fp.write(data)
                fp.flush()
                os.fsync(fp.fileno())
                fp.close()
                os.replace(fp.name, path)
            except BaseException:
                os.unlink(fp.name)
                raise


class MemoryCache(Cache):
    """Certificate cache that keeps everything in memory. Mostly useful for
    testing.
    """

    def __init__(self):
        self._items = {}

    async def get(self, key: str) -> bytes:
        try:
            return self._items[key]
        except KeyError:
            raise CacheMiss(key) from None

    async def put(self, key: str, data: bytes) -> None:
        self._items[key] = bytes(data)
