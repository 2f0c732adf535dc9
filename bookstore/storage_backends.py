"""
bookstore.storage_backends
==========================

Byte-level storage used by :mod:`bookstore.fake_mongo`. A backend exposes a
tiny, asynchronous, path-addressed API (read, write, list, delete) together
with a named lock that coordinates writers sharing the same storage root.

Only a local filesystem implementation is provided. Blocking filesystem calls
are pushed to a worker thread so that the event loop is never stalled.
"""

from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, List, Optional


class StorageBackend(ABC):
    """Abstract asynchronous storage backend."""

    @abstractmethod
    async def read_bytes(self, path: str) -> bytes:
        ...

    @abstractmethod
    async def write_bytes(
        self, path: str, data: bytes, if_generation_match: Optional[int] = None
    ) -> None:
        """Write ``data`` to ``path``.

        ``if_generation_match=0`` makes the write conditional on the object not
        existing yet; :class:`FileExistsError` is raised otherwise.
        """

    @abstractmethod
    async def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    async def delete(self, path: str) -> None:
        ...

    @abstractmethod
    async def listdir(self, path: str) -> List[str]:
        ...

    @abstractmethod
    async def makedirs(self, path: str) -> None:
        ...

    @abstractmethod
    def acquire_lock(self, key: str, ttl: int = 30):
        """Return an async context manager holding the lock named ``key``."""


class LocalStorageBackend(StorageBackend):
    """Store objects as plain files below ``base_path``.

    Locks are files under ``<base_path>/.locks`` created with ``O_EXCL``. Each
    lock file records when it was taken and for how long it is valid, so a
    lock left behind by a crashed process is broken once its TTL expires.

    :param base_path: Root directory; created if missing.
    :param poll_interval: Seconds to wait between lock attempts.
    """

    def __init__(self, base_path: str, poll_interval: float = 0.05) -> None:
        self.base_path = Path(base_path)
        self.poll_interval = poll_interval
        self._lock_dir = self.base_path / ".locks"
        self._lock_dir.mkdir(parents=True, exist_ok=True)

    def _full(self, path: str) -> Path:
        return self.base_path / path.lstrip("/")

    async def read_bytes(self, path: str) -> bytes:
        return await asyncio.to_thread(self._full(path).read_bytes)

    async def write_bytes(
        self, path: str, data: bytes, if_generation_match: Optional[int] = None
    ) -> None:
        target = self._full(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            if if_generation_match == 0:
                # exclusive create, fails if the object is already there
                with open(target, "xb") as fh:
                    fh.write(data)
                return
            tmp = target.with_name(f"{target.name}.tmp")
            tmp.write_bytes(data)
            os.replace(tmp, target)

        await asyncio.to_thread(_write)

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._full(path).exists)

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(self._full(path).unlink, True)

    async def listdir(self, path: str) -> List[str]:
        target = self._full(path)

        def _list() -> List[str]:
            if not target.is_dir():
                return []
            return sorted(entry.name for entry in target.iterdir())

        return await asyncio.to_thread(_list)

    async def makedirs(self, path: str) -> None:
        await asyncio.to_thread(self._full(path).mkdir, 0o777, True, True)

    def _lock_path(self, key: str) -> Path:
        return self._lock_dir / f"{key}.lock"

    def _try_lock(self, lock_file: Path, ttl: int) -> bool:
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(
            {"timestamp": datetime.now(timezone.utc).isoformat(), "ttl": ttl}
        ).encode("utf-8")
        try:
            fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "wb") as fh:
            fh.write(payload)
        return True

    def _is_stale(self, lock_file: Path) -> bool:
        try:
            info = json.loads(lock_file.read_text(encoding="utf-8"))
            taken = datetime.fromisoformat(info["timestamp"])
            ttl = float(info["ttl"])
        except FileNotFoundError:
            return False
        except (ValueError, KeyError, TypeError):
            return True
        return datetime.now(timezone.utc) - taken > timedelta(seconds=ttl)

    @asynccontextmanager
    async def acquire_lock(self, key: str, ttl: int = 30) -> AsyncIterator[None]:
        lock_file = self._lock_path(key)
        while True:
            if await asyncio.to_thread(self._try_lock, lock_file, ttl):
                break
            if await asyncio.to_thread(self._is_stale, lock_file):
                await asyncio.to_thread(lock_file.unlink, True)
                continue
            await asyncio.sleep(self.poll_interval)
        try:
            yield
        finally:
            await asyncio.to_thread(lock_file.unlink, True)
