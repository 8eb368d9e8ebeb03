"""
Document storage collaborator
=============================
Accepts (bytes, path hint, content type) and returns an opaque key. The
core persists only that key.

  LocalFileStorage  files under STORAGE_ROOT
  InMemoryStorage   dict-backed (tests); ``fail`` forces errors
"""
from __future__ import annotations

import asyncio
import logging
import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

from hestia.core.errors import ExternalServiceFailure, NotFound

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _storage_key(path_hint: str) -> str:
    parts = [_UNSAFE.sub("_", p) for p in path_hint.split("/") if p not in ("", ".", "..")]
    parts[-1] = f"{uuid.uuid4().hex[:12]}_{parts[-1]}" if parts else uuid.uuid4().hex
    return "/".join(parts)


class DocumentStorage(ABC):
    @abstractmethod
    async def save(self, data: bytes, path_hint: str, content_type: str) -> str: ...

    @abstractmethod
    async def read(self, key: str) -> bytes: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...


class LocalFileStorage(DocumentStorage):
    def __init__(self, root: str | Path):
        self._root = Path(root)

    def _path(self, key: str) -> Path:
        return self._root / key

    async def save(self, data: bytes, path_hint: str, content_type: str) -> str:
        key = _storage_key(path_hint)
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise ExternalServiceFailure(f"Storage write failed: {e}", service="storage", key=key) from e
        logger.debug(f"Stored {len(data)} bytes at {key} ({content_type})")
        return key

    async def read(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise NotFound(f"Stored object {key} not found", key=key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise ExternalServiceFailure(f"Storage read failed: {e}", service="storage", key=key) from e

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._path(key).unlink, True)
        except OSError as e:
            raise ExternalServiceFailure(f"Storage delete failed: {e}", service="storage", key=key) from e


class InMemoryStorage(DocumentStorage):
    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fail = False

    async def save(self, data: bytes, path_hint: str, content_type: str) -> str:
        if self.fail:
            raise ExternalServiceFailure("Storage unavailable", service="storage")
        key = _storage_key(path_hint)
        self.objects[key] = (data, content_type)
        return key

    async def read(self, key: str) -> bytes:
        if key not in self.objects:
            raise NotFound(f"Stored object {key} not found", key=key)
        return self.objects[key][0]

    async def delete(self, key: str) -> None:
        if self.fail:
            raise ExternalServiceFailure("Storage unavailable", service="storage", key=key)
        self.objects.pop(key, None)
