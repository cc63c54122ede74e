"""Persistent key-value stores backing the pool and session state."""

import asyncio
import copy
import json
import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union

import aiofiles

logger = logging.getLogger(__name__)

Keys = Union[str, Iterable[str]]


def _key_list(keys: Keys) -> List[str]:
    if isinstance(keys, str):
        return [keys]
    return list(keys)


class KeyValueStore(Protocol):
    async def get(self, keys: Keys) -> Dict[str, Any]: ...

    async def set(self, items: Dict[str, Any]) -> None: ...

    async def remove(self, keys: Keys) -> None: ...

    async def keys(self) -> List[str]: ...


class MemoryStore:
    """Flat in-memory map. Values are deep-copied in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})

    async def get(self, keys: Keys) -> Dict[str, Any]:
        return {
            key: copy.deepcopy(self._data[key])
            for key in _key_list(keys)
            if key in self._data
        }

    async def set(self, items: Dict[str, Any]) -> None:
        self._data.update(copy.deepcopy(items))

    async def remove(self, keys: Keys) -> None:
        for key in _key_list(keys):
            self._data.pop(key, None)

    async def keys(self) -> List[str]:
        return list(self._data.keys())


class JsonFileStore:
    """Flat map kept in a single JSON file.

    The file is read once on first access and rewritten in full after every
    mutation through a temporary file and ``os.replace``.
    """

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._data: Dict[str, Any] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        if os.path.exists(self.file_path):
            # OSError propagates and leaves the store unloaded, so a later
            # write cannot replace the file with partial state.
            try:
                async with aiofiles.open(self.file_path, "r", encoding="utf-8") as f:
                    content = await f.read()
                self._data = json.loads(content) if content.strip() else {}
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(
                    "Corrupted store file %s: %s. Starting fresh.", self.file_path, e
                )
                self._data = {}
        self._loaded = True

    async def _flush(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.file_path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.file_path}.tmp"
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(self._data, indent=2, sort_keys=True))
        os.replace(tmp_path, self.file_path)

    async def get(self, keys: Keys) -> Dict[str, Any]:
        async with self._lock:
            await self._ensure_loaded()
            return {
                key: copy.deepcopy(self._data[key])
                for key in _key_list(keys)
                if key in self._data
            }

    async def set(self, items: Dict[str, Any]) -> None:
        async with self._lock:
            await self._ensure_loaded()
            self._data.update(copy.deepcopy(items))
            await self._flush()

    async def remove(self, keys: Keys) -> None:
        async with self._lock:
            await self._ensure_loaded()
            removed = False
            for key in _key_list(keys):
                if key in self._data:
                    del self._data[key]
                    removed = True
            if removed:
                await self._flush()

    async def keys(self) -> List[str]:
        async with self._lock:
            await self._ensure_loaded()
            return list(self._data.keys())


def create_store(store_path: str) -> KeyValueStore:
    if store_path:
        return JsonFileStore(store_path)
    return MemoryStore()
