"""
Simple file-based key/value store.

Persists the channel mnemonic, the last-used connection options and the
known subscription descriptors so the gateway can recover its identity
and subscriptions across restarts.  The same store instance is handed to
the channel client connector, which may keep its own records under other
keys.  Values must be JSON serialisable.  File access runs in the default
executor to avoid blocking the event loop; every read-modify-write holds
one lock so concurrent ``set`` calls cannot lose updates.
"""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Dict, List, Optional

from ..models import ConnectionOptions

MNEMONIC_KEY = "mnemonic"
INIT_OPTIONS_KEY = "initOptions"
SUBSCRIPTIONS_KEY = "subscriptions"


class KeyValueStore:
    def __init__(self, path: str = "./connext-store/store.json") -> None:
        self.path = os.path.abspath(path)
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        if not os.path.exists(self.path):
            self._write_file({})
        self._lock = asyncio.Lock()

    def _read_file(self) -> Dict[str, Any]:
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write_file(self, data: Dict[str, Any]) -> None:
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._lock:
            loop = asyncio.get_running_loop()
            data = await loop.run_in_executor(None, self._read_file)
        return data.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            data = await loop.run_in_executor(None, self._read_file)
            data[key] = value
            await loop.run_in_executor(None, self._write_file, data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            data = await loop.run_in_executor(None, self._read_file)
            if key in data:
                del data[key]
                await loop.run_in_executor(None, self._write_file, data)

    async def store_mnemonic(self, mnemonic: str) -> None:
        await self.set(MNEMONIC_KEY, mnemonic)

    async def get_mnemonic(self) -> Optional[str]:
        return await self.get(MNEMONIC_KEY)

    async def store_init_options(self, options: ConnectionOptions) -> None:
        await self.set(INIT_OPTIONS_KEY, options.model_dump(by_alias=True, exclude_none=True))

    async def get_init_options(self) -> Optional[ConnectionOptions]:
        raw = await self.get(INIT_OPTIONS_KEY)
        if not raw:
            return None
        return ConnectionOptions.model_validate(raw)

    async def store_subscriptions(self, descriptors: List[Dict[str, Any]]) -> None:
        await self.set(SUBSCRIPTIONS_KEY, descriptors)

    async def get_subscriptions(self) -> List[Dict[str, Any]]:
        return list(await self.get(SUBSCRIPTIONS_KEY, []) or [])
