"""
Блокировки по ключу для in-process хранилищ.
Каждая сущность (поездка, водитель, кошелёк) сериализуется своим asyncio.Lock.
"""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncGenerator, Iterable


class KeyedLocks:
    """Набор asyncio.Lock, создаваемых по требованию."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncGenerator[None, None]:
        """
        Захватывает блокировки нескольких ключей.
        Порядок захвата отсортирован, поэтому встречные захваты не взаимоблокируются.
        """
        async with AsyncExitStack() as stack:
            for key in _ordered(keys):
                await stack.enter_async_context(self.get(key))
            yield


def _ordered(keys: Iterable[str]) -> list[str]:
    return sorted(set(keys))
