"""
Key-value хранилище с TTL.

Используется ядром для коротко живущих данных: кэш поездки, набор
кандидатов, последние координаты. Реализации: RedisClient (production)
и InMemoryKeyValueStore (локальный запуск, тесты).
"""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable


class KeyValueStore(ABC):
    """Интерфейс key-value хранилища с TTL."""

    @abstractmethod
    async def get_json(self, key: str) -> Any | None:
        """Возвращает значение или None, если ключа нет или он истёк."""

    @abstractmethod
    async def set_json(self, key: str, data: Any, ttl: int | None = None) -> bool:
        """Сохраняет значение (JSON-сериализуемое) с временем жизни в секундах."""

    @abstractmethod
    async def delete(self, key: str) -> int:
        """Удаляет ключ, возвращает количество удалённых."""


class InMemoryKeyValueStore(KeyValueStore):
    """
    Хранилище в памяти процесса.
    Значения хранятся сериализованными, чтобы вызывающий не мог изменить их по ссылке.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    async def get_json(self, key: str) -> Any | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if self._expired(expires_at):
            del self._data[key]
            return None
        return json.loads(raw)

    async def set_json(self, key: str, data: Any, ttl: int | None = None) -> bool:
        expires_at = self._clock() + ttl if ttl else None
        self._data[key] = (json.dumps(data, ensure_ascii=False, default=str), expires_at)
        return True

    async def delete(self, key: str) -> int:
        return 1 if self._data.pop(key, None) is not None else 0

    async def ttl(self, key: str) -> int:
        """Оставшееся время жизни: -2 нет ключа, -1 без TTL (как в Redis)."""
        entry = self._data.get(key)
        if entry is None or self._expired(entry[1]):
            return -2
        if entry[1] is None:
            return -1
        return int(entry[1] - self._clock())
