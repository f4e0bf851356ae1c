"""
Клиент Redis: key-value кэш с TTL и geo-индекс водителей.
"""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio as redis

from ridehail.common.logger import log_error, log_info
from ridehail.common.constants import TypeMsg
from ridehail.infra.kv_store import KeyValueStore


class RedisClient(KeyValueStore):
    """
    Асинхронный клиент Redis.
    Поддерживает:
    - JSON get/set с TTL (интерфейс KeyValueStore)
    - Geo-операции (GEOADD, GEORADIUS, ZREM)
    """

    def __init__(self, namespace: str = "ridehail") -> None:
        self._client: redis.Redis | None = None
        self._namespace = namespace

    @property
    def client(self) -> redis.Redis:
        """Возвращает клиент Redis."""
        if self._client is None:
            raise RuntimeError("Redis клиент не инициализирован. Вызовите connect() сначала.")
        return self._client

    def _make_key(self, key: str) -> str:
        """Добавляет namespace к ключу."""
        return f"{self._namespace}:{key}"

    async def connect(
        self,
        url: str | None = None,
        max_connections: int = 50,
    ) -> None:
        """
        Подключается к Redis.

        Args:
            url: URL Redis (если None, берётся из конфига)
            max_connections: Максимальное количество соединений
        """
        if self._client is not None:
            return

        if url is None:
            from ridehail.config import settings
            url = settings.redis.url
            max_connections = settings.redis.REDIS_MAX_CONNECTIONS
            self._namespace = settings.redis.REDIS_NAMESPACE

        await log_info("Подключение к Redis...", type_msg=TypeMsg.INFO)

        self._client = redis.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True,
        )
        await self._client.ping()

        await log_info("Подключение к Redis установлено", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        """Закрывает соединение с Redis."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            await log_info("Соединение с Redis закрыто", type_msg=TypeMsg.INFO)

    # =========================================================================
    # KEY-VALUE
    # =========================================================================

    async def get_json(self, key: str) -> Any | None:
        data = await self.client.get(self._make_key(key))
        if data is None:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            await log_error(f"Некорректный JSON в ключе {key}")
            return None

    async def set_json(self, key: str, data: Any, ttl: int | None = None) -> bool:
        return await self.client.set(
            self._make_key(key),
            json.dumps(data, ensure_ascii=False, default=str),
            ex=ttl,
        )

    async def delete(self, key: str) -> int:
        return await self.client.delete(self._make_key(key))

    async def ttl(self, key: str) -> int:
        """Оставшееся время жизни ключа в секундах."""
        return await self.client.ttl(self._make_key(key))

    # =========================================================================
    # GEO
    # =========================================================================

    async def geoadd(
        self,
        key: str,
        longitude: float,
        latitude: float,
        member: str,
    ) -> int:
        """
        Добавляет или обновляет позицию участника.

        Args:
            key: Ключ geo-индекса
            longitude: Долгота
            latitude: Широта
            member: Идентификатор (driver_id)

        Returns:
            Количество добавленных элементов
        """
        return await self.client.geoadd(
            self._make_key(key),
            (longitude, latitude, member),
        )

    async def georadius(
        self,
        key: str,
        longitude: float,
        latitude: float,
        radius: float,
        unit: str = "km",
        count: int | None = None,
    ) -> list[tuple[str, float]]:
        """
        Ищет участников в радиусе от точки, ближайшие первыми.

        Returns:
            Список кортежей (member, distance)
        """
        results = await self.client.georadius(
            self._make_key(key),
            longitude,
            latitude,
            radius,
            unit=unit,
            withdist=True,
            count=count,
            sort="ASC",
        )
        return [(member, float(distance)) for member, distance in results]

    async def georem(self, key: str, member: str) -> int:
        """Удаляет участника из geo-индекса."""
        return await self.client.zrem(self._make_key(key), member)

    async def health_check(self) -> bool:
        """
        Проверяет здоровье подключения к Redis.

        Returns:
            True если подключение работает
        """
        try:
            return bool(await self.client.ping())
        except (RuntimeError, redis.RedisError) as e:
            await log_error(f"Health check Redis failed: {e}")
            return False
