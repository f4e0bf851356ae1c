"""
Инфраструктурный слой.
Работа с внешними сервисами: PostgreSQL, Redis, RabbitMQ.
"""

from ridehail.infra.database import DatabaseManager, apply_schema
from ridehail.infra.event_bus import DomainEvent, EventBus, EventTypes
from ridehail.infra.kv_store import InMemoryKeyValueStore, KeyValueStore
from ridehail.infra.redis_client import RedisClient

__all__ = [
    "DatabaseManager",
    "apply_schema",
    "RedisClient",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "EventBus",
    "DomainEvent",
    "EventTypes",
]
