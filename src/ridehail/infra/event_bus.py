"""
Шина событий на базе RabbitMQ (topic exchange).
Через неё уходят уведомления о поездках внешним доставщикам (push/SMS/e-mail).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

import aio_pika
from aio_pika import ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)

from ridehail.common.logger import log_error, log_info
from ridehail.common.constants import TypeMsg


# =============================================================================
# ДОМЕННЫЕ СОБЫТИЯ
# =============================================================================

def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DomainEvent:
    """Событие, публикуемое в шину."""
    event_id: str = field(default_factory=lambda: str(uuid4()))
    event_type: str = ""
    timestamp: str = field(default_factory=_utc_timestamp)
    payload: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        """Сериализует событие в JSON."""
        return json.dumps({
            "event_id": self.event_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }, ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, data: str) -> DomainEvent:
        """Десериализует событие из JSON."""
        parsed = json.loads(data)
        return cls(
            event_id=parsed.get("event_id", str(uuid4())),
            event_type=parsed.get("event_type", ""),
            timestamp=parsed.get("timestamp", ""),
            payload=parsed.get("payload", {}),
        )


class EventTypes:
    """Константы типов событий (routing key)."""
    RIDE_STATUS_CHANGED = "notification.ride_status"
    RIDE_OFFERED = "notification.ride_offer"
    RATING_REQUESTED = "notification.rating_request"
    PAYMENT_COMPLETED = "notification.payment_completed"


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """
    Шина событий на базе RabbitMQ.

    Реализует:
    - Публикацию событий в topic exchange (routing_key = event_type)
    - Подписку обработчиков через именованные очереди
    """

    def __init__(self, exchange_name: str = "ridehail.events") -> None:
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._exchange_name = exchange_name
        self._handlers: dict[str, list[EventHandler]] = {}
        self._queues: dict[str, AbstractQueue] = {}

    @property
    def is_connected(self) -> bool:
        """Проверяет, активно ли соединение."""
        return self._connection is not None and not self._connection.is_closed

    async def connect(
        self,
        url: str | None = None,
        exchange_name: str | None = None,
        prefetch_count: int = 10,
    ) -> None:
        """
        Подключается к RabbitMQ.

        Args:
            url: URL RabbitMQ (если None, берётся из конфига)
            exchange_name: Имя exchange
            prefetch_count: Количество сообщений для prefetch
        """
        if self.is_connected:
            return

        if url is None:
            from ridehail.config import settings
            url = settings.rabbitmq.url
            exchange_name = settings.rabbitmq.RABBITMQ_EXCHANGE
            prefetch_count = settings.rabbitmq.RABBITMQ_PREFETCH_COUNT

        if exchange_name:
            self._exchange_name = exchange_name

        await log_info("Подключение к RabbitMQ...", type_msg=TypeMsg.INFO)

        self._connection = await aio_pika.connect_robust(url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=prefetch_count)
        self._exchange = await self._channel.declare_exchange(
            self._exchange_name,
            ExchangeType.TOPIC,
            durable=True,
        )

        await log_info("Подключение к RabbitMQ установлено", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        """Закрывает соединение с RabbitMQ."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._channel = None
            self._exchange = None
            self._queues = {}
            await log_info("Соединение с RabbitMQ закрыто", type_msg=TypeMsg.INFO)

    async def publish(self, event: DomainEvent) -> None:
        """
        Публикует событие в exchange.

        Raises:
            ConnectionError: если соединения нет
        """
        if not self.is_connected or self._exchange is None:
            raise ConnectionError("Нет соединения с RabbitMQ")

        message = Message(
            body=event.to_json().encode(),
            content_type="application/json",
            message_id=event.event_id,
            timestamp=datetime.now(timezone.utc),
        )
        await self._exchange.publish(message, routing_key=event.event_type)

        await log_info(f"Событие опубликовано: {event.event_type}", type_msg=TypeMsg.DEBUG)

    async def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        queue_name: str | None = None,
    ) -> None:
        """
        Подписывает обработчик на события (routing_key pattern).

        Args:
            event_type: Тип события или шаблон (например, "notification.*")
            handler: Асинхронный обработчик события
            queue_name: Имя очереди (если None, генерируется из event_type)
        """
        if not self.is_connected or self._channel is None or self._exchange is None:
            raise ConnectionError("Нет соединения с RabbitMQ")

        self._handlers.setdefault(event_type, []).append(handler)

        if queue_name is None:
            queue_name = f"ridehail.{event_type.replace('.', '_').replace('*', 'all')}"

        if queue_name not in self._queues:
            queue = await self._channel.declare_queue(queue_name, durable=True)
            await queue.bind(self._exchange, routing_key=event_type)
            self._queues[queue_name] = queue
            await queue.consume(self._make_consumer(event_type))

        await log_info(f"Подписка на события: {event_type}", type_msg=TypeMsg.DEBUG)

    def _make_consumer(self, event_type: str) -> Callable[[AbstractIncomingMessage], Awaitable[None]]:
        """Создаёт consumer, вызывающий все обработчики шаблона."""
        async def consumer(message: AbstractIncomingMessage) -> None:
            async with message.process():
                try:
                    event = DomainEvent.from_json(message.body.decode())
                except (json.JSONDecodeError, UnicodeDecodeError) as e:
                    await log_error(f"Некорректное сообщение в очереди {event_type}: {e}")
                    return

                for handler in self._handlers.get(event_type, []):
                    try:
                        await handler(event)
                    except Exception as e:
                        await log_error(
                            f"Ошибка в обработчике {getattr(handler, '__name__', handler)}: {e}",
                            exc_info=True,
                        )

        return consumer

    async def health_check(self) -> bool:
        """Возвращает True, если соединение с RabbitMQ активно."""
        return self.is_connected
