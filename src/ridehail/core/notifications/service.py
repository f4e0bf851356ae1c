# src/ridehail/core/notifications/service.py
"""
Сервис уведомлений.

Переходы поездки только ставят уведомление в очередь и не ждут доставки.
Независимый consumer публикует события в шину (RabbitMQ); фактическую
доставку push/SMS/e-mail выполняют внешние подписчики. Ошибка доставки
никогда не откатывает переход поездки.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from ridehail.common.constants import RideStatus, TypeMsg
from ridehail.common.logger import get_logger, log_debug, log_error, log_info
from ridehail.infra.event_bus import DomainEvent, EventBus, EventTypes

if TYPE_CHECKING:
    from ridehail.core.payments.models import Payment
    from ridehail.core.rides.models import Ride


class NotificationSink(ABC):
    """Приёмник уведомлений. Методы синхронны и не бросают исключений."""

    @abstractmethod
    def notify_ride_status(self, ride: Ride, status: RideStatus, recipient_id: str) -> None:
        """Смена статуса поездки для пассажира или водителя."""

    @abstractmethod
    def notify_ride_offer(self, ride: Ride, driver_id: str) -> None:
        """Предложение новой поездки водителю."""

    @abstractmethod
    def notify_rating_request(self, ride: Ride, rater_id: str, rated_id: str) -> None:
        """Просьба оценить поездку."""

    def notify_payment_completed(self, payment: Payment) -> None:
        """Оплата поездки проведена."""


class NotificationService(NotificationSink):
    """
    Очередь уведомлений с фоновым consumer.

    Пример:
        notifications = NotificationService(event_bus)
        notifications.start()
        ...
        await notifications.stop()
    """

    def __init__(self, event_bus: EventBus | None = None, max_queue: int | None = None) -> None:
        """
        Args:
            event_bus: Шина событий (если None, события только логируются)
            max_queue: Ёмкость очереди (из конфига если None)
        """
        if max_queue is None:
            from ridehail.config import settings
            max_queue = settings.notifications.NOTIFICATION_QUEUE_SIZE

        self._event_bus = event_bus
        self._queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=max_queue)
        self._consumer: asyncio.Task[None] | None = None
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    # =========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ
    # =========================================================================

    def start(self) -> None:
        """Запускает consumer в текущем event loop."""
        if self.is_running:
            return
        self._consumer = asyncio.create_task(self._consume(), name="notifications-consumer")

    async def join(self) -> None:
        """Ждёт, пока consumer разберёт всю очередь."""
        await self._queue.join()

    async def stop(self) -> None:
        """Останавливает consumer. Неразобранные события остаются в очереди."""
        if self._consumer is None:
            return
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None
        await log_info("Consumer уведомлений остановлен", type_msg=TypeMsg.DEBUG)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception as e:
                await log_error(f"Ошибка публикации уведомления {event.event_type}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: DomainEvent) -> None:
        if self._event_bus is None:
            await log_debug(f"Уведомление {event.event_type}: {event.payload}")
            return
        await self._event_bus.publish(event)

    def _submit(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            self._queue.put_nowait(DomainEvent(event_type=event_type, payload=payload))
        except asyncio.QueueFull:
            self.dropped += 1
            get_logger().warning(f"Очередь уведомлений переполнена, {event_type} отброшено")

    # =========================================================================
    # УВЕДОМЛЕНИЯ
    # =========================================================================

    def notify_ride_status(self, ride: Ride, status: RideStatus, recipient_id: str) -> None:
        self._submit(EventTypes.RIDE_STATUS_CHANGED, {
            "ride_id": ride.ride_id,
            "status": status.value,
            "recipient_id": recipient_id,
            "rider_id": ride.rider_id,
            "driver_id": ride.driver_id,
            "fare": ride.fare,
            "cancellation_reason": ride.cancellation_reason,
        })

    def notify_ride_offer(self, ride: Ride, driver_id: str) -> None:
        self._submit(EventTypes.RIDE_OFFERED, {
            "ride_id": ride.ride_id,
            "recipient_id": driver_id,
            "ride_class": ride.ride_class.value,
            "pickup": ride.pickup.model_dump(),
            "drop": ride.drop.model_dump(),
            "estimated_fare": ride.estimated_fare,
            "estimated_distance_km": ride.estimated_distance_km,
        })

    def notify_rating_request(self, ride: Ride, rater_id: str, rated_id: str) -> None:
        self._submit(EventTypes.RATING_REQUESTED, {
            "ride_id": ride.ride_id,
            "recipient_id": rater_id,
            "rated_id": rated_id,
        })

    def notify_payment_completed(self, payment: Payment) -> None:
        self._submit(EventTypes.PAYMENT_COMPLETED, {
            "payment_id": payment.payment_id,
            "ride_id": payment.ride_id,
            "recipient_id": payment.payee_id,
            "payer_id": payment.payer_id,
            "amount": str(payment.amount),
            "driver_share": str(payment.driver_share),
            "method": payment.method.value,
        })
