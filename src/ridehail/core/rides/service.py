# src/ridehail/core/rides/service.py
"""
Сервис поездок: бронирование и переходы жизненного цикла.

Каждый переход читает снимок поездки, проверяет допустимость и права,
а затем применяет изменения через conditional_update. Если запись
не применилась, поездку успел изменить кто-то другой: снимок перечитывается
и переход отклоняется с ошибкой по новому статусу.

Уведомления ставятся в очередь и не влияют на результат перехода.
"""

from __future__ import annotations

import asyncio
import math
from datetime import datetime
from functools import wraps
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, TypeVar

from pydantic import ValidationError as PydanticValidationError

from ridehail.common.constants import (
    PaymentMethod,
    RideClass,
    RideStatus,
    TypeMsg,
    UserRole,
)
from ridehail.common.exceptions import (
    AlreadyProcessed,
    DriverUnavailable,
    InsufficientFunds,
    InvalidState,
    InvariantViolation,
    NotFound,
    PaymentGatewayError,
    RideHailError,
    Unauthorized,
    ValidationError,
)
from ridehail.common.helpers import generate_ride_id, round_half_up, utc_now
from ridehail.common.logger import log_error, log_info, log_warning
from ridehail.core.geo.distance import path_distance
from ridehail.core.geo.models import GeoPoint, parse_point
from ridehail.core.rides.models import ACTIVE_STATUSES, Ride, TrackingPoint
from ridehail.core.rides.repository import RideRepository
from ridehail.core.rides.state_machine import RideTransition, ensure_transition

if TYPE_CHECKING:
    from ridehail.core.drivers.models import DriverAvailability
    from ridehail.core.drivers.repository import DriverRepository
    from ridehail.core.matching.service import DriverMatcher
    from ridehail.core.notifications.service import NotificationSink
    from ridehail.core.payments.models import Payment
    from ridehail.core.payments.settlement import SettlementEngine
    from ridehail.core.pricing.estimator import FareEstimate, FareEstimator
    from ridehail.core.users.directory import UserDirectory
    from ridehail.infra.kv_store import KeyValueStore

T = TypeVar("T")


def ride_cache_key(ride_id: str) -> str:
    return f"ride_{ride_id}"


def ride_location_key(ride_id: str) -> str:
    return f"ride_location_{ride_id}"


def log_rejections(operation: str) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Декоратор: логирует отклонённые операции (WARNING) и пробрасывает ошибку дальше.

    Args:
        operation: Название операции для лога
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except RideHailError as e:
                await log_warning(
                    f"{operation} отклонено ({e.code}): {e.message}",
                    extra={"error_code": e.code, **e.details},
                )
                raise

        return wrapper

    return decorator


def _parse_ride_class(value: RideClass | str) -> RideClass:
    try:
        return RideClass(value)
    except ValueError as e:
        raise ValidationError(f"Неизвестный класс поездки: {value}", ride_class=str(value)) from e


class RideService:
    """
    Сервис поездок.

    Пример:
        ride = await rides.book_ride(rider_id, pickup, drop, RideClass.ECONOMY)
        ride = await rides.accept_ride(driver_id, ride.ride_id)
        ride = await rides.start_ride(driver_id, ride.ride_id)
        ride = await rides.complete_ride(driver_id, ride.ride_id)
    """

    def __init__(
        self,
        rides: RideRepository,
        drivers: DriverRepository,
        users: UserDirectory,
        estimator: FareEstimator,
        matcher: DriverMatcher,
        settlement: SettlementEngine,
        notifications: NotificationSink,
        cache: KeyValueStore,
        clock: Callable[[], datetime] = utc_now,
        ride_ttl: int | None = None,
        ride_location_ttl: int | None = None,
        enforce_candidate_list: bool | None = None,
    ) -> None:
        """
        Args:
            rides: Репозиторий поездок
            drivers: Репозиторий водителей (занятость, статистика)
            users: Справочник пользователей
            estimator: Тарификатор
            matcher: Подбор водителей
            settlement: Расчёт по завершённой поездке
            notifications: Приёмник уведомлений
            cache: Key-value хранилище снимков и координат поездок
            clock: Источник текущего времени
            ride_ttl: TTL снимка поездки в кэше (из конфига если None)
            ride_location_ttl: TTL последней точки трека
            enforce_candidate_list: Принимать поездку могут только те, кому она предлагалась
        """
        from ridehail.config import settings

        self._rides = rides
        self._drivers = drivers
        self._users = users
        self._estimator = estimator
        self._matcher = matcher
        self._settlement = settlement
        self._notifications = notifications
        self._cache = cache
        self._clock = clock
        self._ride_ttl = settings.redis_ttl.RIDE_TTL if ride_ttl is None else ride_ttl
        self._ride_location_ttl = (
            settings.redis_ttl.RIDE_LOCATION_TTL if ride_location_ttl is None else ride_location_ttl
        )
        self._enforce_candidate_list = (
            settings.matching.ENFORCE_CANDIDATE_LIST
            if enforce_candidate_list is None
            else enforce_candidate_list
        )
        self._background: set[asyncio.Task[None]] = set()

    # =========================================================================
    # ОЦЕНКА И БРОНИРОВАНИЕ
    # =========================================================================

    async def estimate_fare(
        self,
        pickup: GeoPoint | Mapping[str, Any],
        drop: GeoPoint | Mapping[str, Any],
        ride_class: RideClass | str = RideClass.ECONOMY,
    ) -> FareEstimate:
        """
        Оценка расстояния, длительности и стоимости без бронирования.

        Raises:
            ValidationError: некорректные координаты или класс
        """
        return self._estimator.quote(
            parse_point(pickup, "pickup"),
            parse_point(drop, "drop"),
            _parse_ride_class(ride_class),
        )

    @log_rejections("Бронирование поездки")
    async def book_ride(
        self,
        rider_id: str,
        pickup: GeoPoint | Mapping[str, Any],
        drop: GeoPoint | Mapping[str, Any],
        ride_class: RideClass | str = RideClass.ECONOMY,
        payment_method: PaymentMethod | str = PaymentMethod.CASH,
    ) -> Ride:
        """
        Создаёт поездку в статусе requested и запускает поиск водителей.

        Поиск идёт в фоне: результат бронирования от него не зависит,
        пустой список кандидатов означает, что поездка остаётся в поиске.

        Args:
            rider_id: ID пассажира
            pickup: Точка посадки
            drop: Точка высадки
            ride_class: Класс поездки
            payment_method: Способ оплаты

        Returns:
            Созданная поездка

        Raises:
            ValidationError: некорректные координаты, класс или способ оплаты
            NotFound: пассажир не найден
            Unauthorized: пользователь не является пассажиром
        """
        pickup_point = parse_point(pickup, "pickup")
        drop_point = parse_point(drop, "drop")
        ride_class = _parse_ride_class(ride_class)
        try:
            payment_method = PaymentMethod(payment_method)
        except ValueError as e:
            raise ValidationError(f"Неизвестный способ оплаты: {payment_method}") from e

        rider = await self._users.require(rider_id)
        if rider.role != UserRole.RIDER:
            raise Unauthorized(f"Пользователь {rider_id} не пассажир", user_id=rider_id)

        estimate = self._estimator.quote(pickup_point, drop_point, ride_class)
        ride = await self._rides.create(Ride(
            ride_id=generate_ride_id(),
            rider_id=rider_id,
            ride_class=ride_class,
            pickup=pickup_point,
            drop=drop_point,
            estimated_distance_km=estimate.distance_km,
            estimated_duration_sec=estimate.duration_sec,
            estimated_fare=estimate.fare,
            payment_method=payment_method,
            requested_at=self._clock(),
        ))
        await self._cache.set_json(ride_cache_key(ride.ride_id), ride.to_cache(), ttl=self._ride_ttl)

        await log_info(
            f"Поездка {ride.ride_id} создана пассажиром {rider_id}: "
            f"{estimate.distance_km:.2f} км, {estimate.fare}",
            type_msg=TypeMsg.INFO,
        )

        self._spawn(self._dispatch_offers(ride))
        return ride

    async def _dispatch_offers(self, ride: Ride) -> None:
        """Ищет водителей и рассылает предложение первым N."""
        try:
            candidates = await self._matcher.find_candidates(ride.pickup, ride.ride_class)
            if not candidates:
                await log_info(f"Поездка {ride.ride_id}: водителей рядом нет, поиск продолжается")
                return

            # Пока шёл поиск, поездку могли отменить или принять
            current = await self._rides.get(ride.ride_id)
            if current is None or current.status != RideStatus.REQUESTED:
                status = current.status.value if current else "удалена"
                await log_info(
                    f"Поездка {ride.ride_id} уже {status}, предложения не рассылаются",
                    type_msg=TypeMsg.DEBUG,
                )
                return

            offered = await self._matcher.publish_candidates(ride.ride_id, candidates)
            for driver_id in offered:
                self._notifications.notify_ride_offer(ride, driver_id)
            await log_info(
                f"Поездка {ride.ride_id}: найдено {len(candidates)} водителей, предложено {len(offered)}",
                type_msg=TypeMsg.INFO,
            )
        except Exception as e:
            await log_error(f"Ошибка поиска водителей для поездки {ride.ride_id}: {e}", exc_info=True)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Ждёт завершения фоновых задач (поиск водителей)."""
        while self._background:
            await asyncio.gather(*list(self._background))

    # =========================================================================
    # ПЕРЕХОДЫ
    # =========================================================================

    @log_rejections("Принятие поездки")
    async def accept_ride(self, driver_id: str, ride_id: str) -> Ride:
        """
        Водитель принимает поездку. Из одновременных принятий выигрывает одно.

        Водитель сначала занимается (available -> false), затем поездка
        условно переводится requested -> accepted. Проигравший водитель
        освобождается.

        Raises:
            NotFound: поездка или водитель не найдены
            AlreadyAccepted: поездку уже принял другой водитель
            InvalidState: поездка отменена или завершена
            DriverUnavailable: водитель не в сети, занят, не верифицирован или без ТС
            Unauthorized: поездка не предлагалась водителю (если включена проверка)
        """
        ride = await self._require_ride(ride_id)
        ensure_transition(ride, RideTransition.ACCEPT)
        driver = await self._require_driver(driver_id)

        reason = driver.unavailable_reason()
        if reason is not None:
            raise DriverUnavailable(
                f"Водитель {driver_id} не может принять поездку: {reason}",
                driver_id=driver_id,
            )
        if self._enforce_candidate_list and not await self._matcher.was_offered(ride_id, driver_id):
            raise Unauthorized(
                f"Поездка {ride_id} не предлагалась водителю {driver_id}",
                ride_id=ride_id,
                driver_id=driver_id,
            )

        if not await self._drivers.claim(driver_id):
            raise DriverUnavailable(f"Водитель {driver_id} уже занят", driver_id=driver_id)

        won = False
        try:
            won = await self._rides.conditional_update(
                ride_id,
                RideStatus.REQUESTED,
                {
                    "status": RideStatus.ACCEPTED,
                    "driver_id": driver_id,
                    "vehicle_id": driver.vehicle.vehicle_id,
                    "accepted_at": self._clock(),
                },
                require_unassigned=True,
            )
        finally:
            if not won:
                await self._drivers.release(driver_id)

        if not won:
            await self._raise_lost_race(ride_id, RideTransition.ACCEPT)

        accepted = await self._require_ride(ride_id)
        if accepted.driver_id != driver_id:
            raise InvariantViolation(
                f"Поездка {ride_id} принята водителем {driver_id}, но назначен {accepted.driver_id}"
            )

        await self._cache.set_json(ride_cache_key(ride_id), accepted.to_cache(), ttl=self._ride_ttl)
        await self._matcher.forget(ride_id)
        self._notifications.notify_ride_status(accepted, RideStatus.ACCEPTED, accepted.rider_id)

        await log_info(f"Поездка {ride_id} принята водителем {driver_id}", type_msg=TypeMsg.INFO)
        return accepted

    @log_rejections("Начало поездки")
    async def start_ride(self, driver_id: str, ride_id: str) -> Ride:
        """
        Водитель начинает поездку (посадка пассажира).

        Raises:
            NotFound: поездка или водитель не найдены
            InvalidState: поездка не в статусе accepted
            Unauthorized: водитель не назначен на поездку
        """
        ride = await self._require_ride(ride_id)
        await self._require_driver(driver_id)
        ensure_transition(ride, RideTransition.START)
        self._require_assigned_driver(ride, driver_id)

        applied = await self._rides.conditional_update(
            ride_id,
            RideStatus.ACCEPTED,
            {"status": RideStatus.STARTED, "started_at": self._clock()},
        )
        if not applied:
            await self._raise_lost_race(ride_id, RideTransition.START)

        started = await self._require_ride(ride_id)
        await self._cache.set_json(ride_cache_key(ride_id), started.to_cache(), ttl=self._ride_ttl)
        self._notifications.notify_ride_status(started, RideStatus.STARTED, started.rider_id)

        await log_info(f"Поездка {ride_id} начата", type_msg=TypeMsg.INFO)
        return started

    @log_rejections("Завершение поездки")
    async def complete_ride(
        self,
        driver_id: str,
        ride_id: str,
        actual_distance_km: float | None = None,
    ) -> Ride:
        """
        Водитель завершает поездку. Запускает расчёт.

        Фактическое расстояние берётся из аргумента, иначе считается по точкам
        трека (если их хотя бы две), иначе равно оценке. Длительность считается
        от момента начала.

        Если расчёт не прошёл (нет средств, отказ шлюза), поездка остаётся
        завершённой со статусом оплаты failed; пассажир может оплатить её
        повторно через pay_ride.

        Raises:
            NotFound: поездка или водитель не найдены
            InvalidState: поездка не в статусе started
            Unauthorized: водитель не назначен на поездку
            ValidationError: некорректное расстояние
        """
        if actual_distance_km is not None and (
            not math.isfinite(actual_distance_km) or actual_distance_km < 0
        ):
            raise ValidationError(
                "Фактическое расстояние должно быть неотрицательным числом",
                actual_distance_km=actual_distance_km,
            )

        ride = await self._require_ride(ride_id)
        await self._require_driver(driver_id)
        ensure_transition(ride, RideTransition.COMPLETE)
        self._require_assigned_driver(ride, driver_id)

        now = self._clock()
        distance_km = await self._actual_distance(ride, actual_distance_km)
        duration_sec = max(0, round_half_up((now - ride.started_at).total_seconds()))
        fare = self._estimator.estimate(distance_km, duration_sec, ride.ride_class)

        applied = await self._rides.conditional_update(
            ride_id,
            RideStatus.STARTED,
            {
                "status": RideStatus.COMPLETED,
                "actual_distance_km": distance_km,
                "actual_duration_sec": duration_sec,
                "actual_fare": fare,
                "completed_at": now,
            },
        )
        if not applied:
            await self._raise_lost_race(ride_id, RideTransition.COMPLETE)

        completed = await self._require_ride(ride_id)
        split = self._settlement.split(fare)
        await self._drivers.record_completion(driver_id, split.driver_share)

        await self._cache.delete(ride_cache_key(ride_id))
        await self._cache.delete(ride_location_key(ride_id))

        self._notifications.notify_ride_status(completed, RideStatus.COMPLETED, completed.rider_id)
        self._notifications.notify_rating_request(completed, completed.rider_id, driver_id)
        self._notifications.notify_rating_request(completed, driver_id, completed.rider_id)

        await log_info(
            f"Поездка {ride_id} завершена: {distance_km:.2f} км, {duration_sec} с, {fare}",
            type_msg=TypeMsg.INFO,
        )
        return await self._settle(completed)

    @log_rejections("Отмена поездки")
    async def cancel_ride(
        self,
        actor_id: str,
        actor_role: UserRole | str,
        ride_id: str,
        reason: str | None = None,
    ) -> Ride:
        """
        Отмена поездки пассажиром, назначенным водителем или администратором.

        Возможна только из requested и accepted. Назначенный водитель
        снова становится доступным.

        Raises:
            ValidationError: неизвестная роль
            NotFound: поездка или пользователь не найдены
            InvalidState: поездка уже начата или в конечном статусе
            Unauthorized: пользователь не может отменить эту поездку
        """
        try:
            actor_role = UserRole(actor_role)
        except ValueError as e:
            raise ValidationError(f"Неизвестная роль: {actor_role}") from e

        actor = await self._users.require(actor_id)
        if actor.role != actor_role:
            raise Unauthorized(
                f"Пользователь {actor_id} не имеет роли {actor_role.value}",
                user_id=actor_id,
            )

        # Статус может смениться между чтением и записью (например, поездку
        # приняли): перечитываем и проверяем заново. Статусы только растут,
        # поэтому цикл конечен.
        while True:
            ride = await self._require_ride(ride_id)
            ensure_transition(ride, RideTransition.CANCEL)
            self._authorize_cancel(ride, actor_id, actor_role)

            applied = await self._rides.conditional_update(
                ride_id,
                ride.status,
                {
                    "status": RideStatus.CANCELLED,
                    "driver_id": None,
                    "vehicle_id": None,
                    "cancelled_at": self._clock(),
                    "cancellation_reason": reason,
                    "cancelled_by": actor_role,
                    "cancelled_by_id": actor_id,
                },
            )
            if applied:
                break

        cancelled = await self._require_ride(ride_id)
        if ride.driver_id is not None:
            await self._drivers.release(ride.driver_id)

        await self._cache.delete(ride_cache_key(ride_id))
        await self._matcher.forget(ride_id)

        if actor_id != ride.rider_id:
            self._notifications.notify_ride_status(cancelled, RideStatus.CANCELLED, ride.rider_id)
        if ride.driver_id is not None and actor_id != ride.driver_id:
            self._notifications.notify_ride_status(cancelled, RideStatus.CANCELLED, ride.driver_id)

        await log_info(
            f"Поездка {ride_id} отменена ({actor_role.value} {actor_id}): {reason or 'без причины'}",
            type_msg=TypeMsg.INFO,
        )
        return cancelled

    # =========================================================================
    # ТРЕК
    # =========================================================================

    async def track_location(
        self,
        ride_id: str,
        point: GeoPoint | Mapping[str, Any],
        accuracy: float | None = None,
        heading: float | None = None,
        speed: float | None = None,
    ) -> TrackingPoint:
        """
        Добавляет точку трека принятой или начатой поездки.

        Raises:
            NotFound: поездка не найдена
            InvalidState: поездка не отслеживается в текущем статусе
            ValidationError: некорректные координаты или параметры точки
        """
        location = parse_point(point, "location")
        ride = await self._require_ride(ride_id)
        if ride.status not in ACTIVE_STATUSES:
            raise InvalidState(
                f"Поездка {ride_id} в статусе {ride.status.value} не отслеживается",
                ride_id=ride_id,
                status=ride.status.value,
            )

        try:
            tracking = TrackingPoint(
                ride_id=ride_id,
                lat=location.lat,
                lon=location.lon,
                accuracy=accuracy,
                heading=heading,
                speed=speed,
                recorded_at=self._clock(),
            )
        except PydanticValidationError as e:
            raise ValidationError(
                "Некорректные параметры точки трека",
                errors=[err["msg"] for err in e.errors()],
            ) from e

        await self._rides.add_tracking_point(tracking)
        await self._cache.set_json(
            ride_location_key(ride_id),
            tracking.model_dump(mode="json", exclude={"ride_id"}),
            ttl=self._ride_location_ttl,
        )
        return tracking

    async def ride_location(self, ride_id: str) -> dict[str, Any] | None:
        """Последняя точка трека из кэша."""
        return await self._cache.get_json(ride_location_key(ride_id))

    # =========================================================================
    # ЧТЕНИЕ И ОПЛАТА
    # =========================================================================

    async def get_ride(self, ride_id: str, user_id: str | None = None) -> Ride:
        """
        Поездка по ID. Если указан user_id, он должен быть её участником.

        Raises:
            NotFound: поездка не найдена
            Unauthorized: пользователь не участник поездки
        """
        ride = await self._require_ride(ride_id)
        if user_id is not None and user_id not in (ride.rider_id, ride.driver_id, ride.cancelled_by_id):
            raise Unauthorized(f"Пользователь {user_id} не участник поездки {ride_id}", ride_id=ride_id)
        return ride

    @log_rejections("Оплата поездки")
    async def pay_ride(
        self,
        payer_id: str,
        ride_id: str,
        method: PaymentMethod | str,
    ) -> Payment:
        """
        Оплата завершённой поездки пассажиром (если автоматический расчёт не прошёл).

        Raises:
            NotFound: поездка не найдена
            InvalidState: поездка не завершена
            Unauthorized: платит не пассажир
            AlreadyProcessed: поездка уже оплачена
            InsufficientFunds: не хватает средств в кошельке
            PaymentGatewayError: отказ шлюза
        """
        try:
            method = PaymentMethod(method)
        except ValueError as e:
            raise ValidationError(f"Неизвестный способ оплаты: {method}") from e

        ride = await self._require_ride(ride_id)
        payment = await self._settlement.pay_ride(ride, payer_id, method)
        self._notifications.notify_payment_completed(payment)
        return payment

    # =========================================================================
    # ВНУТРЕННИЕ ПРОВЕРКИ
    # =========================================================================

    async def _require_ride(self, ride_id: str) -> Ride:
        ride = await self._rides.get(ride_id)
        if ride is None:
            raise NotFound(f"Поездка {ride_id} не найдена", ride_id=ride_id)
        return ride

    async def _require_driver(self, driver_id: str) -> DriverAvailability:
        driver = await self._drivers.get(driver_id)
        if driver is None:
            raise NotFound(f"Водитель {driver_id} не найден", driver_id=driver_id)
        return driver

    @staticmethod
    def _require_assigned_driver(ride: Ride, driver_id: str) -> None:
        if ride.driver_id != driver_id:
            raise Unauthorized(
                f"Водитель {driver_id} не назначен на поездку {ride.ride_id}",
                ride_id=ride.ride_id,
                driver_id=driver_id,
            )

    @staticmethod
    def _authorize_cancel(ride: Ride, actor_id: str, actor_role: UserRole) -> None:
        allowed = (
            actor_role == UserRole.ADMIN
            or (actor_role == UserRole.RIDER and actor_id == ride.rider_id)
            or (actor_role == UserRole.DRIVER and actor_id == ride.driver_id)
        )
        if not allowed:
            raise Unauthorized(
                f"Пользователь {actor_id} не может отменить поездку {ride.ride_id}",
                ride_id=ride.ride_id,
                user_id=actor_id,
            )

    async def _raise_lost_race(self, ride_id: str, transition: RideTransition) -> None:
        """Условная запись не применилась: ошибка по текущему статусу поездки."""
        current = await self._require_ride(ride_id)
        ensure_transition(current, transition)
        raise InvariantViolation(
            f"Условное обновление поездки {ride_id} ({transition.value}) не применилось, "
            f"хотя статус {current.status.value} допускает переход"
        )

    async def _actual_distance(self, ride: Ride, supplied_km: float | None) -> float:
        if supplied_km is not None:
            return float(supplied_km)
        points = await self._rides.list_tracking_points(ride.ride_id)
        if len(points) > 1:
            return path_distance(points)
        return ride.estimated_distance_km

    async def _settle(self, ride: Ride) -> Ride:
        try:
            payment = await self._settlement.settle(ride)
        except AlreadyProcessed:
            # Пассажир уже оплатил поездку через pay_ride
            await log_info(f"Поездка {ride.ride_id} уже оплачена", type_msg=TypeMsg.DEBUG)
        except (InsufficientFunds, PaymentGatewayError) as e:
            await log_warning(
                f"Поездка {ride.ride_id} завершена, но не оплачена ({e.code}): {e.message}",
                extra={"ride_id": ride.ride_id},
            )
        else:
            self._notifications.notify_payment_completed(payment)
        return await self._require_ride(ride.ride_id)
