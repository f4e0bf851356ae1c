# src/ridehail/bootstrap.py
"""
Сборка компонентов ядра.

build_in_memory_core() собирает ядро на хранилищах в памяти процесса
(локальный запуск и тесты). build_core() подключает PostgreSQL, Redis
и RabbitMQ и собирает то же ядро поверх них.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable

from ridehail.common.constants import TypeMsg
from ridehail.common.helpers import utc_now
from ridehail.common.logger import log_info
from ridehail.core.drivers import (
    DriverRepository,
    DriverService,
    InMemoryDriverRepository,
    PostgresDriverRepository,
)
from ridehail.core.geo.index import DirectoryGeoIndex, GeoIndex, RedisGeoIndex
from ridehail.core.matching import DriverMatcher
from ridehail.core.notifications import NotificationService
from ridehail.core.payments import (
    HttpPaymentGateway,
    InMemoryLedgerRepository,
    LedgerRepository,
    PaymentGateway,
    PostgresLedgerRepository,
    SettlementEngine,
)
from ridehail.core.pricing import FareEstimator
from ridehail.core.ratings import (
    InMemoryRatingRepository,
    PostgresRatingRepository,
    RatingRepository,
    RatingService,
)
from ridehail.core.rides import (
    InMemoryRideRepository,
    PostgresRideRepository,
    RideRepository,
    RideService,
)
from ridehail.core.users import (
    InMemoryUserDirectory,
    PostgresUserDirectory,
    UserDirectory,
)
from ridehail.infra.database import DatabaseManager, apply_schema
from ridehail.infra.event_bus import EventBus
from ridehail.infra.kv_store import InMemoryKeyValueStore, KeyValueStore
from ridehail.infra.redis_client import RedisClient


@dataclass
class RideHailCore:
    """Собранное ядро: репозитории, сервисы и инфраструктура."""

    users: UserDirectory
    driver_repository: DriverRepository
    ride_repository: RideRepository
    ledger: LedgerRepository
    rating_repository: RatingRepository
    cache: KeyValueStore
    geo_index: GeoIndex
    estimator: FareEstimator
    matcher: DriverMatcher
    settlement: SettlementEngine
    notifications: NotificationService
    rides: RideService
    drivers: DriverService
    ratings: RatingService
    gateway: PaymentGateway | None = None
    db: DatabaseManager | None = None
    redis: RedisClient | None = None
    event_bus: EventBus | None = None
    _started: bool = field(default=False, repr=False)

    def start(self) -> None:
        """Запускает фоновые задачи (consumer уведомлений)."""
        self.notifications.start()
        self._started = True

    async def close(self) -> None:
        """Дожидается фоновых задач и закрывает подключения."""
        await self.rides.drain()
        if self._started:
            await self.notifications.join()
            await self.notifications.stop()
            self._started = False

        if isinstance(self.gateway, HttpPaymentGateway):
            await self.gateway.close()
        if self.event_bus is not None:
            await self.event_bus.disconnect()
        if self.redis is not None:
            await self.redis.disconnect()
        if self.db is not None:
            await self.db.disconnect()


def _assemble(
    *,
    users: UserDirectory,
    driver_repository: DriverRepository,
    ride_repository: RideRepository,
    ledger: LedgerRepository,
    rating_repository: RatingRepository,
    cache: KeyValueStore,
    geo_index: GeoIndex,
    gateway: PaymentGateway | None,
    event_bus: EventBus | None,
    clock: Callable[[], datetime],
    estimator: FareEstimator | None = None,
    commission_rate: Decimal | None = None,
    enforce_candidate_list: bool | None = None,
) -> RideHailCore:
    estimator = estimator or FareEstimator()
    matcher = DriverMatcher(geo_index, cache)
    settlement = SettlementEngine(
        ledger,
        ride_repository,
        gateway=gateway,
        commission_rate=commission_rate,
        clock=clock,
    )
    notifications = NotificationService(event_bus)

    return RideHailCore(
        users=users,
        driver_repository=driver_repository,
        ride_repository=ride_repository,
        ledger=ledger,
        rating_repository=rating_repository,
        cache=cache,
        geo_index=geo_index,
        estimator=estimator,
        matcher=matcher,
        settlement=settlement,
        notifications=notifications,
        rides=RideService(
            ride_repository,
            driver_repository,
            users,
            estimator,
            matcher,
            settlement,
            notifications,
            cache,
            clock=clock,
            enforce_candidate_list=enforce_candidate_list,
        ),
        drivers=DriverService(driver_repository, ride_repository, geo_index, cache, clock=clock),
        ratings=RatingService(rating_repository, ride_repository, driver_repository, clock=clock),
        gateway=gateway,
        event_bus=event_bus,
    )


def build_in_memory_core(
    clock: Callable[[], datetime] = utc_now,
    cache_clock: Callable[[], float] = time.monotonic,
    gateway: PaymentGateway | None = None,
    estimator: FareEstimator | None = None,
    commission_rate: Decimal | None = None,
    staleness_seconds: int | None = None,
    enforce_candidate_list: bool | None = None,
) -> RideHailCore:
    """
    Ядро на хранилищах в памяти процесса.

    Args:
        clock: Источник времени для поездок и координат
        cache_clock: Монотонные часы для TTL кэша
        gateway: Платёжный шлюз (card/upi)
        estimator: Тарификатор (по умолчанию из конфига)
        commission_rate: Комиссия платформы (по умолчанию из конфига)
        staleness_seconds: Порог свежести координат
        enforce_candidate_list: Проверять список кандидатов при принятии

    Returns:
        RideHailCore
    """
    driver_repository = InMemoryDriverRepository()
    ride_repository = InMemoryRideRepository()
    return _assemble(
        users=InMemoryUserDirectory(),
        driver_repository=driver_repository,
        ride_repository=ride_repository,
        ledger=InMemoryLedgerRepository(clock=clock),
        rating_repository=InMemoryRatingRepository(),
        cache=InMemoryKeyValueStore(clock=cache_clock),
        geo_index=DirectoryGeoIndex(driver_repository, staleness_seconds=staleness_seconds, clock=clock),
        gateway=gateway,
        event_bus=None,
        clock=clock,
        estimator=estimator,
        commission_rate=commission_rate,
        enforce_candidate_list=enforce_candidate_list,
    )


async def build_core(apply_migrations: bool = True) -> RideHailCore:
    """
    Ядро поверх PostgreSQL, Redis и RabbitMQ (адреса из конфига).

    Args:
        apply_migrations: Применить migrations/init.sql при старте
    """
    db = DatabaseManager()
    await db.connect()
    if apply_migrations:
        await apply_schema(db)

    redis = RedisClient()
    await redis.connect()

    event_bus = EventBus()
    await event_bus.connect()

    driver_repository = PostgresDriverRepository(db)
    core = _assemble(
        users=PostgresUserDirectory(db),
        driver_repository=driver_repository,
        ride_repository=PostgresRideRepository(db),
        ledger=PostgresLedgerRepository(db),
        rating_repository=PostgresRatingRepository(db),
        cache=redis,
        geo_index=RedisGeoIndex(redis, driver_repository),
        gateway=HttpPaymentGateway(),
        event_bus=event_bus,
        clock=utc_now,
    )
    core.db = db
    core.redis = redis

    await log_info("Ядро собрано: PostgreSQL, Redis, RabbitMQ", type_msg=TypeMsg.INFO)
    return core
