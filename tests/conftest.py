# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import asyncio
import json
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault(
    "RIDEHAIL_CONFIG_PATH",
    str(Path(__file__).parent.parent / "config" / "config.json"),
)
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")

from ridehail.bootstrap import RideHailCore, build_in_memory_core  # noqa: E402
from ridehail.common.constants import UserRole, VehicleType  # noqa: E402
from ridehail.core.drivers.models import DriverAvailability, Vehicle  # noqa: E402
from ridehail.core.geo.models import LocationFix  # noqa: E402
from ridehail.core.pricing.estimator import FareEstimator  # noqa: E402
from ridehail.core.users.directory import UserRecord  # noqa: E402
from ridehail.infra.event_bus import DomainEvent  # noqa: E402


# Нью-Дели: Connaught Place -> Noida Sector 18
PICKUP = {"lat": 28.6139, "lon": 77.2090, "address": "Connaught Place"}
DROP = {"lat": 28.5355, "lon": 77.3910, "address": "Noida Sector 18"}

START_TIME = datetime(2024, 1, 15, 9, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# ЧАСЫ
# =============================================================================

class FakeClock:
    """Управляемые часы: время двигается только вызовом advance()."""

    def __init__(self, start: datetime = START_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now

    def monotonic(self) -> float:
        return self.now.timestamp()


@pytest.fixture
def clock() -> FakeClock:
    """Часы, стоящие на START_TIME."""
    return FakeClock()


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "PROJECT_NAME": "ridehail_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "ENVIRONMENT": "test",
        "LOG_LEVEL": "DEBUG",
        "LOG_FORMAT": "json",
        "LOG_TO_FILE": False,
        "DB_HOST": "db.local",
        "DB_PORT": 5433,
        "DB_NAME": "ridehail_test",
        "DB_USER": "tester",
        "REDIS_HOST": "redis.local",
        "REDIS_PORT": 6380,
        "REDIS_DB": 2,
        "REDIS_NAMESPACE": "ridehail_test",
        "RIDE_TTL": 120,
        "RIDE_CANDIDATES_TTL": 30,
        "RABBITMQ_EXCHANGE": "ridehail.test",
        "BASE_FARE": 40.0,
        "PER_KM_RATE": 10.0,
        "PER_MINUTE_RATE": 1.5,
        "CLASS_MULTIPLIERS": {"economy": 1.0, "comfort": 1.3, "premium": 2.0},
        "AVERAGE_SPEED_KMH": 25.0,
        "MAX_MATCHING_DISTANCE_KM": 5.0,
        "MAX_CANDIDATES": 3,
        "LOCATION_STALENESS_SEC": 120,
        "ENFORCE_CANDIDATE_LIST": True,
        "PLATFORM_COMMISSION_RATE": 0.15,
        "NOTIFICATION_QUEUE_SIZE": 50,
    }


@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Создаёт временный файл конфигурации."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(mock_config, ensure_ascii=False, indent=2))
    return config_file


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_conn() -> AsyncMock:
    """Мок соединения внутри транзакции."""
    conn = AsyncMock()
    conn.execute = AsyncMock(return_value="UPDATE 1")
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchval = AsyncMock(return_value=None)
    return conn


@pytest.fixture
def mock_db(mock_conn: AsyncMock) -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="UPDATE 1")
    db.fetchval = AsyncMock(return_value=None)

    @asynccontextmanager
    async def transaction() -> AsyncGenerator[AsyncMock, None]:
        yield mock_conn

    db.transaction = MagicMock(side_effect=transaction)
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis (методы RedisClient)."""
    redis = AsyncMock()
    redis.get_json = AsyncMock(return_value=None)
    redis.set_json = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.geoadd = AsyncMock(return_value=1)
    redis.georadius = AsyncMock(return_value=[])
    redis.georem = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=None)
    event_bus.is_connected = True
    return event_bus


# =============================================================================
# ЯДРО В ПАМЯТИ
# =============================================================================

@pytest.fixture
def estimator() -> FareEstimator:
    """Тарификатор с базовыми ставками."""
    return FareEstimator(
        base_fare=50.0,
        per_km_rate=12.0,
        per_minute_rate=2.0,
        class_multipliers={"economy": 1.0, "comfort": 1.2, "premium": 1.5},
        average_speed_kmh=20.0,
    )


@pytest.fixture
def core(clock: FakeClock, estimator: FareEstimator) -> RideHailCore:
    """Ядро на хранилищах в памяти с управляемыми часами."""
    return build_in_memory_core(
        clock=clock,
        cache_clock=clock.monotonic,
        estimator=estimator,
        commission_rate=Decimal("0.10"),
        staleness_seconds=300,
        enforce_candidate_list=False,
    )


@pytest.fixture
def add_user(core: RideHailCore) -> Callable[..., str]:
    """Фабрика пользователей справочника."""
    def _add(user_id: str, role: UserRole = UserRole.RIDER, is_active: bool = True) -> str:
        core.users.add(UserRecord(user_id=user_id, role=role, name=user_id, is_active=is_active))
        return user_id

    return _add


@pytest.fixture
def rider(add_user: Callable[..., str]) -> str:
    return add_user("rider_1")


@pytest.fixture
def admin(add_user: Callable[..., str]) -> str:
    return add_user("admin_1", UserRole.ADMIN)


@pytest.fixture
def add_driver(
    core: RideHailCore,
    clock: FakeClock,
    add_user: Callable[..., str],
) -> Callable[..., Awaitable[DriverAvailability]]:
    """
    Фабрика водителей: пользователь с ролью driver, ТС и координаты.
    По умолчанию водитель онлайн, свободен, верифицирован и стоит у точки посадки.
    """
    async def _add(
        driver_id: str,
        lat: float = PICKUP["lat"],
        lon: float = PICKUP["lon"],
        *,
        online: bool = True,
        available: bool = True,
        verified: bool = True,
        vehicle_ready: bool = True,
        located_at: datetime | None = None,
    ) -> DriverAvailability:
        add_user(driver_id, UserRole.DRIVER)
        driver = DriverAvailability(
            driver_id=driver_id,
            is_online=online,
            is_available=available and online,
            is_verified=verified,
            location=LocationFix(lat=lat, lon=lon, recorded_at=located_at or clock()),
            vehicle=Vehicle(
                vehicle_id=f"VEH_{driver_id}",
                vehicle_type=VehicleType.CAR,
                vehicle_number=f"DL01{driver_id[-2:].upper()}",
                is_active=True,
                is_verified=vehicle_ready,
            ),
        )
        await core.driver_repository.save(driver)
        return driver

    return _add


def drain_events(core: RideHailCore) -> list[DomainEvent]:
    """Забирает все события из очереди уведомлений (consumer не запущен)."""
    events = []
    queue: asyncio.Queue[DomainEvent] = core.notifications._queue
    while not queue.empty():
        events.append(queue.get_nowait())
        queue.task_done()
    return events


async def finish_ride(
    core: RideHailCore,
    rider_id: str,
    driver_id: str,
    distance_km: float = 5.0,
    duration_sec: float = 600,
) -> str:
    """Проводит поездку от бронирования до завершения. Возвращает ride_id."""
    ride = await core.rides.book_ride(rider_id, PICKUP, DROP)
    await core.rides.drain()
    await core.rides.accept_ride(driver_id, ride.ride_id)
    await core.rides.start_ride(driver_id, ride.ride_id)
    core.rides._clock.advance(duration_sec)
    await core.rides.complete_ride(driver_id, ride.ride_id, actual_distance_km=distance_km)
    return ride.ride_id


class ReadBarrier:
    """
    Барьер для одновременных операций: первые parties вызовов wait()
    ждут друг друга, дальше барьер открыт.

    Операции в памяти не уступают управление event loop, и без барьера
    asyncio.gather выполняет их по очереди.
    """

    def __init__(self, parties: int) -> None:
        self._parties = parties
        self._arrived = 0
        self._open = asyncio.Event()

    async def wait(self) -> None:
        self._arrived += 1
        if self._arrived >= self._parties:
            self._open.set()
        await self._open.wait()

    def after(self, read: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        """Обёртка: сначала чтение, затем ожидание остальных участников."""
        async def _read(*args: Any, **kwargs: Any) -> Any:
            result = await read(*args, **kwargs)
            await self.wait()
            return result

        return _read
