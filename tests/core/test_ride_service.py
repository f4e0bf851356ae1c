# tests/core/test_ride_service.py
"""
Тесты для сервиса поездок: бронирование и жизненный цикл.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from ridehail.bootstrap import RideHailCore, build_in_memory_core
from ridehail.common.constants import (
    PaymentMethod,
    RideClass,
    RidePaymentStatus,
    RideStatus,
    UserRole,
)
from ridehail.common.exceptions import (
    AlreadyAccepted,
    AlreadyProcessed,
    DriverUnavailable,
    InvalidState,
    NotFound,
    Unauthorized,
    ValidationError,
)
from ridehail.common.helpers import round_half_up
from ridehail.core.geo.distance import calculate_distance
from ridehail.core.matching.service import candidates_key
from ridehail.core.rides.models import Ride
from ridehail.core.rides.service import ride_cache_key, ride_location_key
from ridehail.infra.event_bus import EventTypes

from conftest import DROP, PICKUP, ReadBarrier, drain_events


async def book(core: RideHailCore, rider: str, **kwargs) -> Ride:
    ride = await core.rides.book_ride(rider, PICKUP, DROP, **kwargs)
    await core.rides.drain()
    return ride


async def make_ride(core: RideHailCore, rider: str, status: RideStatus, driver_id: str = "drv_1") -> Ride:
    """Поездка в заданном статусе; водитель driver_id уже должен существовать."""
    ride = await book(core, rider)
    if status == RideStatus.REQUESTED:
        return ride
    if status == RideStatus.CANCELLED:
        return await core.rides.cancel_ride(rider, UserRole.RIDER, ride.ride_id, "передумал")

    ride = await core.rides.accept_ride(driver_id, ride.ride_id)
    if status == RideStatus.ACCEPTED:
        return ride
    ride = await core.rides.start_ride(driver_id, ride.ride_id)
    if status == RideStatus.STARTED:
        return ride
    return await core.rides.complete_ride(driver_id, ride.ride_id, actual_distance_km=5.0)


# =============================================================================
# ОЦЕНКА И БРОНИРОВАНИЕ
# =============================================================================

class TestEstimateFare:
    """Тесты для оценки стоимости."""

    @pytest.mark.asyncio
    async def test_estimate_delhi_to_noida(self, core: RideHailCore) -> None:
        """Проверяет эталонную оценку."""
        estimate = await core.rides.estimate_fare(PICKUP, DROP, RideClass.ECONOMY)

        assert 19.7 < estimate.distance_km < 19.9
        assert estimate.fare == round_half_up(
            50 + estimate.distance_km * 12 + estimate.duration_sec / 60 * 2
        )

    @pytest.mark.asyncio
    async def test_premium_costs_more(self, core: RideHailCore) -> None:
        """Проверяет множитель класса."""
        economy = await core.rides.estimate_fare(PICKUP, DROP, "economy")
        premium = await core.rides.estimate_fare(PICKUP, DROP, "premium")
        assert premium.fare > economy.fare

    @pytest.mark.asyncio
    async def test_invalid_point(self, core: RideHailCore) -> None:
        """Проверяет ошибку для координат вне диапазона."""
        with pytest.raises(ValidationError):
            await core.rides.estimate_fare({"lat": 100, "lon": 0}, DROP)

    @pytest.mark.asyncio
    async def test_unknown_class(self, core: RideHailCore) -> None:
        """Проверяет ошибку для неизвестного класса."""
        with pytest.raises(ValidationError):
            await core.rides.estimate_fare(PICKUP, DROP, "limousine")


class TestBookRide:
    """Тесты для бронирования."""

    @pytest.mark.asyncio
    async def test_book_creates_requested_ride(self, core: RideHailCore, rider: str, clock) -> None:
        """Проверяет создание поездки с оценкой."""
        ride = await book(core, rider, ride_class=RideClass.COMFORT, payment_method="wallet")

        assert ride.status == RideStatus.REQUESTED
        assert ride.ride_id.startswith("RIDE_")
        assert ride.rider_id == rider
        assert ride.driver_id is None and ride.vehicle_id is None
        assert ride.ride_class == RideClass.COMFORT
        assert ride.payment_method == PaymentMethod.WALLET
        assert ride.payment_status == RidePaymentStatus.PENDING
        assert ride.requested_at == clock()
        assert 19.7 < ride.estimated_distance_km < 19.9
        assert ride.estimated_fare == (await core.rides.estimate_fare(PICKUP, DROP, "comfort")).fare

        assert await core.ride_repository.get(ride.ride_id) == ride
        cached = await core.cache.get_json(ride_cache_key(ride.ride_id))
        assert cached["status"] == "requested"

    @pytest.mark.asyncio
    async def test_book_publishes_candidates_and_offers(
        self,
        core: RideHailCore,
        rider: str,
        add_driver,
    ) -> None:
        """Проверяет рассылку предложений ближайшим водителям."""
        for i in range(7):
            await add_driver(f"drv_{i}", PICKUP["lat"] + 0.001 * (i + 1), PICKUP["lon"])

        ride = await book(core, rider)

        offered = await core.cache.get_json(candidates_key(ride.ride_id))
        assert offered == ["drv_0", "drv_1", "drv_2", "drv_3", "drv_4"]

        offers = [e for e in drain_events(core) if e.event_type == EventTypes.RIDE_OFFERED]
        assert [e.payload["recipient_id"] for e in offers] == offered
        assert offers[0].payload["ride_id"] == ride.ride_id

    @pytest.mark.asyncio
    async def test_book_without_drivers_stays_requested(self, core: RideHailCore, rider: str) -> None:
        """Проверяет, что отсутствие водителей не ошибка."""
        ride = await book(core, rider)

        assert (await core.ride_repository.get(ride.ride_id)).status == RideStatus.REQUESTED
        assert await core.cache.get_json(candidates_key(ride.ride_id)) is None

    @pytest.mark.asyncio
    async def test_cancel_during_search_skips_offers(
        self,
        core: RideHailCore,
        rider: str,
        add_driver,
        monkeypatch,
    ) -> None:
        """Проверяет, что отменённой во время поиска поездке предложения не рассылаются."""
        await add_driver("drv_1")
        search_done = asyncio.Event()
        find_candidates = core.matcher.find_candidates

        async def slow_find(*args, **kwargs):
            await search_done.wait()
            return await find_candidates(*args, **kwargs)

        monkeypatch.setattr(core.matcher, "find_candidates", slow_find)

        ride = await core.rides.book_ride(rider, PICKUP, DROP)
        await core.rides.cancel_ride(rider, UserRole.RIDER, ride.ride_id, "передумал")
        search_done.set()
        await core.rides.drain()

        assert (await core.ride_repository.get(ride.ride_id)).status == RideStatus.CANCELLED
        assert await core.cache.get_json(candidates_key(ride.ride_id)) is None
        assert not [e for e in drain_events(core) if e.event_type == EventTypes.RIDE_OFFERED]

    @pytest.mark.asyncio
    async def test_unknown_rider(self, core: RideHailCore) -> None:
        """Проверяет NotFound для неизвестного пассажира."""
        with pytest.raises(NotFound):
            await core.rides.book_ride("ghost", PICKUP, DROP)

    @pytest.mark.asyncio
    async def test_blocked_rider(self, core: RideHailCore, add_user) -> None:
        """Проверяет, что заблокированный пользователь считается отсутствующим."""
        add_user("rider_blocked", is_active=False)
        with pytest.raises(NotFound):
            await core.rides.book_ride("rider_blocked", PICKUP, DROP)

    @pytest.mark.asyncio
    async def test_driver_cannot_book(self, core: RideHailCore, add_driver) -> None:
        """Проверяет, что бронировать может только пассажир."""
        await add_driver("drv_1")
        with pytest.raises(Unauthorized):
            await core.rides.book_ride("drv_1", PICKUP, DROP)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field,value", [
        ("pickup", {"lat": 0}),
        ("drop", {"lat": 0, "lon": 200}),
        ("ride_class", "rocket"),
        ("payment_method", "barter"),
    ])
    async def test_invalid_input(self, core: RideHailCore, rider: str, field: str, value) -> None:
        """Проверяет ValidationError для некорректных параметров и отсутствие поездки."""
        kwargs = {"pickup": PICKUP, "drop": DROP, field: value}
        with pytest.raises(ValidationError):
            await core.rides.book_ride(rider, **kwargs)
        assert core.ride_repository._rides == {}


# =============================================================================
# ПРИНЯТИЕ
# =============================================================================

class TestAcceptRide:
    """Тесты для принятия поездки."""

    @pytest.mark.asyncio
    async def test_accept(self, core: RideHailCore, rider: str, add_driver, clock) -> None:
        """Проверяет назначение водителя и ТС."""
        await add_driver("drv_1")
        ride = await book(core, rider)
        drain_events(core)

        accepted = await core.rides.accept_ride("drv_1", ride.ride_id)

        assert accepted.status == RideStatus.ACCEPTED
        assert accepted.driver_id == "drv_1"
        assert accepted.vehicle_id == "VEH_drv_1"
        assert accepted.accepted_at == clock()

        driver = await core.driver_repository.get("drv_1")
        assert driver.is_online is True
        assert driver.is_available is False

        assert (await core.cache.get_json(ride_cache_key(ride.ride_id)))["driver_id"] == "drv_1"
        assert await core.cache.get_json(candidates_key(ride.ride_id)) is None

        events = drain_events(core)
        assert [(e.event_type, e.payload["recipient_id"], e.payload["status"]) for e in events] == [
            (EventTypes.RIDE_STATUS_CHANGED, rider, "accepted"),
        ]

    @pytest.mark.asyncio
    async def test_concurrent_accept_single_winner(
        self,
        core: RideHailCore,
        rider: str,
        add_driver,
        monkeypatch,
    ) -> None:
        """
        Проверяет, что из одновременных принятий выигрывает ровно одно.
        Каждый водитель читает поездку в статусе requested до того, как
        кто-либо из них успевает записать.
        """
        drivers = [f"drv_{i}" for i in range(5)]
        for driver_id in drivers:
            await add_driver(driver_id)
        ride = await book(core, rider)

        barrier = ReadBarrier(len(drivers))
        monkeypatch.setattr(core.ride_repository, "get", barrier.after(core.ride_repository.get))

        results = await asyncio.gather(
            *(core.rides.accept_ride(d, ride.ride_id) for d in drivers),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, Ride)]
        losers = [r for r in results if not isinstance(r, Ride)]
        assert len(winners) == 1
        assert all(isinstance(e, AlreadyAccepted) for e in losers)

        winner_id = winners[0].driver_id
        stored = await core.ride_repository.get(ride.ride_id)
        assert stored.driver_id == winner_id
        for driver_id in drivers:
            driver = await core.driver_repository.get(driver_id)
            assert driver.is_available is (driver_id != winner_id)

    @pytest.mark.asyncio
    async def test_lost_race_releases_driver(
        self,
        core: RideHailCore,
        rider: str,
        add_driver,
        monkeypatch,
    ) -> None:
        """Проверяет, что проигравший по устаревшему снимку водитель снова свободен."""
        await add_driver("drv_1")
        await add_driver("drv_2")
        ride = await book(core, rider)
        await core.rides.accept_ride("drv_1", ride.ride_id)

        real_get = core.ride_repository.get
        stale = [ride]

        async def get(ride_id: str):
            if stale:
                return stale.pop()
            return await real_get(ride_id)

        monkeypatch.setattr(core.ride_repository, "get", get)

        with pytest.raises(AlreadyAccepted):
            await core.rides.accept_ride("drv_2", ride.ride_id)

        assert (await core.driver_repository.get("drv_2")).is_available is True
        assert (await real_get(ride.ride_id)).driver_id == "drv_1"

    @pytest.mark.asyncio
    async def test_busy_driver_cannot_accept_second_ride(
        self,
        core: RideHailCore,
        rider: str,
        add_user,
        add_driver,
    ) -> None:
        """Проверяет, что водитель с активной поездкой недоступен."""
        await add_driver("drv_1")
        first = await book(core, rider)
        second = await book(core, add_user("rider_2"))
        await core.rides.accept_ride("drv_1", first.ride_id)

        with pytest.raises(DriverUnavailable):
            await core.rides.accept_ride("drv_1", second.ride_id)
        assert (await core.ride_repository.get(second.ride_id)).status == RideStatus.REQUESTED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("flags", [
        {"online": False},
        {"verified": False},
        {"vehicle_ready": False},
    ])
    async def test_ineligible_driver(self, core: RideHailCore, rider: str, add_driver, flags) -> None:
        """Проверяет DriverUnavailable для неподходящего водителя."""
        await add_driver("drv_1", **flags)
        ride = await book(core, rider)

        with pytest.raises(DriverUnavailable):
            await core.rides.accept_ride("drv_1", ride.ride_id)

    @pytest.mark.asyncio
    async def test_unknown_ride_and_driver(self, core: RideHailCore, rider: str, add_driver) -> None:
        """Проверяет NotFound для поездки и водителя."""
        await add_driver("drv_1")
        ride = await book(core, rider)

        with pytest.raises(NotFound):
            await core.rides.accept_ride("drv_1", "RIDE_404")
        with pytest.raises(NotFound):
            await core.rides.accept_ride("ghost", ride.ride_id)


class TestCandidateListEnforcement:
    """Тесты для режима, в котором принять поездку может только получивший предложение."""

    @pytest.fixture
    def core(self, clock, estimator) -> RideHailCore:
        return build_in_memory_core(
            clock=clock,
            cache_clock=clock.monotonic,
            estimator=estimator,
            commission_rate=Decimal("0.10"),
            staleness_seconds=300,
            enforce_candidate_list=True,
        )

    @pytest.mark.asyncio
    async def test_not_offered_driver_rejected(self, core: RideHailCore, rider: str, add_driver) -> None:
        """Проверяет Unauthorized для водителя вне списка кандидатов."""
        await add_driver("drv_near")
        await add_driver("drv_far", PICKUP["lat"] + 1.0, PICKUP["lon"])
        ride = await book(core, rider)

        with pytest.raises(Unauthorized):
            await core.rides.accept_ride("drv_far", ride.ride_id)
        assert (await core.driver_repository.get("drv_far")).is_available is True

        accepted = await core.rides.accept_ride("drv_near", ride.ride_id)
        assert accepted.driver_id == "drv_near"


# =============================================================================
# НАЧАЛО, ЗАВЕРШЕНИЕ, ТРЕК
# =============================================================================

class TestStartAndComplete:
    """Тесты для начала и завершения поездки."""

    @pytest.fixture
    async def accepted(self, core: RideHailCore, rider: str, add_driver) -> Ride:
        await add_driver("drv_1")
        await add_driver("drv_2")
        return await make_ride(core, rider, RideStatus.ACCEPTED)

    @pytest.mark.asyncio
    async def test_start(self, core: RideHailCore, accepted: Ride, clock) -> None:
        """Проверяет переход accepted -> started."""
        clock.advance(120)
        started = await core.rides.start_ride("drv_1", accepted.ride_id)

        assert started.status == RideStatus.STARTED
        assert started.started_at == clock()

    @pytest.mark.asyncio
    async def test_start_by_other_driver(self, core: RideHailCore, accepted: Ride) -> None:
        """Проверяет, что начать может только назначенный водитель."""
        with pytest.raises(Unauthorized):
            await core.rides.start_ride("drv_2", accepted.ride_id)
        assert (await core.ride_repository.get(accepted.ride_id)).status == RideStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_complete_with_supplied_distance(
        self,
        core: RideHailCore,
        accepted: Ride,
        rider: str,
        clock,
    ) -> None:
        """Проверяет итоговую стоимость, освобождение водителя и расчёт наличными."""
        await core.rides.start_ride("drv_1", accepted.ride_id)
        clock.advance(600)
        drain_events(core)

        completed = await core.rides.complete_ride("drv_1", accepted.ride_id, actual_distance_km=5.0)

        # 50 + 5*12 + 10*2 = 130
        assert completed.status == RideStatus.COMPLETED
        assert completed.actual_distance_km == 5.0
        assert completed.actual_duration_sec == 600
        assert completed.actual_fare == 130
        assert completed.completed_at == clock()
        assert completed.payment_status == RidePaymentStatus.PAID

        driver = await core.driver_repository.get("drv_1")
        assert driver.is_available is True
        assert driver.total_rides == 1
        assert driver.total_earnings == Decimal("117.00")

        payment = await core.settlement.payment_for_ride(accepted.ride_id)
        assert payment.amount == Decimal("130.00")
        assert payment.driver_share == Decimal("117.00")
        assert payment.commission == Decimal("13.00")
        assert (await core.settlement.wallet("drv_1")).balance == Decimal("117.00")

        assert await core.cache.get_json(ride_cache_key(accepted.ride_id)) is None

        events = [(e.event_type, e.payload["recipient_id"]) for e in drain_events(core)]
        assert (EventTypes.RIDE_STATUS_CHANGED, rider) in events
        assert (EventTypes.RATING_REQUESTED, rider) in events
        assert (EventTypes.RATING_REQUESTED, "drv_1") in events
        assert (EventTypes.PAYMENT_COMPLETED, "drv_1") in events

    @pytest.mark.asyncio
    async def test_complete_uses_tracked_path(self, core: RideHailCore, accepted: Ride, clock) -> None:
        """Проверяет расчёт расстояния по точкам трека."""
        await core.rides.start_ride("drv_1", accepted.ride_id)
        await core.rides.track_location(accepted.ride_id, PICKUP)
        clock.advance(1800)
        await core.rides.track_location(accepted.ride_id, DROP)

        completed = await core.rides.complete_ride("drv_1", accepted.ride_id)

        expected_km = calculate_distance(PICKUP["lat"], PICKUP["lon"], DROP["lat"], DROP["lon"])
        assert completed.actual_distance_km == pytest.approx(expected_km)
        assert completed.actual_fare == round_half_up(50 + expected_km * 12 + 30 * 2)
        assert await core.cache.get_json(ride_location_key(accepted.ride_id)) is None

    @pytest.mark.asyncio
    async def test_complete_without_track_uses_estimate(self, core: RideHailCore, accepted: Ride) -> None:
        """Проверяет, что без трека берётся оценочное расстояние."""
        await core.rides.start_ride("drv_1", accepted.ride_id)
        completed = await core.rides.complete_ride("drv_1", accepted.ride_id)

        assert completed.actual_distance_km == pytest.approx(accepted.estimated_distance_km)
        assert completed.actual_duration_sec == 0

    @pytest.mark.asyncio
    async def test_second_complete_rejected_single_payment(
        self,
        core: RideHailCore,
        accepted: Ride,
    ) -> None:
        """Проверяет, что повторное завершение отклоняется и платёж один."""
        await core.rides.start_ride("drv_1", accepted.ride_id)
        await core.rides.complete_ride("drv_1", accepted.ride_id, actual_distance_km=5.0)

        with pytest.raises(InvalidState):
            await core.rides.complete_ride("drv_1", accepted.ride_id, actual_distance_km=5.0)

        transactions = await core.settlement.transactions("drv_1")
        assert len(transactions) == 1
        assert (await core.driver_repository.get("drv_1")).total_rides == 1

    @pytest.mark.asyncio
    async def test_complete_by_other_driver(self, core: RideHailCore, accepted: Ride) -> None:
        """Проверяет Unauthorized для чужого водителя."""
        await core.rides.start_ride("drv_1", accepted.ride_id)
        with pytest.raises(Unauthorized):
            await core.rides.complete_ride("drv_2", accepted.ride_id)

    @pytest.mark.asyncio
    async def test_negative_distance(self, core: RideHailCore, accepted: Ride) -> None:
        """Проверяет ValidationError для отрицательного расстояния."""
        await core.rides.start_ride("drv_1", accepted.ride_id)
        with pytest.raises(ValidationError):
            await core.rides.complete_ride("drv_1", accepted.ride_id, actual_distance_km=-1)


class TestTracking:
    """Тесты для трека поездки."""

    @pytest.mark.asyncio
    async def test_track_caches_last_point(self, core: RideHailCore, rider: str, add_driver, clock) -> None:
        """Проверяет сохранение точки и кэш последней позиции."""
        await add_driver("drv_1")
        ride = await make_ride(core, rider, RideStatus.ACCEPTED)

        point = await core.rides.track_location(ride.ride_id, PICKUP, accuracy=5.0, heading=90, speed=30)

        assert point.recorded_at == clock()
        assert await core.ride_repository.list_tracking_points(ride.ride_id) == [point]
        last = await core.rides.ride_location(ride.ride_id)
        assert last["lat"] == PICKUP["lat"]
        assert last["heading"] == 90

    @pytest.mark.asyncio
    async def test_track_requires_active_ride(self, core: RideHailCore, rider: str) -> None:
        """Проверяет, что поездку в поиске отслеживать нельзя."""
        ride = await book(core, rider)
        with pytest.raises(InvalidState):
            await core.rides.track_location(ride.ride_id, PICKUP)

    @pytest.mark.asyncio
    async def test_track_invalid_heading(self, core: RideHailCore, rider: str, add_driver) -> None:
        """Проверяет ValidationError для курса вне [0, 360)."""
        await add_driver("drv_1")
        ride = await make_ride(core, rider, RideStatus.STARTED)
        with pytest.raises(ValidationError):
            await core.rides.track_location(ride.ride_id, PICKUP, heading=400)


# =============================================================================
# ОТМЕНА
# =============================================================================

class TestCancelRide:
    """Тесты для отмены поездки."""

    @pytest.mark.asyncio
    async def test_rider_cancels_requested(self, core: RideHailCore, rider: str, clock) -> None:
        """Проверяет отмену пассажиром до принятия."""
        ride = await book(core, rider)

        cancelled = await core.rides.cancel_ride(rider, "rider", ride.ride_id, "передумал")

        assert cancelled.status == RideStatus.CANCELLED
        assert cancelled.cancelled_at == clock()
        assert cancelled.cancellation_reason == "передумал"
        assert cancelled.cancelled_by == UserRole.RIDER
        assert cancelled.cancelled_by_id == rider
        assert await core.cache.get_json(ride_cache_key(ride.ride_id)) is None

    @pytest.mark.asyncio
    async def test_rider_cancel_releases_driver(self, core: RideHailCore, rider: str, add_driver) -> None:
        """Проверяет, что назначенный водитель освобождается и получает уведомление."""
        await add_driver("drv_1")
        ride = await make_ride(core, rider, RideStatus.ACCEPTED)
        drain_events(core)

        cancelled = await core.rides.cancel_ride(rider, UserRole.RIDER, ride.ride_id)

        assert cancelled.driver_id is None and cancelled.vehicle_id is None
        assert (await core.driver_repository.get("drv_1")).is_available is True
        events = drain_events(core)
        assert [e.payload["recipient_id"] for e in events] == ["drv_1"]

    @pytest.mark.asyncio
    async def test_driver_cancels_accepted(self, core: RideHailCore, rider: str, add_driver) -> None:
        """Проверяет отмену назначенным водителем."""
        await add_driver("drv_1")
        ride = await make_ride(core, rider, RideStatus.ACCEPTED)

        cancelled = await core.rides.cancel_ride("drv_1", UserRole.DRIVER, ride.ride_id, "колесо")

        assert cancelled.cancelled_by == UserRole.DRIVER
        assert (await core.driver_repository.get("drv_1")).is_available is True

    @pytest.mark.asyncio
    async def test_admin_cancels_any(self, core: RideHailCore, rider: str, admin: str) -> None:
        """Проверяет, что администратор может отменить любую поездку."""
        ride = await book(core, rider)
        cancelled = await core.rides.cancel_ride(admin, UserRole.ADMIN, ride.ride_id)
        assert cancelled.cancelled_by == UserRole.ADMIN

    @pytest.mark.asyncio
    async def test_other_rider_unauthorized(self, core: RideHailCore, rider: str, add_user) -> None:
        """Проверяет, что чужой пассажир не может отменить поездку."""
        ride = await book(core, rider)
        with pytest.raises(Unauthorized):
            await core.rides.cancel_ride(add_user("rider_2"), UserRole.RIDER, ride.ride_id)
        assert (await core.ride_repository.get(ride.ride_id)).status == RideStatus.REQUESTED

    @pytest.mark.asyncio
    async def test_unassigned_driver_unauthorized(self, core: RideHailCore, rider: str, add_driver) -> None:
        """Проверяет, что неназначенный водитель не может отменить поездку."""
        await add_driver("drv_1")
        await add_driver("drv_2")
        ride = await make_ride(core, rider, RideStatus.ACCEPTED)
        with pytest.raises(Unauthorized):
            await core.rides.cancel_ride("drv_2", UserRole.DRIVER, ride.ride_id)

    @pytest.mark.asyncio
    async def test_claimed_role_must_match(self, core: RideHailCore, rider: str) -> None:
        """Проверяет, что нельзя отменить от имени чужой роли."""
        ride = await book(core, rider)
        with pytest.raises(Unauthorized):
            await core.rides.cancel_ride(rider, UserRole.ADMIN, ride.ride_id)

    @pytest.mark.asyncio
    async def test_cancel_started_rejected(self, core: RideHailCore, rider: str, add_driver) -> None:
        """Проверяет, что начатую поездку отменить нельзя."""
        await add_driver("drv_1")
        ride = await make_ride(core, rider, RideStatus.STARTED)
        with pytest.raises(InvalidState):
            await core.rides.cancel_ride(rider, UserRole.RIDER, ride.ride_id)

    @pytest.mark.asyncio
    async def test_cancel_rereads_after_concurrent_accept(
        self,
        core: RideHailCore,
        rider: str,
        add_driver,
        monkeypatch,
    ) -> None:
        """Проверяет, что отмена по устаревшему снимку перечитывает поездку и освобождает водителя."""
        await add_driver("drv_1")
        ride = await book(core, rider)
        await core.rides.accept_ride("drv_1", ride.ride_id)

        real_get = core.ride_repository.get
        stale = [ride]

        async def get(ride_id: str):
            if stale:
                return stale.pop()
            return await real_get(ride_id)

        monkeypatch.setattr(core.ride_repository, "get", get)

        cancelled = await core.rides.cancel_ride(rider, UserRole.RIDER, ride.ride_id)

        assert cancelled.status == RideStatus.CANCELLED
        assert (await core.driver_repository.get("drv_1")).is_available is True


# =============================================================================
# ЗАМКНУТОСТЬ ПЕРЕХОДОВ
# =============================================================================

INVALID_TRANSITIONS = [
    (RideStatus.REQUESTED, "start"),
    (RideStatus.REQUESTED, "complete"),
    (RideStatus.ACCEPTED, "accept"),
    (RideStatus.ACCEPTED, "complete"),
    (RideStatus.STARTED, "accept"),
    (RideStatus.STARTED, "start"),
    (RideStatus.STARTED, "cancel"),
    (RideStatus.COMPLETED, "accept"),
    (RideStatus.COMPLETED, "start"),
    (RideStatus.COMPLETED, "complete"),
    (RideStatus.COMPLETED, "cancel"),
    (RideStatus.CANCELLED, "accept"),
    (RideStatus.CANCELLED, "start"),
    (RideStatus.CANCELLED, "complete"),
    (RideStatus.CANCELLED, "cancel"),
]


class TestTransitionClosure:
    """Недопустимые переходы отклоняются и не меняют поездку."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,transition", INVALID_TRANSITIONS)
    async def test_invalid_transition(
        self,
        core: RideHailCore,
        rider: str,
        admin: str,
        add_driver,
        status: RideStatus,
        transition: str,
    ) -> None:
        """Проверяет InvalidState и неизменность снимка."""
        await add_driver("drv_1")
        await add_driver("drv_2")
        ride = await make_ride(core, rider, status)
        before = await core.ride_repository.get(ride.ride_id)

        calls = {
            "accept": lambda: core.rides.accept_ride("drv_2", ride.ride_id),
            "start": lambda: core.rides.start_ride("drv_1", ride.ride_id),
            "complete": lambda: core.rides.complete_ride("drv_1", ride.ride_id),
            "cancel": lambda: core.rides.cancel_ride(admin, UserRole.ADMIN, ride.ride_id),
        }
        with pytest.raises(InvalidState):
            await calls[transition]()

        assert await core.ride_repository.get(ride.ride_id) == before
        assert (await core.driver_repository.get("drv_2")).is_available is True


# =============================================================================
# ЧТЕНИЕ И ОПЛАТА
# =============================================================================

class TestGetRide:
    """Тесты для чтения поездки."""

    @pytest.mark.asyncio
    async def test_participants_only(self, core: RideHailCore, rider: str, add_user) -> None:
        """Проверяет доступ участника и отказ постороннему."""
        ride = await book(core, rider)

        assert (await core.rides.get_ride(ride.ride_id, rider)).ride_id == ride.ride_id
        assert (await core.rides.get_ride(ride.ride_id)).ride_id == ride.ride_id
        with pytest.raises(Unauthorized):
            await core.rides.get_ride(ride.ride_id, add_user("rider_2"))
        with pytest.raises(NotFound):
            await core.rides.get_ride("RIDE_404")


class TestWalletRidePayment:
    """Тесты для оплаты из кошелька при завершении."""

    @pytest.mark.asyncio
    async def test_insufficient_funds_then_pay(
        self,
        core: RideHailCore,
        rider: str,
        add_driver,
    ) -> None:
        """Проверяет, что нехватка средств не откатывает завершение, а повторная оплата проходит."""
        await add_driver("drv_1")
        ride = await book(core, rider, payment_method=PaymentMethod.WALLET)
        await core.rides.accept_ride("drv_1", ride.ride_id)
        await core.rides.start_ride("drv_1", ride.ride_id)

        completed = await core.rides.complete_ride("drv_1", ride.ride_id, actual_distance_km=5.0)

        assert completed.status == RideStatus.COMPLETED
        assert completed.payment_status == RidePaymentStatus.FAILED
        assert await core.settlement.payment_for_ride(ride.ride_id) is None
        assert (await core.settlement.wallet("drv_1")).balance == Decimal("0.00")

        await core.settlement.top_up(rider, 500)
        payment = await core.rides.pay_ride(rider, ride.ride_id, "wallet")

        assert payment.amount == Decimal("130.00")
        assert (await core.settlement.wallet(rider)).balance == Decimal("370.00")
        assert (await core.settlement.wallet("drv_1")).balance == Decimal("117.00")
        assert (await core.ride_repository.get(ride.ride_id)).payment_status == RidePaymentStatus.PAID

        with pytest.raises(AlreadyProcessed):
            await core.rides.pay_ride(rider, ride.ride_id, "wallet")

    @pytest.mark.asyncio
    async def test_pay_by_stranger(self, core: RideHailCore, rider: str, add_user, add_driver) -> None:
        """Проверяет, что оплатить может только пассажир поездки."""
        await add_driver("drv_1")
        ride = await make_ride(core, rider, RideStatus.COMPLETED)
        with pytest.raises(Unauthorized):
            await core.rides.pay_ride(add_user("rider_2"), ride.ride_id, "cash")

    @pytest.mark.asyncio
    async def test_pay_before_completion(self, core: RideHailCore, rider: str) -> None:
        """Проверяет InvalidState для незавершённой поездки."""
        ride = await book(core, rider)
        with pytest.raises(InvalidState):
            await core.rides.pay_ride(rider, ride.ride_id, "cash")
