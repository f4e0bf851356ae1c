"""
Таблица переходов жизненного цикла поездки.

requested -> accepted -> started -> completed
requested | accepted -> cancelled
"""

from __future__ import annotations

from enum import Enum

from ridehail.common.constants import RideStatus
from ridehail.common.exceptions import AlreadyAccepted, InvalidState
from ridehail.core.rides.models import Ride


class RideTransition(str, Enum):
    """Переходы поездки."""
    ACCEPT = "accept"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"


# transition -> (допустимые исходные статусы, целевой статус)
ALLOWED_TRANSITIONS: dict[RideTransition, tuple[frozenset[RideStatus], RideStatus]] = {
    RideTransition.ACCEPT: (frozenset({RideStatus.REQUESTED}), RideStatus.ACCEPTED),
    RideTransition.START: (frozenset({RideStatus.ACCEPTED}), RideStatus.STARTED),
    RideTransition.COMPLETE: (frozenset({RideStatus.STARTED}), RideStatus.COMPLETED),
    RideTransition.CANCEL: (
        frozenset({RideStatus.REQUESTED, RideStatus.ACCEPTED}),
        RideStatus.CANCELLED,
    ),
}


def can_transition(status: RideStatus, transition: RideTransition) -> bool:
    """Разрешён ли переход из статуса."""
    sources, _ = ALLOWED_TRANSITIONS[transition]
    return status in sources


def target_status(transition: RideTransition) -> RideStatus:
    return ALLOWED_TRANSITIONS[transition][1]


def ensure_transition(ride: Ride, transition: RideTransition) -> RideStatus:
    """
    Проверяет, что переход допустим, и возвращает целевой статус.

    Raises:
        AlreadyAccepted: принятие поездки, которую уже взял другой водитель
        InvalidState: переход недопустим из текущего статуса
    """
    if can_transition(ride.status, transition):
        return target_status(transition)

    if transition is RideTransition.ACCEPT and ride.driver_id is not None:
        raise AlreadyAccepted(
            f"Поездка {ride.ride_id} уже принята",
            ride_id=ride.ride_id,
            status=ride.status.value,
        )
    raise InvalidState(
        f"Переход {transition.value} недопустим для поездки {ride.ride_id} в статусе {ride.status.value}",
        ride_id=ride.ride_id,
        status=ride.status.value,
        transition=transition.value,
    )
