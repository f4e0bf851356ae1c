"""
Расстояния на сфере (формула гаверсинуса).
"""

from __future__ import annotations

import math
from typing import Iterable, Protocol

EARTH_RADIUS_KM = 6371.0


class _HasCoordinates(Protocol):
    lat: float
    lon: float


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Расстояние между двумя точками по дуге большого круга.

    Args:
        lat1: Широта первой точки
        lon1: Долгота первой точки
        lat2: Широта второй точки
        lon2: Долгота второй точки

    Returns:
        Расстояние в километрах
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    # min() страхует от a > 1 из-за погрешности float
    c = 2 * math.asin(math.sqrt(min(1.0, a)))

    return EARTH_RADIUS_KM * c


def distance_between(a: _HasCoordinates, b: _HasCoordinates) -> float:
    """Расстояние между объектами с полями lat/lon, км."""
    return calculate_distance(a.lat, a.lon, b.lat, b.lon)


def path_distance(points: Iterable[_HasCoordinates]) -> float:
    """
    Длина ломаной: сумма расстояний между соседними точками.
    Точки должны быть упорядочены по времени.
    """
    total = 0.0
    previous = None
    for point in points:
        if previous is not None:
            total += distance_between(previous, point)
        previous = point
    return total
