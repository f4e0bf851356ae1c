"""
Геометрия: точки, расстояния по гаверсинусу.
Гео-индекс водителей находится в ridehail.core.geo.index.
"""

from ridehail.core.geo.distance import EARTH_RADIUS_KM, calculate_distance, distance_between, path_distance
from ridehail.core.geo.models import GeoPoint, LocationFix, parse_point

__all__ = [
    "EARTH_RADIUS_KM",
    "calculate_distance",
    "distance_between",
    "path_distance",
    "GeoPoint",
    "LocationFix",
    "parse_point",
]
