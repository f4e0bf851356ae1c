"""
Модуль подбора водителей.
"""

from ridehail.core.matching.service import DriverMatcher, candidates_key

__all__ = [
    "DriverMatcher",
    "candidates_key",
]
