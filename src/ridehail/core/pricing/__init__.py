"""
Модуль тарификации.
"""

from ridehail.core.pricing.estimator import FareEstimate, FareEstimator

__all__ = [
    "FareEstimate",
    "FareEstimator",
]
