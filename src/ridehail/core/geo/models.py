"""
Геоточки: адрес поездки и отметка местоположения.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ridehail.common.exceptions import ValidationError


class GeoPoint(BaseModel):
    """Точка в десятичных градусах (точка посадки или высадки)."""

    lat: float = Field(..., ge=-90, le=90, description="Широта")
    lon: float = Field(..., ge=-180, le=180, description="Долгота")
    address: str | None = Field(None, max_length=500, description="Адрес")

    class Config:
        frozen = True
        allow_inf_nan = False


class LocationFix(BaseModel):
    """Местоположение водителя с моментом фиксации."""

    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    recorded_at: datetime

    class Config:
        frozen = True
        allow_inf_nan = False


def parse_point(value: GeoPoint | Mapping[str, Any], field_name: str = "point") -> GeoPoint:
    """
    Приводит входные координаты к GeoPoint.

    Args:
        value: GeoPoint или словарь {"lat", "lon", "address"}
        field_name: Имя поля для сообщения об ошибке

    Returns:
        GeoPoint

    Raises:
        ValidationError: координаты отсутствуют, не числа или вне диапазона
    """
    if isinstance(value, GeoPoint):
        return value
    try:
        return GeoPoint.model_validate(value)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Некорректные координаты в поле {field_name}",
            field=field_name,
            errors=[err["msg"] for err in e.errors()],
        ) from e
