# backend/services/uv.py
import logging
import math
from numbers import Real
from typing import Any

from services.errors import DataShapeError, ValidationError

logger = logging.getLogger(__name__)

UV_MIN = 0.0
UV_MAX = 11.0

DAYLIGHT_START = 6
DAYLIGHT_END = 18

# Latitude where the latitude factor reaches zero
UV_LAT_BASELINE = 30.0
UV_LAT_MULTIPLIER = 2.0

SUMMER_MONTHS = (4, 5, 6)
WINTER_MONTHS = (11, 12, 1, 2)

UV_LEVELS = [
    (2, 'Low'),
    (5, 'Moderate'),
    (7, 'High'),
    (10, 'Very High'),
]


def _clamp(value: float) -> float:
    return max(UV_MIN, min(UV_MAX, value))


def _base_for_hour(hour: int) -> float:
    if 10 <= hour <= 14:
        return 8.0
    if 8 <= hour <= 16:
        return 6.0
    return 3.0


def _seasonal_offset(lat: float, month: int) -> float:
    if lat < 0:
        month = (month + 5) % 12 + 1
    if month in SUMMER_MONTHS:
        return 2.0
    if month in WINTER_MONTHS:
        return -1.0
    return 0.0


def estimate_uv(lat: float, hour: int, month: int) -> float:
    """Estimate a plausible UV index for when no measurement is available.

    Not a physical model: an hour-of-day band, a seasonal offset and a
    latitude factor, rounded to one decimal and clamped to [0, 11]. Values
    produced here must always reach the UI flagged as simulated.
    """
    if not -90 <= lat <= 90:
        raise ValidationError(f"Latitude out of range: {lat}")
    if not 0 <= hour <= 23:
        raise ValidationError(f"Hour out of range: {hour}")
    if not 1 <= month <= 12:
        raise ValidationError(f"Month out of range: {month}")

    if hour < DAYLIGHT_START or hour > DAYLIGHT_END:
        return 0.0

    uv = _base_for_hour(hour)
    uv += _seasonal_offset(lat, month)
    uv += (UV_LAT_BASELINE - abs(lat)) / UV_LAT_BASELINE * UV_LAT_MULTIPLIER

    estimated = _clamp(round(uv, 1))
    logger.debug(f"Estimated UV index {estimated} (hour {hour}, month {month}, lat {lat})")
    return estimated


class UVEstimator:
    """Callable wrapper so the estimator can be swapped in tests."""

    def estimate(self, lat: float, hour: int, month: int) -> float:
        return estimate_uv(lat, hour, month)


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and not math.isnan(value)


def parse_uv_value(payload: Any) -> float:
    """Pull a UV index out of a ``/uvi`` or ``/onecall`` response."""
    if _is_number(payload):
        return _clamp(float(payload))

    if isinstance(payload, dict):
        current = payload.get('current')
        candidates = [payload.get('value'), payload.get('uvi')]
        if isinstance(current, dict):
            candidates.append(current.get('uvi'))
        for candidate in candidates:
            if _is_number(candidate):
                return _clamp(float(candidate))

    raise DataShapeError('Invalid UV data received')


def uv_risk_level(uv_index: float) -> str:
    if uv_index < 0:
        return 'Unknown'
    for upper, level in UV_LEVELS:
        if uv_index <= upper:
            return level
    return 'Extreme'
