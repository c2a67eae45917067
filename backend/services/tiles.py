# backend/services/tiles.py
import logging
from typing import Optional

import requests

from services.config import WeatherConfig
from services.errors import NetworkError, ProviderError, ValidationError
from services.guards import RateGate, UrlGuard
from services.transport import DEFAULT_HEADERS, STATUS_MESSAGES

logger = logging.getLogger(__name__)

TILE_LAYERS = frozenset({
    'clouds_new',
    'precipitation_new',
    'pressure_new',
    'wind_new',
    'temp_new',
})

MAX_ZOOM = 18


class TileFetcher:
    """Proxy for the provider's weather map tiles (PNG)."""

    def __init__(self, config: WeatherConfig,
                 url_guard: Optional[UrlGuard] = None,
                 rate_gate: Optional[RateGate] = None):
        self.config = config
        self.url_guard = url_guard if url_guard is not None else UrlGuard()
        self.rate_gate = rate_gate if rate_gate is not None else RateGate(max_requests=config.rate_limit)

    @staticmethod
    def _validate_tile(layer: str, z: int, x: int, y: int) -> None:
        if layer not in TILE_LAYERS:
            raise ValidationError(f"Unknown tile layer: {layer}")
        if not 0 <= z <= MAX_ZOOM:
            raise ValidationError(f"Zoom must be between 0 and {MAX_ZOOM}")
        span = 2 ** z
        if not (0 <= x < span and 0 <= y < span):
            raise ValidationError('Missing required tile coordinates')

    def fetch_tile(self, layer: str, z: int, x: int, y: int) -> bytes:
        self._validate_tile(layer, z, x, y)
        if not self.config.has_api_key():
            raise ValidationError('Weather API key is not configured')

        url = f"{self.config.tile_url}/{layer}/{z}/{x}/{y}.png"
        self.url_guard.validate(url)
        self.rate_gate.check_and_consume()

        try:
            response = requests.get(
                url,
                params={'appid': self.config.api_key},
                headers={'User-Agent': DEFAULT_HEADERS['User-Agent']},
                timeout=self.config.request_timeout,
            )
        except requests.exceptions.Timeout:
            logger.error(f"Tile request timed out: {layer}/{z}/{x}/{y}")
            raise NetworkError('Request timed out. Please try again.', timed_out=True)
        except requests.exceptions.RequestException as e:
            logger.error(f"Error fetching weather tile: {e}")
            raise NetworkError(f"Failed to fetch weather tile: {e}")

        if response.status_code != 200:
            logger.error(f"Tile provider returned {response.status_code} for {layer}/{z}/{x}/{y}")
            raise ProviderError(
                STATUS_MESSAGES.get(response.status_code, f"Error fetching weather tile: HTTP {response.status_code}"),
                status=response.status_code,
            )
        return response.content
