# backend/services/config.py
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

API_KEY_PLACEHOLDER = 'YOUR_API_KEY_HERE'

MAX_CACHE_TTL = 600
MAX_RATE_LIMIT = 100
MAX_REQUEST_TIMEOUT = 30


@dataclass(frozen=True)
class WeatherConfig:
    """Immutable settings shared by every component of the weather core.

    Built once at process start and handed to each constructor.
    """

    api_key: str = ''
    base_url: str = 'https://api.openweathermap.org/data/2.5'
    geocoding_url: str = 'https://api.openweathermap.org/geo/1.0'
    tile_url: str = 'https://tile.openweathermap.org/map'
    units: str = 'metric'
    cache_ttl: float = 300
    cache_max_entries: int = 100
    rate_limit: int = 60
    request_timeout: float = 10
    search_debounce: float = 0.3
    search_country: Optional[str] = None
    cors_origins: Tuple[str, ...] = field(default=('http://localhost:3000', 'http://localhost:8080'))

    def __post_init__(self):
        # Caps mirror the limits the dashboard always enforced on its settings
        object.__setattr__(self, 'cache_ttl', max(1, min(float(self.cache_ttl), MAX_CACHE_TTL)))
        object.__setattr__(self, 'rate_limit', max(1, min(int(self.rate_limit), MAX_RATE_LIMIT)))
        object.__setattr__(self, 'request_timeout', max(1, min(float(self.request_timeout), MAX_REQUEST_TIMEOUT)))
        object.__setattr__(self, 'cache_max_entries', max(1, int(self.cache_max_entries)))
        object.__setattr__(self, 'base_url', self.base_url.rstrip('/'))
        object.__setattr__(self, 'geocoding_url', self.geocoding_url.rstrip('/'))
        object.__setattr__(self, 'tile_url', self.tile_url.rstrip('/'))

    def has_api_key(self) -> bool:
        return bool(self.api_key) and self.api_key != API_KEY_PLACEHOLDER and len(self.api_key) > 10

    @classmethod
    def from_env(cls) -> 'WeatherConfig':
        defaults = cls()
        origins = os.getenv('CORS_ORIGINS')
        return cls(
            api_key=os.getenv('OPENWEATHER_API_KEY', ''),
            base_url=os.getenv('OPENWEATHER_BASE_URL', defaults.base_url),
            geocoding_url=os.getenv('OPENWEATHER_GEOCODING_URL', defaults.geocoding_url),
            units=os.getenv('WEATHER_UNITS', defaults.units),
            cache_ttl=float(os.getenv('WEATHER_CACHE_TTL', defaults.cache_ttl)),
            cache_max_entries=int(os.getenv('WEATHER_CACHE_MAX_ENTRIES', defaults.cache_max_entries)),
            rate_limit=int(os.getenv('WEATHER_RATE_LIMIT', defaults.rate_limit)),
            request_timeout=float(os.getenv('WEATHER_REQUEST_TIMEOUT', defaults.request_timeout)),
            search_country=os.getenv('WEATHER_SEARCH_COUNTRY') or None,
            cors_origins=tuple(o.strip() for o in origins.split(',') if o.strip()) if origins else defaults.cors_origins,
        )
