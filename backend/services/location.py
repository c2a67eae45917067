# backend/services/location.py
import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from numbers import Real
from typing import TYPE_CHECKING, Any, Callable, List, Optional

from services.cache import TTLCache
from services.config import WeatherConfig
from services.errors import DataShapeError, ValidationError

if TYPE_CHECKING:
    from services.transport import ProviderTransport

logger = logging.getLogger(__name__)

MAX_CITY_NAME_LENGTH = 100
MIN_QUERY_LENGTH = 2
MAX_SEARCH_RESULTS = 5

_CITY_NAME_PATTERN = re.compile(r"^(?:[^\W_]|[\s\-'.,()])+$")
_WHITESPACE = re.compile(r'\s+')


def validate_city_name(city: Any) -> str:
    if not isinstance(city, str) or not city.strip():
        raise ValidationError('City name is required')
    sanitized = _WHITESPACE.sub(' ', city.strip())
    if len(sanitized) > MAX_CITY_NAME_LENGTH:
        raise ValidationError(f"City name must be less than {MAX_CITY_NAME_LENGTH} characters")
    if not _CITY_NAME_PATTERN.match(sanitized):
        raise ValidationError('City name contains invalid characters')
    return sanitized


def validate_coordinates(lat: Any, lon: Any) -> None:
    for name, value, bound in (('latitude', lat, 90), ('longitude', lon, 180)):
        if not isinstance(value, Real) or isinstance(value, bool) or value != value:
            raise ValidationError(f"Invalid {name} format")
        if not -bound <= value <= bound:
            raise ValidationError(f"Invalid {name}. Must be between -{bound} and {bound}")


@dataclass(frozen=True)
class Location:
    """Either a city name or a coordinate pair, never both."""

    city: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None

    def __post_init__(self):
        has_city = self.city is not None
        has_coords = self.lat is not None or self.lon is not None
        if has_city == has_coords:
            raise ValidationError('Either city name or coordinates (lat, lon) are required')
        if has_city:
            object.__setattr__(self, 'city', validate_city_name(self.city))
        else:
            validate_coordinates(self.lat, self.lon)
            object.__setattr__(self, 'lat', float(self.lat))
            object.__setattr__(self, 'lon', float(self.lon))

    @classmethod
    def for_city(cls, city: str) -> 'Location':
        return cls(city=city)

    @classmethod
    def for_coordinates(cls, lat: float, lon: float) -> 'Location':
        return cls(lat=lat, lon=lon)

    @property
    def is_city(self) -> bool:
        return self.city is not None


@dataclass(frozen=True)
class CityCandidate:
    name: str
    country: str
    state: str
    lat: float
    lon: float
    display_name: str

    @classmethod
    def from_geocoding(cls, item: Any) -> Optional['CityCandidate']:
        if not isinstance(item, dict):
            return None
        name, country = item.get('name'), item.get('country')
        lat, lon = item.get('lat'), item.get('lon')
        if not isinstance(name, str) or not name or not isinstance(country, str) or not country:
            return None
        try:
            validate_coordinates(lat, lon)
        except ValidationError:
            return None

        state = item.get('state') if isinstance(item.get('state'), str) else ''
        name = name[:MAX_CITY_NAME_LENGTH]
        state = state[:MAX_CITY_NAME_LENGTH]
        return cls(
            name=name,
            country=country[:10],
            state=state,
            lat=float(lat),
            lon=float(lon),
            display_name=f"{name}, {state}" if state else name,
        )


@dataclass
class DebounceToken:
    """The most recent search: its query, when it was issued and its lookup.

    ``cancel()`` ends the token's life; a cancelled token never answers a
    repeat query.
    """

    query: str
    issued_at: float
    task: Optional['asyncio.Future'] = None
    results: Optional[List[CityCandidate]] = None
    cancelled: bool = field(default=False)

    def is_fresh_for(self, query: str, now: float, window: float) -> bool:
        return not self.cancelled and self.query == query and now - self.issued_at < window

    def cancel(self) -> None:
        self.cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()


def normalize_query(query: Any) -> str:
    if not isinstance(query, str):
        return ''
    return _WHITESPACE.sub(' ', query.strip()).lower()[:MAX_CITY_NAME_LENGTH]


def clamp_limit(limit: Any) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        return MAX_SEARCH_RESULTS
    return max(1, min(MAX_SEARCH_RESULTS, value))


class CitySearch:
    """City-name lookup through the provider's geocoding API.

    Repeating the same query inside the debounce window answers from the
    last lookup; longer-lived results come from the TTL cache.
    """

    def __init__(self, config: WeatherConfig,
                 transport: 'ProviderTransport',
                 cache: Optional[TTLCache] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.transport = transport
        self.cache = cache if cache is not None else TTLCache(ttl=config.cache_ttl, max_entries=config.cache_max_entries)
        self.clock = clock
        self.debounce_window = config.search_debounce
        self._token: Optional[DebounceToken] = None

    @property
    def pending(self) -> Optional[DebounceToken]:
        return self._token

    def cancel_pending(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None

    async def search(self, query: str, limit: int = MAX_SEARCH_RESULTS) -> List[CityCandidate]:
        normalized = normalize_query(query)
        if len(normalized) < MIN_QUERY_LENGTH:
            return []
        if not _CITY_NAME_PATTERN.match(normalized):
            raise ValidationError('Query contains invalid characters')
        limit = clamp_limit(limit)
        now = self.clock()

        token = self._token
        if token is not None and token.is_fresh_for(normalized, now, self.debounce_window):
            results = await self._token_results(token)
            if results is not None:
                logger.debug(f"Debounced repeat search for '{normalized}'")
                return results[:limit]

        cache_key = f"cities_{normalized}"
        cached_results = self.cache.get(cache_key)
        if cached_results is not None:
            logger.info(f"Returning cached city suggestions for: {normalized}")
            self._token = DebounceToken(query=normalized, issued_at=now, results=cached_results)
            return cached_results[:limit]

        task = asyncio.ensure_future(self._lookup(normalized, cache_key))
        self._token = DebounceToken(query=normalized, issued_at=now, task=task)
        try:
            results = await task
        except Exception:
            if self._token is not None and self._token.task is task:
                self._token = None
            raise
        if self._token is not None and self._token.task is task:
            self._token.results = results
        return results[:limit]

    async def _token_results(self, token: DebounceToken) -> Optional[List[CityCandidate]]:
        if token.results is not None:
            return token.results
        task = token.task
        if task is None or task.cancelled():
            return None
        if task.done():
            return None if task.exception() else task.result()
        # A lookup started on another event loop cannot be awaited here
        if task.get_loop() is not asyncio.get_running_loop():
            return None
        return await asyncio.shield(task)

    async def _lookup(self, normalized: str, cache_key: str) -> List[CityCandidate]:
        country = self.config.search_country
        params = {
            'q': f"{normalized},{country}" if country else normalized,
            'limit': MAX_SEARCH_RESULTS,
        }
        data = await self.transport.get_json(f"{self.config.geocoding_url}/direct", params)
        if not isinstance(data, list):
            raise DataShapeError('Invalid response from geocoding service')

        candidates = []
        for item in data:
            candidate = CityCandidate.from_geocoding(item)
            if candidate is None:
                continue
            if country and candidate.country.upper() != country.upper():
                continue
            candidates.append(candidate)
        candidates = candidates[:MAX_SEARCH_RESULTS]

        logger.info(f"Found {len(candidates)} cities for '{normalized}'")
        self.cache.set(cache_key, candidates)
        return candidates
