# backend/services/weather.py
import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from numbers import Real
from typing import Any, Callable, Dict, List, Optional, Tuple

from services.cache import TTLCache
from services.config import WeatherConfig
from services.errors import (DataShapeError, NetworkError, ProviderError,
                             WeatherServiceError)
from services.location import Location
from services.transport import ProviderTransport
from services.uv import UVEstimator, parse_uv_value

logger = logging.getLogger(__name__)

PLACEHOLDER = 'Unknown'
DEFAULT_ICON = '01d'
MAX_FORECAST_ENTRIES = 40
MAX_FORECAST_DAYS = 5

# UV leg failures that fall back to the estimator
ABSORBED_UV_ERRORS = (NetworkError, ProviderError, DataShapeError)


def _num(value: Any, default: float = 0) -> float:
    if isinstance(value, Real) and not isinstance(value, bool) and value == value:
        return value
    return default


def _text(value: Any, default: str = PLACEHOLDER) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _block(data: Dict, key: str) -> Dict:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _first_condition(data: Dict) -> Dict:
    weather = data.get('weather')
    if isinstance(weather, list) and weather and isinstance(weather[0], dict):
        return weather[0]
    return {}


@dataclass
class WeatherSnapshot:
    name: str
    country: str
    temperature: float
    feels_like: float
    temp_min: float
    temp_max: float
    humidity: float
    pressure: float
    wind_speed: float
    wind_direction: float
    cloud_cover: float
    visibility: float
    condition: str
    description: str
    icon: str
    sunrise: int
    sunset: int
    timestamp: int
    timezone_offset: int
    lat: float
    lon: float
    uv_index: float = 0.0
    simulated: bool = False

    @classmethod
    def from_payload(cls, data: Dict) -> 'WeatherSnapshot':
        if not isinstance(data, dict):
            raise DataShapeError('Invalid weather data format')
        weather = data.get('weather')
        if not isinstance(data.get('main'), dict) or not isinstance(weather, list) or not weather:
            raise DataShapeError('Invalid weather data structure: missing main or weather')

        main = _block(data, 'main')
        wind = _block(data, 'wind')
        sys = _block(data, 'sys')
        coord = _block(data, 'coord')
        condition = _first_condition(data)

        return cls(
            name=_text(data.get('name')),
            country=_text(sys.get('country')),
            temperature=_num(main.get('temp')),
            feels_like=_num(main.get('feels_like')),
            temp_min=_num(main.get('temp_min')),
            temp_max=_num(main.get('temp_max')),
            humidity=_num(main.get('humidity')),
            pressure=_num(main.get('pressure')),
            wind_speed=_num(wind.get('speed')),
            wind_direction=_num(wind.get('deg')),
            cloud_cover=_num(_block(data, 'clouds').get('all')),
            visibility=round(_num(data.get('visibility')) / 1000, 1),
            condition=_text(condition.get('main')),
            description=_text(condition.get('description')),
            icon=_text(condition.get('icon'), DEFAULT_ICON),
            sunrise=int(_num(sys.get('sunrise'))),
            sunset=int(_num(sys.get('sunset'))),
            timestamp=int(_num(data.get('dt'))),
            timezone_offset=int(_num(data.get('timezone'))),
            lat=_num(coord.get('lat')),
            lon=_num(coord.get('lon')),
        )


@dataclass
class ForecastEntry:
    timestamp: int
    dt_txt: str
    temperature: float
    feels_like: float
    temp_min: float
    temp_max: float
    humidity: float
    pressure: float
    condition: str
    description: str
    icon: str
    wind_speed: float
    wind_direction: float
    cloud_cover: float
    pop: float

    @classmethod
    def from_payload(cls, item: Dict) -> 'ForecastEntry':
        main = _block(item, 'main')
        wind = _block(item, 'wind')
        condition = _first_condition(item)
        return cls(
            timestamp=int(_num(item.get('dt'))),
            dt_txt=_text(item.get('dt_txt')),
            temperature=_num(main.get('temp')),
            feels_like=_num(main.get('feels_like')),
            temp_min=_num(main.get('temp_min')),
            temp_max=_num(main.get('temp_max')),
            humidity=_num(main.get('humidity')),
            pressure=_num(main.get('pressure')),
            condition=_text(condition.get('main')),
            description=_text(condition.get('description')),
            icon=_text(condition.get('icon'), DEFAULT_ICON),
            wind_speed=_num(wind.get('speed')),
            wind_direction=_num(wind.get('deg')),
            cloud_cover=_num(_block(item, 'clouds').get('all')),
            pop=_num(item.get('pop')),
        )


@dataclass
class DailyForecast:
    date: str
    temp_min: float
    temp_max: float
    temp_avg: float
    condition: str
    description: str
    icon: str
    humidity: int
    wind_speed: float


@dataclass
class ForecastBundle:
    city: str
    country: str
    entries: Tuple[ForecastEntry, ...] = field(default_factory=tuple)

    def __post_init__(self):
        self.entries = tuple(self.entries[:MAX_FORECAST_ENTRIES])

    @classmethod
    def from_payload(cls, data: Dict) -> 'ForecastBundle':
        if not isinstance(data, dict) or not isinstance(data.get('list'), list):
            raise DataShapeError('Invalid forecast data structure')
        city = _block(data, 'city')
        entries = [ForecastEntry.from_payload(item)
                   for item in data['list'][:MAX_FORECAST_ENTRIES]
                   if isinstance(item, dict)]
        return cls(city=_text(city.get('name')), country=_text(city.get('country')), entries=tuple(entries))

    def next_hours(self, hours: int = 24) -> List[ForecastEntry]:
        # Entries are three hours apart
        return list(self.entries[:max(0, hours // 3)])

    def daily(self, tz_offset: int = 0) -> List[DailyForecast]:
        """Group the 3-hour entries into per-day summaries, local to ``tz_offset``."""
        days: 'OrderedDict[str, List[ForecastEntry]]' = OrderedDict()
        for entry in self.entries:
            local = datetime.fromtimestamp(entry.timestamp + tz_offset, tz=timezone.utc)
            days.setdefault(local.date().isoformat(), []).append(entry)

        summaries = []
        for date_key, items in list(days.items())[:MAX_FORECAST_DAYS]:
            temps = [e.temperature for e in items]
            # The midday slot is the most representative condition
            representative = min(items, key=lambda e: abs(
                datetime.fromtimestamp(e.timestamp + tz_offset, tz=timezone.utc).hour - 12))
            summaries.append(DailyForecast(
                date=date_key,
                temp_min=round(min(temps), 1),
                temp_max=round(max(temps), 1),
                temp_avg=round(sum(temps) / len(temps), 1),
                condition=representative.condition,
                description=representative.description.title(),
                icon=representative.icon,
                humidity=round(sum(e.humidity for e in items) / len(items)),
                wind_speed=round(sum(e.wind_speed for e in items) / len(items), 1),
            ))
        return summaries


@dataclass
class CompleteWeatherData:
    current: WeatherSnapshot
    forecast: ForecastBundle
    uv: float
    simulated: bool
    fetched_at: float

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['forecast']['entries'] = list(data['forecast']['entries'])
        data['daily'] = [asdict(day) for day in self.forecast.daily(self.current.timezone_offset)]
        return data


@dataclass
class UVReading:
    value: float
    simulated: bool = False


class WeatherClient:
    """Builds a complete weather picture for one location.

    Current conditions, forecast and UV index are fetched as independent
    legs, each cached on its own. Only the UV leg may fail softly: it
    falls back to an estimate flagged as simulated.
    """

    def __init__(self, config: WeatherConfig,
                 transport: Optional[ProviderTransport] = None,
                 cache: Optional[TTLCache] = None,
                 uv_estimator: Optional[UVEstimator] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.transport = transport if transport is not None else ProviderTransport(config)
        self.cache = cache if cache is not None else TTLCache(ttl=config.cache_ttl, max_entries=config.cache_max_entries)
        self.uv_estimator = uv_estimator if uv_estimator is not None else UVEstimator()
        self.clock = clock

    def _generate_cache_key(self, prefix: str, identifier: str) -> str:
        return f"{prefix}_{identifier}"

    @staticmethod
    def _coords_identifier(lat: float, lon: float) -> str:
        return f"{round(float(lat), 4)},{round(float(lon), 4)}"

    async def _cached_get(self, cache_key: str, url: str, params: Dict,
                          parse: Callable[[Any], Any]) -> Any:
        cached_data = self.cache.get(cache_key)
        if cached_data is not None:
            logger.info(f"Returning cached data for {cache_key}")
            return cached_data

        data = await self.transport.get_json(url, params)
        # Malformed payloads raise here and never reach the cache
        parse(data)
        self.cache.set(cache_key, data)
        return data

    async def _current_payload_by_city(self, city: str) -> Dict:
        location = Location.for_city(city)
        cache_key = self._generate_cache_key('current', location.city.lower())
        return await self._cached_get(cache_key, f"{self.config.base_url}/weather", {
            'q': location.city,
            'units': self.config.units,
        }, self._parse_city_payload)

    def _parse_city_payload(self, data: Any) -> Tuple[WeatherSnapshot, Tuple[float, float]]:
        # The city leg feeds its coordinates to the forecast and UV legs
        return WeatherSnapshot.from_payload(data), self._extract_coordinates(data)

    async def get_current_weather(self, city: str) -> WeatherSnapshot:
        return WeatherSnapshot.from_payload(await self._current_payload_by_city(city))

    async def get_current_weather_by_coords(self, lat: float, lon: float) -> WeatherSnapshot:
        Location.for_coordinates(lat, lon)
        cache_key = self._generate_cache_key('current', self._coords_identifier(lat, lon))
        data = await self._cached_get(cache_key, f"{self.config.base_url}/weather", {
            'lat': lat,
            'lon': lon,
            'units': self.config.units,
        }, WeatherSnapshot.from_payload)
        return WeatherSnapshot.from_payload(data)

    async def get_forecast_by_coords(self, lat: float, lon: float) -> ForecastBundle:
        Location.for_coordinates(lat, lon)
        cache_key = self._generate_cache_key('forecast', self._coords_identifier(lat, lon))
        data = await self._cached_get(cache_key, f"{self.config.base_url}/forecast", {
            'lat': lat,
            'lon': lon,
            'units': self.config.units,
        }, ForecastBundle.from_payload)
        return ForecastBundle.from_payload(data)

    async def get_uv_index(self, lat: float, lon: float) -> float:
        """Live UV index: the ``/uvi`` endpoint first, then One Call."""
        Location.for_coordinates(lat, lon)
        cache_key = self._generate_cache_key('uv', self._coords_identifier(lat, lon))
        cached_data = self.cache.get(cache_key)
        if cached_data is not None:
            logger.info(f"Returning cached data for {cache_key}")
            return cached_data

        try:
            data = await self.transport.get_json(f"{self.config.base_url}/uvi", {'lat': lat, 'lon': lon})
            uv_value = parse_uv_value(data)
        except ABSORBED_UV_ERRORS as e:
            logger.info(f"UV endpoint not available ({e}), trying One Call API...")
            data = await self.transport.get_json(f"{self.config.base_url}/onecall", {
                'lat': lat,
                'lon': lon,
                'units': self.config.units,
                'exclude': 'minutely,daily,alerts',
            })
            uv_value = parse_uv_value(data)

        self.cache.set(cache_key, uv_value)
        return uv_value

    def _local_time(self, tz_offset: int) -> datetime:
        return datetime.fromtimestamp(self.clock() + tz_offset, tz=timezone.utc)

    async def _uv_with_fallback(self, lat: float, lon: float,
                                current_task: 'Optional[asyncio.Future]' = None,
                                tz_offset: int = 0) -> UVReading:
        try:
            return UVReading(value=await self.get_uv_index(lat, lon))
        except ABSORBED_UV_ERRORS as e:
            logger.warning(f"UV index unavailable for {lat},{lon} ({e.kind.value}: {e}), using estimated value")

        if current_task is not None:
            # The timezone offset comes from the current-weather leg
            try:
                tz_offset = (await current_task).timezone_offset
            except WeatherServiceError:
                tz_offset = 0
        local = self._local_time(tz_offset)
        return UVReading(value=self.uv_estimator.estimate(lat, local.hour, local.month), simulated=True)

    @staticmethod
    def _extract_coordinates(payload: Dict) -> Tuple[float, float]:
        coord = _block(payload, 'coord')
        lat, lon = coord.get('lat'), coord.get('lon')
        if _num(lat, None) is None or _num(lon, None) is None:
            raise DataShapeError('Weather response has no coordinates')
        return lat, lon

    @staticmethod
    def _first_failure(results: List[Any]) -> List[Any]:
        # Legs are listed in priority order; the first failure wins
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return results

    async def get_complete_weather_data(self, location: Location) -> CompleteWeatherData:
        if not isinstance(location, Location):
            raise TypeError('location must be a Location')

        if location.is_city:
            payload = await self._current_payload_by_city(location.city)
            current = WeatherSnapshot.from_payload(payload)
            lat, lon = self._extract_coordinates(payload)
            forecast, uv = self._first_failure(await asyncio.gather(
                self.get_forecast_by_coords(lat, lon),
                self._uv_with_fallback(lat, lon, tz_offset=current.timezone_offset),
                return_exceptions=True,
            ))
        else:
            lat, lon = location.lat, location.lon
            current_task = asyncio.ensure_future(self.get_current_weather_by_coords(lat, lon))
            current, forecast, uv = self._first_failure(await asyncio.gather(
                current_task,
                self.get_forecast_by_coords(lat, lon),
                self._uv_with_fallback(lat, lon, current_task=current_task),
                return_exceptions=True,
            ))

        current.uv_index = uv.value
        current.simulated = uv.simulated
        logger.info(f"Complete weather data assembled for {current.name} ({lat},{lon}), simulated UV: {uv.simulated}")
        return CompleteWeatherData(
            current=current,
            forecast=forecast,
            uv=uv.value,
            simulated=uv.simulated,
            fetched_at=self.clock(),
        )

    def cache_stats(self) -> Dict:
        return self.cache.stats()
