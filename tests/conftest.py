"""Shared fixtures: a controllable clock, provider payloads and fake I/O."""
import asyncio
import copy

import pytest

from services.config import WeatherConfig
from services.errors import ProviderError

# 2024-06-18 12:00:00 UTC
FIXED_NOW = 1718712000.0

LONDON_LAT = 51.5074
LONDON_LON = -0.1278


class FakeClock:
    def __init__(self, start=FIXED_NOW):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeTransport:
    """Stands in for ProviderTransport; routes by the last URL path segment."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    async def get_json(self, url, params=None):
        endpoint = url.rstrip('/').rsplit('/', 1)[-1]
        self.calls.append((endpoint, dict(params or {})))
        # Yield like a real network call would
        await asyncio.sleep(0)
        result = self.routes.get(endpoint)
        if callable(result):
            result = result(params or {})
        if isinstance(result, Exception):
            raise result
        if result is None:
            raise ProviderError('Location not found', status=404)
        return copy.deepcopy(result)

    def endpoints(self):
        return [endpoint for endpoint, _ in self.calls]


class FakeResponse:
    def __init__(self, status=200, payload=None, json_error=None):
        self.status = status
        self.payload = payload
        self.json_error = json_error

    async def json(self, content_type='application/json'):
        if self.json_error is not None:
            raise self.json_error
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.requests = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.requests.append({'url': url, 'params': params, 'headers': headers, 'timeout': timeout})
        if self.error is not None:
            raise self.error
        return self.response

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return WeatherConfig(api_key='0123456789abcdef0123456789abcdef')


@pytest.fixture
def london_current():
    return {
        "coord": {"lon": LONDON_LON, "lat": LONDON_LAT},
        "weather": [{"id": 803, "main": "Clouds", "description": "broken clouds", "icon": "04d"}],
        "base": "stations",
        "main": {
            "temp": 18.4,
            "feels_like": 17.9,
            "temp_min": 16.8,
            "temp_max": 19.7,
            "pressure": 1016,
            "humidity": 64
        },
        "visibility": 10000,
        "wind": {"speed": 4.1, "deg": 240},
        "clouds": {"all": 75},
        "dt": 1718711400,
        "sys": {"country": "GB", "sunrise": 1718682172, "sunset": 1718742101},
        "timezone": 3600,
        "id": 2643743,
        "name": "London",
        "cod": 200
    }


def make_forecast(count=40, start=FIXED_NOW):
    entries = []
    for i in range(count):
        entries.append({
            "dt": int(start) + i * 10800,
            "main": {
                "temp": 15.0 + (i % 8),
                "feels_like": 14.0 + (i % 8),
                "temp_min": 14.5 + (i % 8),
                "temp_max": 15.5 + (i % 8),
                "pressure": 1015,
                "humidity": 70
            },
            "weather": [{"id": 500, "main": "Rain", "description": "light rain", "icon": "10d"}],
            "clouds": {"all": 90},
            "wind": {"speed": 3.0, "deg": 200},
            "pop": 0.4,
            "dt_txt": f"entry {i}"
        })
    return {"cod": "200", "cnt": count, "list": entries, "city": {"name": "London", "country": "GB"}}


@pytest.fixture
def london_forecast():
    return make_forecast()


@pytest.fixture
def geocoding_results():
    return [
        {"name": "London", "lat": 51.5073219, "lon": -0.1276474, "country": "GB", "state": "England"},
        {"name": "London", "lat": 42.9832406, "lon": -81.243372, "country": "CA", "state": "Ontario"},
        {"name": "Londonderry", "lat": 54.9978678, "lon": -7.3213056, "country": "GB", "state": "Northern Ireland"},
        {"name": "Lonavala", "lat": 18.7546171, "lon": 73.4006344, "country": "IN", "state": "Maharashtra"},
        {"name": "Lohardaga", "lat": 23.4346, "lon": 84.6798, "country": "IN"},
        {"name": "Lodi", "lat": 38.1301968, "lon": -121.2724473, "country": "US", "state": "California"},
    ]
