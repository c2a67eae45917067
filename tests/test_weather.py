"""Tests for WeatherClient orchestration."""
import asyncio

import pytest

from conftest import LONDON_LAT, LONDON_LON, FakeTransport, make_forecast
from services.cache import TTLCache
from services.errors import (DataShapeError, NetworkError, ProviderError,
                             RateLimitError, ValidationError)
from services.location import Location
from services.uv import estimate_uv
from services.weather import ForecastBundle, WeatherClient, WeatherSnapshot


def make_client(config, transport, clock):
    cache = TTLCache(ttl=config.cache_ttl, max_entries=config.cache_max_entries, time_func=clock)
    return WeatherClient(config, transport=transport, cache=cache, clock=clock)


@pytest.fixture
def transport(london_current, london_forecast):
    return FakeTransport({
        'weather': london_current,
        'forecast': london_forecast,
        'uvi': {'lat': LONDON_LAT, 'lon': LONDON_LON, 'value': 6.4},
    })


def test_complete_data_for_city(config, transport, clock):
    client = make_client(config, transport, clock)

    result = asyncio.run(client.get_complete_weather_data(Location.for_city('London')))

    assert result.current.name == 'London'
    assert result.current.temperature == 18.4
    assert result.current.visibility == 10.0
    assert result.uv == 6.4
    assert result.current.uv_index == 6.4
    assert result.simulated is False
    assert len(result.forecast.entries) == 40
    assert result.fetched_at == clock()

    endpoints = transport.endpoints()
    assert endpoints[0] == 'weather'
    assert sorted(endpoints[1:]) == ['forecast', 'uvi']
    assert transport.calls[0][1]['q'] == 'London'
    forecast_params = dict(transport.calls)['forecast']
    assert (forecast_params['lat'], forecast_params['lon']) == (LONDON_LAT, LONDON_LON)


def test_uv_failure_falls_back_to_estimate(config, transport, clock):
    transport.routes['uvi'] = ProviderError('UV endpoint unavailable', status=401)
    transport.routes['onecall'] = NetworkError('Request timed out. Please try again.', timed_out=True)
    client = make_client(config, transport, clock)

    result = asyncio.run(client.get_complete_weather_data(Location.for_city('London')))

    # 12:00 UTC with London's +3600 s offset is 13:00 local, in June
    assert result.simulated is True
    assert result.current.simulated is True
    assert result.uv == estimate_uv(LONDON_LAT, 13, 6)
    assert 'uv_51.5074,-0.1278' not in client.cache


def test_uv_shape_error_is_absorbed(config, transport, clock):
    transport.routes['uvi'] = {'unexpected': True}
    transport.routes['onecall'] = {'current': {}}
    client = make_client(config, transport, clock)

    result = asyncio.run(client.get_complete_weather_data(Location.for_city('London')))

    assert result.simulated is True


def test_uv_falls_back_to_one_call_before_estimating(config, transport, clock):
    transport.routes['uvi'] = ProviderError('Location not found', status=404)
    transport.routes['onecall'] = {'current': {'uvi': 5.5}}
    client = make_client(config, transport, clock)

    result = asyncio.run(client.get_complete_weather_data(Location.for_city('London')))

    assert result.uv == 5.5
    assert result.simulated is False
    assert transport.calls[-1][1]['exclude'] == 'minutely,daily,alerts'


def test_city_not_found_stops_before_other_legs(config, transport, clock):
    transport.routes['weather'] = ProviderError('Location not found', status=404)
    client = make_client(config, transport, clock)

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(client.get_complete_weather_data(Location.for_city('Nowhere123')))

    assert exc_info.value.status == 404
    assert transport.endpoints() == ['weather']


def test_forecast_failure_is_fatal(config, transport, clock):
    transport.routes['forecast'] = NetworkError('Request timed out. Please try again.', timed_out=True)
    client = make_client(config, transport, clock)

    with pytest.raises(NetworkError):
        asyncio.run(client.get_complete_weather_data(Location.for_city('London')))


def test_forecast_shape_error_is_fatal(config, transport, clock):
    transport.routes['forecast'] = {'cod': '200'}
    client = make_client(config, transport, clock)

    with pytest.raises(DataShapeError):
        asyncio.run(client.get_complete_weather_data(Location.for_city('London')))


def test_rate_limit_on_uv_leg_propagates(config, transport, clock):
    transport.routes['uvi'] = RateLimitError('Rate limit exceeded. Please wait before making more requests.')
    client = make_client(config, transport, clock)

    with pytest.raises(RateLimitError):
        asyncio.run(client.get_complete_weather_data(Location.for_city('London')))


def test_retry_reruns_only_the_failed_leg(config, transport, clock, london_forecast):
    transport.routes['forecast'] = ProviderError('HTTP error! status: 502', status=502)
    client = make_client(config, transport, clock)

    with pytest.raises(ProviderError):
        asyncio.run(client.get_complete_weather_data(Location.for_city('London')))

    transport.routes['forecast'] = london_forecast
    transport.calls.clear()
    result = asyncio.run(client.get_complete_weather_data(Location.for_city('London')))

    assert transport.endpoints() == ['forecast']
    assert result.uv == 6.4


def test_second_request_is_served_from_cache(config, transport, clock):
    client = make_client(config, transport, clock)
    asyncio.run(client.get_complete_weather_data(Location.for_city('London')))
    transport.calls.clear()

    asyncio.run(client.get_complete_weather_data(Location.for_city('london')))

    assert transport.calls == []
    assert client.cache_stats()['hits'] == 3


def test_cache_expiry_refetches(config, transport, clock):
    client = make_client(config, transport, clock)
    asyncio.run(client.get_complete_weather_data(Location.for_city('London')))
    transport.calls.clear()

    clock.advance(config.cache_ttl + 1)
    asyncio.run(client.get_complete_weather_data(Location.for_city('London')))

    assert sorted(transport.endpoints()) == ['forecast', 'uvi', 'weather']


def test_coordinate_location_skips_city_lookup(config, transport, clock):
    client = make_client(config, transport, clock)

    result = asyncio.run(client.get_complete_weather_data(Location.for_coordinates(40.7, -74.0)))

    assert sorted(transport.endpoints()) == ['forecast', 'uvi', 'weather']
    assert all('q' not in params for _, params in transport.calls)
    assert 'forecast_40.7,-74.0' in client.cache
    assert 'current_40.7,-74.0' in client.cache
    assert result.simulated is False


def test_coordinate_location_current_failure_is_fatal(config, transport, clock):
    transport.routes['weather'] = ProviderError('Invalid API key', status=401)
    client = make_client(config, transport, clock)

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(client.get_complete_weather_data(Location.for_coordinates(40.7, -74.0)))

    assert exc_info.value.status == 401


def test_coordinate_location_uv_fallback_uses_local_time(config, transport, clock, london_current):
    london_current['timezone'] = -4 * 3600
    transport.routes['weather'] = london_current
    transport.routes['uvi'] = NetworkError('connection refused')
    transport.routes['onecall'] = NetworkError('connection refused')
    client = make_client(config, transport, clock)

    result = asyncio.run(client.get_complete_weather_data(Location.for_coordinates(40.7, -74.0)))

    assert result.simulated is True
    assert result.uv == estimate_uv(40.7, 8, 6)


def test_current_weather_without_coordinates_is_a_shape_error(config, transport, clock, london_current):
    del london_current['coord']
    transport.routes['weather'] = london_current
    client = make_client(config, transport, clock)

    with pytest.raises(DataShapeError):
        asyncio.run(client.get_complete_weather_data(Location.for_city('London')))

    assert transport.endpoints() == ['weather']


def test_invalid_city_is_rejected_without_network(config, transport, clock):
    client = make_client(config, transport, clock)

    with pytest.raises(ValidationError):
        asyncio.run(client.get_current_weather('<script>'))

    assert transport.calls == []


def test_snapshot_defaults_missing_fields():
    snapshot = WeatherSnapshot.from_payload({
        'main': {'temp': 12.5},
        'weather': [{}],
        'coord': {'lat': 10, 'lon': 20},
    })

    assert snapshot.temperature == 12.5
    assert snapshot.humidity == 0
    assert snapshot.wind_speed == 0
    assert snapshot.visibility == 0
    assert snapshot.sunrise == 0
    assert snapshot.name == 'Unknown'
    assert snapshot.country == 'Unknown'
    assert snapshot.description == 'Unknown'
    assert snapshot.icon == '01d'


@pytest.mark.parametrize('payload', [
    None,
    {'weather': [{'main': 'Clear'}]},
    {'main': {'temp': 1}, 'weather': []},
    {'main': {'temp': 1}},
])
def test_snapshot_requires_main_and_weather(payload):
    with pytest.raises(DataShapeError):
        WeatherSnapshot.from_payload(payload)


def test_forecast_is_capped_at_forty_entries():
    bundle = ForecastBundle.from_payload(make_forecast(count=45))

    assert len(bundle.entries) == 40
    assert bundle.entries[0].timestamp < bundle.entries[-1].timestamp


def test_forecast_helpers(london_forecast):
    bundle = ForecastBundle.from_payload(london_forecast)

    assert len(bundle.next_hours(24)) == 8
    days = bundle.daily()
    assert len(days) == 5
    assert days[0].date == '2024-06-18'
    # 12:00, 15:00, 18:00 and 21:00 UTC on the first day
    assert days[0].temp_min == 15.0
    assert days[0].temp_max == 18.0
    assert days[0].description == 'Light Rain'


def test_to_dict_is_json_ready(config, transport, clock):
    client = make_client(config, transport, clock)
    result = asyncio.run(client.get_complete_weather_data(Location.for_city('London')))

    data = result.to_dict()

    assert data['current']['name'] == 'London'
    assert data['uv'] == 6.4
    assert isinstance(data['forecast']['entries'], list)
    assert len(data['daily']) == 5


def test_injected_cache_is_used_even_when_empty(config, transport, clock):
    shared = TTLCache(ttl=config.cache_ttl, time_func=clock)

    client = WeatherClient(config, transport=transport, cache=shared, clock=clock)
    asyncio.run(client.get_complete_weather_data(Location.for_city('London')))

    assert client.cache is shared
    assert len(shared) == 3


def test_payload_without_coordinates_is_refetched_on_retry(config, transport, clock, london_current):
    good_payload = dict(london_current)
    del london_current['coord']
    transport.routes['weather'] = london_current
    client = make_client(config, transport, clock)

    with pytest.raises(DataShapeError):
        asyncio.run(client.get_complete_weather_data(Location.for_city('London')))
    assert 'current_london' not in client.cache

    transport.routes['weather'] = good_payload
    transport.calls.clear()
    result = asyncio.run(client.get_complete_weather_data(Location.for_city('London')))

    assert transport.endpoints()[0] == 'weather'
    assert result.current.name == 'London'
