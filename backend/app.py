# backend/app.py
import asyncio
import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone

from flask import Flask, jsonify, make_response, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from services.cache import TTLCache
from services.config import WeatherConfig
from services.errors import (NetworkError, ProviderError, RateLimitError,
                             ValidationError, WeatherServiceError)
from services.guards import RateGate, UrlGuard
from services.location import CitySearch, Location
from services.tiles import TileFetcher
from services.transport import ProviderTransport
from services.uv import uv_risk_level
from services.weather import WeatherClient

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

SERVICE_NAME = 'Weather Dashboard API'
SERVICE_VERSION = '1.0.0'

CACHE_CONTROL = {
    'weather': 'public, max-age=300, s-maxage=300, stale-while-revalidate=60',
    'geocoding': 'public, max-age=3600, s-maxage=3600, stale-while-revalidate=300',
    'tiles': 'public, max-age=600',
}

SECURITY_HEADERS = {
    'X-Content-Type-Options': 'nosniff',
    'X-Frame-Options': 'DENY',
    'Referrer-Policy': 'strict-origin-when-cross-origin',
    'Permissions-Policy': 'geolocation=(), microphone=(), camera=()',
}

PROVIDER_STATUS_PASSTHROUGH = {401, 404, 429}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def run_async(coro):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def status_for_error(error: WeatherServiceError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, RateLimitError):
        return 429
    if isinstance(error, NetworkError):
        return 504 if error.timed_out else 503
    if isinstance(error, ProviderError) and error.status in PROVIDER_STATUS_PASSTHROUGH:
        return error.status
    return 502


def create_app(config=None, weather_client=None, city_search=None, tile_fetcher=None):
    config = config or WeatherConfig.from_env()

    app = Flask(__name__)
    app.json.sort_keys = False
    CORS(app, resources={r"/api/*": {"origins": list(config.cors_origins), "methods": ["GET", "OPTIONS"]}})

    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=["3000 per day", "500 per hour"],
        storage_uri="memory://"
    )

    url_guard = UrlGuard()
    rate_gate = RateGate(max_requests=config.rate_limit)
    cache = TTLCache(ttl=config.cache_ttl, max_entries=config.cache_max_entries)
    transport = ProviderTransport(config, url_guard=url_guard, rate_gate=rate_gate)

    if weather_client is None:
        weather_client = WeatherClient(config, transport=transport, cache=cache)
    if city_search is None:
        city_search = CitySearch(config, transport=transport, cache=cache)
    if tile_fetcher is None:
        tile_fetcher = TileFetcher(config, url_guard=url_guard, rate_gate=rate_gate)

    if not config.has_api_key():
        logger.warning("OPENWEATHER_API_KEY is not configured, upstream requests will be rejected")

    @app.after_request
    def add_security_headers(response):
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    @app.route('/api/weather', methods=['GET'])
    @limiter.limit("300 per hour")
    def get_weather():
        city = request.args.get('city', '').strip()
        lat_raw = request.args.get('lat')
        lon_raw = request.args.get('lon')

        if city:
            location = Location.for_city(city)
        elif lat_raw is not None and lon_raw is not None:
            try:
                location = Location.for_coordinates(float(lat_raw), float(lon_raw))
            except ValueError:
                raise ValidationError('Invalid coordinates. Latitude and longitude must be numbers')
        else:
            raise ValidationError('Either city name or coordinates (lat, lon) are required')

        weather_data = run_async(weather_client.get_complete_weather_data(location))

        payload = weather_data.to_dict()
        payload.update({
            'success': True,
            'uv_level': uv_risk_level(weather_data.uv),
            'source': 'OpenWeatherMap',
            'timestamp': utc_now_iso(),
        })
        response = make_response(jsonify(payload), 200)
        response.headers['Cache-Control'] = CACHE_CONTROL['weather']
        return response

    @app.route('/api/geocoding', methods=['GET'])
    @limiter.limit("100 per hour")
    def search_locations():
        query = request.args.get('q', '')
        limit = request.args.get('limit', 5)

        results = run_async(city_search.search(query, limit))

        response = make_response(jsonify({
            'success': True,
            'query': query.strip(),
            'results': [asdict(candidate) for candidate in results],
            'timestamp': utc_now_iso(),
        }), 200)
        response.headers['Cache-Control'] = CACHE_CONTROL['geocoding']
        return response

    @app.route('/api/weather-tiles/<layer>/<int:z>/<int:x>/<int:y>', methods=['GET'])
    @limiter.limit("3000 per hour")
    def weather_tile(layer, z, x, y):
        tile = tile_fetcher.fetch_tile(layer, z, x, y)
        response = make_response(tile, 200)
        response.headers['Content-Type'] = 'image/png'
        response.headers['Cache-Control'] = CACHE_CONTROL['tiles']
        return response

    @app.route('/', methods=['GET'])
    def home():
        return jsonify({
            'service': SERVICE_NAME,
            'version': SERVICE_VERSION,
            'status': 'operational',
            'environment': os.getenv('FLASK_ENV', 'production'),
            'endpoints': ['/api/weather', '/api/geocoding', '/api/weather-tiles/<layer>/<z>/<x>/<y>'],
            'api_key_configured': config.has_api_key(),
        }), 200

    @app.route('/health', methods=['GET'])
    def health_check():
        return jsonify({
            'status': 'healthy',
            'service': SERVICE_NAME,
            'version': SERVICE_VERSION,
            'timestamp': utc_now_iso(),
            'cache': weather_client.cache_stats(),
            'rate_limit_remaining': rate_gate.remaining,
        }), 200

    @app.errorhandler(WeatherServiceError)
    def weather_error(error):
        status = status_for_error(error)
        if status >= 500:
            logger.error(f"Weather request failed ({error.kind.value}): {error}")
        else:
            logger.info(f"Weather request rejected ({error.kind.value}): {error}")
        body = error.to_dict()
        body['success'] = False
        body['timestamp'] = utc_now_iso()
        response = make_response(jsonify(body), status)
        if isinstance(error, RateLimitError):
            response.headers['Retry-After'] = str(error.retry_after)
        return response

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'success': False,
            'error': 'Endpoint not found',
            'code': 404
        }), 404

    @app.errorhandler(500)
    def internal_error(error):
        logger.exception(f"Internal server error: {error}")
        return jsonify({
            'success': False,
            'error': 'Internal server error',
            'code': 500
        }), 500

    @app.errorhandler(429)
    def ratelimit_handler(e):
        return jsonify({
            'success': False,
            'error': 'Rate limit exceeded',
            'code': 429,
            'retry_after': '60 seconds'
        }), 429

    return app


if __name__ == '__main__':
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV') == 'development'

    app = create_app()

    logger.info("=" * 80)
    logger.info(f"{SERVICE_NAME} v{SERVICE_VERSION}")
    logger.info("=" * 80)
    logger.info(f"Server: Running on port {port}")
    logger.info(f"Environment: {os.getenv('FLASK_ENV', 'production')}")
    logger.info("=" * 80)

    app.run(host='0.0.0.0', port=port, debug=debug)
