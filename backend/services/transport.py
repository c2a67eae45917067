# backend/services/transport.py
import asyncio
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from services.config import WeatherConfig
from services.errors import (DataShapeError, NetworkError, ProviderError,
                             ValidationError)
from services.guards import RateGate, UrlGuard

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    'Accept': 'application/json',
    'User-Agent': 'WeatherDashboard/1.0',
}

STATUS_MESSAGES = {
    401: 'Invalid API key',
    404: 'Location not found',
    429: 'Provider rate limit exceeded',
}


def mask_query(url: str, params: Dict) -> str:
    shown = urlencode({k: v for k, v in params.items() if k != 'appid'})
    if 'appid' in params:
        shown = f"{shown}&appid=***" if shown else 'appid=***'
    return f"{url}?{shown}"


class ProviderTransport:
    """Single outbound path to the weather provider.

    Every call is URL-checked, rate-gated and given its own timeout before
    anything leaves the process. HTTP and decoding failures come back as
    the tagged errors from ``services.errors``.
    """

    def __init__(self, config: WeatherConfig,
                 url_guard: Optional[UrlGuard] = None,
                 rate_gate: Optional[RateGate] = None,
                 session_factory: Callable[[], Any] = aiohttp.ClientSession):
        self.config = config
        self.url_guard = url_guard if url_guard is not None else UrlGuard()
        self.rate_gate = rate_gate if rate_gate is not None else RateGate(max_requests=config.rate_limit)
        self._session_factory = session_factory

    async def get_json(self, url: str, params: Optional[Dict] = None) -> Any:
        if not self.config.has_api_key():
            raise ValidationError('Weather API key is not configured')
        self.url_guard.validate(url)
        self.rate_gate.check_and_consume()

        query = dict(params or {})
        query['appid'] = self.config.api_key
        display_url = mask_query(url, query)
        logger.info(f"Making API request to: {display_url}")

        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
        try:
            async with self._session_factory() as session:
                async with session.get(url, params=query, headers=DEFAULT_HEADERS, timeout=timeout) as response:
                    if not 200 <= response.status < 300:
                        message = await self._error_message(response)
                        logger.error(f"Provider returned {response.status} for {display_url}: {message}")
                        raise ProviderError(message, status=response.status)

                    try:
                        return await response.json(content_type=None)
                    except ValueError as e:
                        raise DataShapeError(f"Invalid response format. Expected JSON: {e}")
        except asyncio.TimeoutError:
            logger.error(f"API request timed out after {self.config.request_timeout}s: {display_url}")
            raise NetworkError('Request timed out. Please try again.', timed_out=True)
        except aiohttp.ClientError as e:
            logger.error(f"API request failed: {e}")
            raise NetworkError(f"Weather data request failed: {e}")

    async def _error_message(self, response) -> str:
        fallback = STATUS_MESSAGES.get(response.status, f"HTTP error! status: {response.status}")
        if response.status in STATUS_MESSAGES:
            return fallback
        try:
            error_data = await response.json(content_type=None)
        except (ValueError, aiohttp.ClientError):
            return fallback
        if isinstance(error_data, dict) and error_data.get('message'):
            return str(error_data['message'])
        return fallback
