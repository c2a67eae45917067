# backend/services/errors.py
from enum import Enum
from typing import Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION = 'validation'
    RATE_LIMIT = 'rate_limit'
    NETWORK = 'network'
    PROVIDER = 'provider'
    DATA_SHAPE = 'data_shape'


class WeatherServiceError(Exception):
    """Base class for every error raised by the weather core.

    Callers branch on ``kind`` (or the subclass), never on the message.
    """

    kind: ErrorKind = ErrorKind.PROVIDER

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict:
        return {'kind': self.kind.value, 'error': self.message}


class ValidationError(WeatherServiceError):
    kind = ErrorKind.VALIDATION


class RateLimitError(WeatherServiceError):
    kind = ErrorKind.RATE_LIMIT

    def __init__(self, message: str, retry_after: int = 60):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data['retry_after'] = self.retry_after
        return data


class NetworkError(WeatherServiceError):
    kind = ErrorKind.NETWORK

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out


class ProviderError(WeatherServiceError):
    kind = ErrorKind.PROVIDER

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data['status'] = self.status
        return data


class DataShapeError(WeatherServiceError):
    kind = ErrorKind.DATA_SHAPE
