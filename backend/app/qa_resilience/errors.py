"""
Error Types

Every exception raised by the resilience engine derives from
ResilienceError so callers can fall back with a single except clause.
"""

from typing import Optional


class ResilienceError(Exception):
    """Base class for all engine errors"""


class ServiceError(ResilienceError):
    """The language-model service call failed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientServiceError(ServiceError):
    """Timeouts, connection resets - worth retrying"""


class RateLimitError(TransientServiceError):
    """Service explicitly asked us to slow down"""


class ServiceConfigurationError(ServiceError):
    """Missing API key or unknown provider"""


class ResponseParseError(ServiceError):
    """No valid JSON could be recovered from a service response"""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw
