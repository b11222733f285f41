"""Exception taxonomy shared by the gateway, the cache and the orchestrator."""

from typing import Optional


class GatewayError(Exception):
    """A single symbol could not be fetched or parsed."""

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.http_status = http_status


class NetworkError(GatewayError):
    pass


class GatewayTimeoutError(NetworkError):
    pass


class RateLimitedError(GatewayError):
    """Upstream answered 429. Never retried within the same call."""

    def __init__(self, message: str = "rate limited (HTTP 429)"):
        super().__init__(message, http_status=429)


class UpstreamFormatError(GatewayError):
    pass


class StorageFullError(Exception):
    pass


class ScanInProgressError(RuntimeError):
    pass
