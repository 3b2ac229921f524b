# Errors - exception types for the edge gateway and the offline order client
# Every gateway error carries the HTTP status it is reported with

import requests


class GatewayError(Exception):
    """Base class for errors surfaced to gateway callers as {error}"""

    status = 400

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class ConfigurationError(GatewayError):
    """Gateway not paired, or no cloud base URL configured"""


class ValidationError(GatewayError):
    """Malformed request body or out-of-range field"""


class NotFoundError(GatewayError):
    status = 404


class PrinterUnreachableError(GatewayError):
    """Connect, write or timeout failure talking to a LAN printer"""


class CloudError(GatewayError):
    """Cloud replied with an error status or could not be reached"""

    status = 502


class OrderApiError(Exception):
    """Application error returned by the cloud order API (4xx and friends)"""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class OfflineError(Exception):
    """Network-shaped failure reaching the cloud order API"""


OFFLINE_MARKERS = ('failed to fetch', 'fetch failed', 'network', 'load failed', 'timeout')


def is_likely_offline_error(exc: BaseException) -> bool:
    """True when exc looks like lost connectivity rather than a rejected request"""
    if isinstance(exc, OfflineError):
        return True
    if isinstance(exc, OrderApiError):
        return False
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in OFFLINE_MARKERS)
