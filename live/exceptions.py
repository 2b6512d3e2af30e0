"""
Exchange-related exception classes.

Transport failures (timeouts, connection, non-2xx) are retried on the
next tick. Rejections are application errors from the venue and are
never retried automatically.
"""


class ExchangeAPIError(Exception):
    """Base exception for all exchange adapter errors."""

    def __init__(self, message: str, status_code: int = None, error_code: str = None):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(self.message)


class TransportError(ExchangeAPIError):
    """Request never got a usable answer (timeout, connection, HTTP status)."""
    pass


class ExchangeRejectedError(ExchangeAPIError):
    """Venue answered with an application error (non-zero retCode)."""
    pass
