"""
Custom exceptions for the copy-trading engine.
"""

from typing import Any, Dict, Optional


class CopyTraderError(Exception):
    """Base exception for all copy-trading errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context
        }


class ConfigurationError(CopyTraderError):
    """Raised when there's a configuration problem."""
    pass


class ExchangeError(CopyTraderError):
    """Base exception for exchange-related errors."""
    pass


class APIError(ExchangeError):
    """Raised when a REST call is rejected by the exchange."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_data: Optional[Any] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.response_data = response_data

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary with API details."""
        data = super().to_dict()
        data.update({
            "status_code": self.status_code,
            "response_data": self.response_data
        })
        return data


class RateLimitError(APIError):
    """Raised when the exchange keeps answering 429 after the retry."""
    pass


class TransportError(ExchangeError):
    """Raised when the exchange cannot be reached (REST or feed)."""
    pass


class WebSocketError(TransportError):
    """Raised when WebSocket operations fail."""
    pass


class FeedFatalError(WebSocketError):
    """Raised when the feed exhausted its reconnect attempts."""
    pass


class AuthError(CopyTraderError):
    """Raised when a request cannot be signed (missing or invalid key)."""
    pass


class DecryptionError(CopyTraderError):
    """Raised when a stored credential cannot be decrypted."""
    pass


class ValidationError(CopyTraderError):
    """Raised when data validation fails."""
    pass
