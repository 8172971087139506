"""Shared exception types for core trading logic."""

from typing import Any, Dict, Optional


class ConfigurationError(RuntimeError):
    """Raised for startup misconfiguration (missing credentials, bad secret encoding)."""


class ExchangeError(RuntimeError):
    """Base class for faults raised by exchange calls."""

    def __init__(self, endpoint: str, message: str):
        super().__init__(f"{endpoint}: {message}")
        self.endpoint = endpoint


class ExchangeUnavailable(ExchangeError):
    """Transport fault: network unreachable, timeout, 5xx."""

    def __init__(self, endpoint: str, original: Optional[Exception] = None):
        super().__init__(endpoint, str(original) if original else "unavailable")
        self.original = original


class OrderRejected(ExchangeError):
    """The exchange answered but refused the request (bad nonce, margin, invalid order)."""

    def __init__(self, endpoint: str, status: str, payload: Optional[Dict[str, Any]] = None):
        super().__init__(endpoint, f"rejected ({status})")
        self.status = status
        self.payload = payload or {}


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        message = f"{source} unavailable"
        if original is not None:
            message = f"{message}: {original}"
        super().__init__(message)
        self.source = source
        self.original = original
