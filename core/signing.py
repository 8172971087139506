"""
perptrader Core: Request Signing

Kraken Futures authentication for private endpoints.

Authent = base64(HMAC-SHA512(base64decode(secret), SHA256(postData + nonce + path)))
where path is the endpoint path with the "/derivatives" prefix removed.
"""

import base64
import binascii
import hashlib
import hmac
import threading
import time
from typing import Callable, Dict, Optional

from core.exceptions import ConfigurationError

PRIVATE_PATH_PREFIX = "/derivatives"


class NonceGenerator:
    """
    Strictly distinct request nonces.

    Nonce = wall-clock milliseconds + rolling counter (0-9999) zero-padded
    to 5 digits, so calls within the same millisecond never collide.
    """

    COUNTER_MODULUS = 10000

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.time
        self._counter = 0
        self._lock = threading.Lock()

    def next(self) -> str:
        with self._lock:
            counter = self._counter
            self._counter = (self._counter + 1) % self.COUNTER_MODULUS
            millis = int(self._clock() * 1000)
        return f"{millis}{counter:05d}"


def normalize_path(endpoint_path: str) -> str:
    """Drop the private-API prefix; the exchange signs the path after it."""
    if endpoint_path.startswith(PRIVATE_PATH_PREFIX):
        return endpoint_path[len(PRIVATE_PATH_PREFIX):]
    return endpoint_path


class RequestSigner:
    """Signs private requests and owns the nonce counter for the process lifetime."""

    def __init__(self, api_key: str, api_secret: str,
                 nonce_generator: Optional[NonceGenerator] = None):
        if not api_key:
            raise ConfigurationError("API key is required for request signing")
        try:
            self._secret = base64.b64decode(api_secret or "", validate=True)
        except (binascii.Error, ValueError) as e:
            raise ConfigurationError(f"API secret is not valid base64: {e}") from None
        if not self._secret:
            raise ConfigurationError("API secret is empty")

        self.api_key = api_key
        self.nonces = nonce_generator or NonceGenerator()

    def __repr__(self) -> str:
        return f"RequestSigner(api_key={self.api_key[:4]}***)"

    def sign(self, endpoint_path: str, nonce: str, body: str = "") -> str:
        message = (body or "") + nonce + normalize_path(endpoint_path)
        digest = hashlib.sha256(message.encode("utf-8")).digest()
        mac = hmac.new(self._secret, digest, hashlib.sha512)
        return base64.b64encode(mac.digest()).decode()

    def headers(self, endpoint_path: str, body: str = "") -> Dict[str, str]:
        """Authentication header set for one request (draws a fresh nonce)."""
        nonce = self.nonces.next()
        return {
            "APIKey": self.api_key,
            "Nonce": nonce,
            "Authent": self.sign(endpoint_path, nonce, body),
        }
