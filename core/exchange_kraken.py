"""
perptrader Core: Exchange Connector (Kraken Futures)

Kraken Futures REST integration for one trading instrument.

Supports:
- Account data (available margin, open positions, open orders)
- Market data (public candles from the futures charts API or the spot OHLC API)
- Order execution (send, cancel), simulated when live trading is off
"""

import os
import time
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode
import logging

import requests

from core.exceptions import ConfigurationError, ExchangeError, ExchangeUnavailable, OrderRejected
from core.signing import RequestSigner

logger = logging.getLogger(__name__)

FUTURES_BASE = "https://futures.kraken.com"
SPOT_BASE = "https://api.kraken.com"

API_PREFIX = "/derivatives/api/v3"

# Kraken wire names for our order types
ORDER_TYPE_CODES = {"market": "mkt", "limit": "lmt", "stop": "stp"}
STOP_ORDER_TYPES = {"stp", "stop"}

# Futures charts API resolutions, keyed by minutes
CHART_RESOLUTIONS = {
    1: "1m", 5: "5m", 15: "15m", 30: "30m",
    60: "1h", 240: "4h", 720: "12h", 1440: "1d", 10080: "1w",
}


@dataclass(frozen=True)
class Credentials:
    """API key + base64 secret. Held in memory only."""
    api_key: str
    api_secret: str = field(repr=False)

    def __repr__(self) -> str:
        return f"Credentials(api_key={self.api_key[:4]}***)"


def load_credentials_from_env() -> Credentials:
    """
    Read exchange credentials from the environment.

    KRAKEN_FUTURES_API_KEY / KRAKEN_FUTURES_API_SECRET take precedence over
    KRAKEN_API_KEY / KRAKEN_API_SECRET.
    """
    api_key = os.getenv("KRAKEN_FUTURES_API_KEY") or os.getenv("KRAKEN_API_KEY") or ""
    api_secret = os.getenv("KRAKEN_FUTURES_API_SECRET") or os.getenv("KRAKEN_API_SECRET") or ""

    missing = []
    if not api_key.strip():
        missing.append("KRAKEN_FUTURES_API_KEY")
    if not api_secret.strip():
        missing.append("KRAKEN_FUTURES_API_SECRET")
    if missing:
        raise ConfigurationError(
            f"Missing exchange credentials: {', '.join(missing)} must be set as environment variables"
        )
    return Credentials(api_key=api_key.strip(), api_secret=api_secret.strip())


@dataclass
class Candle:
    """Candlestick data"""
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class Position:
    symbol: str
    side: str      # "long" | "short"
    size: float
    price: float   # average entry

    @property
    def is_long(self) -> bool:
        return self.side == "long"

    @property
    def closing_side(self) -> str:
        return "sell" if self.is_long else "buy"


@dataclass
class OpenOrder:
    order_id: str
    symbol: str
    side: str
    order_type: str
    size: float
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None
    reduce_only: bool = False

    @property
    def is_stop(self) -> bool:
        return self.order_type in STOP_ORDER_TYPES


@dataclass
class AccountSnapshot:
    """Exchange truth for one instrument at the start of a cycle. Replaced, never mutated."""
    symbol: str
    available_margin: float
    position: Optional[Position] = None
    open_orders: List[OpenOrder] = field(default_factory=list)

    @property
    def has_open_position(self) -> bool:
        return self.position is not None and self.position.size > 0

    @property
    def protective_orders(self) -> List[OpenOrder]:
        """Stop orders on the side that would close the current position."""
        if not self.has_open_position:
            return []
        closing = self.position.closing_side
        return [o for o in self.open_orders if o.is_stop and o.side == closing]

    @property
    def protective_order(self) -> Optional[OpenOrder]:
        orders = self.protective_orders
        return orders[0] if orders else None

    @property
    def stop_orders(self) -> List[OpenOrder]:
        """Every resting stop on the instrument, whichever side it is on."""
        return [o for o in self.open_orders if o.is_stop]

    @property
    def entry_orders(self) -> List[OpenOrder]:
        return [o for o in self.open_orders if not o.is_stop and not o.reduce_only]


@dataclass
class OrderRequest:
    symbol: str
    order_type: str           # "market" | "limit" | "stop"
    side: str                 # "buy" | "sell"
    size: float
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None
    reduce_only: bool = False

    def to_form(self) -> Dict[str, str]:
        if self.order_type not in ORDER_TYPE_CODES:
            raise ValueError(f"Unsupported order type: {self.order_type}")
        if self.side not in ("buy", "sell"):
            raise ValueError(f"Unsupported side: {self.side}")
        if self.size <= 0:
            raise ValueError("Order size must be positive")

        form = {
            "orderType": ORDER_TYPE_CODES[self.order_type],
            "symbol": self.symbol,
            "side": self.side,
            "size": format_number(self.size),
        }
        if self.limit_price is not None:
            form["limitPrice"] = format_number(self.limit_price)
        if self.stop_price is not None:
            form["stopPrice"] = format_number(self.stop_price)
        if self.reduce_only:
            form["reduceOnly"] = "true"
        return form


@dataclass
class OrderAck:
    order_id: Optional[str]
    status: str               # "placed" | "cancelled"
    simulated: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


def format_number(value: float) -> str:
    """Plain decimal string without exponent or trailing zeros."""
    text = f"{float(value):.10f}".rstrip("0").rstrip(".")
    return text or "0"


def _to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class KrakenFuturesExchange:
    """
    Kraken Futures API connector with HMAC authentication.

    Mutating calls are never retried. When live_trading is False, send_order
    and cancel_order return synthetic acknowledgments without network I/O.
    """

    def __init__(self, credentials: Credentials,
                 base_url: str = FUTURES_BASE,
                 spot_url: str = SPOT_BASE,
                 live_trading: bool = False,
                 margin_account: str = "flex",
                 timeout: float = 10.0,
                 read_retries: int = 1,
                 metrics=None,
                 signer: Optional[RequestSigner] = None):
        self.signer = signer or RequestSigner(credentials.api_key, credentials.api_secret)
        self.base_url = base_url.rstrip("/")
        self.spot_url = spot_url.rstrip("/")
        self.live_trading = bool(live_trading)
        self.margin_account = margin_account
        self.timeout = float(timeout)
        self.read_retries = max(1, int(read_retries))
        self.metrics = metrics

        logger.info(
            f"Initialized KrakenFuturesExchange (live_trading={self.live_trading}, "
            f"base_url={self.base_url}, margin_account={self.margin_account})"
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _req(self, method: str, endpoint: str, form: Optional[Dict[str, str]] = None,
             query: Optional[Dict[str, Any]] = None, authenticated: bool = True,
             max_retries: int = 1, url: Optional[str] = None) -> Dict[str, Any]:
        """
        HTTP request with optional retry for reads.

        Retries (only when max_retries > 1) on 429, 5xx and network errors.
        4xx responses and exchange-level errors raise OrderRejected immediately.
        """
        query_str = urlencode(sorted(query.items())) if query else ""
        body = urlencode(form) if form else ""
        target = url or (self.base_url + endpoint)
        if query_str:
            target = f"{target}?{query_str}"

        last_exception: Optional[Exception] = None
        for attempt in range(max_retries):
            started = time.perf_counter()
            status = "ok"
            try:
                headers = {}
                if authenticated:
                    # GET requests sign their query string as the post data
                    headers.update(self.signer.headers(endpoint, body or query_str))
                if body:
                    headers["Content-Type"] = "application/x-www-form-urlencoded"

                response = requests.request(
                    method,
                    target,
                    headers=headers,
                    data=body or None,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                payload = response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                status = f"http_{status_code}"
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"Kraken API client error: {status_code} on {endpoint} - {e.response.text}")
                    raise OrderRejected(endpoint, status) from e
                logger.warning(f"Kraken API {status_code} on {endpoint}, attempt {attempt + 1}/{max_retries}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                status = "network_error"
                logger.warning(f"Network error on {endpoint}: {e}, attempt {attempt + 1}/{max_retries}")
                last_exception = e

            except ValueError as e:
                status = "invalid_json"
                logger.error(f"Invalid JSON from {endpoint}: {e}")
                raise ExchangeUnavailable(endpoint, e) from e

            else:
                if isinstance(payload, dict) and payload.get("result") == "error":
                    error = str(payload.get("error") or "unknown")
                    logger.error(f"Kraken API error on {endpoint}: {error}")
                    raise OrderRejected(endpoint, error, payload)
                return payload

            finally:
                if self.metrics is not None:
                    self.metrics.record_api_call(endpoint, status, time.perf_counter() - started)

            if attempt < max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying {endpoint} in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {max_retries} attempt(s) failed for {endpoint}")
        raise ExchangeUnavailable(endpoint, last_exception)

    # ------------------------------------------------------------------
    # Account data
    # ------------------------------------------------------------------

    def get_available_margin(self) -> float:
        """Available margin (USD) of the configured margin account."""
        endpoint = f"{API_PREFIX}/accounts"
        resp = self._req("GET", endpoint, max_retries=self.read_retries)
        accounts = resp.get("accounts") or {}
        account = accounts.get(self.margin_account)
        if not isinstance(account, dict):
            raise ExchangeError(endpoint, f"margin account '{self.margin_account}' not found")

        margin = _to_float(account.get("availableMargin"))
        if margin is None:
            # single-collateral accounts report available funds under auxiliary.af
            margin = _to_float((account.get("auxiliary") or {}).get("af"))
        if margin is None:
            raise ExchangeError(endpoint, f"no available margin on account '{self.margin_account}'")
        return margin

    def get_open_positions(self, symbol: Optional[str] = None) -> List[Position]:
        resp = self._req("GET", f"{API_PREFIX}/openpositions", max_retries=self.read_retries)
        positions = []
        for raw in resp.get("openPositions") or []:
            if symbol and str(raw.get("symbol", "")).lower() != symbol.lower():
                continue
            size = _to_float(raw.get("size"), 0.0)
            if size <= 0:
                continue
            positions.append(Position(
                symbol=raw.get("symbol", ""),
                side=str(raw.get("side", "")).lower(),
                size=size,
                price=_to_float(raw.get("price"), 0.0),
            ))
        return positions

    def get_open_orders(self, symbol: Optional[str] = None) -> List[OpenOrder]:
        resp = self._req("GET", f"{API_PREFIX}/openorders", max_retries=self.read_retries)
        orders = []
        for raw in resp.get("openOrders") or []:
            if symbol and str(raw.get("symbol", "")).lower() != symbol.lower():
                continue
            orders.append(OpenOrder(
                order_id=raw.get("order_id", ""),
                symbol=raw.get("symbol", ""),
                side=str(raw.get("side", "")).lower(),
                order_type=str(raw.get("orderType", "")).lower(),
                size=_to_float(raw.get("unfilledSize"), _to_float(raw.get("size"), 0.0)),
                limit_price=_to_float(raw.get("limitPrice")),
                stop_price=_to_float(raw.get("stopPrice")),
                reduce_only=bool(raw.get("reduceOnly", False)),
            ))
        return orders

    def get_account_snapshot(self, symbol: str) -> AccountSnapshot:
        """Sequential composite read of margin, position and open orders."""
        positions = self.get_open_positions(symbol)
        return AccountSnapshot(
            symbol=symbol,
            available_margin=self.get_available_margin(),
            position=positions[0] if positions else None,
            open_orders=self.get_open_orders(symbol),
        )

    # ------------------------------------------------------------------
    # Market data (public)
    # ------------------------------------------------------------------

    def get_candles(self, symbol: str, interval_minutes: int = 1,
                    limit: int = 100, venue: str = "futures") -> List[Candle]:
        """
        Get OHLCV candles, oldest first.

        Args:
            symbol: futures symbol (e.g. "PF_XBTUSD") or spot pair (e.g. "XBTUSD")
            interval_minutes: candle width in minutes
            limit: number of most recent candles to return
            venue: "futures" (charts API) or "spot" (public OHLC)
        """
        if venue == "spot":
            candles = self._get_spot_candles(symbol, interval_minutes)
        elif venue == "futures":
            candles = self._get_futures_candles(symbol, interval_minutes)
        else:
            raise ValueError(f"Unknown market data venue: {venue}")

        candles.sort(key=lambda c: c.open_time)
        return candles[-limit:] if limit else candles

    def _get_futures_candles(self, symbol: str, interval_minutes: int) -> List[Candle]:
        resolution = CHART_RESOLUTIONS.get(int(interval_minutes))
        if resolution is None:
            raise ValueError(f"Unsupported candle interval: {interval_minutes} minutes")
        endpoint = f"/api/charts/v1/trade/{symbol}/{resolution}"
        resp = self._req("GET", endpoint, authenticated=False, max_retries=self.read_retries)

        candles = []
        for raw in resp.get("candles") or []:
            candles.append(Candle(
                open_time=datetime.fromtimestamp(int(raw["time"]) / 1000, tz=timezone.utc),
                open=float(raw["open"]),
                high=float(raw["high"]),
                low=float(raw["low"]),
                close=float(raw["close"]),
                volume=_to_float(raw.get("volume"), 0.0),
            ))
        return candles

    def _get_spot_candles(self, pair: str, interval_minutes: int) -> List[Candle]:
        endpoint = "/0/public/OHLC"
        resp = self._req(
            "GET",
            endpoint,
            query={"pair": pair, "interval": int(interval_minutes)},
            authenticated=False,
            max_retries=self.read_retries,
            url=self.spot_url + endpoint,
        )
        errors = resp.get("error") or []
        if errors:
            raise ExchangeError(endpoint, ", ".join(str(e) for e in errors))

        result = resp.get("result") or {}
        rows = next((v for k, v in result.items() if k != "last" and isinstance(v, list)), [])
        # [time, open, high, low, close, vwap, volume, count]
        return [
            Candle(
                open_time=datetime.fromtimestamp(int(row[0]), tz=timezone.utc),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[6]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Order execution
    # ------------------------------------------------------------------

    def send_order(self, order: OrderRequest) -> OrderAck:
        """Submit one order. Raises OrderRejected unless the exchange reports it placed."""
        form = order.to_form()
        if not self.live_trading:
            logger.info(f"SIMULATED ORDER (live trading off): {form}")
            return OrderAck(order_id=f"sim-{uuid.uuid4()}", status="placed", simulated=True)

        endpoint = f"{API_PREFIX}/sendorder"
        logger.warning(
            f"PLACING {order.order_type.upper()} ORDER: {order.side} {form['size']} {order.symbol}"
            f" limit={form.get('limitPrice')} stop={form.get('stopPrice')}"
        )
        resp = self._req("POST", endpoint, form=form, max_retries=1)

        send_status = resp.get("sendStatus") or {}
        status = send_status.get("status", "unknown")
        if resp.get("result") != "success" or status != "placed":
            logger.error(f"Order rejected by exchange: status={status}")
            raise OrderRejected(endpoint, status, resp)

        order_id = send_status.get("order_id")
        logger.info(f"Order placed: {order_id}")
        return OrderAck(order_id=order_id, status=status, raw=resp)

    def cancel_order(self, order_id: str) -> OrderAck:
        """Cancel one order. Raises OrderRejected unless the exchange reports it cancelled."""
        if not self.live_trading:
            logger.info(f"SIMULATED CANCEL (live trading off): {order_id}")
            return OrderAck(order_id=order_id, status="cancelled", simulated=True)

        endpoint = f"{API_PREFIX}/cancelorder"
        logger.warning(f"CANCELLING ORDER {order_id}")
        resp = self._req("POST", endpoint, form={"order_id": order_id}, max_retries=1)

        cancel_status = resp.get("cancelStatus") or {}
        status = cancel_status.get("status", "unknown")
        if resp.get("result") != "success" or status != "cancelled":
            logger.error(f"Cancel {order_id} rejected: status={status}")
            raise OrderRejected(endpoint, status, resp)

        logger.info(f"Successfully cancelled order {order_id}")
        return OrderAck(order_id=order_id, status=status, raw=resp)
