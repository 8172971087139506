import base64
from unittest.mock import Mock, patch
from urllib.parse import parse_qs

import pytest
import requests

from core.exceptions import ExchangeError, ExchangeUnavailable, OrderRejected
from core.exchange_kraken import (
    API_PREFIX,
    Credentials,
    KrakenFuturesExchange,
    OrderRequest,
    format_number,
)

SECRET = base64.b64encode(b"exchange-test-secret").decode()


def _response(payload, status_code=200):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = payload
    response.text = str(payload)
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(response=response)
    else:
        response.raise_for_status.return_value = None
    return response


@pytest.fixture
def exchange():
    return KrakenFuturesExchange(Credentials("test-key", SECRET), live_trading=True)


@pytest.fixture
def dry_exchange():
    return KrakenFuturesExchange(Credentials("test-key", SECRET), live_trading=False)


class TestAccountReads:

    @patch('core.exchange_kraken.requests.request')
    def test_available_margin_from_flex_account(self, mock_request, exchange):
        mock_request.return_value = _response({
            "result": "success",
            "accounts": {"flex": {"type": "multiCollateralMarginAccount", "availableMargin": 1234.56}},
        })

        assert exchange.get_available_margin() == 1234.56

        method, url = mock_request.call_args[0]
        headers = mock_request.call_args[1]["headers"]
        assert method == "GET"
        assert url == "https://futures.kraken.com/derivatives/api/v3/accounts"
        assert set(headers) >= {"APIKey", "Nonce", "Authent"}

    @patch('core.exchange_kraken.requests.request')
    def test_available_margin_falls_back_to_auxiliary(self, mock_request):
        exchange = KrakenFuturesExchange(Credentials("k", SECRET), margin_account="fi_xbtusd")
        mock_request.return_value = _response({
            "result": "success",
            "accounts": {"fi_xbtusd": {"auxiliary": {"af": "87.5"}}},
        })

        assert exchange.get_available_margin() == 87.5

    @patch('core.exchange_kraken.requests.request')
    def test_missing_margin_account_raises(self, mock_request, exchange):
        mock_request.return_value = _response({"result": "success", "accounts": {}})

        with pytest.raises(ExchangeError, match="flex"):
            exchange.get_available_margin()

    @patch('core.exchange_kraken.requests.request')
    def test_open_positions_filtered_by_symbol(self, mock_request, exchange):
        mock_request.return_value = _response({
            "result": "success",
            "openPositions": [
                {"side": "long", "symbol": "PF_XBTUSD", "price": 50000.0, "size": 0.01},
                {"side": "short", "symbol": "PF_ETHUSD", "price": 3000.0, "size": 1.0},
            ],
        })

        positions = exchange.get_open_positions("pf_xbtusd")

        assert len(positions) == 1
        assert positions[0].is_long
        assert positions[0].size == 0.01
        assert positions[0].closing_side == "sell"

    @patch('core.exchange_kraken.requests.request')
    def test_open_orders_parsed(self, mock_request, exchange):
        mock_request.return_value = _response({
            "result": "success",
            "openOrders": [
                {"order_id": "a1", "symbol": "PF_XBTUSD", "side": "sell", "orderType": "stop",
                 "limitPrice": 48999, "stopPrice": 49000, "unfilledSize": 0.01, "reduceOnly": True},
                {"order_id": "b2", "symbol": "PF_XBTUSD", "side": "buy", "orderType": "lmt",
                 "limitPrice": 47000, "unfilledSize": 0.02},
            ],
        })

        orders = exchange.get_open_orders("PF_XBTUSD")

        assert [o.order_id for o in orders] == ["a1", "b2"]
        assert orders[0].is_stop and orders[0].stop_price == 49000.0
        assert not orders[1].is_stop and orders[1].size == 0.02


class TestCandles:

    @patch('core.exchange_kraken.requests.request')
    def test_futures_candles_oldest_first_and_limited(self, mock_request, exchange):
        mock_request.return_value = _response({"candles": [
            {"time": 1700000120000, "open": "3", "high": "3", "low": "3", "close": "3", "volume": "1"},
            {"time": 1700000000000, "open": "1", "high": "1", "low": "1", "close": "1", "volume": "1"},
            {"time": 1700000060000, "open": "2", "high": "2", "low": "2", "close": "2", "volume": "1"},
        ]})

        candles = exchange.get_candles("PF_XBTUSD", interval_minutes=1, limit=2, venue="futures")

        assert [c.close for c in candles] == [2.0, 3.0]
        url = mock_request.call_args[0][1]
        assert url == "https://futures.kraken.com/api/charts/v1/trade/PF_XBTUSD/1m"
        assert "APIKey" not in mock_request.call_args[1]["headers"]

    @patch('core.exchange_kraken.requests.request')
    def test_spot_candles(self, mock_request, exchange):
        mock_request.return_value = _response({
            "error": [],
            "result": {
                "XXBTZUSD": [
                    [1700000000, "100.0", "110.0", "95.0", "105.0", "104.0", "12.5", 40],
                    [1700000060, "105.0", "106.0", "101.0", "102.0", "103.0", "3.0", 11],
                ],
                "last": 1700000060,
            },
        })

        candles = exchange.get_candles("XBTUSD", interval_minutes=1, limit=100, venue="spot")

        assert len(candles) == 2
        assert candles[0].close == 105.0 and candles[0].volume == 12.5
        url = mock_request.call_args[0][1]
        assert url.startswith("https://api.kraken.com/0/public/OHLC?")
        assert "pair=XBTUSD" in url and "interval=1" in url

    @patch('core.exchange_kraken.requests.request')
    def test_spot_error_field_raises(self, mock_request, exchange):
        mock_request.return_value = _response({"error": ["EQuery:Unknown asset pair"], "result": {}})

        with pytest.raises(ExchangeError, match="Unknown asset pair"):
            exchange.get_candles("NOPE", venue="spot")

    def test_unknown_venue_rejected(self, exchange):
        with pytest.raises(ValueError):
            exchange.get_candles("PF_XBTUSD", venue="options")


class TestOrders:

    @patch('core.exchange_kraken.requests.request')
    def test_send_order_posts_form_body(self, mock_request, exchange):
        mock_request.return_value = _response({
            "result": "success",
            "sendStatus": {"order_id": "abc-123", "status": "placed"},
        })

        ack = exchange.send_order(OrderRequest(
            symbol="PF_XBTUSD", order_type="stop", side="sell", size=0.0105,
            limit_price=48999.0, stop_price=49000.0,
        ))

        assert ack.order_id == "abc-123"
        assert ack.status == "placed"
        assert not ack.simulated

        method, url = mock_request.call_args[0]
        kwargs = mock_request.call_args[1]
        assert method == "POST"
        assert url == f"https://futures.kraken.com{API_PREFIX}/sendorder"
        form = parse_qs(kwargs["data"])
        assert form == {
            "orderType": ["stp"],
            "symbol": ["PF_XBTUSD"],
            "side": ["sell"],
            "size": ["0.0105"],
            "limitPrice": ["48999"],
            "stopPrice": ["49000"],
        }
        assert kwargs["headers"]["Content-Type"] == "application/x-www-form-urlencoded"

    @patch('core.exchange_kraken.requests.request')
    def test_reduce_only_flag_sent(self, mock_request, exchange):
        mock_request.return_value = _response({
            "result": "success",
            "sendStatus": {"order_id": "x", "status": "placed"},
        })

        exchange.send_order(OrderRequest("PF_XBTUSD", "market", "sell", 0.01, reduce_only=True))

        form = parse_qs(mock_request.call_args[1]["data"])
        assert form["reduceOnly"] == ["true"]
        assert form["orderType"] == ["mkt"]

    @patch('core.exchange_kraken.requests.request')
    def test_send_order_not_placed_is_rejected(self, mock_request, exchange):
        mock_request.return_value = _response({
            "result": "success",
            "sendStatus": {"status": "insufficientAvailableFunds"},
        })

        with pytest.raises(OrderRejected) as exc_info:
            exchange.send_order(OrderRequest("PF_XBTUSD", "market", "buy", 0.01))

        assert exc_info.value.status == "insufficientAvailableFunds"
        assert mock_request.call_count == 1

    @patch('core.exchange_kraken.requests.request')
    def test_exchange_error_result_is_rejected(self, mock_request, exchange):
        mock_request.return_value = _response({"result": "error", "error": "nonceBelowThreshold"})

        with pytest.raises(OrderRejected, match="nonceBelowThreshold"):
            exchange.send_order(OrderRequest("PF_XBTUSD", "market", "buy", 0.01))

    @patch('core.exchange_kraken.requests.request')
    def test_cancel_order(self, mock_request, exchange):
        mock_request.return_value = _response({
            "result": "success",
            "cancelStatus": {"status": "cancelled", "order_id": "abc"},
        })

        ack = exchange.cancel_order("abc")

        assert ack.status == "cancelled"
        assert parse_qs(mock_request.call_args[1]["data"]) == {"order_id": ["abc"]}

    @patch('core.exchange_kraken.requests.request')
    def test_cancel_not_found_is_rejected(self, mock_request, exchange):
        mock_request.return_value = _response({
            "result": "success",
            "cancelStatus": {"status": "notFound"},
        })

        with pytest.raises(OrderRejected):
            exchange.cancel_order("abc")

    @patch('core.exchange_kraken.requests.request')
    def test_simulated_orders_when_live_trading_off(self, mock_request, dry_exchange):
        ack = dry_exchange.send_order(OrderRequest("PF_XBTUSD", "market", "buy", 0.01))
        cancel = dry_exchange.cancel_order("abc")

        assert ack.simulated and ack.order_id.startswith("sim-")
        assert cancel.simulated and cancel.status == "cancelled"
        mock_request.assert_not_called()

    def test_invalid_order_request_rejected_before_network(self, dry_exchange):
        with pytest.raises(ValueError):
            dry_exchange.send_order(OrderRequest("PF_XBTUSD", "market", "buy", 0))
        with pytest.raises(ValueError):
            dry_exchange.send_order(OrderRequest("PF_XBTUSD", "trailing", "buy", 1))


class TestTransportErrors:

    @patch('core.exchange_kraken.requests.request')
    def test_client_error_not_retried(self, mock_request):
        exchange = KrakenFuturesExchange(Credentials("k", SECRET), read_retries=3)
        mock_request.return_value = _response({"error": "authenticationError"}, status_code=401)

        with pytest.raises(OrderRejected) as exc_info:
            exchange.get_available_margin()

        assert exc_info.value.status == "http_401"
        assert mock_request.call_count == 1

    @patch('core.exchange_kraken.time.sleep')
    @patch('core.exchange_kraken.requests.request')
    def test_server_error_retried_for_reads(self, mock_request, mock_sleep):
        exchange = KrakenFuturesExchange(Credentials("k", SECRET), read_retries=3)
        mock_request.side_effect = [
            _response({}, status_code=503),
            _response({"result": "success", "accounts": {"flex": {"availableMargin": 10}}}),
        ]

        assert exchange.get_available_margin() == 10
        assert mock_request.call_count == 2
        assert mock_sleep.call_count == 1

    @patch('core.exchange_kraken.requests.request')
    def test_timeout_is_unavailable(self, mock_request, exchange):
        mock_request.side_effect = requests.exceptions.Timeout("timed out")

        with pytest.raises(ExchangeUnavailable):
            exchange.get_open_positions()

    @patch('core.exchange_kraken.requests.request')
    def test_mutating_calls_never_retried(self, mock_request):
        exchange = KrakenFuturesExchange(Credentials("k", SECRET), live_trading=True, read_retries=3)
        mock_request.side_effect = requests.exceptions.ConnectionError("reset")

        with pytest.raises(ExchangeUnavailable):
            exchange.send_order(OrderRequest("PF_XBTUSD", "market", "buy", 0.01))

        assert mock_request.call_count == 1

    @patch('core.exchange_kraken.requests.request')
    def test_invalid_json_is_unavailable(self, mock_request, exchange):
        response = _response({})
        response.json.side_effect = ValueError("Expecting value")
        mock_request.return_value = response

        with pytest.raises(ExchangeUnavailable):
            exchange.get_open_orders()

    @patch('core.exchange_kraken.requests.request')
    def test_api_calls_reported_to_metrics(self, mock_request):
        metrics = Mock()
        exchange = KrakenFuturesExchange(Credentials("k", SECRET), metrics=metrics)
        mock_request.return_value = _response({"result": "success", "openPositions": []})

        exchange.get_open_positions()

        endpoint, status, duration = metrics.record_api_call.call_args[0]
        assert endpoint == f"{API_PREFIX}/openpositions"
        assert status == "ok"
        assert duration >= 0


def test_format_number_has_no_exponent():
    assert format_number(0.0001) == "0.0001"
    assert format_number(50000.0) == "50000"
    assert format_number(1e-7) == "0.0000001"
