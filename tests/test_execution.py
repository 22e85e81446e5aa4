"""Order sizing and the exchange gateways."""
import json

import httpx
import pytest

from libs.common.errors import ExchangeError
from libs.common.models import Action, OrderStatus, Sizing
from services.executor.execution import (
    Balance,
    BinanceGateway,
    DemoExchangeGateway,
    calculate_order_size,
    execute_order,
)
from fixtures import FakeGateway, run


class TestSizing:

    def test_fixed_notional(self):
        gw = FakeGateway()
        size = run(calculate_order_size(gw, "acc", "BTC/USDT", Action.BUY, Sizing(type="fixed", value=500), 50000.0))
        assert size == pytest.approx(0.01)
        assert gw.balance_calls == 0

    def test_percentage_buy_uses_quote_balance(self):
        gw = FakeGateway(balance=Balance(quote=2000.0, base=3.0))
        size = run(calculate_order_size(gw, "acc", "BTC/USDT", Action.BUY, Sizing(type="percentage", value=50), 40000.0))
        assert size == pytest.approx(1000.0 / 40000.0)

    def test_percentage_sell_uses_base_balance(self):
        gw = FakeGateway(balance=Balance(quote=2000.0, base=3.0))
        size = run(calculate_order_size(gw, "acc", "BTC/USDT", Action.SELL, Sizing(type="percentage", value=25), 40000.0))
        assert size == pytest.approx(0.75)

    def test_balance_failure_is_skipped(self):
        gw = FakeGateway(balance_error=ExchangeError("down"))
        out = run(execute_order(gw, "acc", "BTC/USDT", Action.BUY, Sizing(type="percentage", value=10), 100.0))
        assert out.status is OrderStatus.SKIPPED
        assert gw.orders == []

    def test_zero_size_is_skipped(self):
        gw = FakeGateway(balance=Balance(quote=0.0, base=0.0))
        out = run(execute_order(gw, "acc", "BTC/USDT", Action.SELL, Sizing(type="percentage", value=10), 100.0))
        assert out.status is OrderStatus.SKIPPED
        assert gw.orders == []

    def test_no_sizing_is_skipped(self):
        out = run(execute_order(FakeGateway(), "acc", "BTC/USDT", Action.BUY, None, 100.0))
        assert out.status is OrderStatus.SKIPPED

    def test_order_request_shape(self):
        gw = FakeGateway()
        out = run(execute_order(gw, "acc-9", "BTC/USDT", Action.BUY, Sizing(type="fixed", value=1000), 50000.0))
        assert out.filled
        assert gw.orders == [("acc-9", "BTC/USDT", Action.BUY, pytest.approx(0.02))]


def demo_gateway(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DemoExchangeGateway("http://exchange.test", client=client)


class TestDemoExchangeGateway:

    def test_balance(self):
        def handler(request):
            assert request.url.path == "/balance"
            assert request.url.params["accountId"] == "acc"
            assert request.url.params["pair"] == "BTC/USDT"
            return httpx.Response(200, json={"quote": 1500.5, "base": 0.25})

        bal = run(demo_gateway(handler).get_balance("acc", "BTC/USDT"))
        assert bal == Balance(quote=1500.5, base=0.25)

    def test_filled_order(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"status": "filled", "orderId": "ord-1"})

        out = run(demo_gateway(handler).place_order("acc", "BTC/USDT", Action.SELL, 0.5))
        assert out.status is OrderStatus.FILLED
        assert out.order_id == "ord-1"
        assert seen == {"accountId": "acc", "pair": "BTC/USDT", "side": "sell", "size": 0.5}

    def test_rejected_order_is_failed(self):
        def handler(request):
            return httpx.Response(200, json={"status": "failed", "failReason": "insufficient funds"})

        out = run(demo_gateway(handler).place_order("acc", "BTC/USDT", Action.BUY, 1.0))
        assert out.status is OrderStatus.FAILED
        assert out.fail_reason == "insufficient funds"

    def test_http_error_raises_exchange_error(self):
        def handler(request):
            return httpx.Response(503, json={"error": "unavailable"})

        with pytest.raises(ExchangeError):
            run(demo_gateway(handler).get_balance("acc", "BTC/USDT"))

    def test_transport_error_becomes_failed_outcome(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        out = run(execute_order(demo_gateway(handler), "acc", "BTC/USDT", Action.BUY,
                                Sizing(type="fixed", value=100), 100.0))
        assert out.status is OrderStatus.FAILED
        assert "refused" in out.fail_reason


class FakeSpot:
    def __init__(self, status="FILLED"):
        self.status = status
        self.orders = []

    def time(self):
        return {"serverTime": 1_700_000_000_000}

    def exchange_info(self, symbol):
        return {"symbols": [{"symbol": symbol, "filters": [
            {"filterType": "LOT_SIZE", "stepSize": "0.00100000", "minQty": "0.00100000"},
        ]}]}

    def account(self, **kw):
        return {"balances": [
            {"asset": "BTC", "free": "0.5", "locked": "0"},
            {"asset": "USDT", "free": "1234.5", "locked": "0"},
        ]}

    def new_order(self, **kw):
        self.orders.append(kw)
        return {"orderId": 42, "status": self.status}


class TestBinanceGateway:

    def test_quantity_floored_to_step(self):
        gw = BinanceGateway("testnet", "", "", client=FakeSpot())
        assert gw.format_qty("BTCUSDT", 0.0123456) == "0.012"
        assert gw.format_qty("BTCUSDT", 0.0009) == "0"

    def test_balance_from_account(self):
        gw = BinanceGateway("testnet", "", "", client=FakeSpot())
        assert run(gw.get_balance("acc", "BTC/USDT")) == Balance(quote=1234.5, base=0.5)

    def test_market_order(self):
        spot = FakeSpot()
        gw = BinanceGateway("testnet", "", "", client=spot)
        out = run(gw.place_order("acc", "BTC/USDT", Action.BUY, 0.0257))
        assert out.status is OrderStatus.FILLED
        assert out.order_id == "42"
        assert spot.orders[0]["symbol"] == "BTCUSDT"
        assert spot.orders[0]["side"] == "BUY"
        assert spot.orders[0]["quantity"] == "0.025"

    def test_below_min_qty_not_sent(self):
        spot = FakeSpot()
        gw = BinanceGateway("testnet", "", "", client=spot)
        out = run(gw.place_order("acc", "BTC/USDT", Action.SELL, 0.0001))
        assert out.status is OrderStatus.FAILED
        assert spot.orders == []
