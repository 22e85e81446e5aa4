"""HTTP surface for backtests and trade history, backed by in-memory stores."""
import pytest
from fastapi.testclient import TestClient

from services.api import app as api
from services.backtest.reports import MemoryBacktestStore
from services.backtest.worker import MemoryQueue
from services.executor.trade_log import MemoryTradeLog
from services.executor.worker import MemoryBotDirectory
from libs.common.models import Action, OrderStatus, TradeRecord, Trigger
from fixtures import ALWAYS, T0, make_bot, make_snapshot, run


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(api, "BOTS", MemoryBotDirectory([make_bot(buy_query=ALWAYS)]))
    monkeypatch.setattr(api, "BACKTESTS", MemoryBacktestStore())
    monkeypatch.setattr(api, "QUEUE", MemoryQueue())
    monkeypatch.setattr(api, "TRADES", MemoryTradeLog())
    return TestClient(api.app)


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"


class TestBacktestRoutes:

    def test_submit_by_bot_id(self, client):
        resp = client.post("/backtests", json={"botId": "bot-1"})
        assert resp.status_code == 202
        body = resp.json()
        assert body["status"] == "pending"
        assert body["botId"] == "bot-1"
        assert body["backtestId"] in api.BACKTESTS.rows

    def test_submit_inline_config(self, client):
        bot = make_bot(bot_id="draft-9", buy_query=ALWAYS).model_dump(mode="json", by_alias=True)
        resp = client.post("/backtests", json={"bot": bot})
        assert resp.status_code == 202
        assert resp.json()["botId"] == "draft-9"

    def test_in_flight_conflict(self, client):
        assert client.post("/backtests", json={"botId": "bot-1"}).status_code == 202
        assert client.post("/backtests", json={"botId": "bot-1"}).status_code == 409

    def test_unknown_bot(self, client):
        assert client.post("/backtests", json={"botId": "ghost"}).status_code == 404

    def test_missing_bot(self, client):
        assert client.post("/backtests", json={}).status_code == 400

    def test_inverted_window(self, client):
        resp = client.post("/backtests", json={
            "botId": "bot-1",
            "windowStart": "2026-01-05T10:00:00Z",
            "windowEnd": "2026-01-04T10:00:00Z",
        })
        assert resp.status_code == 400

    def test_get_and_list(self, client):
        bid = client.post("/backtests", json={"botId": "bot-1"}).json()["backtestId"]
        assert client.get(f"/backtests/{bid}").json()["status"] == "pending"
        items = client.get("/bots/bot-1/backtests").json()["items"]
        assert [i["id"] for i in items] == [bid]
        assert client.get("/backtests/nope").status_code == 404


class TestTradeRoutes:

    def test_recent_trades(self, client):
        rec = TradeRecord(
            bot_id="bot-1", timestamp=T0, pair="BTC/USDT", action=Action.BUY, price=50000.0,
            trigger=Trigger.RULE, order_status=OrderStatus.FILLED, order_id="o-1",
            indicators_snapshot=make_snapshot(),
        )
        run(api.TRADES.append(rec))

        items = client.get("/bots/bot-1/trades", params={"limit": 10}).json()["items"]
        assert len(items) == 1
        assert items[0]["orderStatus"] == "filled"
        assert items[0]["indicatorsSnapshot"]["price"] == 50000.0

    def test_limit_bounds(self, client):
        assert client.get("/bots/bot-1/trades", params={"limit": 0}).status_code == 422
