"""Backtest simulation over stored price history."""
import pytest

from libs.common.errors import NoPriceHistoryError
from libs.common.models import Action, Sizing, Trigger
from services.backtest.engine import pair_pnl, run_backtest
from fixtures import ALWAYS, NEVER, T0, group, make_bot, make_ticks, rule


def buy_below(x):
    return group("and", rule("price", "<", str(x)))


def sell_above(x):
    return group("and", rule("price", ">", str(x)))


class TestBacktestScenarios:

    def test_round_trip_profit(self):
        bot = make_bot(buy_query=buy_below(50000), sell_query=sell_above(49000))
        report = run_backtest(bot, make_ticks([45000, 55000]))

        s = report.summary
        assert s.net_pnl == pytest.approx(222.22)
        assert s.win_rate == 100.0
        assert (s.total_trades, s.total_buys, s.total_sells) == (2, 1, 1)
        assert s.avg_hold_time_minutes == 1
        assert report.sizing_mode == "default"
        assert [t.action for t in report.trades] == [Action.BUY, Action.SELL]

    def test_stop_loss_exit(self):
        bot = make_bot(buy_query=buy_below(50000), sell_query=NEVER, stop_loss={"percentage": 10})
        report = run_backtest(bot, make_ticks([40000, 35000]))

        assert report.trades[-1].trigger is Trigger.STOP_LOSS
        assert report.summary.net_pnl == pytest.approx(-125.0)
        assert report.summary.largest_loss == pytest.approx(-125.0)
        assert report.summary.win_rate == 0.0

    def test_take_profit_exit(self):
        bot = make_bot(buy_query=ALWAYS, take_profit={"percentage": 5})
        report = run_backtest(bot, make_ticks([100, 104, 106]))

        assert [t.trigger for t in report.trades] == [Trigger.RULE, Trigger.TAKE_PROFIT]
        assert report.trades[-1].price == 106

    def test_empty_history_raises(self):
        with pytest.raises(NoPriceHistoryError):
            run_backtest(make_bot(buy_query=ALWAYS), [])

    def test_no_trades(self):
        report = run_backtest(make_bot(buy_query=NEVER), make_ticks([100, 101, 102]))
        assert report.summary.total_trades == 0
        assert report.summary.net_pnl == 0.0
        assert report.summary.avg_hold_time_minutes == 0


class TestBacktestAccounting:

    def test_open_position_marked_to_last_price(self):
        bot = make_bot(buy_query=buy_below(101), sell_query=NEVER)
        report = run_backtest(bot, make_ticks([100, 110, 120]))

        assert report.summary.total_buys == 1
        assert report.summary.total_sells == 0
        assert report.summary.net_pnl == pytest.approx(200.0)
        assert report.summary.win_rate == 0.0

    def test_fixed_sizing_used_when_configured(self):
        bot = make_bot(buy_query=buy_below(101), sell_query=sell_above(105),
                       buy_sizing=Sizing(type="fixed", value=500))
        report = run_backtest(bot, make_ticks([100, 110]))

        assert report.sizing_mode == "configured"
        assert report.summary.net_pnl == pytest.approx(50.0)

    def test_percentage_sizing_applied_to_default_notional(self):
        bot = make_bot(buy_query=buy_below(101), sell_query=sell_above(105),
                       buy_sizing=Sizing(type="percentage", value=20))
        report = run_backtest(bot, make_ticks([100, 110]), default_notional=1000.0)
        assert report.summary.net_pnl == pytest.approx(20.0)

    def test_pair_pnl_default_mode_ignores_sizing(self):
        pnl = pair_pnl(100.0, 110.0, Sizing(type="fixed", value=500), "default", 1000.0)
        assert pnl == pytest.approx(100.0)

    def test_fifo_matching_in_cooldown_mode(self):
        bot = make_bot(execution_mode="condition_cooldown",
                       buy_query=buy_below(105), sell_query=sell_above(105))
        # buys at 100 and 104, sells at 110 and 120
        report = run_backtest(bot, make_ticks([100, 104, 110, 120]))

        assert report.summary.total_buys == 2
        assert report.summary.total_sells == 2
        expected = 1000 / 100 * 10 + 1000 / 104 * 16
        assert report.summary.net_pnl == pytest.approx(round(expected, 2))
        assert report.summary.largest_gain == pytest.approx(round(1000 / 104 * 16, 2))
        assert report.summary.avg_hold_time_minutes == 2

    def test_one_trade_per_tick(self):
        bot = make_bot(execution_mode="condition_cooldown", buy_query=ALWAYS, sell_query=ALWAYS)
        report = run_backtest(bot, make_ticks([100, 100, 100]))
        assert [t.action for t in report.trades] == [Action.BUY] * 3

    def test_cooldown_respected(self):
        bot = make_bot(execution_mode="condition_cooldown", buy_query=ALWAYS, cooldown_minutes=5)
        report = run_backtest(bot, make_ticks([100] * 10))
        assert [t.timestamp.minute for t in report.trades] == [0, 5]


class TestBacktestReportShape:

    def test_hourly_buckets(self):
        bot = make_bot(buy_query=buy_below(101), sell_query=sell_above(105))
        report = run_backtest(bot, make_ticks([100, 102, 110, 111], step_minutes=30))

        assert [b.hour_start.hour for b in report.hourly_buckets] == [10, 11]
        first, second = report.hourly_buckets
        assert (first.open_price, first.close_price) == (100, 102)
        assert (second.open_price, second.close_price) == (110, 111)
        assert (first.total_buys, second.total_sells) == (1, 1)
        assert second.realised_pnl == pytest.approx(100.0)

    def test_unsorted_ticks_are_ordered(self):
        bot = make_bot(buy_query=buy_below(50000), sell_query=sell_above(49000))
        ticks = make_ticks([45000, 55000])
        report = run_backtest(bot, list(reversed(ticks)))
        assert report.summary.net_pnl == pytest.approx(222.22)

    def test_window_defaults_to_tick_range(self):
        ticks = make_ticks([100, 101, 102])
        report = run_backtest(make_bot(buy_query=NEVER), ticks)
        assert report.window.start == T0
        assert report.window.end == ticks[-1].timestamp

    def test_camel_case_dump(self):
        report = run_backtest(make_bot(buy_query=ALWAYS), make_ticks([100]))
        data = report.model_dump(mode="json", by_alias=True)
        assert "hourlyBuckets" in data
        assert "netPnl" in data["summary"]
        assert data["sizingMode"] == "default"
