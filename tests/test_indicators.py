"""Indicator maths and the per-pair publisher state."""
import pytest

from libs.common.indicators import bollinger, compute_snapshot, ema, macd, rsi, sma
from libs.common.models import BB_POSITIONS, MACD_SIGNALS
from services.market_data.runner import PairState, build_message


class TestAverages:

    def test_sma(self):
        assert sma([1, 2, 3, 4, 5], 3) == pytest.approx(4.0)
        assert sma([1, 2], 3) == 0.0

    def test_ema_seeded_with_sma(self):
        assert ema([1, 2, 3], 3) == pytest.approx(2.0)
        assert ema([1, 2, 3, 4], 3) == pytest.approx(3.0)
        assert ema([1, 2], 3) == 0.0


class TestOscillators:

    def test_rsi_neutral_without_history(self):
        assert rsi([1, 2, 3], 14) == 50.0

    def test_rsi_extremes(self):
        up = [float(i) for i in range(30)]
        assert rsi(up, 14) == 100.0
        assert rsi(list(reversed(up)), 14) == pytest.approx(0.0)

    def test_macd_short_history(self):
        assert macd([1.0] * 10) == (0.0, "below_signal")

    def test_macd_flat(self):
        hist, _ = macd([100.0] * 60)
        assert hist == pytest.approx(0.0)

    def test_macd_rising(self):
        _, cls = macd([100.0 + i for i in range(80)])
        assert cls in MACD_SIGNALS


class TestBollinger:

    def test_flat_is_between(self):
        upper, lower, pos = bollinger([10.0] * 20)
        assert upper == lower == 10.0
        assert pos == "between_bands"

    def test_near_upper(self):
        _, _, pos = bollinger([float(i) for i in range(1, 21)])
        assert pos == "near_upper"

    def test_spike_above(self):
        _, _, pos = bollinger([10.0] * 19 + [100.0])
        assert pos == "above_upper"

    def test_drop_below(self):
        _, _, pos = bollinger([10.0] * 19 + [-80.0])
        assert pos == "below_lower"


class TestSnapshot:

    def test_compute_snapshot(self):
        closes = [100.0 + (i % 7) for i in range(250)]
        snap = compute_snapshot(closes, 105.5, volume_24h=10.0, price_change_pct=-1.2)
        assert snap.price == 105.5
        assert snap.volume_24h == 10.0
        assert 0.0 <= snap.rsi_14 <= 100.0
        assert snap.macd_signal in MACD_SIGNALS
        assert snap.bb_position in BB_POSITIONS
        assert snap.sma_200 > 0

    def test_pair_state(self):
        st = PairState("BTC/USDT")
        assert st.snapshot() is None

        st.closes.extend([100.0, 101.0, 102.0])
        st.apply_ticker({"c": "103.5", "v": "42", "P": "2.5"})
        st.apply_ticker({"c": "oops"})
        snap = st.snapshot()
        assert snap.price == 103.5
        assert snap.volume_24h == 42.0
        assert snap.price_change_pct == 2.5

    def test_message_attributes(self):
        snap = compute_snapshot([100.0] * 30, 100.0)
        msg = build_message("ETH/USDT", snap)
        assert msg["attributes"]["pair"] == "ETH/USDT"
        assert msg["attributes"]["rsi_14"] == snap.rsi_14
        assert msg["snapshot"]["price"] == 100.0
