from __future__ import annotations
from math import sqrt
from typing import List, Optional, Tuple

from libs.common.models import IndicatorSnapshot

# --- petites utils ---

def sma(values: List[float], period: int) -> float:
    if period <= 0 or len(values) < period:
        return 0.0
    return sum(values[-period:]) / period


def ema_series(values: List[float], period: int) -> List[Optional[float]]:
    if period <= 1 or len(values) == 0:
        return [None] * len(values)
    k = 2.0 / (period + 1.0)
    out: List[Optional[float]] = [None] * len(values)
    # seed: SMA
    if len(values) >= period:
        prev = sum(values[:period]) / period
        out[period - 1] = prev
        for i in range(period, len(values)):
            prev = values[i] * k + prev * (1.0 - k)
            out[i] = prev
    return out


def ema(values: List[float], period: int) -> float:
    series = ema_series(values, period)
    if not series or series[-1] is None:
        return 0.0
    return float(series[-1])


def rsi(values: List[float], period: int) -> float:
    """Wilder RSI; 50 tant qu'il n'y a pas assez de clôtures."""
    if len(values) < period + 1:
        return 50.0
    gain = loss = 0.0
    for i in range(1, period + 1):
        diff = values[i] - values[i - 1]
        gain += max(diff, 0.0)
        loss += max(-diff, 0.0)
    gain /= period
    loss /= period
    for i in range(period + 1, len(values)):
        diff = values[i] - values[i - 1]
        gain = (gain * (period - 1) + max(diff, 0.0)) / period
        loss = (loss * (period - 1) + max(-diff, 0.0)) / period
    if loss == 0:
        return 100.0
    return 100.0 - 100.0 / (1.0 + gain / loss)


def macd(values: List[float], fast: int = 12, slow: int = 26, signal: int = 9) -> Tuple[float, str]:
    """(histogram, classification) of MACD(fast, slow, signal)."""
    if len(values) < slow:
        return 0.0, "below_signal"
    fast_s = ema_series(values, fast)
    slow_s = ema_series(values, slow)
    line = [f - s for f, s in zip(fast_s[slow - 1:], slow_s[slow - 1:])]
    macd_now = line[-1]

    sig = 0.0
    if len(line) >= signal:
        sig_s = ema_series(line, signal)
        sig = float(sig_s[-1])
    hist = macd_now - sig

    prev = line[-2] if len(line) >= 2 else macd_now
    if prev <= sig and macd_now > sig:
        cls = "bullish_crossover"
    elif prev >= sig and macd_now < sig:
        cls = "bearish_crossover"
    elif macd_now > sig:
        cls = "above_signal"
    else:
        cls = "below_signal"
    return hist, cls


def bollinger(values: List[float], period: int = 20, k: float = 2.0) -> Tuple[float, float, str]:
    """(upper, lower, position); 'near' = within 10% of the band width from a band."""
    if len(values) < period:
        return 0.0, 0.0, "between_bands"
    window = values[-period:]
    mid = sum(window) / period
    sd = sqrt(sum((v - mid) ** 2 for v in window) / period)
    upper, lower = mid + k * sd, mid - k * sd
    px = values[-1]
    width = upper - lower
    if px > upper:
        pos = "above_upper"
    elif px < lower:
        pos = "below_lower"
    elif px > upper - width * 0.1:
        pos = "near_upper"
    elif px < lower + width * 0.1:
        pos = "near_lower"
    else:
        pos = "between_bands"
    return upper, lower, pos


# --- snapshot ---

def compute_snapshot(
    closes: List[float],
    last_price: float,
    volume_24h: float = 0.0,
    price_change_pct: float = 0.0,
) -> IndicatorSnapshot:
    hist, macd_cls = macd(closes)
    upper, lower, pos = bollinger(closes)
    return IndicatorSnapshot(
        price=float(last_price),
        volume_24h=float(volume_24h),
        price_change_pct=float(price_change_pct),
        rsi_14=rsi(closes, 14),
        rsi_7=rsi(closes, 7),
        macd_histogram=hist,
        macd_signal=macd_cls,
        sma_20=sma(closes, 20),
        sma_50=sma(closes, 50),
        sma_200=sma(closes, 200),
        ema_12=ema(closes, 12),
        ema_20=ema(closes, 20),
        ema_26=ema(closes, 26),
        bb_upper=upper,
        bb_lower=lower,
        bb_position=pos,
    )
