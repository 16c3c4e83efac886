from typing import List, Literal, Sequence

import numpy as np
import pandas as pd
import pandas_ta as ta
from pydantic import BaseModel

from .models import PriceBar


Band = Literal["oversold", "neutral", "overbought"]
Trend = Literal["bullish", "bearish", "neutral"]

# --- Constants for Indicator Bands ---
RSI_OVERSOLD = 30
RSI_OVERBOUGHT = 70
STOCHASTIC_OVERSOLD = 20
STOCHASTIC_OVERBOUGHT = 80
MFI_OVERSOLD = 20
MFI_OVERBOUGHT = 80
NEUTRAL_OSCILLATOR = 50.0


class RSIResult(BaseModel):
    value: float
    band: Band


class MACDResult(BaseModel):
    macd: float
    signal: float
    histogram: float
    trend: Trend


class BollingerResult(BaseModel):
    upper: float
    middle: float
    lower: float
    percent_b: float
    bandwidth: float
    band: Band


class StochasticResult(BaseModel):
    k: float
    d: float
    band: Band


class OBVResult(BaseModel):
    value: float
    trend: Trend


class MFIResult(BaseModel):
    value: float
    band: Band


class CandlestickPattern(BaseModel):
    pattern: str
    signal: Trend
    strength: float  # 0-100


def _band(value: float, low: float, high: float) -> Band:
    if value < low:
        return "oversold"
    if value > high:
        return "overbought"
    return "neutral"


def _bars_frame(bars: Sequence[PriceBar]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "open": [b.open for b in bars],
            "high": [b.high for b in bars],
            "low": [b.low for b in bars],
            "close": [b.close for b in bars],
            "volume": [b.volume for b in bars],
        },
        dtype=float,
    )


# --- Moving Averages ---

def calculate_sma(prices: Sequence[float], period: int) -> List[float]:
    """Simple moving average. Empty when there are fewer prices than the period."""
    if period <= 0 or len(prices) < period:
        return []
    return pd.Series(prices, dtype=float).rolling(window=period).mean().dropna().tolist()


def calculate_ema(prices: Sequence[float], period: int) -> List[float]:
    """
    Exponential moving average with smoothing 2/(period+1), seeded with the first price.
    Returns one value per input price.
    """
    if period <= 0 or not prices:
        return []
    return pd.Series(prices, dtype=float).ewm(span=period, adjust=False).mean().tolist()


# --- Oscillators ---

def calculate_rsi(prices: Sequence[float], period: int = 14) -> RSIResult:
    """
    Relative Strength Index using Wilder's smoothing.
    Returns a neutral 50 until period+1 prices are available.
    """
    if len(prices) < period + 1:
        return RSIResult(value=NEUTRAL_OSCILLATOR, band="neutral")

    changes = np.diff(np.asarray(prices, dtype=float))
    gains = np.where(changes > 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)

    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        value = 100.0 if avg_gain > 0 else NEUTRAL_OSCILLATOR
    else:
        rs = avg_gain / avg_loss
        value = 100.0 - 100.0 / (1.0 + rs)

    return RSIResult(value=float(value), band=_band(value, RSI_OVERSOLD, RSI_OVERBOUGHT))


def calculate_macd(prices: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> MACDResult:
    """MACD over first-price-seeded EMAs, matching `calculate_ema`."""
    if len(prices) < slow:
        return MACDResult(macd=0.0, signal=0.0, histogram=0.0, trend="neutral")

    series = pd.Series(prices, dtype=float)
    macd_line = series.ewm(span=fast, adjust=False).mean() - series.ewm(span=slow, adjust=False).mean()
    signal_line = macd_line.ewm(span=signal, adjust=False).mean()

    macd_value = float(macd_line.iloc[-1])
    signal_value = float(signal_line.iloc[-1])
    histogram = macd_value - signal_value

    if histogram > 0:
        trend = "bullish"
    elif histogram < 0:
        trend = "bearish"
    else:
        trend = "neutral"
    return MACDResult(macd=macd_value, signal=signal_value, histogram=histogram, trend=trend)


def calculate_bollinger_bands(prices: Sequence[float], period: int = 20, std_dev: float = 2.0) -> BollingerResult:
    """Bollinger bands over the last `period` prices using the population standard deviation."""
    if len(prices) < period:
        last = float(prices[-1]) if len(prices) else 0.0
        return BollingerResult(upper=last, middle=last, lower=last, percent_b=0.5, bandwidth=0.0, band="neutral")

    window = np.asarray(prices[-period:], dtype=float)
    middle = float(window.mean())
    sigma = float(window.std(ddof=0))
    upper = middle + std_dev * sigma
    lower = middle - std_dev * sigma
    price = float(prices[-1])

    percent_b = (price - lower) / (upper - lower) if upper != lower else 0.5
    bandwidth = (upper - lower) / middle if middle else 0.0

    if price > upper:
        band = "overbought"
    elif price < lower:
        band = "oversold"
    else:
        band = "neutral"
    return BollingerResult(upper=upper, middle=middle, lower=lower, percent_b=percent_b, bandwidth=bandwidth, band=band)


def calculate_atr(bars: Sequence[PriceBar], period: int = 14) -> float:
    """Average True Range as the mean of the last `period` true ranges. 0 when history is too short."""
    if len(bars) < period + 1:
        return 0.0

    df = _bars_frame(bars)
    prev_close = df["close"].shift(1)
    true_range = pd.concat(
        [df["high"] - df["low"], (df["high"] - prev_close).abs(), (df["low"] - prev_close).abs()],
        axis=1,
    ).max(axis=1).iloc[1:]
    return float(true_range.iloc[-period:].mean())


def calculate_stochastic(bars: Sequence[PriceBar], k_period: int = 14, d_period: int = 3) -> StochasticResult:
    """Fast stochastic (%K unsmoothed) with %D as the SMA of %K. Neutral on a flat window."""
    if len(bars) < k_period:
        return StochasticResult(k=NEUTRAL_OSCILLATOR, d=NEUTRAL_OSCILLATOR, band="neutral")

    df = _bars_frame(bars)
    window = df.iloc[-k_period:]
    if window["high"].max() == window["low"].min():
        return StochasticResult(k=NEUTRAL_OSCILLATOR, d=NEUTRAL_OSCILLATOR, band="neutral")

    stoch = ta.stoch(df["high"], df["low"], df["close"], k=k_period, d=d_period, smooth_k=1)
    k_value = float(stoch.iloc[-1, 0])
    d_value = float(stoch.iloc[-1, 1])
    if np.isnan(d_value):
        d_value = k_value
    return StochasticResult(k=k_value, d=d_value, band=_band(k_value, STOCHASTIC_OVERSOLD, STOCHASTIC_OVERBOUGHT))


# --- Volume ---

def calculate_obv(bars: Sequence[PriceBar], lookback: int = 10) -> OBVResult:
    """On-balance volume and its direction over the last `lookback` bars."""
    if len(bars) < 2:
        return OBVResult(value=0.0, trend="neutral")

    df = _bars_frame(bars)
    obv = ta.obv(df["close"], df["volume"])

    span = min(lookback, len(obv) - 1)
    change = float(obv.iloc[-1] - obv.iloc[-1 - span])
    if change > 0:
        trend = "bullish"
    elif change < 0:
        trend = "bearish"
    else:
        trend = "neutral"
    return OBVResult(value=float(obv.iloc[-1]), trend=trend)


def calculate_mfi(bars: Sequence[PriceBar], period: int = 14) -> MFIResult:
    """Money Flow Index over the last `period` bar-to-bar changes."""
    if len(bars) < period + 1:
        return MFIResult(value=NEUTRAL_OSCILLATOR, band="neutral")

    df = _bars_frame(bars)
    value = float(ta.mfi(df["high"], df["low"], df["close"], df["volume"], length=period).iloc[-1])
    if np.isnan(value):
        value = NEUTRAL_OSCILLATOR
    return MFIResult(value=value, band=_band(value, MFI_OVERSOLD, MFI_OVERBOUGHT))


# --- Candlestick Patterns ---

def detect_candlestick_patterns(bars: Sequence[PriceBar]) -> List[CandlestickPattern]:
    """Inspects the most recent bar (and its predecessor for engulfing patterns)."""
    if not bars:
        return []

    patterns = []
    last = bars[-1]
    body = abs(last.close - last.open)
    candle_range = last.high - last.low
    if candle_range <= 0:
        return patterns

    upper_shadow = last.high - max(last.open, last.close)
    lower_shadow = min(last.open, last.close) - last.low

    if body <= candle_range * 0.1:
        patterns.append(CandlestickPattern(pattern="Doji", signal="neutral", strength=50))
    elif lower_shadow >= 2 * body and upper_shadow <= body:
        patterns.append(CandlestickPattern(pattern="Hammer", signal="bullish", strength=65))
    elif upper_shadow >= 2 * body and lower_shadow <= body:
        patterns.append(CandlestickPattern(pattern="Shooting Star", signal="bearish", strength=65))

    if len(bars) >= 2:
        prev = bars[-2]
        prev_bearish = prev.close < prev.open
        prev_bullish = prev.close > prev.open
        if prev_bearish and last.close > last.open and last.open <= prev.close and last.close >= prev.open:
            patterns.append(CandlestickPattern(pattern="Bullish Engulfing", signal="bullish", strength=75))
        elif prev_bullish and last.close < last.open and last.open >= prev.close and last.close <= prev.open:
            patterns.append(CandlestickPattern(pattern="Bearish Engulfing", signal="bearish", strength=75))

    return patterns
