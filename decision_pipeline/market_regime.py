import logging
import math
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import pandas_ta as ta

from .models import MarketConditions, MarketRegimeResponse, PriceBar, Regime, RegimeShift, StrategyParameters

# --- Logging ---
logger = logging.getLogger(__name__)

# --- Constants for Regime Classification ---
FAST_SMA = 50
SLOW_SMA = 200
TREND_THRESHOLD = 0.10
VOLATILITY_WINDOW = 50
HIGH_VOLATILITY = 0.30  # annualised
HIGH_VOLATILITY_INDEX = 30.0
BASE_CONFIDENCE = 0.75
ADX_STRONG = 25
ADX_WEAK = 20
ADX_CONFIDENCE_STEP = 0.10
SHIFT_LOOKBACK = 5

# --- Constants for the simple trend read ---
SIMPLE_REGIME_WINDOW = 50
SIMPLE_REGIME_THRESHOLD = 0.05
DEFAULT_VOLATILITY_INDEX = 15.0

RECOMMENDED_STRATEGIES = {
    "high_volatility": ["defensive", "options_hedging", "cash_preservation"],
    "bull_trending": ["momentum", "breakout", "trend_following"],
    "bear_trending": ["short_selling", "defensive", "value_hunting"],
    "sideways_range": ["mean_reversion", "pairs_trading", "theta_strategies"],
}

SIZING_REGIMES = {"bull_trending": "bull", "bear_trending": "bear"}


def _annualised_volatility(closes: Sequence[float]) -> float:
    returns = pd.Series(closes, dtype=float).pct_change().dropna()
    if len(returns) < 2:
        return 0.0
    return float(returns.std(ddof=0) * math.sqrt(252))


def _adx_confidence(regime: str, latest_adx: Optional[float]) -> float:
    """Trend strength from ADX supports trending regimes and argues against a range."""
    if latest_adx is None or np.isnan(latest_adx):
        return BASE_CONFIDENCE
    trending = regime in ("bull_trending", "bear_trending")
    if latest_adx > ADX_STRONG:
        step = ADX_CONFIDENCE_STEP if trending else -ADX_CONFIDENCE_STEP
    elif latest_adx < ADX_WEAK:
        step = -ADX_CONFIDENCE_STEP if trending else ADX_CONFIDENCE_STEP
    else:
        step = 0.0
    return max(0.0, min(1.0, BASE_CONFIDENCE + step))


def classify_market_regime(bars: Sequence[PriceBar], volatility_index: Optional[float] = None) -> MarketRegimeResponse:
    if len(bars) < SLOW_SMA:
        return MarketRegimeResponse(regime="undefined", confidence_score=0.0, explanation="Insufficient data.")

    df = pd.DataFrame([b.model_dump() for b in bars])

    sma_50 = ta.sma(df['close'], length=FAST_SMA)
    sma_200 = ta.sma(df['close'], length=SLOW_SMA)
    adx = ta.adx(df['high'], df['low'], df['close'], length=14)

    if sma_50 is None or sma_200 is None or sma_200.dropna().empty:
        return MarketRegimeResponse(regime="undefined", confidence_score=0.0, explanation="Failed to calculate indicators.")

    latest_sma_50 = float(sma_50.iloc[-1])
    latest_sma_200 = float(sma_200.iloc[-1])
    trend = (latest_sma_50 - latest_sma_200) / latest_sma_200 if latest_sma_200 else 0.0
    volatility = _annualised_volatility(df['close'].iloc[-VOLATILITY_WINDOW:].tolist())
    latest_adx = float(adx.iloc[-1]['ADX_14']) if adx is not None and not adx.dropna().empty else None

    if (volatility_index is not None and volatility_index > HIGH_VOLATILITY_INDEX) or volatility > HIGH_VOLATILITY:
        regime = "high_volatility"
    elif trend > TREND_THRESHOLD:
        regime = "bull_trending"
    elif trend < -TREND_THRESHOLD:
        regime = "bear_trending"
    else:
        regime = "sideways_range"

    confidence_score = _adx_confidence(regime, latest_adx)

    explanation_parts = [
        f"SMA50={latest_sma_50:.2f}, SMA200={latest_sma_200:.2f} (trend {trend:+.1%}).",
        f"Annualised volatility {volatility:.1%}" + (f", volatility index {volatility_index:.1f}." if volatility_index is not None else "."),
    ]
    if latest_adx is not None and not np.isnan(latest_adx):
        explanation_parts.append(f"ADX={latest_adx:.1f}.")
    explanation_parts.append(f"Final regime is '{regime}' with confidence {confidence_score:.2f}.")

    logger.info(f"Market regime classified as {regime} (confidence {confidence_score:.2f}).")
    return MarketRegimeResponse(
        regime=regime,
        confidence_score=confidence_score,
        recommended_strategies=RECOMMENDED_STRATEGIES[regime],
        explanation=" ".join(explanation_parts),
    )


def detect_market_regime(bars: Sequence[PriceBar]) -> Regime:
    """Bull, bear or sideways from the mean of the newer half of the last 50 closes against the older half."""
    closes = [b.close for b in bars][-SIMPLE_REGIME_WINDOW:]
    if len(closes) < SIMPLE_REGIME_WINDOW:
        return "sideways"

    half = SIMPLE_REGIME_WINDOW // 2
    older = float(np.mean(closes[:half]))
    newer = float(np.mean(closes[half:]))
    change = (newer - older) / older if older else 0.0

    if change > SIMPLE_REGIME_THRESHOLD:
        return "bull"
    if change < -SIMPLE_REGIME_THRESHOLD:
        return "bear"
    return "sideways"


def detect_regime_shift(current: str, previous: Sequence[str]) -> RegimeShift:
    recent: List[str] = list(previous)[-SHIFT_LOOKBACK:]
    last = recent[-1] if recent else None

    if recent and current not in recent:
        message = f"REGIME SHIFT DETECTED: Transitioning to {current}. Adjust strategies accordingly."
        logger.warning(message)
        return RegimeShift(shifted=True, previous=last, current=current, message=message)

    return RegimeShift(shifted=False, previous=last, current=current, message=f"No regime shift. Current regime: {current} (stable)")


def adapt_strategy_parameters(regime: str, base: StrategyParameters) -> StrategyParameters:
    position_size, stop_loss, take_profit = base.position_size, base.stop_loss, base.take_profit

    if regime == "high_volatility":
        position_size *= 0.5
        stop_loss *= 1.5
        reasoning = "High volatility: Reduced position size, wider stops"
    elif regime == "bull_trending":
        position_size *= 1.2
        take_profit *= 1.5
        reasoning = "Bull trend: Increased size, higher profit targets"
    elif regime == "bear_trending":
        position_size *= 0.7
        stop_loss *= 0.8
        reasoning = "Bear trend: Reduced size, tighter stops, defensive"
    elif regime == "sideways_range":
        take_profit *= 0.8
        reasoning = "Range-bound: Quick profits, tight risk management"
    else:
        reasoning = "Standard parameters"

    return StrategyParameters(position_size=position_size, stop_loss=stop_loss, take_profit=take_profit, reasoning=reasoning)


def estimate_volatility_index(bars: Sequence[PriceBar], volatility_index: Optional[float] = None) -> float:
    """The supplied volatility index, else realised annualised volatility of recent closes in index points."""
    if volatility_index is not None:
        return volatility_index
    if len(bars) > 2:
        return _annualised_volatility([b.close for b in bars][-VOLATILITY_WINDOW:]) * 100
    return DEFAULT_VOLATILITY_INDEX


def derive_market_conditions(
    bars: Sequence[PriceBar],
    volatility_index: Optional[float] = None,
    drawdown: float = 0.0,
    classified: Optional[MarketRegimeResponse] = None,
) -> MarketConditions:
    """
    Market inputs for the position sizer.

    Volatility is in index points: the supplied volatility index, or else the realised
    annualised volatility of recent closes times 100. With enough history the regime comes
    from the SMA classifier (high volatility sizes as sideways); otherwise from the
    half-window trend read.
    """
    volatility = estimate_volatility_index(bars, volatility_index)
    classified = classified or classify_market_regime(bars, volatility_index)
    if classified.regime == "undefined":
        regime = detect_market_regime(bars)
    else:
        regime = SIZING_REGIMES.get(classified.regime, "sideways")

    return MarketConditions(volatility=max(0.0, volatility), regime=regime, drawdown=max(0.0, drawdown))
