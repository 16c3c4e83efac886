import math
from typing import List, Sequence

import numpy as np

from .models import KellyResult, MarketAdjustment, Regime, SizingResult, TradeHistory


# --- Constants for Kelly Sizing ---
KELLY_SCALE = 0.5  # half-Kelly
MIN_TRADES_MEDIUM_CONFIDENCE = 30
MIN_TRADES_HIGH_CONFIDENCE = 100

# --- Constants for Market Adjustments ---
EXTREME_VOLATILITY = 30
HIGH_VOLATILITY = 20
EXTREME_VOLATILITY_MULTIPLIER = 0.5
HIGH_VOLATILITY_MULTIPLIER = 0.75
REGIME_MULTIPLIERS = {"bull": 1.0, "sideways": 0.8, "bear": 0.6}
SEVERE_DRAWDOWN = 0.20
MODERATE_DRAWDOWN = 0.10
SEVERE_DRAWDOWN_MULTIPLIER = 0.5
MODERATE_DRAWDOWN_MULTIPLIER = 0.75

TRADING_DAYS_PER_YEAR = 252


def calculate_kelly_criterion(history: TradeHistory) -> KellyResult:
    """
    Half-Kelly fraction of capital to risk given a trade history.

    f* = (p*b - q) / b, with b = average_win / |average_loss|. The raw fraction is
    clamped to [0, 1] before being halved, and any history with a negative expected
    value sizes to zero.
    """
    if history.total_trades == 0:
        return KellyResult(kelly_fraction=0.0, confidence="low", reasoning="No trade history; Kelly fraction set to 0.")

    p = history.winning_trades / history.total_trades
    q = 1 - p
    average_loss = abs(history.average_loss)

    if average_loss == 0 or history.average_win <= 0:
        return KellyResult(
            kelly_fraction=0.0,
            win_probability=p,
            confidence="low",
            reasoning="Invalid payoff ratio (average win or average loss is zero); Kelly fraction set to 0.",
        )

    b = history.average_win / average_loss
    raw_kelly = (p * b - q) / b
    expected_value = p * history.average_win + q * history.average_loss

    if history.total_trades < MIN_TRADES_MEDIUM_CONFIDENCE:
        confidence = "low"
    elif history.total_trades < MIN_TRADES_HIGH_CONFIDENCE:
        confidence = "medium"
    else:
        confidence = "high"

    if expected_value < 0:
        return KellyResult(
            kelly_fraction=0.0,
            raw_kelly=raw_kelly,
            win_probability=p,
            payoff_ratio=b,
            expected_value=expected_value,
            confidence=confidence,
            reasoning=f"Negative expected value ({expected_value:.2f} per trade); no position.",
        )

    fraction = max(0.0, min(1.0, raw_kelly)) * KELLY_SCALE
    return KellyResult(
        kelly_fraction=fraction,
        raw_kelly=raw_kelly,
        win_probability=p,
        payoff_ratio=b,
        expected_value=expected_value,
        confidence=confidence,
        reasoning=(
            f"Win rate {p:.0%}, payoff ratio {b:.2f}, raw Kelly {raw_kelly:.3f}, "
            f"half-Kelly {fraction:.3f} over {history.total_trades} trades ({confidence} confidence)."
        ),
    )


def adjust_kelly_for_market_conditions(base_fraction: float, volatility: float, regime: Regime, drawdown: float) -> MarketAdjustment:
    """Applies multiplicative volatility, regime and drawdown haircuts to a Kelly fraction."""
    multiplier = 1.0
    reasons = []

    if volatility > EXTREME_VOLATILITY:
        multiplier *= EXTREME_VOLATILITY_MULTIPLIER
        reasons.append(f"Extreme volatility ({volatility:.1f}): size x{EXTREME_VOLATILITY_MULTIPLIER}")
    elif volatility > HIGH_VOLATILITY:
        multiplier *= HIGH_VOLATILITY_MULTIPLIER
        reasons.append(f"High volatility ({volatility:.1f}): size x{HIGH_VOLATILITY_MULTIPLIER}")

    regime_multiplier = REGIME_MULTIPLIERS[regime]
    if regime_multiplier != 1.0:
        multiplier *= regime_multiplier
        reasons.append(f"{regime.capitalize()} market: size x{regime_multiplier}")

    if drawdown > SEVERE_DRAWDOWN:
        multiplier *= SEVERE_DRAWDOWN_MULTIPLIER
        reasons.append(f"Severe drawdown ({drawdown:.1%}): size x{SEVERE_DRAWDOWN_MULTIPLIER}")
    elif drawdown > MODERATE_DRAWDOWN:
        multiplier *= MODERATE_DRAWDOWN_MULTIPLIER
        reasons.append(f"Moderate drawdown ({drawdown:.1%}): size x{MODERATE_DRAWDOWN_MULTIPLIER}")

    return MarketAdjustment(adjusted_fraction=base_fraction * multiplier, multiplier=multiplier, reasoning=reasons)


def calculate_position_size(portfolio_value: float, fraction: float, max_position_percent: float) -> SizingResult:
    """Dollar size for a fraction of the portfolio, bounded by the per-position cap."""
    recommended = portfolio_value * max(0.0, fraction)
    max_size = portfolio_value * max_position_percent
    actual = min(recommended, max_size)
    capped = recommended > max_size
    reasoning = (
        f"Recommended ${recommended:,.2f} capped at ${max_size:,.2f} ({max_position_percent:.0%} limit)"
        if capped
        else f"Recommended ${recommended:,.2f} within ${max_size:,.2f} limit"
    )
    return SizingResult(recommended_size=recommended, max_size=max_size, actual_size=actual, capped=capped, reasoning=reasoning)


def calculate_max_drawdown(equity_curve: Sequence[float]) -> float:
    """Largest peak-to-trough decline as a fraction (0.15 for 15%)."""
    if len(equity_curve) < 2:
        return 0.0
    curve = np.asarray(equity_curve, dtype=float)
    peak = np.maximum.accumulate(curve)
    with np.errstate(divide="ignore", invalid="ignore"):
        drawdown = np.where(peak > 0, (peak - curve) / peak, 0.0)
    return float(drawdown.max())


def calculate_returns(equity_curve: Sequence[float]) -> List[float]:
    returns = []
    for prev, curr in zip(equity_curve[:-1], equity_curve[1:]):
        if prev != 0:
            returns.append((curr - prev) / prev)
    return returns


def calculate_sharpe_ratio(returns: Sequence[float], risk_free_rate: float = 0.02) -> float:
    """Annualised Sharpe ratio of daily returns. 0 when there is no dispersion."""
    if len(returns) < 2:
        return 0.0
    values = np.asarray(returns, dtype=float)
    std = float(values.std(ddof=0))
    if math.isnan(std) or std < 1e-12:
        return 0.0
    daily_excess = float(values.mean()) - risk_free_rate / TRADING_DAYS_PER_YEAR
    return daily_excess / std * math.sqrt(TRADING_DAYS_PER_YEAR)
