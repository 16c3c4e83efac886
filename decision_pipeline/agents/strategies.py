"""
Strategy engine agents: momentum, value, arbitrage/pairs, options hedging, mean
reversion and the inference-backed ML predictor.

Each `*_agent` callable takes a MarketSnapshot and an AgentContext and returns a
Signal. The `generate_*` helpers hold the actual policy and work on plain inputs.
"""
import logging
from typing import Dict, List, Literal, Optional, Sequence

import numpy as np
from pydantic import BaseModel

from ..indicators import calculate_bollinger_bands, calculate_rsi, calculate_sma
from ..inference_client import InferenceClient, request_prediction
from ..market_regime import estimate_volatility_index
from ..models import MarketSnapshot, Signal
from ..schemas import AgentContext, InferenceFailure

# --- Logging ---
logger = logging.getLogger(__name__)

# --- Agent Identifiers ---
MOMENTUM_AGENT_ID = 86
VALUE_AGENT_ID = 87
ARBITRAGE_AGENT_ID = 88
OPTIONS_AGENT_ID = 89
MEAN_REVERSION_AGENT_ID = 90
ML_PREDICTOR_AGENT_ID = 91

# --- Constants for Momentum ---
FAST_SMA = 50
SLOW_SMA = 200
CROSS_CONFIDENCE = 0.85
UPTREND_HOLD_CONFIDENCE = 0.6
DOWNTREND_HOLD_CONFIDENCE = 0.4
MOMENTUM_POSITION_SIZE = 0.05

# --- Constants for Value ---
ATTRACTIVE_PE = 15.0
ATTRACTIVE_PB = 1.5
VALUE_POSITION_SIZE = 0.08

# --- Constants for Arbitrage ---
MIN_NET_SPREAD_PCT = 0.5
ARBITRAGE_POSITION_SIZE = 0.03
PAIRS_MIN_POINTS = 30
PAIRS_Z_THRESHOLD = 2.0
PAIRS_CONFIDENCE = 0.75

# --- Constants for Options ---
COVERED_CALL_MIN_VOLATILITY = 30.0
PROTECTIVE_PUT_MIN_VOLATILITY = 25.0
PROTECTIVE_PUT_MIN_DRAWDOWN = 0.15
CALL_STRIKE_FACTOR = 1.10
PUT_STRIKE_FACTOR = 0.90
OPTIONS_POSITION_SIZE = 0.02

# --- Constants for Mean Reversion ---
MEAN_REVERSION_MIN_POINTS = 21
STRONG_OVERSOLD_RSI = 30
STRONG_OVERBOUGHT_RSI = 70
MODERATE_OVERSOLD_RSI = 35
MODERATE_OVERBOUGHT_RSI = 65
STRONG_REVERSION_POSITION_SIZE = 0.06
MODERATE_REVERSION_POSITION_SIZE = 0.04

# --- Constants for ML Prediction ---
ML_PRICE_WINDOW = 10
ML_HIGH_CONFIDENCE = 0.7
ML_HIGH_CONFIDENCE_SIZE = 0.05
ML_LOW_CONFIDENCE_SIZE = 0.03


def _hold(agent_id: int, confidence: float, reasoning: str) -> Signal:
    return Signal(agent_id=agent_id, action="hold", confidence=confidence, reasoning=reasoning)


# --- Momentum ---

def generate_momentum_signal(prices: Sequence[float]) -> Signal:
    sma_fast = calculate_sma(prices, FAST_SMA)
    sma_slow = calculate_sma(prices, SLOW_SMA)

    if not sma_fast or not sma_slow:
        return _hold(MOMENTUM_AGENT_ID, 0.0, f"Insufficient price history for momentum analysis ({len(prices)}/{SLOW_SMA} points).")

    current_fast, current_slow = sma_fast[-1], sma_slow[-1]
    prev_fast = sma_fast[-2] if len(sma_fast) > 1 else current_fast
    prev_slow = sma_slow[-2] if len(sma_slow) > 1 else current_slow

    if prev_fast <= prev_slow and current_fast > current_slow:
        return Signal(
            agent_id=MOMENTUM_AGENT_ID,
            action="buy",
            confidence=CROSS_CONFIDENCE,
            position_size=MOMENTUM_POSITION_SIZE,
            reasoning="Golden Cross detected: SMA50 crossed above SMA200. Strong bullish momentum signal.",
        )

    if prev_fast >= prev_slow and current_fast < current_slow:
        return Signal(
            agent_id=MOMENTUM_AGENT_ID,
            action="sell",
            confidence=CROSS_CONFIDENCE,
            position_size=MOMENTUM_POSITION_SIZE,
            reasoning="Death Cross detected: SMA50 crossed below SMA200. Strong bearish momentum signal.",
        )

    if current_fast > current_slow:
        return _hold(MOMENTUM_AGENT_ID, UPTREND_HOLD_CONFIDENCE, "Uptrend intact (SMA50 > SMA200). Hold current positions.")

    return _hold(MOMENTUM_AGENT_ID, DOWNTREND_HOLD_CONFIDENCE, "Downtrend (SMA50 <= SMA200). Avoid new positions.")


def momentum_agent(snapshot: MarketSnapshot, context: AgentContext) -> Signal:
    return generate_momentum_signal(snapshot.closes)


# --- Value ---

def generate_value_signal(fundamentals: Dict[str, float]) -> Signal:
    pe = fundamentals.get("pe_ratio")
    pb = fundamentals.get("pb_ratio")

    if not pe or not pb:
        return _hold(VALUE_AGENT_ID, 0.0, "Insufficient fundamental data (P/E and P/B required).")

    pe_attractive = pe < ATTRACTIVE_PE
    pb_attractive = pb < ATTRACTIVE_PB

    if pe_attractive and pb_attractive:
        return Signal(
            agent_id=VALUE_AGENT_ID,
            action="buy",
            confidence=0.75,
            position_size=VALUE_POSITION_SIZE,
            reasoning=f"Strong value: P/E={pe:.1f}, P/B={pb:.2f}. Both metrics attractive.",
        )

    if not pe_attractive and not pb_attractive:
        return Signal(
            agent_id=VALUE_AGENT_ID,
            action="sell",
            confidence=0.6,
            position_size=VALUE_POSITION_SIZE,
            reasoning=f"Overvalued: P/E={pe:.1f}, P/B={pb:.2f}. Both metrics high.",
        )

    return _hold(VALUE_AGENT_ID, 0.5, f"Mixed value signals: P/E={pe:.1f}, P/B={pb:.2f}.")


def value_agent(snapshot: MarketSnapshot, context: AgentContext) -> Signal:
    return generate_value_signal(snapshot.fundamentals)


# --- Arbitrage ---

class PairsTradeResult(BaseModel):
    signal: Literal["long_s1_short_s2", "short_s1_long_s2", "hold"]
    confidence: float
    z_score: float


def generate_arbitrage_signal(price_a: float, price_b: float, fees_pct: float) -> Signal:
    """Cross-venue spread check. Spread and fees are both in percent."""
    average = (price_a + price_b) / 2
    if average <= 0:
        return _hold(ARBITRAGE_AGENT_ID, 0.0, "Invalid venue prices for arbitrage analysis.")

    spread_pct = abs(price_a - price_b) / average * 100
    net_spread = spread_pct - fees_pct

    if net_spread > MIN_NET_SPREAD_PCT:
        return Signal(
            agent_id=ARBITRAGE_AGENT_ID,
            action="buy",
            confidence=0.9,
            position_size=ARBITRAGE_POSITION_SIZE,
            reasoning=f"Arbitrage opportunity: {net_spread:.2f}% net spread after fees. Buy low, sell high.",
        )

    return _hold(ARBITRAGE_AGENT_ID, 0.3, f"No arbitrage opportunity. Net spread: {net_spread:.2f}%.")


def detect_pairs_trade(series_a: Sequence[float], series_b: Sequence[float]) -> PairsTradeResult:
    """Z-score of the latest spread against the full history (population std)."""
    if len(series_a) != len(series_b) or len(series_a) < PAIRS_MIN_POINTS:
        return PairsTradeResult(signal="hold", confidence=0.0, z_score=0.0)

    spreads = np.asarray(series_a, dtype=float) - np.asarray(series_b, dtype=float)
    std = float(spreads.std(ddof=0))
    if std == 0:
        return PairsTradeResult(signal="hold", confidence=0.0, z_score=0.0)

    z_score = float((spreads[-1] - spreads.mean()) / std)
    if z_score > PAIRS_Z_THRESHOLD:
        return PairsTradeResult(signal="short_s1_long_s2", confidence=PAIRS_CONFIDENCE, z_score=z_score)
    if z_score < -PAIRS_Z_THRESHOLD:
        return PairsTradeResult(signal="long_s1_short_s2", confidence=PAIRS_CONFIDENCE, z_score=z_score)
    return PairsTradeResult(signal="hold", confidence=0.3, z_score=z_score)


def arbitrage_agent(snapshot: MarketSnapshot, context: AgentContext) -> Signal:
    """Venue arbitrage first; falls back to the pairs spread when no venue edge exists."""
    venue_signal: Optional[Signal] = None
    if len(snapshot.venue_prices) >= 2:
        venues = sorted(snapshot.venue_prices)
        venue_signal = generate_arbitrage_signal(
            snapshot.venue_prices[venues[0]], snapshot.venue_prices[venues[1]], snapshot.arbitrage_fees_pct
        )
        if venue_signal.action != "hold":
            return venue_signal

    if snapshot.pair_series_a and snapshot.pair_series_b:
        pairs = detect_pairs_trade(snapshot.pair_series_a, snapshot.pair_series_b)
        if pairs.signal != "hold":
            action = "buy" if pairs.signal == "long_s1_short_s2" else "sell"
            return Signal(
                agent_id=ARBITRAGE_AGENT_ID,
                action=action,
                confidence=pairs.confidence,
                position_size=ARBITRAGE_POSITION_SIZE,
                reasoning=f"Pairs spread z-score {pairs.z_score:.2f} ({pairs.signal}).",
            )
        if venue_signal is None:
            return _hold(ARBITRAGE_AGENT_ID, pairs.confidence, f"Pairs spread z-score {pairs.z_score:.2f} within band.")

    return venue_signal or _hold(ARBITRAGE_AGENT_ID, 0.0, "No venue quotes or pair series available for arbitrage analysis.")

# --- Options ---

def recommend_covered_call(price: float, volatility: float, holdings: float) -> Signal:
    """Write calls 10% out of the money on shares already held when premiums are rich."""
    strike = price * CALL_STRIKE_FACTOR
    if volatility > COVERED_CALL_MIN_VOLATILITY and holdings > 0:
        return Signal(
            agent_id=OPTIONS_AGENT_ID,
            action="sell",
            confidence=0.7,
            position_size=OPTIONS_POSITION_SIZE,
            target_price=strike,
            reasoning=f"Covered call recommended at strike ${strike:.2f}. High volatility ({volatility:.1f}) presents premium opportunity.",
        )
    return _hold(OPTIONS_AGENT_ID, 0.4, f"Volatility too low ({volatility:.1f}) for attractive covered call premiums.")


def recommend_protective_put(price: float, volatility: float, drawdown: float) -> Signal:
    strike = price * PUT_STRIKE_FACTOR
    if volatility > PROTECTIVE_PUT_MIN_VOLATILITY or drawdown > PROTECTIVE_PUT_MIN_DRAWDOWN:
        return Signal(
            agent_id=OPTIONS_AGENT_ID,
            action="buy",
            confidence=0.8,
            position_size=OPTIONS_POSITION_SIZE,
            target_price=strike,
            reasoning=(
                f"Protective put recommended at strike ${strike:.2f}. "
                f"Risk management needed (vol={volatility:.1f}, drawdown={drawdown * 100:.1f}%)."
            ),
        )
    return _hold(
        OPTIONS_AGENT_ID, 0.5,
        f"No hedging needed. Market conditions stable (vol={volatility:.1f}, drawdown={drawdown * 100:.1f}%).",
    )


def options_strategy_agent(snapshot: MarketSnapshot, context: AgentContext) -> Signal:
    """
    Covered call on existing holdings first, then a protective put. Volatility is the
    snapshot's volatility index, or the realised volatility of its closes.
    """
    if not snapshot.bars:
        return _hold(OPTIONS_AGENT_ID, 0.0, "No price available for options analysis.")

    price = snapshot.bars[-1].close
    volatility = estimate_volatility_index(snapshot.bars, snapshot.volatility_index)

    covered_call = recommend_covered_call(price, volatility, context.holdings)
    if covered_call.action != "hold":
        return covered_call
    return recommend_protective_put(price, volatility, context.drawdown)



# --- Mean Reversion ---

def generate_mean_reversion_signal(prices: Sequence[float]) -> Signal:
    if len(prices) < MEAN_REVERSION_MIN_POINTS:
        return _hold(MEAN_REVERSION_AGENT_ID, 0.0, f"Insufficient price history for mean reversion ({len(prices)}/{MEAN_REVERSION_MIN_POINTS} points).")

    rsi = calculate_rsi(prices)
    bands = calculate_bollinger_bands(prices)

    if rsi.value < STRONG_OVERSOLD_RSI and bands.percent_b < 0:
        return Signal(
            agent_id=MEAN_REVERSION_AGENT_ID,
            action="buy",
            confidence=0.85,
            position_size=STRONG_REVERSION_POSITION_SIZE,
            target_price=bands.middle,
            stop_loss=bands.lower * 0.95,
            reasoning=f"Strong oversold: RSI={rsi.value:.1f}, price below lower Bollinger band. Expect mean reversion.",
        )

    if rsi.value > STRONG_OVERBOUGHT_RSI and bands.percent_b > 1:
        return Signal(
            agent_id=MEAN_REVERSION_AGENT_ID,
            action="sell",
            confidence=0.85,
            position_size=STRONG_REVERSION_POSITION_SIZE,
            target_price=bands.middle,
            reasoning=f"Strong overbought: RSI={rsi.value:.1f}, price above upper Bollinger band. Expect mean reversion.",
        )

    if rsi.value < MODERATE_OVERSOLD_RSI:
        return Signal(
            agent_id=MEAN_REVERSION_AGENT_ID,
            action="buy",
            confidence=0.65,
            position_size=MODERATE_REVERSION_POSITION_SIZE,
            reasoning=f"Moderate oversold: RSI={rsi.value:.1f}. Potential reversion.",
        )

    if rsi.value > MODERATE_OVERBOUGHT_RSI:
        return Signal(
            agent_id=MEAN_REVERSION_AGENT_ID,
            action="sell",
            confidence=0.65,
            position_size=MODERATE_REVERSION_POSITION_SIZE,
            reasoning=f"Moderate overbought: RSI={rsi.value:.1f}. Potential reversion.",
        )

    return _hold(MEAN_REVERSION_AGENT_ID, 0.5, f"Neutral zone: RSI={rsi.value:.1f}. No mean reversion signal.")


def mean_reversion_agent(snapshot: MarketSnapshot, context: AgentContext) -> Signal:
    return generate_mean_reversion_signal(snapshot.closes)


# --- ML Predictor ---

def build_prediction_prompt(symbol: str, prices: List[float]) -> str:
    recent = prices[-ML_PRICE_WINDOW:]
    rsi = calculate_rsi(prices)
    sma = calculate_sma(prices, 20)
    if sma:
        trend = "up" if prices[-1] > sma[-1] else "down"
    else:
        trend = "N/A"

    return (
        "You are a quantitative trading model. Analyze this price history and predict the next move.\n\n"
        f"Symbol: {symbol}\n"
        f"Last {len(recent)} prices: {', '.join(f'{p:.2f}' for p in recent)}\n"
        f"Current price: {prices[-1]:.2f}\n"
        f"RSI: {rsi.value:.1f}\n"
        f"Trend: {trend}\n\n"
        'Return JSON: { "action": "buy"|"sell"|"hold", "confidence": 0-1, "reasoning": "..." }'
    )


async def generate_ml_prediction(symbol: str, prices: List[float], inference: Optional[InferenceClient]) -> Signal:
    if inference is None:
        return _hold(ML_PREDICTOR_AGENT_ID, 0.0, "Inference collaborator not available.")
    if not prices:
        return _hold(ML_PREDICTOR_AGENT_ID, 0.0, "No price history for ML prediction.")

    result = await request_prediction(inference, build_prediction_prompt(symbol, prices), {"temperature": 0.3})
    if isinstance(result, InferenceFailure):
        logger.warning(f"ML prediction for {symbol} degraded to hold: {result.reason}")
        return _hold(ML_PREDICTOR_AGENT_ID, 0.0, f"ML prediction unavailable: {result.reason}.")

    return Signal(
        agent_id=ML_PREDICTOR_AGENT_ID,
        action=result.action,
        confidence=result.confidence,
        position_size=ML_HIGH_CONFIDENCE_SIZE if result.confidence > ML_HIGH_CONFIDENCE else ML_LOW_CONFIDENCE_SIZE,
        reasoning=f"ML prediction: {result.reasoning}",
    )


async def ml_predictor_agent(snapshot: MarketSnapshot, context: AgentContext) -> Signal:
    return await generate_ml_prediction(snapshot.symbol, snapshot.closes, context.inference)
