"""Market intelligence agents: technical composite, news sentiment and chart patterns."""
import logging
from typing import List, Optional, Sequence

from ..indicators import (
    CandlestickPattern,
    calculate_macd,
    calculate_mfi,
    calculate_obv,
    calculate_rsi,
    calculate_stochastic,
    detect_candlestick_patterns,
)
from ..inference_client import InferenceClient, request_sentiment
from ..models import MarketSnapshot, PriceBar, Signal
from ..schemas import AgentContext, InferenceFailure

# --- Logging ---
logger = logging.getLogger(__name__)

# --- Agent Identifiers ---
MARKET_DATA_AGENT_ID = 81
NEWS_SENTIMENT_AGENT_ID = 82
PATTERN_RECOGNITION_AGENT_ID = 84

# --- Constants for Technical Composite ---
COMPOSITE_MIN_BARS = 27
COMPOSITE_BASE_CONFIDENCE = 0.4
COMPOSITE_CONFIDENCE_STEP = 0.1
COMPOSITE_MAX_CONFIDENCE = 0.8
COMPOSITE_POSITION_SIZE = 0.03

# --- Constants for Sentiment ---
SENTIMENT_BUY_THRESHOLD = 0.2
SENTIMENT_SELL_THRESHOLD = -0.2
SENTIMENT_POSITION_SIZE = 0.03

# --- Constants for Pattern Recognition ---
HEAD_AND_SHOULDERS_WINDOW = 20
HEAD_AND_SHOULDERS_RANGE = 0.10
PATTERN_POSITION_SIZE = 0.03


def generate_technical_signal(bars: Sequence[PriceBar]) -> Signal:
    """Majority vote over RSI, MACD, stochastic, MFI and OBV readings."""
    if len(bars) < COMPOSITE_MIN_BARS:
        return Signal(
            agent_id=MARKET_DATA_AGENT_ID,
            action="hold",
            confidence=0.0,
            reasoning=f"Insufficient bars for technical composite ({len(bars)}/{COMPOSITE_MIN_BARS}).",
        )

    closes = [b.close for b in bars]
    rsi = calculate_rsi(closes)
    macd = calculate_macd(closes)
    stochastic = calculate_stochastic(bars)
    mfi = calculate_mfi(bars)
    obv = calculate_obv(bars)

    bullish, bearish = [], []
    for name, band in (("RSI", rsi.band), ("Stochastic", stochastic.band), ("MFI", mfi.band)):
        if band == "oversold":
            bullish.append(name)
        elif band == "overbought":
            bearish.append(name)
    for name, trend in (("MACD", macd.trend), ("OBV", obv.trend)):
        if trend == "bullish":
            bullish.append(name)
        elif trend == "bearish":
            bearish.append(name)

    readings = (
        f"RSI={rsi.value:.1f}, MACD hist={macd.histogram:.3f}, %K={stochastic.k:.1f}, "
        f"MFI={mfi.value:.1f}, OBV {obv.trend}"
    )
    margin = len(bullish) - len(bearish)
    if margin == 0:
        return Signal(agent_id=MARKET_DATA_AGENT_ID, action="hold", confidence=0.3, reasoning=f"No technical majority. {readings}.")

    confidence = min(COMPOSITE_MAX_CONFIDENCE, COMPOSITE_BASE_CONFIDENCE + COMPOSITE_CONFIDENCE_STEP * abs(margin))
    if margin > 0:
        return Signal(
            agent_id=MARKET_DATA_AGENT_ID,
            action="buy",
            confidence=confidence,
            position_size=COMPOSITE_POSITION_SIZE,
            reasoning=f"Bullish technicals ({', '.join(bullish)}). {readings}.",
        )
    return Signal(
        agent_id=MARKET_DATA_AGENT_ID,
        action="sell",
        confidence=confidence,
        position_size=COMPOSITE_POSITION_SIZE,
        reasoning=f"Bearish technicals ({', '.join(bearish)}). {readings}.",
    )


def market_data_agent(snapshot: MarketSnapshot, context: AgentContext) -> Signal:
    return generate_technical_signal(snapshot.bars)


# --- News Sentiment ---

def build_sentiment_prompt(symbol: str, articles: List[str]) -> str:
    numbered = "\n\n".join(f"{i + 1}. {article}" for i, article in enumerate(articles))
    return (
        f"Analyze the sentiment of these financial news articles about {symbol}:\n\n{numbered}\n\n"
        "Return a JSON object with:\n"
        "- score: sentiment score from -1 (very negative) to +1 (very positive)\n"
        "- confidence: confidence level 0-1\n"
        "- summary: brief summary of key findings\n"
        "- trending: whether the news is gaining momentum (true/false)"
    )


async def analyze_news_sentiment(symbol: str, articles: List[str], inference: Optional[InferenceClient]) -> Signal:
    if inference is None or not articles:
        reason = "Inference collaborator not available." if inference is None else "No news articles to analyze."
        return Signal(agent_id=NEWS_SENTIMENT_AGENT_ID, action="hold", confidence=0.0, reasoning=reason)

    reading = await request_sentiment(inference, build_sentiment_prompt(symbol, articles), {"temperature": 0.3})
    if isinstance(reading, InferenceFailure):
        logger.warning(f"News sentiment for {symbol} degraded to hold: {reading.reason}")
        return Signal(
            agent_id=NEWS_SENTIMENT_AGENT_ID,
            action="hold",
            confidence=0.0,
            reasoning=f"Sentiment unavailable: {reading.reason}.",
        )

    if reading.score > SENTIMENT_BUY_THRESHOLD:
        action = "buy"
    elif reading.score < SENTIMENT_SELL_THRESHOLD:
        action = "sell"
    else:
        action = "hold"

    summary = f" {reading.summary}" if reading.summary else ""
    return Signal(
        agent_id=NEWS_SENTIMENT_AGENT_ID,
        action=action,
        confidence=reading.confidence,
        position_size=SENTIMENT_POSITION_SIZE if action != "hold" else None,
        reasoning=f"News sentiment {reading.score:+.2f} across {len(articles)} articles.{summary}",
    )


async def news_sentiment_agent(snapshot: MarketSnapshot, context: AgentContext) -> Signal:
    return await analyze_news_sentiment(snapshot.symbol, snapshot.news, context.inference)


# --- Pattern Recognition ---

def detect_head_and_shoulders(bars: Sequence[PriceBar]) -> Optional[CandlestickPattern]:
    """Coarse proxy: a wide (>10%) trading range over the last 20 bars reads as a topping pattern."""
    if len(bars) < HEAD_AND_SHOULDERS_WINDOW:
        return None
    recent = [b.close for b in bars[-HEAD_AND_SHOULDERS_WINDOW:]]
    peak, valley = max(recent), min(recent)
    if peak > 0 and (peak - valley) / peak > HEAD_AND_SHOULDERS_RANGE:
        return CandlestickPattern(pattern="Head and Shoulders", signal="bearish", strength=70)
    return None


def detect_chart_patterns(bars: Sequence[PriceBar]) -> List[CandlestickPattern]:
    patterns = detect_candlestick_patterns(bars)
    head_and_shoulders = detect_head_and_shoulders(bars)
    if head_and_shoulders:
        patterns.append(head_and_shoulders)
    return patterns


def generate_pattern_signal(bars: Sequence[PriceBar]) -> Signal:
    if len(bars) < 2:
        return Signal(agent_id=PATTERN_RECOGNITION_AGENT_ID, action="hold", confidence=0.0, reasoning="Insufficient bars for pattern recognition.")

    patterns = detect_chart_patterns(bars)
    bullish = [p for p in patterns if p.signal == "bullish"]
    bearish = [p for p in patterns if p.signal == "bearish"]
    bull_strength = max((p.strength for p in bullish), default=0.0)
    bear_strength = max((p.strength for p in bearish), default=0.0)

    if bull_strength == bear_strength:
        names = ", ".join(p.pattern for p in patterns) or "none"
        return Signal(
            agent_id=PATTERN_RECOGNITION_AGENT_ID,
            action="hold",
            confidence=0.3 if patterns else 0.0,
            reasoning=f"No directional pattern (detected: {names}).",
        )

    winners, action, strength = (bullish, "buy", bull_strength) if bull_strength > bear_strength else (bearish, "sell", bear_strength)
    return Signal(
        agent_id=PATTERN_RECOGNITION_AGENT_ID,
        action=action,
        confidence=strength / 100,
        position_size=PATTERN_POSITION_SIZE,
        reasoning=f"Patterns detected: {', '.join(p.pattern for p in winners)}.",
    )


def pattern_recognition_agent(snapshot: MarketSnapshot, context: AgentContext) -> Signal:
    return generate_pattern_signal(snapshot.bars)
