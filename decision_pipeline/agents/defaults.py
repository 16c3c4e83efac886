from ..models import Agent
from ..registry import AgentRegistry
from . import market_intelligence, strategies

# --- Success-Rate Priors by Tier ---
TIER_SUCCESS_RATES = {
    0: 0.90,  # supporting
    1: 0.75,  # market intelligence
    2: 0.70,  # strategy engines
    3: 0.85,  # execution & risk
    4: 0.65,  # machine learning
    5: 0.95,  # monitoring & alerts
    6: 1.0,   # orchestrator
}

DEFAULT_SIGNAL_AGENTS = [
    (market_intelligence.MARKET_DATA_AGENT_ID, "Market Data Aggregator", 1, market_intelligence.market_data_agent),
    (market_intelligence.NEWS_SENTIMENT_AGENT_ID, "News Sentiment Analyzer", 1, market_intelligence.news_sentiment_agent),
    (market_intelligence.PATTERN_RECOGNITION_AGENT_ID, "Pattern Recognition Engine", 1, market_intelligence.pattern_recognition_agent),
    (strategies.MOMENTUM_AGENT_ID, "Momentum Strategy", 2, strategies.momentum_agent),
    (strategies.VALUE_AGENT_ID, "Value Strategy", 2, strategies.value_agent),
    (strategies.ARBITRAGE_AGENT_ID, "Arbitrage Hunter", 2, strategies.arbitrage_agent),
    (strategies.OPTIONS_AGENT_ID, "Options Strategy", 2, strategies.options_strategy_agent),
    (strategies.MEAN_REVERSION_AGENT_ID, "Mean Reversion", 2, strategies.mean_reversion_agent),
    (strategies.ML_PREDICTOR_AGENT_ID, "AI ML Predictor", 2, strategies.ml_predictor_agent),
]


def build_default_registry() -> AgentRegistry:
    """Registry with every built-in signal agent, seeded with its tier's success-rate prior."""
    registry = AgentRegistry()
    for agent_id, name, tier, fn in DEFAULT_SIGNAL_AGENTS:
        registry.register(Agent(id=agent_id, name=name, tier=tier, success_rate=TIER_SUCCESS_RATES[tier]), fn)
    return registry
