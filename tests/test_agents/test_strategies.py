import unittest
from unittest.mock import AsyncMock

from decision_pipeline.agents.strategies import (
    ARBITRAGE_AGENT_ID,
    OPTIONS_AGENT_ID,
    arbitrage_agent,
    build_prediction_prompt,
    detect_pairs_trade,
    generate_arbitrage_signal,
    generate_mean_reversion_signal,
    generate_ml_prediction,
    generate_momentum_signal,
    generate_value_signal,
    options_strategy_agent,
    recommend_covered_call,
    recommend_protective_put,
)
from decision_pipeline.models import MarketSnapshot, PriceBar
from decision_pipeline.schemas import AgentContext


class TestMomentumSignal(unittest.TestCase):

    def test_golden_cross(self):
        signal = generate_momentum_signal([100.0] * 200 + [110.0])
        self.assertEqual(signal.action, "buy")
        self.assertAlmostEqual(signal.confidence, 0.85)
        self.assertAlmostEqual(signal.position_size, 0.05)
        self.assertIn("Golden Cross", signal.reasoning)

    def test_death_cross(self):
        signal = generate_momentum_signal([100.0] * 200 + [90.0])
        self.assertEqual(signal.action, "sell")
        self.assertIn("Death Cross", signal.reasoning)
        self.assertAlmostEqual(signal.position_size, 0.05)

    def test_uptrend_holds(self):
        signal = generate_momentum_signal([100.0 + i for i in range(250)])
        self.assertEqual(signal.action, "hold")
        self.assertAlmostEqual(signal.confidence, 0.6)

    def test_insufficient_history(self):
        signal = generate_momentum_signal([100.0] * 100)
        self.assertEqual(signal.action, "hold")
        self.assertEqual(signal.confidence, 0.0)


class TestValueSignal(unittest.TestCase):

    def test_both_metrics_attractive(self):
        signal = generate_value_signal({"pe_ratio": 10.0, "pb_ratio": 1.0})
        self.assertEqual(signal.action, "buy")
        self.assertAlmostEqual(signal.confidence, 0.75)
        self.assertAlmostEqual(signal.position_size, 0.08)

    def test_both_metrics_expensive(self):
        signal = generate_value_signal({"pe_ratio": 30.0, "pb_ratio": 3.0})
        self.assertEqual(signal.action, "sell")
        self.assertAlmostEqual(signal.confidence, 0.6)
        self.assertAlmostEqual(signal.position_size, 0.08)

    def test_mixed_metrics(self):
        signal = generate_value_signal({"pe_ratio": 10.0, "pb_ratio": 3.0})
        self.assertEqual(signal.action, "hold")
        self.assertAlmostEqual(signal.confidence, 0.5)

    def test_missing_fundamentals(self):
        signal = generate_value_signal({"pe_ratio": 10.0})
        self.assertEqual(signal.action, "hold")
        self.assertEqual(signal.confidence, 0.0)


class TestArbitrage(unittest.TestCase):

    def test_spread_above_fees(self):
        signal = generate_arbitrage_signal(100.0, 101.0, fees_pct=0.1)
        self.assertEqual(signal.action, "buy")
        self.assertAlmostEqual(signal.confidence, 0.9)

    def test_spread_eaten_by_fees(self):
        signal = generate_arbitrage_signal(100.0, 100.2, fees_pct=0.1)
        self.assertEqual(signal.action, "hold")
        self.assertAlmostEqual(signal.confidence, 0.3)

    def test_pairs_spread_blowout(self):
        result = detect_pairs_trade([0.0] * 29 + [10.0], [0.0] * 30)
        self.assertEqual(result.signal, "short_s1_long_s2")
        self.assertGreater(result.z_score, 2.0)

    def test_pairs_requires_matching_history(self):
        result = detect_pairs_trade([1.0] * 30, [1.0] * 29)
        self.assertEqual(result.signal, "hold")
        self.assertEqual(result.confidence, 0.0)

    def test_agent_falls_back_to_pairs(self):
        snapshot = MarketSnapshot(
            symbol="XYZ",
            venue_prices={"venue_a": 100.0, "venue_b": 100.0},
            pair_series_a=[0.0] * 29 + [-10.0],
            pair_series_b=[0.0] * 30,
        )
        signal = arbitrage_agent(snapshot, AgentContext(user_id="u1", cycle_id="c1"))
        self.assertEqual(signal.agent_id, ARBITRAGE_AGENT_ID)
        self.assertEqual(signal.action, "buy")
        self.assertAlmostEqual(signal.confidence, 0.75)

    def test_agent_without_data(self):
        signal = arbitrage_agent(MarketSnapshot(symbol="XYZ"), AgentContext(user_id="u1", cycle_id="c1"))
        self.assertEqual(signal.action, "hold")
        self.assertEqual(signal.confidence, 0.0)


class TestOptionsStrategy(unittest.TestCase):

    def setUp(self):
        self.bars = [PriceBar(open=100, high=101, low=99, close=100, volume=1000) for _ in range(10)]

    def context(self, holdings=0.0, drawdown=0.0):
        return AgentContext(user_id="u1", cycle_id="c1", holdings=holdings, drawdown=drawdown)

    def test_covered_call_in_high_volatility(self):
        signal = recommend_covered_call(100.0, 35.0, holdings=10)
        self.assertEqual(signal.action, "sell")
        self.assertAlmostEqual(signal.confidence, 0.7)
        self.assertAlmostEqual(signal.target_price, 110.0)
        self.assertAlmostEqual(signal.position_size, 0.02)
        self.assertIn("strike $110.00", signal.reasoning)

    def test_covered_call_needs_holdings(self):
        signal = recommend_covered_call(100.0, 35.0, holdings=0)
        self.assertEqual(signal.action, "hold")
        self.assertAlmostEqual(signal.confidence, 0.4)

    def test_protective_put_on_drawdown(self):
        signal = recommend_protective_put(100.0, 20.0, drawdown=0.2)
        self.assertEqual(signal.action, "buy")
        self.assertAlmostEqual(signal.confidence, 0.8)
        self.assertAlmostEqual(signal.target_price, 90.0)
        self.assertIn("drawdown=20.0%", signal.reasoning)

    def test_no_hedge_in_calm_market(self):
        signal = recommend_protective_put(100.0, 20.0, drawdown=0.1)
        self.assertEqual(signal.action, "hold")
        self.assertAlmostEqual(signal.confidence, 0.5)

    def test_agent_prefers_covered_call_on_held_symbol(self):
        snapshot = MarketSnapshot(symbol="XYZ", bars=self.bars, volatility_index=35.0)
        signal = options_strategy_agent(snapshot, self.context(holdings=5))
        self.assertEqual(signal.action, "sell")
        self.assertEqual(signal.agent_id, OPTIONS_AGENT_ID)

    def test_agent_hedges_when_nothing_is_held(self):
        snapshot = MarketSnapshot(symbol="XYZ", bars=self.bars, volatility_index=35.0)
        signal = options_strategy_agent(snapshot, self.context())
        self.assertEqual(signal.action, "buy")
        self.assertAlmostEqual(signal.target_price, 90.0)

    def test_agent_uses_realised_volatility_without_index(self):
        # flat closes have zero realised volatility
        snapshot = MarketSnapshot(symbol="XYZ", bars=self.bars)
        signal = options_strategy_agent(snapshot, self.context(holdings=5))
        self.assertEqual(signal.action, "hold")
        self.assertAlmostEqual(signal.confidence, 0.5)

    def test_agent_without_bars(self):
        signal = options_strategy_agent(MarketSnapshot(symbol="XYZ"), self.context())
        self.assertEqual(signal.action, "hold")
        self.assertEqual(signal.confidence, 0.0)


class TestMeanReversion(unittest.TestCase):

    def test_strong_oversold(self):
        prices = [100.0 - i * 0.5 for i in range(30)] + [80.0]
        signal = generate_mean_reversion_signal(prices)
        self.assertEqual(signal.action, "buy")
        self.assertAlmostEqual(signal.confidence, 0.85)
        self.assertIsNotNone(signal.target_price)

    def test_strong_overbought(self):
        prices = [100.0 + i * 0.5 for i in range(30)] + [120.0]
        signal = generate_mean_reversion_signal(prices)
        self.assertEqual(signal.action, "sell")
        self.assertAlmostEqual(signal.confidence, 0.85)
        self.assertAlmostEqual(signal.position_size, 0.06)

    def test_neutral_zone(self):
        signal = generate_mean_reversion_signal([100.0, 101.0] * 15)
        self.assertEqual(signal.action, "hold")
        self.assertAlmostEqual(signal.confidence, 0.5)

    def test_insufficient_history(self):
        signal = generate_mean_reversion_signal([100.0] * 20)
        self.assertEqual(signal.action, "hold")
        self.assertEqual(signal.confidence, 0.0)


class TestMlPredictor(unittest.IsolatedAsyncioTestCase):

    async def test_no_inference_collaborator(self):
        signal = await generate_ml_prediction("XYZ", [100.0, 101.0], None)
        self.assertEqual(signal.action, "hold")
        self.assertEqual(signal.confidence, 0.0)

    async def test_prediction_is_validated(self):
        inference = AsyncMock()
        inference.complete.return_value = 'Here you go: {"action": "buy", "confidence": 0.8, "reasoning": "breakout"}'
        signal = await generate_ml_prediction("XYZ", [100.0 + i for i in range(30)], inference)
        self.assertEqual(signal.action, "buy")
        self.assertAlmostEqual(signal.confidence, 0.8)
        self.assertAlmostEqual(signal.position_size, 0.05)
        inference.complete.assert_awaited_once()

    async def test_invalid_payload_degrades_to_hold(self):
        inference = AsyncMock()
        inference.complete.return_value = '{"action": "moon", "confidence": 3}'
        signal = await generate_ml_prediction("XYZ", [100.0] * 30, inference)
        self.assertEqual(signal.action, "hold")
        self.assertEqual(signal.confidence, 0.0)
        self.assertIn("invalid inference payload", signal.reasoning)

    def test_prompt_mentions_recent_prices(self):
        prompt = build_prediction_prompt("XYZ", [float(p) for p in range(1, 31)])
        self.assertIn("Symbol: XYZ", prompt)
        self.assertIn("Last 10 prices: 21.00", prompt)
        self.assertIn("Trend: up", prompt)


if __name__ == '__main__':
    unittest.main()
