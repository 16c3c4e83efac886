import asyncio
import unittest
from datetime import timedelta

from decision_pipeline.agents.strategies import OPTIONS_AGENT_ID, VALUE_AGENT_ID, options_strategy_agent, value_agent
from decision_pipeline.execution import PaperExecutor
from decision_pipeline.market_data import MarketDataProvider, StaticMarketDataProvider
from decision_pipeline.models import Agent, MarketSnapshot, PortfolioState, Position, PriceBar, Signal, utc_now
from decision_pipeline.orchestrator import MasterOrchestrator
from decision_pipeline.registry import AgentRegistry
from decision_pipeline.store import InMemoryDecisionStore

BARS = [PriceBar(open=100, high=101, low=99, close=100, volume=1000) for _ in range(10)]
SNAPSHOT = MarketSnapshot(symbol="XYZ", bars=BARS)
# 60% winners at 2:1 payoff -> half-Kelly 20%
EDGE_PORTFOLIO = PortfolioState(trade_pnls=[100.0, 100.0, 100.0, -50.0, -50.0])


def signal_agent(action, confidence, position_size=None):
    def fn(snapshot, context):
        # agent_id is stamped by the orchestrator
        return Signal(agent_id=0, action=action, confidence=confidence, position_size=position_size)
    return fn


def failing_agent(snapshot, context):
    raise RuntimeError("feed parse error")


def make_registry(*fns):
    registry = AgentRegistry()
    for i, fn in enumerate(fns, start=1):
        registry.register(Agent(id=i, name=f"Agent {i}", tier=2, success_rate=1.0), fn)
    return registry


class FailingMarketData(MarketDataProvider):

    async def get_market_snapshot(self, user_id):
        raise ConnectionError("market data service down")

    async def get_portfolio_state(self, user_id, portfolio_value):
        return PortfolioState()


class SlowMarketData(StaticMarketDataProvider):

    async def get_market_snapshot(self, user_id):
        await asyncio.sleep(1)
        return self.snapshot


class StaleMarketData(StaticMarketDataProvider):

    async def get_market_snapshot(self, user_id):
        return self.snapshot.model_copy(update={"as_of": utc_now() - timedelta(hours=1)})


class FailingDecisionStore(InMemoryDecisionStore):

    def append_decision(self, user_id, decision, cycle_id):
        raise RuntimeError("database is locked")


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):

    def make_orchestrator(self, registry, portfolio=None, market_data=None, **kwargs):
        kwargs.setdefault("store", InMemoryDecisionStore())
        return MasterOrchestrator(
            market_data=market_data or StaticMarketDataProvider(SNAPSHOT, portfolio),
            registry=registry,
            reset_token="s3cret",
            **kwargs,
        )


class TestLifecycle(OrchestratorTestCase):

    async def test_cycle_before_start_is_inactive(self):
        orchestrator = self.make_orchestrator(make_registry(signal_agent("hold", 0.5)))
        summary = await orchestrator.run_cycle("u1", 100_000)
        self.assertEqual(summary.status, "inactive")
        self.assertEqual(orchestrator.get_cycle_state("u1"), "idle")

    async def test_start_and_stop_persist_agents(self):
        orchestrator = self.make_orchestrator(make_registry(signal_agent("hold", 0.5), signal_agent("hold", 0.5)))
        result = await orchestrator.start()
        self.assertEqual(result.message, "Decision pipeline started. 2 agents active.")
        self.assertTrue(orchestrator.active)
        self.assertEqual(orchestrator.store.get_agent(1).status, "active")

        await orchestrator.stop()
        self.assertFalse(orchestrator.active)
        self.assertEqual(orchestrator.store.get_agent(2).status, "inactive")
        self.assertEqual(orchestrator.get_system_status().inactive_agents, 2)

    async def test_override_agent(self):
        orchestrator = self.make_orchestrator(make_registry(signal_agent("hold", 0.5), signal_agent("hold", 0.5)))
        await orchestrator.start()

        missing = await orchestrator.override_agent(42, "inactive")
        self.assertFalse(missing.success)
        self.assertEqual(missing.message, "Agent #42 not found")

        result = await orchestrator.override_agent(2, "inactive")
        self.assertTrue(result.success)
        status = orchestrator.get_system_status()
        self.assertEqual((status.active_agents, status.inactive_agents), (1, 1))

        summary = await orchestrator.run_cycle("u1", 100_000)
        self.assertEqual(summary.agents_run, 1)


class TestDecisionCycle(OrchestratorTestCase):

    async def test_hold_cycle_is_persisted(self):
        orchestrator = self.make_orchestrator(make_registry(signal_agent("hold", 0.5), signal_agent("hold", 0.7)))
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)

        self.assertEqual(summary.status, "completed")
        self.assertEqual(summary.agents_run, 2)
        self.assertEqual(summary.decision.final_action, "hold")
        self.assertIsNone(summary.risk_check)
        self.assertIsNone(summary.order)
        self.assertEqual(summary.market_regime, "undefined")
        self.assertEqual(orchestrator.get_cycle_state("u1"), "completed")
        self.assertEqual(len(orchestrator.store.list_decisions("u1")), 1)
        self.assertEqual(orchestrator.store.decisions["u1"][0][0], summary.cycle_id)
        self.assertEqual(len(orchestrator.store.snapshots["u1"]), 1)

    async def test_signals_are_stamped_with_registry_ids(self):
        orchestrator = self.make_orchestrator(make_registry(signal_agent("hold", 0.5), signal_agent("hold", 0.5)))
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)
        self.assertEqual([s.agent_id for s in summary.decision.individual_decisions], [1, 2])
        self.assertEqual(orchestrator.registry.get(1).decisions, 1)

    async def test_buy_cycle_places_paper_order(self):
        executor = PaperExecutor()
        registry = make_registry(signal_agent("buy", 0.9, 0.05), signal_agent("buy", 0.9, 0.05))
        orchestrator = self.make_orchestrator(registry, EDGE_PORTFOLIO, executor=executor)
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)

        self.assertEqual(summary.decision.final_action, "buy")
        self.assertTrue(summary.risk_check.approved)
        # half-Kelly 20% x sideways 0.8 = 16% -> capped at the tier 5 limit of 8%
        self.assertEqual(summary.capital_tier.tier, 5)
        self.assertAlmostEqual(summary.sizing.recommended_size, 16_000)
        self.assertAlmostEqual(summary.sizing.actual_size, 8_000)
        self.assertEqual(summary.order.status, "filled")
        self.assertAlmostEqual(summary.order.quantity, 80)
        self.assertAlmostEqual(summary.order.stop_loss, 98.0)
        self.assertTrue(summary.execution.success)
        self.assertEqual(len(executor.orders), 1)

    async def test_overvalued_stock_produces_sell_order(self):
        registry = AgentRegistry()
        registry.register(Agent(id=VALUE_AGENT_ID, name="Value Investing Agent", tier=2, success_rate=0.7), value_agent)
        snapshot = SNAPSHOT.model_copy(update={"fundamentals": {"pe_ratio": 30.0, "pb_ratio": 3.0}})
        orchestrator = self.make_orchestrator(registry, EDGE_PORTFOLIO, market_data=StaticMarketDataProvider(snapshot, EDGE_PORTFOLIO))
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)

        self.assertEqual(summary.decision.final_action, "sell")
        self.assertAlmostEqual(summary.decision.position_size_hint, 0.08)
        self.assertTrue(summary.risk_check.approved)
        self.assertEqual(summary.order.action, "sell")
        self.assertAlmostEqual(summary.order.quantity, 80)
        self.assertAlmostEqual(summary.order.stop_loss, 102.0)

    async def test_order_without_executor_stays_pending(self):
        registry = make_registry(signal_agent("buy", 0.9, 0.05))
        orchestrator = self.make_orchestrator(registry, EDGE_PORTFOLIO)
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)
        self.assertEqual(summary.order.status, "pending")
        self.assertIsNone(summary.execution)

    async def test_low_confidence_rejected_by_risk_gate(self):
        registry = make_registry(signal_agent("buy", 0.9, 0.05), signal_agent("sell", 0.8))
        orchestrator = self.make_orchestrator(registry, EDGE_PORTFOLIO)
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)
        self.assertEqual(summary.decision.final_action, "buy")
        self.assertFalse(summary.risk_check.approved)
        self.assertEqual(summary.risk_check.reason_code, "low_confidence")
        self.assertIsNone(summary.order)

    async def test_small_account_is_held_to_its_tier_position_count(self):
        positions = [Position(symbol=f"P{i}", value=50) for i in range(5)]
        portfolio = EDGE_PORTFOLIO.model_copy(update={"positions": positions})
        orchestrator = self.make_orchestrator(make_registry(signal_agent("buy", 0.9, 0.05)), portfolio)
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 500)

        self.assertEqual(summary.capital_tier.tier, 1)
        self.assertFalse(summary.risk_check.approved)
        self.assertEqual(summary.risk_check.reason_code, "max_positions")
        self.assertEqual(summary.risk_check.reason, "Maximum 3 positions limit reached")
        self.assertIsNone(summary.order)

    async def test_hold_cycle_still_records_capital_tier(self):
        orchestrator = self.make_orchestrator(make_registry(signal_agent("hold", 0.5)))
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 3_000)
        self.assertEqual(summary.capital_tier.tier, 2)


class TestAgentFailures(OrchestratorTestCase):

    async def test_failing_agent_becomes_zero_confidence_hold(self):
        orchestrator = self.make_orchestrator(make_registry(signal_agent("buy", 0.9, 0.05), failing_agent))
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)

        self.assertEqual(summary.status, "completed")
        self.assertEqual(summary.agents_failed, 1)
        self.assertEqual(summary.errors, 0)
        failed = summary.decision.individual_decisions[1]
        self.assertEqual((failed.action, failed.confidence), ("hold", 0.0))
        self.assertIn("feed parse error", failed.reasoning)
        self.assertEqual(summary.decision.final_action, "buy")

        agent = orchestrator.registry.get(2)
        self.assertEqual(agent.status, "active")
        self.assertIn("feed parse error", agent.last_error)

    async def test_slow_agent_times_out(self):
        async def slow_agent(snapshot, context):
            await asyncio.sleep(1)
            return Signal(agent_id=1, action="buy", confidence=0.9)

        orchestrator = self.make_orchestrator(make_registry(slow_agent, signal_agent("hold", 0.5)), agent_timeout=0.05)
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)

        self.assertEqual(summary.agents_failed, 1)
        self.assertIn("timed out", summary.decision.individual_decisions[0].reasoning)

    async def test_non_signal_result_is_a_failure(self):
        orchestrator = self.make_orchestrator(make_registry(lambda snapshot, context: {"action": "buy"}))
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)
        self.assertEqual(summary.agents_failed, 1)
        self.assertEqual(summary.decision.final_action, "hold")


class TestCycleControl(OrchestratorTestCase):

    async def test_overlapping_cycle_for_same_user_is_skipped(self):
        async def slow_agent(snapshot, context):
            await asyncio.sleep(0.1)
            return Signal(agent_id=1, action="hold", confidence=0.5)

        orchestrator = self.make_orchestrator(make_registry(slow_agent))
        await orchestrator.start()
        first, second, other_user = await asyncio.gather(
            orchestrator.run_cycle("u1", 100_000),
            orchestrator.run_cycle("u1", 100_000),
            orchestrator.run_cycle("u2", 100_000),
        )
        self.assertEqual(first.status, "completed")
        self.assertEqual(second.status, "skipped")
        self.assertEqual(other_user.status, "completed")

    async def test_stop_mid_cycle_cancels_before_aggregation(self):
        holder = {}

        async def stopping_agent(snapshot, context):
            await holder["orchestrator"].stop()
            return Signal(agent_id=1, action="hold", confidence=0.5)

        orchestrator = self.make_orchestrator(make_registry(stopping_agent))
        holder["orchestrator"] = orchestrator
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)

        self.assertEqual(summary.status, "cancelled")
        self.assertEqual(summary.agents_run, 1)
        self.assertIsNone(summary.decision)
        self.assertEqual(orchestrator.store.list_decisions("u1"), [])


class TestEmergencyAndCollaborators(OrchestratorTestCase):

    async def test_drawdown_breach_blocks_orders_until_reset(self):
        portfolio = EDGE_PORTFOLIO.model_copy(update={"equity_history": [100_000, 140_000]})
        registry = make_registry(signal_agent("buy", 0.9, 0.05))
        orchestrator = self.make_orchestrator(registry, portfolio)
        await orchestrator.start()

        summary = await orchestrator.run_cycle("u1", 100_000)
        self.assertEqual(summary.drawdown.status, "breached")
        self.assertTrue(summary.emergency.active)
        self.assertEqual(summary.risk_check.reason_code, "emergency_active")
        self.assertIsNone(summary.order)
        self.assertEqual(summary.alerts[0].severity, "critical")
        self.assertTrue(summary.alerts[0].id.startswith("emergency_"))

        snapshot = orchestrator.store.snapshots["u1"][0]
        self.assertEqual(snapshot.performance.current_value, 100_000)
        self.assertTrue(any(a.id.startswith("drawdown_") for a in summary.alerts))

        again = await orchestrator.run_cycle("u1", 100_000)
        self.assertEqual(again.risk_check.reason_code, "emergency_active")
        self.assertFalse(any(a.severity == "critical" for a in again.alerts))

        self.assertFalse(orchestrator.reset_emergency("wrong").success)
        self.assertTrue(orchestrator.reset_emergency("s3cret").success)
        self.assertFalse(orchestrator.emergency_state.active)

    async def test_breach_against_remembered_peak_raises_drawdown_alert(self):
        orchestrator = self.make_orchestrator(make_registry(signal_agent("hold", 0.5)))
        await orchestrator.start()

        await orchestrator.run_cycle("u1", 140_000)
        summary = await orchestrator.run_cycle("u1", 100_000)

        self.assertEqual(summary.drawdown.status, "breached")
        drawdown_alerts = [a for a in summary.alerts if a.id.startswith("drawdown_")]
        self.assertEqual(len(drawdown_alerts), 1)
        self.assertIn("28.6%", drawdown_alerts[0].message)

    async def test_store_failure_is_counted_but_cycle_completes(self):
        orchestrator = self.make_orchestrator(make_registry(signal_agent("hold", 0.5)), store=FailingDecisionStore())
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)

        self.assertEqual(summary.status, "completed")
        self.assertEqual(summary.errors, 1)
        self.assertIn("Error persisting decision", summary.error_messages[0])
        self.assertEqual(len(orchestrator.store.snapshots["u1"]), 1)
        self.assertEqual(orchestrator.risk_gate.error_count(), 1)

    async def test_market_data_failure_fails_cycle(self):
        orchestrator = self.make_orchestrator(make_registry(signal_agent("hold", 0.5)), market_data=FailingMarketData())
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)

        self.assertEqual(summary.status, "failed")
        self.assertEqual(summary.agents_run, 0)
        self.assertEqual(summary.errors, 1)
        self.assertIn("market data service down", summary.error_messages[0])
        self.assertEqual(orchestrator.get_cycle_state("u1"), "failed")

    async def test_negative_quote_rejects_cycle_before_agents(self):
        calls = []

        def recording_agent(snapshot, context):
            calls.append(snapshot.symbol)
            return Signal(agent_id=1, action="hold", confidence=0.5)

        bars = BARS[:-1] + [PriceBar(open=100, high=101, low=-2, close=-1, volume=1000)]
        market_data = StaticMarketDataProvider(SNAPSHOT.model_copy(update={"bars": bars}))
        orchestrator = self.make_orchestrator(make_registry(recording_agent), market_data=market_data)
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)

        self.assertEqual(summary.status, "failed")
        self.assertEqual(summary.errors, 1)
        self.assertIn("Market data rejected: Negative price or volume detected", summary.error_messages[0])
        self.assertFalse(summary.data_quality.valid)
        self.assertEqual(calls, [])
        self.assertEqual(orchestrator.risk_gate.error_count(), 1)

    async def test_stale_snapshot_rejects_cycle(self):
        orchestrator = self.make_orchestrator(make_registry(signal_agent("hold", 0.5)), market_data=StaleMarketData(SNAPSHOT))
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)
        self.assertEqual(summary.status, "failed")
        self.assertIn("Stale data: 3600s old", summary.error_messages[0])

    async def test_outlier_quote_is_flagged_and_cycle_continues(self):
        bars = [PriceBar(open=c, high=c + 1, low=c - 1, close=c, volume=1000) for c in [99.0, 101.0] * 5 + [104.0]]
        market_data = StaticMarketDataProvider(SNAPSHOT.model_copy(update={"bars": bars}))
        orchestrator = self.make_orchestrator(make_registry(signal_agent("hold", 0.5)), market_data=market_data)
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)

        self.assertEqual(summary.status, "completed")
        self.assertTrue(summary.data_quality.valid)
        self.assertTrue(summary.data_quality.anomaly)

    async def test_agents_see_holdings_and_drawdown(self):
        seen = []

        def recording_agent(snapshot, context):
            seen.append((context.holdings, context.drawdown))
            return Signal(agent_id=1, action="hold", confidence=0.5)

        portfolio = PortfolioState(
            positions=[Position(symbol="XYZ", quantity=5, value=500), Position(symbol="ABC", quantity=7, value=700)],
            equity_history=[100_000, 125_000],
        )
        orchestrator = self.make_orchestrator(make_registry(recording_agent), portfolio)
        await orchestrator.start()
        await orchestrator.run_cycle("u1", 112_500)

        self.assertEqual(len(seen), 1)
        self.assertEqual(seen[0][0], 5)
        self.assertAlmostEqual(seen[0][1], 0.1)

    async def test_options_agent_writes_covered_call_on_held_symbol(self):
        registry = AgentRegistry()
        registry.register(Agent(id=OPTIONS_AGENT_ID, name="Options Strategy", tier=2, success_rate=0.7), options_strategy_agent)
        snapshot = SNAPSHOT.model_copy(update={"volatility_index": 35.0})
        portfolio = PortfolioState(positions=[Position(symbol="XYZ", quantity=5, value=500)])
        orchestrator = self.make_orchestrator(registry, market_data=StaticMarketDataProvider(snapshot, portfolio))
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)

        call = summary.decision.individual_decisions[0]
        self.assertEqual(call.action, "sell")
        self.assertAlmostEqual(call.target_price, 110.0)

    async def test_market_data_timeout_fails_cycle(self):
        orchestrator = self.make_orchestrator(
            make_registry(signal_agent("hold", 0.5)),
            market_data=SlowMarketData(SNAPSHOT),
            market_data_timeout=0.05,
        )
        await orchestrator.start()
        summary = await orchestrator.run_cycle("u1", 100_000)
        self.assertEqual(summary.status, "failed")
        self.assertIn("timed out", summary.error_messages[0])


if __name__ == '__main__':
    unittest.main()
