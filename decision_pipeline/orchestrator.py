import asyncio
import inspect
import logging
import time
import uuid
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

from .agents.defaults import build_default_registry
from .aggregator import aggregate_decisions, detect_conflicts
from .config import (
    AGENT_TIMEOUT_SECONDS,
    EMERGENCY_RESET_TOKEN,
    EXECUTION_TIMEOUT_SECONDS,
    MARKET_DATA_TIMEOUT_SECONDS,
    STORE_TIMEOUT_SECONDS,
)
from .data_quality import check_snapshot_quality
from .execution import Executor, build_order
from .market_data import MarketDataProvider, with_current_value
from .market_regime import classify_market_regime, derive_market_conditions, detect_regime_shift
from .models import (
    Agent,
    AgentStatus,
    Alert,
    CapitalTier,
    CycleSummary,
    DrawdownStatus,
    EmergencyState,
    ExecutionResult,
    MarketRegimeResponse,
    MarketSnapshot,
    MonitoringSnapshot,
    OperatorResult,
    OrchestratorDecision,
    PortfolioState,
    RiskCheck,
    RiskLimits,
    Signal,
    SizingResult,
    SystemStatus,
    TradeHistory,
    TradeOrder,
    utc_now,
)
from .monitoring import AlertGenerator, PerformanceMonitor, run_monitoring
from .registry import AgentRegistry
from .risk import PositionSizer, RiskGate, determine_capital_tier
from .schemas import AgentCallFailed, AgentCallOk, AgentCallResult, AgentContext, RegisteredAgent
from .store import DecisionStore, InMemoryDecisionStore

# --- Logging ---
logger = logging.getLogger(__name__)

# --- Constants for Cycle Bookkeeping ---
REGIME_HISTORY_LENGTH = 20


class CycleCancelled(Exception):
    """Raised inside a cycle when the system is switched off between steps."""


class MasterOrchestrator:
    """
    Runs one decision cycle per call for a user: fan out to the signal agents,
    aggregate their votes, gate and size any trade, monitor the portfolio and
    persist the outcome.

    Cycles for the same user are serialised; a call that arrives while one is
    running is skipped. Cycles for different users run independently. The
    registry and the emergency breaker are owned here and only mutated from
    inside a cycle or an operator call.
    """

    def __init__(
        self,
        market_data: MarketDataProvider,
        registry: Optional[AgentRegistry] = None,
        store: Optional[DecisionStore] = None,
        inference: Optional[Any] = None,
        executor: Optional[Executor] = None,
        risk_limits: Optional[RiskLimits] = None,
        reset_token: Optional[str] = EMERGENCY_RESET_TOKEN,
        agent_timeout: float = AGENT_TIMEOUT_SECONDS,
        store_timeout: float = STORE_TIMEOUT_SECONDS,
        execution_timeout: float = EXECUTION_TIMEOUT_SECONDS,
        market_data_timeout: float = MARKET_DATA_TIMEOUT_SECONDS,
    ):
        self.market_data = market_data
        self.registry = registry if registry is not None else build_default_registry()
        self.store = store if store is not None else InMemoryDecisionStore()
        self.inference = inference
        self.executor = executor
        self.risk_limits = risk_limits or RiskLimits()
        self.risk_gate = RiskGate(self.risk_limits, reset_token=reset_token)
        self.sizer = PositionSizer(self.risk_limits)
        self.monitor = PerformanceMonitor()
        self.alert_generator = AlertGenerator()

        self.agent_timeout = agent_timeout
        self.store_timeout = store_timeout
        self.execution_timeout = execution_timeout
        self.market_data_timeout = market_data_timeout

        self._active = False
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._cycle_states: Dict[str, str] = {}
        self._peaks: Dict[str, float] = {}
        self._day_open: Dict[str, Tuple[date, float]] = {}
        self._regimes: Dict[str, List[str]] = {}

    # --- Lifecycle ---

    @property
    def active(self) -> bool:
        return self._active

    async def start(self) -> OperatorResult:
        logger.info("Starting decision pipeline.")
        self._active = True
        agents = self.registry.set_all_status("active")
        await self._persist_agents(agents)
        logger.info(f"{len(agents)} agents started successfully.")
        return OperatorResult(success=True, message=f"Decision pipeline started. {len(agents)} agents active.")

    async def stop(self) -> OperatorResult:
        logger.info("Stopping decision pipeline.")
        self._active = False
        agents = self.registry.set_all_status("inactive")
        await self._persist_agents(agents)
        return OperatorResult(success=True, message="Decision pipeline stopped.")

    async def _persist_agents(self, agents: List[Agent]) -> None:
        for agent in agents:
            try:
                await self._call_store(self.store.upsert_agent, agent)
            except Exception as e:
                logger.error(f"Error persisting agent #{agent.id}: {e!r}")

    # --- Operator & status queries ---

    async def override_agent(self, agent_id: int, status: AgentStatus) -> OperatorResult:
        logger.info(f"Overriding agent #{agent_id} to {status}.")
        try:
            agent = self.registry.set_status(agent_id, status)
        except KeyError:
            return OperatorResult(success=False, message=f"Agent #{agent_id} not found")

        try:
            await self._call_store(self.store.upsert_agent, agent)
        except Exception as e:
            logger.error(f"Error persisting override for agent #{agent_id}: {e!r}")
            return OperatorResult(success=False, message=f"Agent #{agent_id} set to {status} but not persisted: {e!r}")
        return OperatorResult(success=True, message=f"Agent #{agent_id} ({agent.name}) set to {status}")

    def reset_emergency(self, token: Optional[str]) -> OperatorResult:
        return self.risk_gate.reset_emergency(token)

    @property
    def emergency_state(self) -> EmergencyState:
        return self.risk_gate.emergency.model_copy()

    def get_agent_status(self) -> List[Agent]:
        return self.registry.snapshot()

    def get_system_status(self) -> SystemStatus:
        agents = self.registry.snapshot()
        return SystemStatus(
            active=self._active,
            total_agents=len(agents),
            active_agents=sum(1 for a in agents if a.status == "active"),
            inactive_agents=sum(1 for a in agents if a.status == "inactive"),
            error_agents=sum(1 for a in agents if a.status == "error"),
            emergency=self.emergency_state,
        )

    def get_cycle_state(self, user_id: str) -> str:
        return self._cycle_states.get(user_id, "idle")

    # --- Cycle ---

    async def run_cycle(self, user_id: str, portfolio_value: float) -> CycleSummary:
        """
        Runs one decision cycle for `user_id`. Never raises: collaborator and agent
        failures are logged and reported in the returned summary.
        """
        cycle_id = str(uuid.uuid4())
        prefix = f"[user_id={user_id}][cycle_id={cycle_id}]"

        if not self._active:
            logger.info(f"{prefix} System is not active. Skipping cycle.")
            return CycleSummary(cycle_id=cycle_id, user_id=user_id, status="inactive", emergency=self.emergency_state)

        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        if lock.locked():
            logger.warning(f"{prefix} A cycle is already running for this user. Skipping.")
            return CycleSummary(cycle_id=cycle_id, user_id=user_id, status="skipped", emergency=self.emergency_state)

        async with lock:
            self._cycle_states[user_id] = "running"
            started = time.perf_counter()
            logger.info(f"{prefix} Running decision cycle.")
            try:
                summary = await self._run_cycle(user_id, cycle_id, portfolio_value, prefix)
            except Exception as e:
                logger.exception(f"{prefix} Unexpected error in decision cycle: {e!r}")
                self.risk_gate.record_error(repr(e))
                summary = CycleSummary(cycle_id=cycle_id, user_id=user_id, status="failed", errors=1, error_messages=[repr(e)])

            duration_ms = (time.perf_counter() - started) * 1000
            summary = summary.model_copy(update={"duration_ms": duration_ms, "emergency": self.emergency_state})
            self._cycle_states[user_id] = summary.status
            logger.info(
                f"{prefix} Cycle {summary.status} in {duration_ms:.0f}ms: {summary.agents_run} agents run, "
                f"{summary.agents_failed} failed, {summary.alerts_raised} alerts, {summary.errors} errors."
            )
            return summary

    async def _run_cycle(self, user_id: str, cycle_id: str, portfolio_value: float, prefix: str) -> CycleSummary:
        errors: List[str] = []

        def record_failure(message: str) -> None:
            logger.error(f"{prefix} {message}")
            errors.append(message)
            self.risk_gate.record_error(message)

        # 1. Inputs
        try:
            snapshot, portfolio = await asyncio.wait_for(
                asyncio.gather(
                    self.market_data.get_market_snapshot(user_id),
                    self.market_data.get_portfolio_state(user_id, portfolio_value),
                ),
                timeout=self.market_data_timeout,
            )
        except asyncio.TimeoutError:
            record_failure(f"Market data timed out after {self.market_data_timeout}s. Aborting cycle.")
            return CycleSummary(cycle_id=cycle_id, user_id=user_id, status="failed", errors=len(errors), error_messages=errors)
        except Exception as e:
            record_failure(f"Market data unavailable: {e!r}. Aborting cycle.")
            return CycleSummary(cycle_id=cycle_id, user_id=user_id, status="failed", errors=len(errors), error_messages=errors)
        portfolio = with_current_value(portfolio, portfolio_value)

        quality = check_snapshot_quality(snapshot)
        if not quality.valid:
            record_failure(f"Market data rejected: {quality.message}. Aborting cycle.")
            return CycleSummary(
                cycle_id=cycle_id, user_id=user_id, status="failed", data_quality=quality, errors=len(errors), error_messages=errors,
            )
        if quality.anomaly:
            logger.warning(f"{prefix} {quality.message} Continuing with the reported quotes.")

        # 2. Fan out / join
        context = AgentContext(
            user_id=user_id,
            cycle_id=cycle_id,
            inference=self.inference,
            holdings=sum(p.quantity for p in portfolio.positions if p.symbol == snapshot.symbol),
            drawdown=self._current_drawdown(user_id, portfolio, portfolio_value),
        )
        agents = self.registry.active()
        results = await asyncio.gather(*(self._call_agent(entry, snapshot, context) for entry in agents))
        signals = [self._fold(result, prefix) for result in results]
        failed = sum(1 for result in results if isinstance(result, AgentCallFailed))

        partial = {"cycle_id": cycle_id, "user_id": user_id, "agents_run": len(agents), "agents_failed": failed}

        try:
            # 3. Aggregate
            self._check_active(prefix, "aggregation")
            decision = aggregate_decisions(signals, self.registry.success_rates())
            logger.info(f"{prefix} {decision.reasoning}")
            conflicts = detect_conflicts(signals)
            if conflicts.has_conflict:
                logger.warning(f"{prefix} {conflicts.resolution} Agents: {conflicts.conflicting_agents}")

            classified = classify_market_regime(snapshot.bars, snapshot.volatility_index)
            self._track_regime(user_id, classified.regime, prefix)

            # 4. Drawdown and emergency breaker
            drawdown, new_alerts = self._evaluate_risk_state(user_id, portfolio, portfolio_value, prefix)

            # 5. Capital tier, risk gate, sizing, order
            self._check_active(prefix, "sizing")
            tier = determine_capital_tier(portfolio_value)
            logger.info(
                f"{prefix} Capital tier {tier.tier} (${portfolio_value:,.2f}): "
                f"max {tier.max_positions} positions, {tier.max_position_size:.0%} per position."
            )
            risk_check, sizing, order, execution = await self._trade(
                decision, snapshot, portfolio, portfolio_value, tier, drawdown, classified, prefix, record_failure,
            )

            # 6. Monitoring
            monitoring = run_monitoring(
                user_id, portfolio, cycle_id, self.monitor, self.alert_generator, peak_value=self._peaks.get(user_id),
            )
            alerts = new_alerts + monitoring.alerts
            monitoring = monitoring.model_copy(update={"alerts": alerts})

            # 7. Persist
            self._check_active(prefix, "persistence")
            await self._persist(user_id, cycle_id, decision, monitoring, record_failure)
        except CycleCancelled:
            return CycleSummary(status="cancelled", errors=len(errors), error_messages=errors, **partial)

        return CycleSummary(
            status="completed",
            alerts_raised=len(alerts),
            alerts=alerts,
            decision=decision,
            sizing=sizing,
            risk_check=risk_check,
            drawdown=drawdown,
            capital_tier=tier,
            data_quality=quality,
            order=order,
            execution=execution,
            market_regime=classified.regime,
            errors=len(errors),
            error_messages=errors,
            **partial,
        )

    def _check_active(self, prefix: str, step: str) -> None:
        if not self._active:
            logger.warning(f"{prefix} System stopped mid-cycle. Not starting {step}.")
            raise CycleCancelled(step)

    # --- Agent calls ---

    async def _invoke(self, entry: RegisteredAgent, snapshot: MarketSnapshot, context: AgentContext) -> Any:
        if asyncio.iscoroutinefunction(entry.fn):
            return await entry.fn(snapshot, context)
        result = await asyncio.to_thread(entry.fn, snapshot, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _call_agent(self, entry: RegisteredAgent, snapshot: MarketSnapshot, context: AgentContext) -> AgentCallResult:
        agent_id = entry.agent.id
        try:
            signal = await asyncio.wait_for(self._invoke(entry, snapshot, context), timeout=self.agent_timeout)
        except asyncio.TimeoutError:
            return AgentCallFailed(agent_id=agent_id, error=f"timed out after {self.agent_timeout}s", timed_out=True)
        except Exception as e:
            return AgentCallFailed(agent_id=agent_id, error=repr(e))

        if not isinstance(signal, Signal):
            return AgentCallFailed(agent_id=agent_id, error=f"returned {type(signal).__name__} instead of a Signal")
        if signal.agent_id != agent_id:
            signal = signal.model_copy(update={"agent_id": agent_id})
        return AgentCallOk(agent_id=agent_id, signal=signal)

    def _fold(self, result: AgentCallResult, prefix: str) -> Signal:
        """The single point where agent failures become zero-confidence holds."""
        if isinstance(result, AgentCallOk):
            self.registry.record_run(result.agent_id)
            return result.signal

        logger.warning(f"{prefix} Agent #{result.agent_id} failed: {result.error}. Using a zero-confidence hold.")
        self.registry.record_run(result.agent_id, error=result.error)
        return Signal(agent_id=result.agent_id, action="hold", confidence=0.0, reasoning=f"Agent failed: {result.error}")

    # --- Risk state ---

    def _track_regime(self, user_id: str, regime: str, prefix: str) -> None:
        if regime == "undefined":
            return
        history = self._regimes.setdefault(user_id, [])
        shift = detect_regime_shift(regime, history)
        if shift.shifted:
            logger.info(f"{prefix} {shift.message}")
        history.append(regime)
        del history[:-REGIME_HISTORY_LENGTH]

    def _peak_for(self, user_id: str, portfolio: PortfolioState, portfolio_value: float) -> float:
        return max([self._peaks.get(user_id, 0.0), portfolio_value] + list(portfolio.equity_history))

    def _current_drawdown(self, user_id: str, portfolio: PortfolioState, portfolio_value: float) -> float:
        """Drawdown against the remembered peak without updating it; the risk step owns the peak."""
        peak = self._peak_for(user_id, portfolio, portfolio_value)
        return (peak - portfolio_value) / peak if peak > 0 else 0.0

    def _evaluate_risk_state(self, user_id: str, portfolio: PortfolioState, portfolio_value: float, prefix: str) -> Tuple[DrawdownStatus, List[Alert]]:
        peak = self._peak_for(user_id, portfolio, portfolio_value)
        self._peaks[user_id] = peak

        today = utc_now().date()
        opened = self._day_open.get(user_id)
        if opened is None or opened[0] != today:
            opened = (today, portfolio_value)
            self._day_open[user_id] = opened
        daily_loss = max(0.0, opened[1] - portfolio_value)

        was_active = self.risk_gate.emergency.active
        drawdown = self.risk_gate.monitor_drawdown(portfolio_value, peak)
        if drawdown.status != "normal":
            logger.warning(f"{prefix} {drawdown.message}")

        check = self.risk_gate.check_emergency_conditions(drawdown.current_drawdown, daily_loss)
        if check.should_trigger:
            self.risk_gate.trigger_emergency("; ".join(check.reasons))

        alerts = []
        emergency = self.risk_gate.emergency
        if emergency.active and not was_active:
            alerts.append(Alert(
                id=f"emergency_{int(emergency.triggered_at.timestamp() * 1000)}",
                type="risk",
                severity="critical",
                message=f"EMERGENCY SHUTDOWN: {emergency.reason}",
                timestamp=emergency.triggered_at,
                action_required="Automated order placement halted until an authorised reset",
            ))
        return drawdown, alerts

    # --- Trade path ---

    async def _trade(
        self,
        decision: OrchestratorDecision,
        snapshot: MarketSnapshot,
        portfolio: PortfolioState,
        portfolio_value: float,
        tier: CapitalTier,
        drawdown: DrawdownStatus,
        classified: MarketRegimeResponse,
        prefix: str,
        record_failure: Callable[[str], None],
    ) -> Tuple[Optional[RiskCheck], Optional[SizingResult], Optional[TradeOrder], Optional[ExecutionResult]]:
        if decision.final_action == "hold":
            return None, None, None, None

        emergency = self.risk_gate.emergency
        if emergency.active:
            logger.warning(f"{prefix} Emergency active, blocking {decision.final_action} order: {emergency.reason}")
            return RiskCheck(approved=False, reason_code="emergency_active", reason=f"Emergency shutdown active: {emergency.reason}"), None, None, None

        risk_check = self.risk_gate.validate_trade(decision.confidence, portfolio.open_positions, decision.position_size_hint, tier)
        if not risk_check.approved:
            logger.info(f"{prefix} Risk gate rejected {decision.final_action}: {risk_check.reason}")
            return risk_check, None, None, None

        conditions = derive_market_conditions(snapshot.bars, snapshot.volatility_index, drawdown.current_drawdown, classified)
        sizing = self.sizer.calculate_optimal_size(decision.confidence, portfolio_value, TradeHistory.from_pnls(portfolio.trade_pnls), conditions, tier)
        sizing = self.sizer.apply_position_cap(sizing, portfolio.positions, portfolio_value, tier)
        logger.info(f"{prefix} Sizing: {sizing.reasoning}")

        if sizing.actual_size <= 0:
            logger.info(f"{prefix} Position size calculated as zero. No order.")
            return risk_check, sizing, None, None

        price = snapshot.closes[-1] if snapshot.bars else portfolio.prices.get(snapshot.symbol)
        if not price or price <= 0:
            logger.warning(f"{prefix} No price available for {snapshot.symbol}. No order.")
            return risk_check, sizing, None, None

        order = build_order(snapshot.symbol, decision.final_action, sizing.actual_size, price, self.risk_limits.stop_loss_percent)
        logger.info(
            f"{prefix} Would-be order: {order.action.upper()} {order.quantity:.4f} {order.symbol} @ ${order.price:,.2f} "
            f"(${order.dollar_amount:,.2f}, stop ${order.stop_loss:,.2f}, target ${order.take_profit:,.2f})"
        )
        if self.executor is None:
            return risk_check, sizing, order, None

        try:
            execution = await asyncio.wait_for(self.executor.place_order(order), timeout=self.execution_timeout)
        except asyncio.TimeoutError:
            record_failure(f"Order execution timed out after {self.execution_timeout}s.")
            execution = ExecutionResult(success=False, message="Order rejected: execution timed out")
        except Exception as e:
            record_failure(f"Order execution failed: {e!r}")
            execution = ExecutionResult(success=False, message=f"Execution failed: {e!r}")

        order = order.model_copy(update={"status": "filled" if execution.success else "rejected"})
        logger.info(f"{prefix} {execution.message}")
        return risk_check, sizing, order, execution

    # --- Persistence ---

    async def _call_store(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.store_timeout)

    async def _persist(self, user_id: str, cycle_id: str, decision: OrchestratorDecision, monitoring: MonitoringSnapshot, record_failure: Callable[[str], None]) -> None:
        writes = (
            ("decision", self.store.append_decision, (user_id, decision, cycle_id)),
            ("monitoring snapshot", self.store.append_monitoring_snapshot, (user_id, monitoring)),
        )
        for label, fn, args in writes:
            try:
                await self._call_store(fn, *args)
            except asyncio.TimeoutError:
                record_failure(f"Persisting {label} timed out after {self.store_timeout}s.")
            except Exception as e:
                record_failure(f"Error persisting {label}: {e!r}")
