from pydantic import BaseModel, ConfigDict, Field
from typing import List, Dict, Optional, Literal
from datetime import datetime, timezone
import math

Action = Literal["buy", "sell", "hold"]
AgentStatus = Literal["active", "inactive", "error"]
Regime = Literal["bull", "bear", "sideways"]
RiskLevel = Literal["conservative", "moderate", "aggressive"]
AlertType = Literal["price_target", "stop_loss", "news", "position_limit", "risk", "performance"]
Severity = Literal["low", "medium", "high", "critical"]
CycleStatus = Literal["completed", "failed", "cancelled", "skipped", "inactive"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# --- Market Data Models ---

class PriceBar(BaseModel):
    """A single OHLCV bar."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class MarketSnapshot(BaseModel):
    """Everything the signal agents may look at for one instrument in one cycle."""
    symbol: str
    bars: List[PriceBar] = Field(default_factory=list)
    fundamentals: Dict[str, float] = Field(default_factory=dict)  # pe_ratio, pb_ratio, eps, ...
    venue_prices: Dict[str, float] = Field(default_factory=dict)
    arbitrage_fees_pct: float = 0.1
    pair_series_a: List[float] = Field(default_factory=list)
    pair_series_b: List[float] = Field(default_factory=list)
    news: List[str] = Field(default_factory=list)
    volatility_index: Optional[float] = None
    as_of: datetime = Field(default_factory=utc_now)  # when the quotes were taken

    @property
    def closes(self) -> List[float]:
        return [bar.close for bar in self.bars]


class DataQualityReport(BaseModel):
    valid: bool
    issues: List[str] = Field(default_factory=list)
    anomaly: bool = False
    z_score: float = 0.0
    message: str = ""


# --- Signal & Agent Models ---

class Signal(BaseModel):
    """One agent's opinion for one cycle."""
    model_config = ConfigDict(frozen=True)

    agent_id: int
    action: Action
    confidence: float = Field(..., ge=0.0, le=1.0)
    target_price: Optional[float] = None
    stop_loss: Optional[float] = None
    position_size: Optional[float] = Field(default=None, ge=0.0, le=1.0)  # fraction of portfolio
    reasoning: str = ""
    timestamp: datetime = Field(default_factory=utc_now)


class Agent(BaseModel):
    id: int
    name: str
    tier: int = Field(..., ge=0, le=6)
    status: AgentStatus = "active"
    success_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    decisions: int = 0
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None


class OrchestratorDecision(BaseModel):
    """The single decision produced for a user in a completed cycle."""
    model_config = ConfigDict(frozen=True)

    final_action: Action
    confidence: float = Field(..., ge=0.0, le=1.0)
    consensus_strength: float = Field(..., ge=0.0, le=1.0)
    participating_agents: int = Field(default=0, ge=0)
    dissenter_agents: int = Field(default=0, ge=0)
    dissenter_ids: List[int] = Field(default_factory=list)
    reasoning: str
    individual_decisions: List[Signal] = Field(default_factory=list)
    weighted_votes: Dict[str, float] = Field(default_factory=dict)
    position_size_hint: Optional[float] = None
    timestamp: datetime = Field(default_factory=utc_now)


class ConflictReport(BaseModel):
    has_conflict: bool
    conflicting_agents: List[int] = Field(default_factory=list)
    resolution: str = ""


# --- Sizing & Risk Models ---

class TradeHistory(BaseModel):
    """Summary statistics of closed trades. average_loss is signed (negative)."""
    total_trades: int = Field(default=0, ge=0)
    winning_trades: int = Field(default=0, ge=0)
    losing_trades: int = Field(default=0, ge=0)
    average_win: float = 0.0
    average_loss: float = 0.0

    @classmethod
    def from_pnls(cls, pnls: List[float]) -> "TradeHistory":
        wins = [p for p in pnls if p > 0]
        losses = [p for p in pnls if p < 0]
        return cls(
            total_trades=len(pnls),
            winning_trades=len(wins),
            losing_trades=len(losses),
            average_win=sum(wins) / len(wins) if wins else 0.0,
            average_loss=sum(losses) / len(losses) if losses else 0.0,
        )


class KellyResult(BaseModel):
    kelly_fraction: float
    raw_kelly: float = 0.0
    win_probability: float = 0.0
    payoff_ratio: float = 0.0
    expected_value: float = 0.0
    confidence: Literal["low", "medium", "high"] = "low"
    reasoning: str = ""


class MarketConditions(BaseModel):
    volatility: float = Field(default=15.0, ge=0.0)  # index points, VIX-like
    regime: Regime = "sideways"
    drawdown: float = Field(default=0.0, ge=0.0)  # fraction


class MarketAdjustment(BaseModel):
    adjusted_fraction: float
    multiplier: float
    reasoning: List[str] = Field(default_factory=list)


class SizingResult(BaseModel):
    recommended_size: float
    max_size: float
    actual_size: float
    capped: bool = False
    reasoning: str = ""


class RiskLimits(BaseModel):
    """Hard limits applied by the risk gate. Read-only during a cycle."""
    model_config = ConfigDict(frozen=True)

    max_position_size: float = Field(default=0.10, gt=0.0, le=1.0)
    max_drawdown: float = Field(default=0.20, gt=0.0, le=1.0)
    max_daily_loss: float = Field(default=5000.0, ge=0.0)
    stop_loss_percent: float = Field(default=0.02, gt=0.0, lt=1.0)
    max_total_exposure: float = Field(default=0.80, gt=0.0, le=1.0)
    max_open_positions: int = Field(default=20, ge=1)
    min_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    emergency_drawdown: float = Field(default=0.25, gt=0.0, le=1.0)
    max_error_count: int = Field(default=10, ge=0)


class CapitalTier(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: int
    min_amount: float
    max_amount: float = math.inf
    max_positions: int
    max_position_size: float
    risk_level: RiskLevel


class CapitalLimits(BaseModel):
    max_positions: int
    max_position_dollars: float
    cash_reserve_percent: float
    min_cash_reserve: float
    message: str = ""


class RiskCheck(BaseModel):
    approved: bool
    reason_code: Optional[Literal["max_positions", "low_confidence", "no_position_size", "emergency_active"]] = None
    reason: str = ""


class PositionLimitCheck(BaseModel):
    approved: bool
    adjusted_size: float = 0.0
    capped: bool = False
    total_exposure: float = 0.0
    reasoning: str = ""


class DrawdownStatus(BaseModel):
    current_drawdown: float
    max_drawdown: float
    status: Literal["normal", "warning", "breached"]
    trigger_circuit_breaker: bool = False
    message: str = ""


class EmergencyState(BaseModel):
    active: bool = False
    reason: Optional[str] = None
    triggered_at: Optional[datetime] = None


class EmergencyCheck(BaseModel):
    should_trigger: bool
    reasons: List[str] = Field(default_factory=list)


class OperatorResult(BaseModel):
    success: bool
    message: str = ""


# --- Portfolio & Execution Models ---

class Position(BaseModel):
    symbol: str
    quantity: float = 0.0
    value: float = Field(default=0.0, ge=0.0)
    entry_price: Optional[float] = None
    target_price: Optional[float] = None
    stop_loss: Optional[float] = None
    volatility: Optional[float] = None  # annualised fraction


class PortfolioState(BaseModel):
    positions: List[Position] = Field(default_factory=list)
    equity_history: List[float] = Field(default_factory=list)
    trade_pnls: List[float] = Field(default_factory=list)
    prices: Dict[str, float] = Field(default_factory=dict)

    @property
    def open_positions(self) -> int:
        return len(self.positions)


class Allocation(BaseModel):
    symbol: str
    percent: float = Field(..., ge=0.0, le=1.0)


class RebalanceTrade(BaseModel):
    symbol: str
    action: Literal["buy", "sell"]
    percent: float


class RebalancePlan(BaseModel):
    rebalance_needed: bool
    trades: List[RebalanceTrade] = Field(default_factory=list)
    reasoning: str = ""


class CashReserve(BaseModel):
    target_cash: float
    current_cash: float
    adjustment: float  # positive means cash must be raised
    message: str = ""


class MarginStatus(BaseModel):
    current_margin: float
    safe_margin: bool
    message: str = ""


class TradeOrder(BaseModel):
    symbol: str
    action: Literal["buy", "sell"]
    order_type: Literal["market", "limit"] = "market"
    quantity: float
    price: float
    dollar_amount: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    status: Literal["pending", "filled", "rejected"] = "pending"


class ExecutionResult(BaseModel):
    success: bool
    fill_price: Optional[float] = None
    slippage: float = 0.0
    message: str = ""


# --- Monitoring Models ---

class Alert(BaseModel):
    id: str
    type: AlertType
    severity: Severity
    message: str
    timestamp: datetime = Field(default_factory=utc_now)
    action_required: Optional[str] = None


class PerformanceMetrics(BaseModel):
    current_value: float = 0.0
    total_return: float = 0.0
    daily_return: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    win_rate: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    profit_factor: float = 0.0


class RiskMetrics(BaseModel):
    volatility: float = 0.0
    var_95: float = 0.0
    expected_shortfall: float = 0.0
    concentration: float = 0.0
    total_exposure: float = 0.0


class BenchmarkComparison(BaseModel):
    outperformance: float = 0.0
    tracking_error: float = 0.0
    information_ratio: float = 0.0


class MonitoringSnapshot(BaseModel):
    user_id: str
    cycle_id: Optional[str] = None
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    risk: RiskMetrics = Field(default_factory=RiskMetrics)
    alerts: List[Alert] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)


# --- Market Regime Models ---

class MarketRegimeResponse(BaseModel):
    regime: Literal["bull_trending", "bear_trending", "sideways_range", "high_volatility", "undefined"]
    confidence_score: float = Field(..., ge=0.0, le=1.0)
    recommended_strategies: List[str] = Field(default_factory=list)
    explanation: str


class RegimeShift(BaseModel):
    shifted: bool
    previous: Optional[str] = None
    current: str
    message: str = ""


class StrategyParameters(BaseModel):
    position_size: float = Field(..., ge=0.0)
    stop_loss: float = Field(..., ge=0.0)
    take_profit: float = Field(..., ge=0.0)
    reasoning: str = ""


# --- Cycle Models ---

class CycleSummary(BaseModel):
    """What a single run_cycle call reports back to its caller."""
    cycle_id: str
    user_id: str
    status: CycleStatus
    agents_run: int = 0
    agents_failed: int = 0
    alerts_raised: int = 0
    alerts: List[Alert] = Field(default_factory=list)
    decision: Optional[OrchestratorDecision] = None
    sizing: Optional[SizingResult] = None
    risk_check: Optional[RiskCheck] = None
    drawdown: Optional[DrawdownStatus] = None
    capital_tier: Optional[CapitalTier] = None
    data_quality: Optional[DataQualityReport] = None
    order: Optional[TradeOrder] = None
    execution: Optional[ExecutionResult] = None
    market_regime: Optional[str] = None
    emergency: EmergencyState = Field(default_factory=EmergencyState)
    errors: int = 0
    error_messages: List[str] = Field(default_factory=list)
    duration_ms: float = 0.0


class SystemStatus(BaseModel):
    active: bool
    total_agents: int = 0
    active_agents: int = 0
    inactive_agents: int = 0
    error_agents: int = 0
    emergency: EmergencyState = Field(default_factory=EmergencyState)


# --- Store Query Models ---

class DecisionFilters(BaseModel):
    action: Optional[Action] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = Field(default=None, ge=1)
