import hmac
import logging
import time
from collections import deque
from typing import Callable, Deque, Optional, Sequence

from .config import EMERGENCY_RESET_TOKEN, ERROR_WINDOW_SECONDS
from .models import (
    CapitalLimits,
    CapitalTier,
    DrawdownStatus,
    EmergencyCheck,
    EmergencyState,
    MarketConditions,
    OperatorResult,
    Position,
    PositionLimitCheck,
    RiskCheck,
    RiskLimits,
    SizingResult,
    TradeHistory,
    utc_now,
)
from .position_sizing import (
    adjust_kelly_for_market_conditions,
    calculate_kelly_criterion,
    calculate_position_size,
)

# --- Logging ---
logger = logging.getLogger(__name__)

# --- Capital Tiers ---
CAPITAL_TIERS = [
    CapitalTier(tier=1, min_amount=0, max_amount=1_000, max_positions=3, max_position_size=0.20, risk_level="conservative"),
    CapitalTier(tier=2, min_amount=1_000, max_amount=5_000, max_positions=5, max_position_size=0.15, risk_level="conservative"),
    CapitalTier(tier=3, min_amount=5_000, max_amount=25_000, max_positions=10, max_position_size=0.12, risk_level="moderate"),
    CapitalTier(tier=4, min_amount=25_000, max_amount=100_000, max_positions=15, max_position_size=0.10, risk_level="moderate"),
    CapitalTier(tier=5, min_amount=100_000, max_positions=20, max_position_size=0.08, risk_level="aggressive"),
]
CASH_RESERVE_BY_RISK_LEVEL = {"conservative": 0.20, "moderate": 0.15, "aggressive": 0.10}

# --- Constants for Order Protection ---
DEFAULT_STOP_LOSS_PERCENT = 0.02
DEFAULT_REWARD_RISK_RATIO = 3
DRAWDOWN_WARNING_RATIO = 0.75
SIZING_FALLBACK_MAX = 0.05


# --- Capital Management ---

def determine_capital_tier(portfolio_value: float, tiers: Sequence[CapitalTier] = CAPITAL_TIERS) -> CapitalTier:
    """Tier whose [min, max) range holds the value. Values below the table use the first tier."""
    for tier in tiers:
        if tier.min_amount <= portfolio_value < tier.max_amount:
            return tier
    return tiers[0] if portfolio_value < tiers[0].min_amount else tiers[-1]


def adjust_limits_for_capital(portfolio_value: float, tier: Optional[CapitalTier] = None) -> CapitalLimits:
    tier = tier or determine_capital_tier(portfolio_value)
    max_position_dollars = portfolio_value * tier.max_position_size
    cash_reserve_percent = CASH_RESERVE_BY_RISK_LEVEL[tier.risk_level]
    return CapitalLimits(
        max_positions=tier.max_positions,
        max_position_dollars=max_position_dollars,
        cash_reserve_percent=cash_reserve_percent,
        min_cash_reserve=portfolio_value * cash_reserve_percent,
        message=(
            f"Tier {tier.tier}: Max {tier.max_positions} positions, ${max_position_dollars:,.2f} per position, "
            f"{cash_reserve_percent:.0%} cash reserve ({tier.risk_level})"
        ),
    )


def calculate_stop_loss(entry_price: float, risk_percent: float = DEFAULT_STOP_LOSS_PERCENT) -> float:
    return entry_price * (1 - risk_percent)


def calculate_take_profit(entry_price: float, target_ratio: float = DEFAULT_REWARD_RISK_RATIO, risk_percent: float = DEFAULT_STOP_LOSS_PERCENT) -> float:
    return entry_price + entry_price * risk_percent * target_ratio


# --- Position Sizer ---

class PositionSizer:
    """Turns a decision confidence into a dollar size and enforces exposure limits."""

    def __init__(self, limits: Optional[RiskLimits] = None):
        self.limits = limits or RiskLimits()

    def position_fraction(self, tier: Optional[CapitalTier] = None) -> float:
        """Per-position cap: the stricter of the configured limit and the capital tier's."""
        if tier is None:
            return self.limits.max_position_size
        return min(self.limits.max_position_size, tier.max_position_size)

    def calculate_optimal_size(
        self,
        confidence: float,
        portfolio_value: float,
        history: TradeHistory,
        conditions: MarketConditions,
        tier: Optional[CapitalTier] = None,
    ) -> SizingResult:
        """Half-Kelly, then market-condition haircuts, then scaled by the decision confidence."""
        try:
            kelly = calculate_kelly_criterion(history)
            adjusted = adjust_kelly_for_market_conditions(kelly.kelly_fraction, conditions.volatility, conditions.regime, conditions.drawdown)
            confidence_adjusted = adjusted.adjusted_fraction * confidence
            sizing = calculate_position_size(portfolio_value, confidence_adjusted, self.position_fraction(tier))
        except Exception as e:
            logger.error(f"Position sizing failed: {e}")
            return SizingResult(
                recommended_size=0.0,
                max_size=portfolio_value * SIZING_FALLBACK_MAX,
                actual_size=0.0,
                reasoning=f"Error in position sizing: {e}",
            )

        market_reason = "; ".join(adjusted.reasoning) or "no market adjustments"
        return sizing.model_copy(update={
            "reasoning": (
                f"Kelly: {kelly.kelly_fraction * 100:.1f}%, "
                f"Market adjusted: {adjusted.adjusted_fraction * 100:.1f}%, "
                f"Confidence adjusted: {confidence_adjusted * 100:.1f}%, "
                f"Final: ${sizing.actual_size:,.2f} ({market_reason}). {kelly.reasoning}"
            )
        })

    def enforce_position_limits(
        self,
        proposed_size: float,
        positions: Sequence[Position],
        portfolio_value: float,
        tier: Optional[CapitalTier] = None,
    ) -> PositionLimitCheck:
        if portfolio_value <= 0:
            return PositionLimitCheck(approved=False, reasoning=f"Invalid portfolio value ${portfolio_value:,.2f}")

        exposure = sum(p.value for p in positions) / portfolio_value
        if exposure > self.limits.max_total_exposure:
            return PositionLimitCheck(
                approved=False,
                total_exposure=exposure,
                reasoning=f"Total exposure {exposure:.1%} exceeds {self.limits.max_total_exposure:.0%} limit",
            )

        fraction = self.position_fraction(tier)
        cap = portfolio_value * fraction
        if proposed_size > cap:
            return PositionLimitCheck(
                approved=True,
                adjusted_size=cap,
                capped=True,
                total_exposure=exposure,
                reasoning=f"Position capped at {fraction:.0%} (${cap:,.2f})",
            )

        return PositionLimitCheck(approved=True, adjusted_size=proposed_size, total_exposure=exposure, reasoning="Within position limits")

    def apply_position_cap(
        self,
        sizing: SizingResult,
        positions: Sequence[Position],
        portfolio_value: float,
        tier: Optional[CapitalTier] = None,
    ) -> SizingResult:
        """Runs the exposure checks on a sizing result. A rejection sizes to zero."""
        check = self.enforce_position_limits(sizing.actual_size, positions, portfolio_value, tier)
        actual = check.adjusted_size if check.approved else 0.0
        return sizing.model_copy(update={
            "actual_size": min(actual, sizing.max_size),
            "capped": sizing.capped or check.capped,
            "reasoning": f"{sizing.reasoning} {check.reasoning}.",
        })


# --- Risk Gate ---

class RiskGate:
    """
    Hard pre-trade checks plus the drawdown monitor and emergency breaker.

    The emergency flag is sticky: once tripped it stays active, with its original reason
    and timestamp, until `reset_emergency` is called with the configured token.
    """

    def __init__(
        self,
        limits: Optional[RiskLimits] = None,
        reset_token: Optional[str] = EMERGENCY_RESET_TOKEN,
        error_window_seconds: float = ERROR_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits = limits or RiskLimits()
        self.emergency = EmergencyState()
        self._reset_token = reset_token
        self._error_window = error_window_seconds
        self._clock = clock
        self._errors: Deque[float] = deque()

    def validate_trade(
        self,
        confidence: float,
        open_positions: int,
        position_size: Optional[float],
        tier: Optional[CapitalTier] = None,
    ) -> RiskCheck:
        """Ordered checks: position count (capped by the capital tier), confidence, size hint."""
        max_positions = self.limits.max_open_positions
        if tier is not None:
            max_positions = min(max_positions, tier.max_positions)
        if open_positions >= max_positions:
            return RiskCheck(
                approved=False,
                reason_code="max_positions",
                reason=f"Maximum {max_positions} positions limit reached",
            )

        if confidence < self.limits.min_confidence:
            return RiskCheck(
                approved=False,
                reason_code="low_confidence",
                reason=f"Signal confidence {confidence * 100:.0f}% below {self.limits.min_confidence * 100:.0f}% threshold",
            )

        if not position_size:
            return RiskCheck(approved=False, reason_code="no_position_size", reason="No position size specified")

        return RiskCheck(approved=True, reason="Trade approved by risk gate")

    def monitor_drawdown(self, current_value: float, peak_value: float) -> DrawdownStatus:
        """Classifies the drawdown from peak. A breach trips the emergency breaker on every call."""
        drawdown = max(0.0, (peak_value - current_value) / peak_value) if peak_value > 0 else 0.0
        max_drawdown = self.limits.max_drawdown

        if drawdown >= max_drawdown:
            message = (
                f"CIRCUIT BREAKER TRIGGERED: Drawdown {drawdown:.1%} exceeds {max_drawdown:.0%} limit. "
                "Halting all trading."
            )
            self.trigger_emergency(message)
            return DrawdownStatus(
                current_drawdown=drawdown,
                max_drawdown=max_drawdown,
                status="breached",
                trigger_circuit_breaker=True,
                message=message,
            )

        if drawdown >= max_drawdown * DRAWDOWN_WARNING_RATIO:
            return DrawdownStatus(
                current_drawdown=drawdown,
                max_drawdown=max_drawdown,
                status="warning",
                message=f"WARNING: Drawdown {drawdown:.1%} approaching limit. Reducing position sizes.",
            )

        return DrawdownStatus(
            current_drawdown=drawdown,
            max_drawdown=max_drawdown,
            status="normal",
            message=f"Drawdown {drawdown:.1%} within normal range.",
        )

    def check_emergency_conditions(self, drawdown: float, daily_loss: float, error_count: Optional[int] = None) -> EmergencyCheck:
        if error_count is None:
            error_count = self.error_count()

        reasons = []
        if drawdown > self.limits.emergency_drawdown:
            reasons.append(f"Excessive drawdown: {drawdown:.1%} exceeds {self.limits.emergency_drawdown:.0%} limit")
        if daily_loss > self.limits.max_daily_loss:
            reasons.append(f"Daily loss ${daily_loss:,.2f} exceeds ${self.limits.max_daily_loss:,.0f} limit")
        if error_count > self.limits.max_error_count:
            reasons.append(f"System errors: {error_count} errors in monitoring period")
        return EmergencyCheck(should_trigger=bool(reasons), reasons=reasons)

    def trigger_emergency(self, reason: str) -> EmergencyState:
        if self.emergency.active:
            return self.emergency
        self.emergency = EmergencyState(active=True, reason=reason, triggered_at=utc_now())
        logger.critical(f"EMERGENCY SHUTDOWN TRIGGERED: {reason}. All automated order placement halted.")
        return self.emergency

    def reset_emergency(self, token: Optional[str]) -> OperatorResult:
        if not self.emergency.active:
            return OperatorResult(success=False, message="No emergency is active.")
        if not self._reset_token:
            logger.warning("Emergency reset denied: no reset token is configured.")
            return OperatorResult(success=False, message="Emergency reset denied: no reset token is configured.")
        if not token or not hmac.compare_digest(token.encode(), self._reset_token.encode()):
            logger.warning("Emergency reset denied: invalid token.")
            return OperatorResult(success=False, message="Emergency reset denied: invalid authorization token.")

        previous = self.emergency.reason
        self.emergency = EmergencyState()
        self._errors.clear()
        logger.info(f"Emergency reset by operator (was: {previous}).")
        return OperatorResult(success=True, message="Emergency shutdown reset. System ready to resume.")

    # --- Rolling error window ---

    def record_error(self, message: Optional[str] = None) -> int:
        self._errors.append(self._clock())
        if message:
            logger.debug(f"Recorded cycle error: {message}")
        return self.error_count()

    def error_count(self) -> int:
        cutoff = self._clock() - self._error_window
        while self._errors and self._errors[0] < cutoff:
            self._errors.popleft()
        return len(self._errors)
