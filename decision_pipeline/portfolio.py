"""
Portfolio housekeeping: allocation drift against targets, the cash reserve and
margin utilisation. These are advisory reads; nothing here places orders.
"""
import logging
from typing import Dict, List, Sequence

from .models import Allocation, CashReserve, MarginStatus, Position, RebalancePlan, RebalanceTrade

# --- Logging ---
logger = logging.getLogger(__name__)

# --- Constants for Portfolio Housekeeping ---
DRIFT_THRESHOLD = 0.05
TARGET_CASH_PERCENT = 0.10
MAX_MARGIN_PERCENT = 0.30


def allocations_from_positions(positions: Sequence[Position], portfolio_value: float) -> List[Allocation]:
    """Each position's value as a fraction of the portfolio, same symbols merged."""
    if portfolio_value <= 0:
        return []
    values: Dict[str, float] = {}
    for position in positions:
        values[position.symbol] = values.get(position.symbol, 0.0) + position.value
    return [Allocation(symbol=symbol, percent=min(1.0, value / portfolio_value)) for symbol, value in values.items()]


def rebalance_portfolio(
    current: Sequence[Allocation],
    target: Sequence[Allocation],
    threshold: float = DRIFT_THRESHOLD,
) -> RebalancePlan:
    """
    Trades that bring every allocation drifting more than `threshold` back to target.
    A held symbol missing from the targets has a target of zero.
    """
    current_by_symbol = {a.symbol: a.percent for a in current}
    target_by_symbol = {a.symbol: a.percent for a in target}
    for symbol in current_by_symbol:
        target_by_symbol.setdefault(symbol, 0.0)

    trades = []
    max_drift = 0.0
    for symbol, wanted in target_by_symbol.items():
        held = current_by_symbol.get(symbol, 0.0)
        drift = abs(held - wanted)
        if drift > threshold:
            trades.append(RebalanceTrade(symbol=symbol, action="buy" if held < wanted else "sell", percent=drift))
            max_drift = max(max_drift, drift)

    if trades:
        reasoning = f"Rebalancing needed: {len(trades)} positions drifted >{threshold:.0%}. Max drift: {max_drift * 100:.1f}%"
        logger.info(reasoning)
    else:
        reasoning = "Portfolio within tolerance. No rebalancing needed."
    return RebalancePlan(rebalance_needed=bool(trades), trades=trades, reasoning=reasoning)


def calculate_cash_reserve(
    portfolio_value: float,
    positions: Sequence[Position],
    target_cash_percent: float = TARGET_CASH_PERCENT,
) -> CashReserve:
    target_cash = portfolio_value * target_cash_percent
    current_cash = max(0.0, portfolio_value - sum(p.value for p in positions))
    adjustment = target_cash - current_cash

    if adjustment > 0:
        message = f"Need to raise ${adjustment:,.2f} in cash"
    else:
        message = f"Excess cash: ${abs(adjustment):,.2f} available for deployment"
    return CashReserve(target_cash=target_cash, current_cash=current_cash, adjustment=adjustment, message=message)


def monitor_margin_utilization(
    borrowed: float,
    collateral: float,
    max_margin_percent: float = MAX_MARGIN_PERCENT,
) -> MarginStatus:
    if collateral <= 0:
        raise ValueError("Collateral value must be positive to compute margin utilisation.")

    margin = borrowed / collateral
    if margin <= max_margin_percent:
        return MarginStatus(
            current_margin=margin,
            safe_margin=True,
            message=f"Margin {margin * 100:.1f}% within {max_margin_percent * 100:.0f}% limit",
        )

    message = f"MARGIN ALERT: {margin * 100:.1f}% exceeds {max_margin_percent * 100:.0f}% limit. Reduce leverage."
    logger.warning(message)
    return MarginStatus(current_margin=margin, safe_margin=False, message=message)
