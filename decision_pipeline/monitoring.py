import logging
import math
from datetime import datetime
from typing import Dict, List, Literal, Mapping, Optional, Sequence

import numpy as np

from .config import RISK_FREE_RATE
from .models import (
    Alert,
    BenchmarkComparison,
    MonitoringSnapshot,
    PerformanceMetrics,
    PortfolioState,
    Position,
    RiskMetrics,
    utc_now,
)
from .position_sizing import TRADING_DAYS_PER_YEAR, calculate_max_drawdown, calculate_returns, calculate_sharpe_ratio

# --- Logging ---
logger = logging.getLogger(__name__)

# --- Constants for Risk Metrics ---
VAR_TAIL = 0.05

# --- Constants for Alerts ---
DRAWDOWN_ALERT_THRESHOLD = 0.15
EXPOSURE_ALERT_THRESHOLD = 0.85
VOLATILITY_ALERT_THRESHOLD = 0.40
SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}
BENCHMARK_BAND = 0.05


class PerformanceMonitor:
    """
    Calculates portfolio performance and risk metrics from an equity history.
    """

    def __init__(self, risk_free_rate: float = RISK_FREE_RATE):
        self.risk_free_rate = risk_free_rate

    def track_performance(self, equity_history: Sequence[float], trade_pnls: Sequence[float]) -> PerformanceMetrics:
        if not equity_history:
            logger.warning("No equity history provided for performance tracking. Metrics will be zero.")
            return PerformanceMetrics()

        current = equity_history[-1]
        initial = equity_history[0]
        previous = equity_history[-2] if len(equity_history) > 1 else current

        wins = [p for p in trade_pnls if p > 0]
        losses = [p for p in trade_pnls if p <= 0]
        gross_profit = sum(wins)
        gross_loss = abs(sum(losses))
        if not trade_pnls:
            profit_factor = 0.0
        elif gross_loss == 0:
            profit_factor = float("inf")  # All trades were profitable
        else:
            profit_factor = gross_profit / gross_loss

        return PerformanceMetrics(
            current_value=current,
            total_return=(current - initial) / initial if initial else 0.0,
            daily_return=(current - previous) / previous if previous else 0.0,
            sharpe_ratio=calculate_sharpe_ratio(calculate_returns(equity_history), self.risk_free_rate),
            max_drawdown=calculate_max_drawdown(equity_history),
            win_rate=len(wins) / len(trade_pnls) if trade_pnls else 0.0,
            average_win=gross_profit / len(wins) if wins else 0.0,
            average_loss=gross_loss / len(losses) if losses else 0.0,
            profit_factor=profit_factor,
        )

    def calculate_risk_metrics(self, equity_history: Sequence[float], positions: Sequence[Position]) -> RiskMetrics:
        """
        Annualised volatility, historical VaR(95%), expected shortfall and
        Herfindahl concentration of position values.
        """
        returns = calculate_returns(equity_history)

        volatility = 0.0
        var_95 = 0.0
        expected_shortfall = 0.0
        if returns:
            values = np.asarray(returns, dtype=float)
            volatility = float(math.sqrt(values.var(ddof=0) * TRADING_DAYS_PER_YEAR))

            ordered = np.sort(values)
            index = int(math.floor(len(ordered) * VAR_TAIL))
            var_95 = abs(float(ordered[index]))
            tail = ordered[:index]
            expected_shortfall = abs(float(tail.mean())) if len(tail) else 0.0

        total_value = sum(p.value for p in positions)
        concentration = sum((p.value / total_value) ** 2 for p in positions) if total_value > 0 else 0.0
        current_value = equity_history[-1] if equity_history else 0.0

        return RiskMetrics(
            volatility=volatility,
            var_95=var_95,
            expected_shortfall=expected_shortfall,
            concentration=concentration,
            total_exposure=total_value / current_value if current_value > 0 else 0.0,
        )

    def compare_to_benchmark(self, portfolio_return: float, benchmark_return: float, portfolio_volatility: float, benchmark_volatility: float) -> BenchmarkComparison:
        outperformance = portfolio_return - benchmark_return
        tracking_error = abs(portfolio_volatility - benchmark_volatility)
        information_ratio = outperformance / tracking_error if tracking_error > 0 else 0.0

        if outperformance > BENCHMARK_BAND:
            label = "OUTPERFORMING"
        elif outperformance < -BENCHMARK_BAND:
            label = "UNDERPERFORMING"
        else:
            label = "INLINE"
        logger.info(f"{label}: {outperformance:+.2%} vs benchmark. IR: {information_ratio:.2f}")

        return BenchmarkComparison(outperformance=outperformance, tracking_error=tracking_error, information_ratio=information_ratio)


class AlertGenerator:
    """Stateless threshold alerts. The same condition raises the same alert on every call."""

    def generate_alerts(
        self,
        prices: Mapping[str, float],
        positions: Sequence[Position],
        drawdown: float,
        exposure: float,
        volatility: float,
        now: Optional[datetime] = None,
    ) -> List[Alert]:
        now = now or utc_now()
        stamp = int(now.timestamp() * 1000)
        by_symbol: Dict[str, Position] = {p.symbol: p for p in positions}
        alerts = []

        for symbol, price in prices.items():
            position = by_symbol.get(symbol)
            if position is None:
                continue

            if position.target_price and price >= position.target_price:
                alerts.append(Alert(
                    id=f"target_{symbol}_{stamp}",
                    type="price_target",
                    severity="medium",
                    message=f"{symbol} hit target price ${position.target_price:,.2f}. Current: ${price:,.2f}",
                    timestamp=now,
                    action_required="Consider taking profits",
                ))

            if position.stop_loss and price <= position.stop_loss:
                alerts.append(Alert(
                    id=f"stop_{symbol}_{stamp}",
                    type="stop_loss",
                    severity="high",
                    message=f"{symbol} triggered stop-loss at ${position.stop_loss:,.2f}. Current: ${price:,.2f}",
                    timestamp=now,
                    action_required="IMMEDIATE: Sell position to limit losses",
                ))

        if drawdown > DRAWDOWN_ALERT_THRESHOLD:
            alerts.append(Alert(
                id=f"drawdown_{stamp}",
                type="risk",
                severity="high",
                message=f"Portfolio drawdown {drawdown:.1%} exceeds {DRAWDOWN_ALERT_THRESHOLD:.0%} threshold",
                timestamp=now,
                action_required="Reduce position sizes or halt trading",
            ))

        if exposure > EXPOSURE_ALERT_THRESHOLD:
            alerts.append(Alert(
                id=f"exposure_{stamp}",
                type="position_limit",
                severity="medium",
                message=f"Portfolio exposure {exposure:.1%} approaching 100% limit",
                timestamp=now,
                action_required="Maintain cash reserves",
            ))

        if volatility > VOLATILITY_ALERT_THRESHOLD:
            alerts.append(Alert(
                id=f"volatility_{stamp}",
                type="risk",
                severity="medium",
                message=f"High portfolio volatility: {volatility:.1%} annualized",
                timestamp=now,
                action_required="Consider hedging strategies",
            ))

        return sorted(alerts, key=lambda a: SEVERITY_ORDER[a.severity])

    def news_alert(self, symbol: str, headline: str, sentiment: float, impact: Literal["high", "medium", "low"], now: Optional[datetime] = None) -> Alert:
        now = now or utc_now()
        return Alert(
            id=f"news_{symbol}_{int(now.timestamp() * 1000)}",
            type="news",
            severity=impact,
            message=f"{symbol}: {headline} (Sentiment: {'Positive' if sentiment > 0 else 'Negative'})",
            timestamp=now,
            action_required="Review position immediately" if impact == "high" else None,
        )


def run_monitoring(
    user_id: str,
    portfolio: PortfolioState,
    cycle_id: Optional[str] = None,
    monitor: Optional[PerformanceMonitor] = None,
    alert_generator: Optional[AlertGenerator] = None,
    peak_value: Optional[float] = None,
) -> MonitoringSnapshot:
    """
    Performance, risk and alerts for the current portfolio state. The drawdown alert
    is measured from `peak_value` when it exceeds the peak of the equity history.
    """
    monitor = monitor or PerformanceMonitor()
    alert_generator = alert_generator or AlertGenerator()

    performance = monitor.track_performance(portfolio.equity_history, portfolio.trade_pnls)
    risk = monitor.calculate_risk_metrics(portfolio.equity_history, portfolio.positions)

    history = portfolio.equity_history
    peak = max(list(history) + [peak_value or 0.0]) if history else 0.0
    current_drawdown = (peak - history[-1]) / peak if peak > 0 else 0.0

    alerts = alert_generator.generate_alerts(
        portfolio.prices,
        portfolio.positions,
        drawdown=current_drawdown,
        exposure=risk.total_exposure,
        volatility=risk.volatility,
    )
    return MonitoringSnapshot(user_id=user_id, cycle_id=cycle_id, performance=performance, risk=risk, alerts=alerts)
