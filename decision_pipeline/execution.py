import logging
from abc import ABC, abstractmethod

from .models import ExecutionResult, TradeOrder
from .risk import DEFAULT_REWARD_RISK_RATIO, DEFAULT_STOP_LOSS_PERCENT, calculate_stop_loss, calculate_take_profit

# --- Logging ---
logger = logging.getLogger(__name__)


class Executor(ABC):
    """Places an order with a broker. Implementations must not raise for broker rejections."""

    @abstractmethod
    async def place_order(self, order: TradeOrder) -> ExecutionResult:
        ...


class PaperExecutor(Executor):
    """
    Deterministic paper fills: every order fills at its limit price moved against the
    trader by `slippage_pct` percent.
    """

    def __init__(self, slippage_pct: float = 0.0):
        if slippage_pct < 0:
            raise ValueError("slippage_pct must be non-negative.")
        self.slippage_pct = slippage_pct
        self.orders = []

    async def place_order(self, order: TradeOrder) -> ExecutionResult:
        logger.info(f"Paper executing {order.action} order for {order.quantity:.4f} {order.symbol} @ ${order.price:,.2f}")
        if order.quantity <= 0 or order.price <= 0:
            return ExecutionResult(success=False, message="Order rejected: quantity and price must be positive")

        direction = 1 if order.action == "buy" else -1
        fill_price = order.price * (1 + direction * self.slippage_pct / 100)
        self.orders.append(order.model_copy(update={"status": "filled"}))
        return ExecutionResult(
            success=True,
            fill_price=fill_price,
            slippage=self.slippage_pct,
            message=f"Order filled at ${fill_price:,.2f}. Slippage: {self.slippage_pct:.3f}%",
        )


def build_order(symbol: str, action: str, dollar_amount: float, price: float, stop_loss_percent: float = DEFAULT_STOP_LOSS_PERCENT) -> TradeOrder:
    """Limit order for `dollar_amount` at `price` with a protective stop and a 3:1 take-profit."""
    if price <= 0:
        raise ValueError(f"Cannot size an order for {symbol} without a positive price.")

    if action == "buy":
        stop_loss = calculate_stop_loss(price, stop_loss_percent)
        take_profit = calculate_take_profit(price, DEFAULT_REWARD_RISK_RATIO, stop_loss_percent)
    else:
        # Protection sits on the other side of the entry for a short.
        stop_loss = price * (1 + stop_loss_percent)
        take_profit = price - price * stop_loss_percent * DEFAULT_REWARD_RISK_RATIO

    return TradeOrder(
        symbol=symbol,
        action=action,
        order_type="limit",
        quantity=dollar_amount / price,
        price=price,
        dollar_amount=dollar_amount,
        stop_loss=stop_loss,
        take_profit=take_profit,
    )
