import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

from .config import MARKET_DATA_TIMEOUT_SECONDS, MARKET_DATA_URL
from .models import MarketSnapshot, PortfolioState, utc_now

# --- Logging ---
logger = logging.getLogger(__name__)


class MarketDataProvider(ABC):
    """
    Source of the market snapshot and portfolio state for a cycle.
    Failures are raised; the orchestrator aborts the cycle on them.
    """

    @abstractmethod
    async def get_market_snapshot(self, user_id: str) -> MarketSnapshot:
        ...

    @abstractmethod
    async def get_portfolio_state(self, user_id: str, portfolio_value: float) -> PortfolioState:
        ...


def with_current_value(portfolio: PortfolioState, portfolio_value: float) -> PortfolioState:
    """Makes the value the caller reported the last point of the equity history."""
    history = portfolio.equity_history
    if history and history[-1] == portfolio_value:
        return portfolio
    return portfolio.model_copy(update={"equity_history": history + [portfolio_value]})


class StaticMarketDataProvider(MarketDataProvider):
    """Serves fixed snapshots, optionally per user, stamped as current on every call. For tests and embedding."""

    def __init__(
        self,
        snapshot: MarketSnapshot,
        portfolio: Optional[PortfolioState] = None,
        per_user_snapshots: Optional[Dict[str, MarketSnapshot]] = None,
        per_user_portfolios: Optional[Dict[str, PortfolioState]] = None,
    ):
        self.snapshot = snapshot
        self.portfolio = portfolio or PortfolioState()
        self.per_user_snapshots = per_user_snapshots or {}
        self.per_user_portfolios = per_user_portfolios or {}

    async def get_market_snapshot(self, user_id: str) -> MarketSnapshot:
        snapshot = self.per_user_snapshots.get(user_id, self.snapshot)
        return snapshot.model_copy(update={"as_of": utc_now()})

    async def get_portfolio_state(self, user_id: str, portfolio_value: float) -> PortfolioState:
        return with_current_value(self.per_user_portfolios.get(user_id, self.portfolio), portfolio_value)


class HttpMarketDataProvider(MarketDataProvider):
    """
    Fetches snapshots from a market data service.

    Endpoints: GET {base}/users/{user_id}/snapshot and GET {base}/users/{user_id}/portfolio.
    """

    def __init__(self, base_url: str = MARKET_DATA_URL, timeout: float = MARKET_DATA_TIMEOUT_SECONDS):
        if not base_url:
            raise ValueError("MARKET_DATA_URL environment variable is not set.")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _get(self, path: str) -> dict:
        endpoint = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(endpoint, timeout=self.timeout)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error occurred while fetching {endpoint}: {e.response.status_code} - {e.response.text}")
            raise
        except httpx.RequestError as e:
            logger.error(f"An error occurred while requesting {endpoint}: {e}")
            raise

    async def get_market_snapshot(self, user_id: str) -> MarketSnapshot:
        snapshot = MarketSnapshot.model_validate(await self._get(f"/users/{user_id}/snapshot"))
        logger.info(f"Fetched {len(snapshot.bars)} bars for {snapshot.symbol} (user {user_id}).")
        return snapshot

    async def get_portfolio_state(self, user_id: str, portfolio_value: float) -> PortfolioState:
        portfolio = PortfolioState.model_validate(await self._get(f"/users/{user_id}/portfolio"))
        return with_current_value(portfolio, portfolio_value)
