import asyncio
import logging
from typing import Dict, List, Optional

from .config import CYCLE_INTERVAL_SECONDS, INFERENCE_URL, PIPELINE_USERS
from .models import CycleSummary
from .orchestrator import MasterOrchestrator

# --- Logging ---
logger = logging.getLogger(__name__)


def parse_users(raw: str) -> Dict[str, float]:
    """Parses "alice=100000,bob=25000" into {user_id: portfolio_value}."""
    users = {}
    for item in filter(None, (part.strip() for part in raw.split(","))):
        user_id, sep, value = item.partition("=")
        if not sep or not user_id.strip():
            raise ValueError(f"Invalid PIPELINE_USERS entry {item!r}; expected user=portfolio_value")
        try:
            users[user_id.strip()] = float(value)
        except ValueError:
            raise ValueError(f"Invalid portfolio value for user {user_id.strip()!r}: {value!r}")
    return users


async def run_scheduler(
    orchestrator: MasterOrchestrator,
    users: Dict[str, float],
    interval: float = CYCLE_INTERVAL_SECONDS,
    max_rounds: Optional[int] = None,
) -> List[List[CycleSummary]]:
    """
    Fires one cycle per user every `interval` seconds. Users run concurrently; the
    orchestrator skips a user whose previous cycle is still running.
    """
    rounds = []
    in_flight = set()
    round_number = 0
    while orchestrator.active and (max_rounds is None or round_number < max_rounds):
        round_number += 1
        started = asyncio.get_running_loop().time()
        tasks = [asyncio.create_task(orchestrator.run_cycle(user_id, value)) for user_id, value in users.items()]
        in_flight.update(tasks)
        done, _ = await asyncio.wait(tasks, timeout=interval)
        in_flight.difference_update(done)
        rounds.append([task.result() for task in tasks if task in done])
        if max_rounds is None or round_number < max_rounds:
            elapsed = asyncio.get_running_loop().time() - started
            await asyncio.sleep(max(0.0, interval - elapsed))

    if in_flight:
        await asyncio.gather(*in_flight)
    return rounds


async def pipeline_main() -> None:
    from .core.database import init_db
    from .database import SqlAlchemyDecisionStore
    from .inference_client import HttpInferenceClient
    from .market_data import HttpMarketDataProvider

    users = parse_users(PIPELINE_USERS)
    if not users:
        logger.warning("PIPELINE_USERS is empty. Nothing to schedule.")
        return

    init_db()
    orchestrator = MasterOrchestrator(
        market_data=HttpMarketDataProvider(),
        store=SqlAlchemyDecisionStore(),
        inference=HttpInferenceClient() if INFERENCE_URL else None,
    )
    result = await orchestrator.start()
    logger.info(result.message)
    try:
        await run_scheduler(orchestrator, users)
    finally:
        await orchestrator.stop()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(name)s - %(message)s')
    asyncio.run(pipeline_main())
