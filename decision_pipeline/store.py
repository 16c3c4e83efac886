import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

from .models import Agent, DecisionFilters, MonitoringSnapshot, OrchestratorDecision

# --- Logging ---
logger = logging.getLogger(__name__)


class DecisionStore(ABC):
    """
    Persistence the orchestrator needs. Calls are synchronous; the orchestrator runs
    them off the event loop under a timeout.
    """

    @abstractmethod
    def get_agent(self, agent_id: int) -> Optional[Agent]:
        ...

    @abstractmethod
    def upsert_agent(self, agent: Agent) -> None:
        ...

    @abstractmethod
    def append_decision(self, user_id: str, decision: OrchestratorDecision, cycle_id: str) -> None:
        ...

    @abstractmethod
    def append_monitoring_snapshot(self, user_id: str, snapshot: MonitoringSnapshot) -> None:
        ...

    @abstractmethod
    def list_decisions(self, user_id: str, filters: Optional[DecisionFilters] = None) -> List[OrchestratorDecision]:
        ...


def apply_decision_filters(decisions: Iterable[OrchestratorDecision], filters: Optional[DecisionFilters]) -> List[OrchestratorDecision]:
    """Newest first, then narrowed by action and time window, then limited."""
    result = sorted(decisions, key=lambda d: d.timestamp, reverse=True)
    if filters is None:
        return result
    if filters.action is not None:
        result = [d for d in result if d.final_action == filters.action]
    if filters.since is not None:
        result = [d for d in result if d.timestamp >= filters.since]
    if filters.until is not None:
        result = [d for d in result if d.timestamp <= filters.until]
    if filters.limit is not None:
        result = result[:filters.limit]
    return result


class InMemoryDecisionStore(DecisionStore):
    """Process-local store. The default when no database is configured."""

    def __init__(self):
        self._lock = threading.Lock()
        self.agents: Dict[int, Agent] = {}
        self.decisions: Dict[str, List[Tuple[str, OrchestratorDecision]]] = defaultdict(list)
        self.snapshots: Dict[str, List[MonitoringSnapshot]] = defaultdict(list)

    def get_agent(self, agent_id: int) -> Optional[Agent]:
        with self._lock:
            agent = self.agents.get(agent_id)
            return agent.model_copy() if agent else None

    def upsert_agent(self, agent: Agent) -> None:
        with self._lock:
            self.agents[agent.id] = agent.model_copy()

    def append_decision(self, user_id: str, decision: OrchestratorDecision, cycle_id: str) -> None:
        with self._lock:
            self.decisions[user_id].append((cycle_id, decision))
        logger.debug(f"Stored {decision.final_action} decision for user {user_id} (cycle {cycle_id}).")

    def append_monitoring_snapshot(self, user_id: str, snapshot: MonitoringSnapshot) -> None:
        with self._lock:
            self.snapshots[user_id].append(snapshot)

    def list_decisions(self, user_id: str, filters: Optional[DecisionFilters] = None) -> List[OrchestratorDecision]:
        with self._lock:
            entries = list(self.decisions.get(user_id, []))
        return apply_decision_filters((decision for _, decision in entries), filters)
