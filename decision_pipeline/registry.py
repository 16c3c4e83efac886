import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

from .models import Agent, AgentStatus, utc_now
from .schemas import AgentFn, RegisteredAgent

# --- Logging ---
logger = logging.getLogger(__name__)


class AgentRegistry:
    """
    Owns the Agent records and their signal callables for one orchestrator.

    Writes go through the orchestrator (one cycle at a time per user); readers get
    copies so status queries never observe a half-applied update.
    """

    def __init__(self):
        self._entries: Dict[int, RegisteredAgent] = {}
        self._lock = threading.Lock()

    def register(self, agent: Agent, fn: AgentFn) -> None:
        with self._lock:
            if agent.id in self._entries:
                raise ValueError(f"Agent {agent.id} is already registered.")
            self._entries[agent.id] = RegisteredAgent(agent=agent.model_copy(), fn=fn)
        logger.info(f"Registered agent #{agent.id} '{agent.name}' (tier {agent.tier}).")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, agent_id: int) -> bool:
        return agent_id in self._entries

    def get(self, agent_id: int) -> Optional[Agent]:
        with self._lock:
            entry = self._entries.get(agent_id)
            return entry.agent.model_copy() if entry else None

    def active(self) -> List[RegisteredAgent]:
        """Active agents with their callables, in id order."""
        with self._lock:
            return [
                RegisteredAgent(agent=e.agent.model_copy(), fn=e.fn)
                for _, e in sorted(self._entries.items())
                if e.agent.status == "active"
            ]

    def snapshot(self) -> List[Agent]:
        with self._lock:
            return [e.agent.model_copy() for _, e in sorted(self._entries.items())]

    def success_rates(self) -> Dict[int, float]:
        with self._lock:
            return {agent_id: e.agent.success_rate for agent_id, e in self._entries.items()}

    def set_status(self, agent_id: int, status: AgentStatus, error: Optional[str] = None) -> Agent:
        with self._lock:
            entry = self._entries.get(agent_id)
            if entry is None:
                raise KeyError(agent_id)
            entry.agent = entry.agent.model_copy(update={"status": status, "last_error": error})
            return entry.agent.model_copy()

    def set_all_status(self, status: AgentStatus) -> List[Agent]:
        with self._lock:
            for entry in self._entries.values():
                entry.agent = entry.agent.model_copy(update={"status": status})
            return [e.agent.model_copy() for _, e in sorted(self._entries.items())]

    def record_run(self, agent_id: int, when: Optional[datetime] = None, error: Optional[str] = None) -> None:
        """Counts a decision. Failures are recorded on the agent but do not change its status."""
        with self._lock:
            entry = self._entries.get(agent_id)
            if entry is None:
                return
            update = {"last_run": when or utc_now(), "last_error": error}
            if error is None:
                update["decisions"] = entry.agent.decisions + 1
            entry.agent = entry.agent.model_copy(update=update)
