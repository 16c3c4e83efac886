from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from .models import Agent, MarketSnapshot, Signal


@dataclass
class AgentContext:
    """Per-call context handed to every signal agent."""
    user_id: str
    cycle_id: str
    inference: Optional[Any] = None  # InferenceClient, absent when no collaborator is configured
    holdings: float = 0.0  # quantity of the snapshot symbol already held
    drawdown: float = 0.0  # current drawdown from the remembered peak, as a fraction


AgentFn = Callable[[MarketSnapshot, AgentContext], Union[Signal, Awaitable[Signal]]]


@dataclass
class RegisteredAgent:
    agent: Agent
    fn: AgentFn


@dataclass
class AgentCallOk:
    agent_id: int
    signal: Signal


@dataclass
class AgentCallFailed:
    agent_id: int
    error: str
    timed_out: bool = False


AgentCallResult = Union[AgentCallOk, AgentCallFailed]


@dataclass
class InferenceFailure:
    reason: str
    details: dict = field(default_factory=dict)
