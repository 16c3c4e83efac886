import math
from typing import Dict, List, Mapping, Optional, Sequence

from .models import ConflictReport, OrchestratorDecision, Signal

# --- Constants for Aggregation ---
ACTIONS = ("buy", "sell", "hold")
DEFAULT_SUCCESS_RATE = 0.5
PREDICTION_AGGREGATOR_ID = 99
RELIABLE_SIGNAL_CONFIDENCE = 0.5
CONFLICT_CONFIDENCE = 0.7


def _winning_action(weights: Dict[str, float]) -> Optional[str]:
    """The action with strictly greatest weight, or None on any tie for the top (including all zero)."""
    top = max(weights.values())
    if top <= 0:
        return None
    leaders = [action for action in ACTIONS if math.isclose(weights[action], top, rel_tol=1e-9)]
    return leaders[0] if len(leaders) == 1 else None


def _largest_hint(signals: Sequence[Signal], action: str) -> Optional[float]:
    hints = [s.position_size for s in signals if s.action == action and s.position_size]
    return max(hints) if hints else None


def aggregate_decisions(signals: Sequence[Signal], success_rates: Optional[Mapping[int, float]] = None) -> OrchestratorDecision:
    """
    Weighted vote over agent signals.

    Each signal contributes success_rate x confidence to its action. The action with the
    strictly greatest weight wins; any tie for the maximum resolves to hold with zero
    confidence. Agents missing from `success_rates` vote with a 0.5 prior.
    """
    success_rates = success_rates or {}
    signals = list(signals)
    weights = {action: 0.0 for action in ACTIONS}
    for signal in signals:
        weights[signal.action] += success_rates.get(signal.agent_id, DEFAULT_SUCCESS_RATE) * signal.confidence

    total = sum(weights.values())
    votes = f"Votes: BUY={weights['buy']:.2f}, SELL={weights['sell']:.2f}, HOLD={weights['hold']:.2f}."
    winner = _winning_action(weights)

    if winner is None:
        dissenters = [s.agent_id for s in signals if s.action != "hold"]
        reason = "no signals received" if not signals else "no action holds a strict weighted majority"
        return OrchestratorDecision(
            final_action="hold",
            confidence=0.0,
            consensus_strength=max(weights.values()) / total if total > 0 else 0.0,
            participating_agents=len(signals),
            dissenter_agents=len(dissenters),
            dissenter_ids=dissenters,
            reasoning=f"Decision: HOLD (insufficient signals: {reason}). {votes}",
            individual_decisions=signals,
            weighted_votes=weights,
        )

    confidence = weights[winner] / total
    consensus = max(weights.values()) / total
    majority = [s for s in signals if s.action == winner]
    dissenters = [s.agent_id for s in signals if s.action != winner]

    reasoning = (
        f"Decision: {winner.upper()} with {confidence * 100:.1f}% confidence. "
        f"Consensus: {consensus * 100:.1f}%. {votes} "
        f"{len(majority)} agents agree, {len(dissenters)} dissent."
    )
    return OrchestratorDecision(
        final_action=winner,
        confidence=confidence,
        consensus_strength=consensus,
        participating_agents=len(signals),
        dissenter_agents=len(dissenters),
        dissenter_ids=dissenters,
        reasoning=reasoning,
        individual_decisions=signals,
        weighted_votes=weights,
        position_size_hint=_largest_hint(signals, winner),
    )


def aggregate_signals(signals: Sequence[Signal]) -> Signal:
    """Confidence-only aggregation for callers without an agent registry. Same tie rule."""
    if not signals:
        return Signal(agent_id=PREDICTION_AGGREGATOR_ID, action="hold", confidence=0.0, reasoning="Insufficient signals: no signals to aggregate.")

    weights = {action: 0.0 for action in ACTIONS}
    counts = {action: 0 for action in ACTIONS}
    for signal in signals:
        weights[signal.action] += signal.confidence
        counts[signal.action] += 1

    reliable = sum(1 for s in signals if s.confidence >= RELIABLE_SIGNAL_CONFIDENCE)
    outliers = len(signals) - reliable
    tally = f"Buy: {counts['buy']}, Sell: {counts['sell']}, Hold: {counts['hold']}."

    winner = _winning_action(weights)
    if winner is None:
        return Signal(
            agent_id=PREDICTION_AGGREGATOR_ID,
            action="hold",
            confidence=0.0,
            reasoning=f"Insufficient signals: no action holds a strict majority. {tally}",
        )

    confidence = min(1.0, weights[winner] / len(signals))
    return Signal(
        agent_id=PREDICTION_AGGREGATOR_ID,
        action=winner,
        confidence=confidence,
        position_size=_largest_hint(signals, winner),
        reasoning=(
            f"Consensus: {winner.upper()} ({reliable} reliable signals, {outliers} outliers filtered). "
            f"{tally} Weighted confidence: {confidence * 100:.1f}%"
        ),
    )


def detect_conflicts(signals: Sequence[Signal]) -> ConflictReport:
    """Flags simultaneous high-confidence buy and sell signals. Never changes the decision."""
    buys: List[Signal] = [s for s in signals if s.action == "buy" and s.confidence > CONFLICT_CONFIDENCE]
    sells: List[Signal] = [s for s in signals if s.action == "sell" and s.confidence > CONFLICT_CONFIDENCE]

    if not buys or not sells:
        return ConflictReport(has_conflict=False, resolution="No high-confidence conflicts detected.")

    return ConflictReport(
        has_conflict=True,
        conflicting_agents=[s.agent_id for s in buys] + [s.agent_id for s in sells],
        resolution=(
            f"Conflict: {len(buys)} agents recommend BUY, {len(sells)} recommend SELL. "
            "Defer to the aggregate weighted vote."
        ),
    )
