import logging
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from .core.schemas import FinancialAgentRecord, MonitoringSnapshotRecord, OrchestratorDecisionRecord
from .models import Agent, DecisionFilters, MonitoringSnapshot, OrchestratorDecision
from .store import DecisionStore, apply_decision_filters

# --- Logging ---
logger = logging.getLogger(__name__)


class SqlAlchemyDecisionStore(DecisionStore):
    """
    DecisionStore backed by SQLAlchemy. Each call opens its own session, commits or
    rolls back, and always closes the session.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        if session_factory is None:
            from .core.database import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory

    def get_agent(self, agent_id: int) -> Optional[Agent]:
        db = self._session_factory()
        try:
            record = db.query(FinancialAgentRecord).filter(FinancialAgentRecord.id == agent_id).first()
            if record is None:
                return None
            return Agent(
                id=record.id,
                name=record.name,
                tier=record.tier,
                status=record.status,
                success_rate=record.success_rate,
                decisions=record.decisions,
                last_run=record.last_run,
                last_error=record.last_error,
            )
        finally:
            db.close()

    def upsert_agent(self, agent: Agent) -> None:
        db = self._session_factory()
        try:
            record = db.query(FinancialAgentRecord).filter(FinancialAgentRecord.id == agent.id).first()
            if record is None:
                record = FinancialAgentRecord(id=agent.id)
                db.add(record)

            record.name = agent.name
            record.tier = agent.tier
            record.status = agent.status
            record.success_rate = agent.success_rate
            record.decisions = agent.decisions
            record.last_run = agent.last_run
            record.last_error = agent.last_error

            db.commit()
        except Exception as e:
            logger.error(f"Failed to upsert agent #{agent.id}: {e}")
            db.rollback()
            raise
        finally:
            db.close()

    def append_decision(self, user_id: str, decision: OrchestratorDecision, cycle_id: str) -> None:
        db = self._session_factory()
        try:
            db.add(OrchestratorDecisionRecord(
                user_id=user_id,
                cycle_id=cycle_id,
                final_action=decision.final_action,
                confidence=decision.confidence,
                consensus_strength=decision.consensus_strength,
                participating_agents=decision.participating_agents,
                dissenter_agents=decision.dissenter_agents,
                reasoning=decision.reasoning,
                decision_json=decision.model_dump(mode="json"),
                created_at=decision.timestamp,
            ))
            db.commit()
            logger.info(f"Stored {decision.final_action} decision for user {user_id} (cycle {cycle_id}).")
        except Exception as e:
            logger.error(f"Failed to store decision for user {user_id}: {e}")
            db.rollback()
            raise
        finally:
            db.close()

    def append_monitoring_snapshot(self, user_id: str, snapshot: MonitoringSnapshot) -> None:
        db = self._session_factory()
        try:
            db.add(MonitoringSnapshotRecord(
                user_id=user_id,
                cycle_id=snapshot.cycle_id,
                alert_count=len(snapshot.alerts),
                snapshot_json=snapshot.model_dump(mode="json"),
                created_at=snapshot.timestamp,
            ))
            db.commit()
        except Exception as e:
            logger.error(f"Failed to store monitoring snapshot for user {user_id}: {e}")
            db.rollback()
            raise
        finally:
            db.close()

    def list_decisions(self, user_id: str, filters: Optional[DecisionFilters] = None) -> List[OrchestratorDecision]:
        db = self._session_factory()
        try:
            query = db.query(OrchestratorDecisionRecord).filter(OrchestratorDecisionRecord.user_id == user_id)
            if filters is not None and filters.action is not None:
                query = query.filter(OrchestratorDecisionRecord.final_action == filters.action)
            records = query.order_by(OrchestratorDecisionRecord.created_at.desc()).all()
            decisions = [OrchestratorDecision.model_validate(r.decision_json) for r in records]
        finally:
            db.close()
        return apply_decision_filters(decisions, filters)
