from sqlalchemy import Column, String, Float, DateTime, JSON, Integer
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
import uuid

Base = declarative_base()


class FinancialAgentRecord(Base):
    """
    Persistent view of one signal agent: its status and running counters.
    Upserted by the orchestrator on start/stop and operator overrides.
    """
    __tablename__ = 'financial_agents'

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String, nullable=False)
    tier = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="active", index=True)
    success_rate = Column(Float, nullable=False, default=0.5)
    decisions = Column(Integer, nullable=False, default=0)
    last_run = Column(DateTime, nullable=True)
    last_error = Column(String, nullable=True)
    last_updated = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))


class OrchestratorDecisionRecord(Base):
    """
    One aggregated decision per completed cycle. Append-only.
    """
    __tablename__ = 'orchestrator_decisions'

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    cycle_id = Column(String, nullable=False, index=True)
    final_action = Column(String, nullable=False, index=True)
    confidence = Column(Float, nullable=False)
    consensus_strength = Column(Float, nullable=False)
    participating_agents = Column(Integer, nullable=False)
    dissenter_agents = Column(Integer, nullable=False)
    reasoning = Column(String, nullable=False)
    decision_json = Column(JSON, nullable=False)  # Full decision incl. individual signals
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), index=True)


class MonitoringSnapshotRecord(Base):
    """
    Performance, risk metrics and alerts captured at the end of a cycle.
    """
    __tablename__ = 'monitoring_snapshots'

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    cycle_id = Column(String, nullable=True, index=True)
    alert_count = Column(Integer, nullable=False, default=0)
    snapshot_json = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), index=True)
