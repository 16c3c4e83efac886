import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from decision_pipeline.core.database import init_db
from decision_pipeline.core.schemas import MonitoringSnapshotRecord, OrchestratorDecisionRecord
from decision_pipeline.database import SqlAlchemyDecisionStore
from decision_pipeline.models import Agent, DecisionFilters, MonitoringSnapshot, OrchestratorDecision, Signal

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_decision(action, minutes=0):
    return OrchestratorDecision(
        final_action=action,
        confidence=0.6,
        consensus_strength=0.6,
        participating_agents=2,
        reasoning=f"Decision: {action.upper()}",
        individual_decisions=[Signal(agent_id=81, action=action, confidence=0.6)],
        timestamp=BASE_TIME + timedelta(minutes=minutes),
    )


class TestSqlAlchemyDecisionStore(unittest.TestCase):

    def setUp(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        init_db(bind=self.engine)
        self.Session = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self.store = SqlAlchemyDecisionStore(session_factory=self.Session)

    def tearDown(self):
        self.engine.dispose()

    def test_agent_round_trip_and_update(self):
        self.assertIsNone(self.store.get_agent(81))

        self.store.upsert_agent(Agent(id=81, name="Market Data Aggregator", tier=1, success_rate=0.75))
        self.store.upsert_agent(Agent(id=81, name="Market Data Aggregator", tier=1, status="inactive", decisions=4))

        agent = self.store.get_agent(81)
        self.assertEqual(agent.status, "inactive")
        self.assertEqual(agent.decisions, 4)
        self.assertEqual(agent.success_rate, 0.5)

    def test_decisions_keep_full_payload(self):
        self.store.append_decision("u1", make_decision("buy"), "cycle-1")

        db = self.Session()
        try:
            record = db.query(OrchestratorDecisionRecord).one()
            self.assertEqual(record.cycle_id, "cycle-1")
            self.assertEqual(record.final_action, "buy")
        finally:
            db.close()

        stored = self.store.list_decisions("u1")
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].individual_decisions[0].agent_id, 81)

    def test_list_decisions_filters(self):
        for minutes, action in enumerate(["buy", "hold", "sell", "buy"]):
            self.store.append_decision("u1", make_decision(action, minutes), f"cycle-{minutes}")
        self.store.append_decision("u2", make_decision("sell"), "other")

        newest_first = self.store.list_decisions("u1")
        self.assertEqual([d.final_action for d in newest_first], ["buy", "sell", "hold", "buy"])

        buys = self.store.list_decisions("u1", DecisionFilters(action="buy"))
        self.assertEqual(len(buys), 2)

        window = self.store.list_decisions(
            "u1", DecisionFilters(since=BASE_TIME + timedelta(minutes=1), until=BASE_TIME + timedelta(minutes=2))
        )
        self.assertEqual([d.final_action for d in window], ["sell", "hold"])

        self.assertEqual(len(self.store.list_decisions("u1", DecisionFilters(limit=1))), 1)

    def test_monitoring_snapshot_persisted(self):
        self.store.append_monitoring_snapshot("u1", MonitoringSnapshot(user_id="u1", cycle_id="cycle-1"))

        db = self.Session()
        try:
            record = db.query(MonitoringSnapshotRecord).one()
            self.assertEqual(record.alert_count, 0)
            self.assertEqual(record.snapshot_json["user_id"], "u1")
        finally:
            db.close()

    def test_write_failure_propagates(self):
        broken = SqlAlchemyDecisionStore(session_factory=sessionmaker(bind=create_engine("sqlite://")))
        with self.assertRaises(Exception):
            broken.append_decision("u1", make_decision("buy"), "cycle-1")


if __name__ == '__main__':
    unittest.main()
