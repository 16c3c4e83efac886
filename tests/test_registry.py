import unittest

from decision_pipeline.models import Agent, Signal
from decision_pipeline.registry import AgentRegistry


def hold_agent(snapshot, context):
    return Signal(agent_id=1, action="hold", confidence=0.5)


class TestAgentRegistry(unittest.TestCase):

    def setUp(self):
        self.registry = AgentRegistry()
        self.registry.register(Agent(id=2, name="Beta", tier=2, success_rate=0.7), hold_agent)
        self.registry.register(Agent(id=1, name="Alpha", tier=1, success_rate=0.75), hold_agent)

    def test_duplicate_registration_rejected(self):
        with self.assertRaises(ValueError):
            self.registry.register(Agent(id=1, name="Again", tier=1), hold_agent)

    def test_active_in_id_order(self):
        self.assertEqual([e.agent.id for e in self.registry.active()], [1, 2])

    def test_inactive_agents_are_skipped(self):
        self.registry.set_status(2, "inactive")
        self.assertEqual([e.agent.id for e in self.registry.active()], [1])
        self.assertEqual(len(self.registry), 2)

    def test_readers_get_copies(self):
        agent = self.registry.get(1)
        agent.decisions = 99
        self.assertEqual(self.registry.get(1).decisions, 0)

    def test_set_status_unknown_agent(self):
        with self.assertRaises(KeyError):
            self.registry.set_status(42, "inactive")

    def test_set_all_status(self):
        agents = self.registry.set_all_status("inactive")
        self.assertTrue(all(a.status == "inactive" for a in agents))
        self.assertEqual(self.registry.active(), [])

    def test_record_run_counts_successes_only(self):
        self.registry.record_run(1)
        self.registry.record_run(1, error="TimeoutError")
        agent = self.registry.get(1)
        self.assertEqual(agent.decisions, 1)
        self.assertEqual(agent.last_error, "TimeoutError")
        self.assertEqual(agent.status, "active")
        self.assertIsNotNone(agent.last_run)

    def test_success_rates(self):
        self.assertEqual(self.registry.success_rates(), {1: 0.75, 2: 0.7})
        self.assertIn(2, self.registry)
        self.assertNotIn(3, self.registry)


if __name__ == '__main__':
    unittest.main()
