import unittest
import sys
import os

# Add parent dir to path to import services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.rotation_service import RotationState, next_agent, add_eligible, remove_eligible

class TestRoundRobin(unittest.TestCase):
    def test_cycles_in_order(self):
        state = RotationState(eligible_user_ids=["a", "b", "c"])
        picked = []
        for _ in range(7):
            agent, state = next_agent(state)
            picked.append(agent)
        self.assertEqual(picked, ["a", "b", "c", "a", "b", "c", "a"])

    def test_fair_over_a_full_cycle(self):
        state = RotationState(eligible_user_ids=["a", "b", "c", "d"])
        counts = {}
        for _ in range(12):
            agent, state = next_agent(state)
            counts[agent] = counts.get(agent, 0) + 1
        self.assertEqual(counts, {"a": 3, "b": 3, "c": 3, "d": 3})

    def test_no_eligible_agents(self):
        state = RotationState()
        agent, new_state = next_agent(state)
        self.assertIsNone(agent)
        self.assertEqual(new_state, state)

    def test_state_is_not_mutated(self):
        state = RotationState(eligible_user_ids=["a", "b"])
        next_agent(state)
        self.assertIsNone(state.last_assigned_user_id)

    def test_stale_pointer_restarts_at_first_agent(self):
        state = RotationState(last_assigned_user_id="gone", eligible_user_ids=["a", "b"])
        agent, _ = next_agent(state)
        self.assertEqual(agent, "a")

    def test_removing_pointer_agent_clears_it(self):
        state = RotationState(last_assigned_user_id="b", eligible_user_ids=["a", "b", "c"])
        state = remove_eligible(state, "b")
        self.assertIsNone(state.last_assigned_user_id)
        self.assertEqual(state.eligible_user_ids, ["a", "c"])
        agent, _ = next_agent(state)
        self.assertEqual(agent, "a")

    def test_removing_other_agent_keeps_position(self):
        state = RotationState(last_assigned_user_id="a", eligible_user_ids=["a", "b", "c"])
        agent, _ = next_agent(remove_eligible(state, "b"))
        self.assertEqual(agent, "c")

    def test_added_agent_joins_at_the_end(self):
        state = RotationState(last_assigned_user_id="a", eligible_user_ids=["a", "b"])
        state = add_eligible(state, "c")
        self.assertEqual(state.eligible_user_ids, ["a", "b", "c"])
        self.assertIs(add_eligible(state, "c"), state)

if __name__ == '__main__':
    unittest.main()
