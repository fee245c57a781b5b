"""Tests for the budget and turn governor."""

import pytest

from feature_factory.budget import check_budget
from feature_factory.config import BudgetConfig
from feature_factory.models import WorkflowState


def state_with_cost(cost):
    state = WorkflowState(session_id="s", workflow_name="w", task_description="t")
    state.total_cost_usd = cost
    return state


class TestCheckBudget:
    """Tests for check_budget."""

    def test_exactly_at_ceiling_is_exhausted(self):
        status = check_budget(state_with_cost(5.0), BudgetConfig(max_budget_usd=5.0))

        assert status.within_budget is False
        assert status.remaining_usd == 0.0
        assert status.reason == "Budget exhausted"

    def test_just_below_ceiling_is_within(self):
        status = check_budget(state_with_cost(4.99), BudgetConfig(max_budget_usd=5.0))

        assert status.within_budget is True
        assert status.remaining_usd == pytest.approx(0.01)
        assert status.reason == ""

    def test_in_flight_cost_counts(self):
        status = check_budget(
            state_with_cost(3.0),
            BudgetConfig(max_budget_usd=5.0),
            phase_cost_usd=2.5,
        )
        assert status.within_budget is False

    def test_turn_ceiling(self):
        config = BudgetConfig(max_budget_usd=5.0, max_turns_per_agent=10)

        assert check_budget(state_with_cost(0.0), config, phase_turns=9).within_budget
        status = check_budget(state_with_cost(0.0), config, phase_turns=10)

        assert status.within_budget is False
        assert status.remaining_turns == 0
        assert status.reason == "Turn limit reached"
