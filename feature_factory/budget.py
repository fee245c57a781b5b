"""
Budget and turn governor.

Pure checks against the configured ceilings. The orchestrator consults the
governor before each phase and whenever the agent collaborator reports
progress mid-call.
"""

from __future__ import annotations

from dataclasses import dataclass

from feature_factory.config import BudgetConfig
from feature_factory.models import WorkflowState


@dataclass(frozen=True)
class BudgetStatus:
    """Result of a governor check."""
    within_budget: bool
    remaining_usd: float
    remaining_turns: int

    @property
    def reason(self) -> str:
        """Human-readable explanation when the check fails."""
        if self.within_budget:
            return ""
        if self.remaining_usd <= 0:
            return "Budget exhausted"
        return "Turn limit reached"


def check_budget(
    state: WorkflowState,
    config: BudgetConfig,
    phase_cost_usd: float = 0.0,
    phase_turns: int = 0,
) -> BudgetStatus:
    """
    Check whether a run may continue.

    The run is within budget only while the accumulated cost plus the cost of
    the in-flight phase stays strictly below ``max_budget_usd`` and the
    in-flight phase has used strictly fewer than ``max_turns_per_agent`` turns.

    Args:
        state: Workflow state holding the accumulated cost.
        config: Budget ceilings.
        phase_cost_usd: Cost reported so far by the current phase.
        phase_turns: Turns used so far by the current phase.

    Returns:
        BudgetStatus with the remaining headroom.
    """
    spent = state.total_cost_usd + phase_cost_usd
    remaining_usd = max(0.0, config.max_budget_usd - spent)
    remaining_turns = max(0, config.max_turns_per_agent - phase_turns)

    within_budget = (
        spent < config.max_budget_usd
        and phase_turns < config.max_turns_per_agent
    )
    return BudgetStatus(
        within_budget=within_budget,
        remaining_usd=remaining_usd,
        remaining_turns=remaining_turns,
    )
