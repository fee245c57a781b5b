"""
Agent collaborator interface.

The orchestrator never decides what an agent does. It hands each phase to an
``AgentInvoker`` together with the task, prior outputs and its remaining
budget, and receives a PhaseResult back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from feature_factory.config import ContextConfig
from feature_factory.context_manager import Message
from feature_factory.models import PhaseResult

# Called by the agent with its cumulative (cost_usd, turns) for the current
# phase. Returns False when the run must stop.
ProgressCallback = Callable[[float, int], bool]


def _always_continue(cost_usd: float, turns: int) -> bool:
    return True


@dataclass
class PhaseInput:
    """Input assembled by the orchestrator for one phase."""
    task_description: str
    previous_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    feedback: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data: dict[str, Any] = {
            "task_description": self.task_description,
            "previous_outputs": self.previous_outputs,
        }
        if self.feedback:
            data["feedback"] = self.feedback
        return data


@dataclass
class AgentRequest:
    """
    Everything an agent needs to run one phase.

    ``budget_remaining_usd`` and ``turns_remaining`` bound the call; the
    agent should stop as soon as ``report_progress`` returns False.
    """
    agent_id: str
    phase_input: PhaseInput
    working_directory: str
    budget_remaining_usd: float
    turns_remaining: int
    context_messages: list[Message] = field(default_factory=list)
    context_config: ContextConfig = field(default_factory=ContextConfig)
    report_progress: ProgressCallback = _always_continue


@runtime_checkable
class AgentInvoker(Protocol):
    """Collaborator that executes agent phases."""

    def supports(self, agent_id: str) -> bool:
        """Whether this invoker can run the given agent id."""
        ...

    def invoke(self, request: AgentRequest) -> PhaseResult:
        """
        Run one phase.

        Raises:
            AgentInvocationError: If the call fails. Any other exception is
                treated the same way by the orchestrator.
        """
        ...
