"""
Event types for the Feature Factory orchestrator.

Defines the WorkflowEvent dataclass and EventType enum covering every event a
workflow run can produce. Events are observation only: consumers render or
log them, but never feed them back into the orchestrator.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class EventType(Enum):
    """All event types in a workflow run."""

    # Run lifecycle
    WORKFLOW_STARTED = "workflow-started"
    WORKFLOW_RESUMED = "workflow-resumed"
    WORKFLOW_COMPLETED = "workflow-completed"
    WORKFLOW_ERROR = "workflow-error"

    # Phase lifecycle
    PHASE_STARTED = "phase-started"
    PRE_PHASE_HOOK = "pre-phase-hook"
    COST_UPDATE = "cost-update"
    PHASE_COMPLETED = "phase-completed"

    # Human gate
    APPROVAL_REQUESTED = "approval-requested"
    APPROVAL_RECEIVED = "approval-received"


@dataclass
class WorkflowEvent:
    """A single event in a workflow run."""

    event_type: EventType
    session_id: str = ""
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    phase: Optional[str] = None
    agent_id: Optional[str] = None
    phase_index: Optional[int] = None
    total_phases: Optional[int] = None
    error: Optional[str] = None
    recoverable: Optional[bool] = None
    category: Optional[str] = None
    current_cost_usd: Optional[float] = None
    budget_remaining_usd: Optional[float] = None
    result: Optional[dict[str, Any]] = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        """Wire name of the event type."""
        return self.event_type.value

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization, omitting unset fields."""
        d: dict[str, Any] = {
            "type": self.event_type.value,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
        }
        for name in (
            "phase",
            "agent_id",
            "phase_index",
            "total_phases",
            "error",
            "recoverable",
            "category",
            "current_cost_usd",
            "budget_remaining_usd",
            "result",
        ):
            value = getattr(self, name)
            if value is not None:
                d[name] = value
        if self.payload:
            d["payload"] = dict(self.payload)
        return d

    def __str__(self) -> str:
        text = f"[{self.timestamp}] {self.event_type.value} session={self.session_id}"
        if self.phase:
            text += f" phase={self.phase}"
        if self.error:
            text += f" error={self.error}"
        return text
