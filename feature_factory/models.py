"""
Core data models for Feature Factory.

This module defines the foundational data structures used throughout the system:
- Workflow definitions (immutable phase lists)
- The mutable WorkflowState run record and its status enum
- Phase, hook and checkpoint results
- Session persistence envelopes and listing summaries
- JSON serialization support for all persisted models
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import Any, Callable, Optional

from feature_factory.errors import WorkflowError, WorkflowStateError


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to ISO-8601, passing None through."""
    return value.isoformat() if value is not None else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, accepting a trailing 'Z'."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class WorkflowStatus(Enum):
    """
    Lifecycle status of a workflow run.

    ``completed``, ``failed`` and ``cancelled`` are terminal: once reached,
    the status never changes again.
    """
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting-approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether this status ends the run."""
        return self in (
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.CANCELLED,
        )

    @property
    def is_resumable(self) -> bool:
        """Whether a persisted session in this status can be resumed."""
        return self in (WorkflowStatus.RUNNING, WorkflowStatus.AWAITING_APPROVAL)


# =============================================================================
# Workflow Definitions
# =============================================================================


@dataclass(frozen=True)
class PhaseSpec:
    """
    One scheduled unit of work delegated to an agent role.

    Hook ids refer to entries in the HookRegistry injected into the orchestrator.

    ``validation`` is the phase's acceptance check on a successful agent
    result: it returns None when the result is acceptable, or the reason it
    is not.
    """
    agent_id: str                                        # Agent collaborator to invoke
    display_name: str                                    # Human-readable phase name
    requires_approval: bool = False                      # Suspend for a human decision afterwards
    pre_phase_hook_ids: tuple[str, ...] = ()             # Hooks run before the agent
    post_phase_hook_ids: tuple[str, ...] = ()            # Hooks run after a successful agent call
    validation: Optional[Callable[[PhaseResult], Optional[str]]] = field(
        default=None, compare=False, repr=False
    )


@dataclass(frozen=True)
class WorkflowDefinition:
    """
    An ordered, immutable sequence of phases.

    Loaded once; the orchestrator never mutates it.
    """
    name: str
    description: str
    phases: tuple[PhaseSpec, ...]

    def __post_init__(self) -> None:
        if not self.phases:
            raise WorkflowError(f"Workflow '{self.name}' has no phases")
        # Accept any sequence but store a tuple
        object.__setattr__(self, "phases", tuple(self.phases))

    @property
    def agent_ids(self) -> list[str]:
        """Agent ids in phase order."""
        return [phase.agent_id for phase in self.phases]


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class PhaseResult:
    """
    Outcome of one phase execution.

    ``output`` is agent-specific and opaque to the orchestrator, which only
    forwards it to later phases and hooks.
    """
    agent_id: str
    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    commits: list[str] = field(default_factory=list)
    cost_usd: float = 0.0
    turns_used: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseResult:
        """Create from dictionary."""
        return cls(**data)


@dataclass
class HookResult:
    """Result of a hook execution. Never persisted."""
    passed: bool
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for event payloads."""
        return asdict(self)


@dataclass(frozen=True)
class CheckpointRecord:
    """A named snapshot of repository state taken before a phase."""
    tag_name: str
    commit_hash: str
    session_id: str
    phase_index: int
    phase_slug: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass(frozen=True)
class WorkItem:
    """
    A unit of work discovered by the validation pipeline.

    Accepted by the orchestrator as a task description source.
    """
    diagnosis: str
    priority: str = "medium"
    tier: str = ""

    def to_task_description(self) -> str:
        """Render the work item as a task description."""
        header = f"[{self.priority.upper()}]"
        if self.tier:
            header += f" [{self.tier}]"
        return f"{header} {self.diagnosis}"


# =============================================================================
# Workflow State
# =============================================================================


@dataclass
class WorkflowState:
    """
    Mutable run record of a workflow.

    Owned exclusively by the orchestrator during a run; persisted as a
    snapshot by the SessionStore between runs.
    """
    session_id: str
    workflow_name: str
    task_description: str
    current_phase_index: int = 0
    status: WorkflowStatus = WorkflowStatus.RUNNING
    phase_results: dict[str, PhaseResult] = field(default_factory=dict)
    total_cost_usd: float = 0.0
    total_turns: int = 0
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def transition_to(self, status: WorkflowStatus, error: Optional[str] = None) -> None:
        """
        Move to a new status.

        Raises:
            WorkflowStateError: If the current status is terminal.
        """
        if self.status.is_terminal:
            raise WorkflowStateError(
                f"Session {self.session_id} is {self.status.value}; "
                f"cannot transition to {status.value}"
            )
        self.status = status
        if error is not None:
            self.error = error
        if status.is_terminal:
            self.completed_at = utc_now()

    def set_phase_index(self, index: int, phase_count: int) -> None:
        """
        Point the run at a phase index.

        ``phase_count`` itself is valid and means every phase has run.
        """
        if not 0 <= index <= phase_count:
            raise WorkflowStateError(
                f"Phase index {index} is outside [0, {phase_count}]"
            )
        self.current_phase_index = index

    def record_result(self, result: PhaseResult) -> None:
        """Store a phase result (replacing any earlier one for the agent) and add its usage."""
        self.phase_results[result.agent_id] = result
        self.add_usage(result.cost_usd, result.turns_used)

    def add_usage(self, cost_usd: float, turns: int) -> None:
        """Accumulate cost and turns."""
        self.total_cost_usd += max(cost_usd, 0.0)
        self.total_turns += max(turns, 0)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "session_id": self.session_id,
            "workflow_name": self.workflow_name,
            "task_description": self.task_description,
            "current_phase_index": self.current_phase_index,
            "status": self.status.value,
            "phase_results": {
                agent_id: result.to_dict()
                for agent_id, result in self.phase_results.items()
            },
            "total_cost_usd": self.total_cost_usd,
            "total_turns": self.total_turns,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowState:
        """Create from dictionary, rehydrating enums and dates."""
        return cls(
            session_id=data["session_id"],
            workflow_name=data["workflow_name"],
            task_description=data["task_description"],
            current_phase_index=int(data.get("current_phase_index", 0)),
            status=WorkflowStatus(data.get("status", "running")),
            phase_results={
                agent_id: PhaseResult.from_dict(result)
                for agent_id, result in data.get("phase_results", {}).items()
            },
            total_cost_usd=float(data.get("total_cost_usd", 0.0)),
            total_turns=int(data.get("total_turns", 0)),
            started_at=from_iso(data.get("started_at")) or utc_now(),
            completed_at=from_iso(data.get("completed_at")),
            error=data.get("error"),
        )


# =============================================================================
# Session Persistence Envelopes
# =============================================================================


@dataclass
class SessionMetadata:
    """Envelope stored next to the WorkflowState in a session file."""
    session_id: str
    created_at: datetime
    last_updated_at: datetime
    working_directory: str
    version: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "session_id": self.session_id,
            "created_at": to_iso(self.created_at),
            "last_updated_at": to_iso(self.last_updated_at),
            "working_directory": self.working_directory,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMetadata:
        """Create from dictionary."""
        return cls(
            session_id=data["session_id"],
            created_at=from_iso(data["created_at"]) or utc_now(),
            last_updated_at=from_iso(data["last_updated_at"]) or utc_now(),
            working_directory=data.get("working_directory", ""),
            version=data.get("version", ""),
        )


@dataclass
class PersistedSession:
    """A loaded session file: metadata plus the workflow state snapshot."""
    metadata: SessionMetadata
    state: WorkflowState

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"metadata": self.metadata.to_dict(), "state": self.state.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PersistedSession:
        """Create from dictionary."""
        return cls(
            metadata=SessionMetadata.from_dict(data["metadata"]),
            state=WorkflowState.from_dict(data["state"]),
        )


@dataclass
class SessionSummary:
    """Lightweight projection of a session used for listing."""
    session_id: str
    workflow: str
    description: str
    status: WorkflowStatus
    current_phase: int
    total_cost_usd: float
    created_at: datetime
    last_updated_at: datetime

    @classmethod
    def from_session(cls, session: PersistedSession) -> SessionSummary:
        """Project a persisted session."""
        return cls(
            session_id=session.metadata.session_id,
            workflow=session.state.workflow_name,
            description=session.state.task_description,
            status=session.state.status,
            current_phase=session.state.current_phase_index,
            total_cost_usd=session.state.total_cost_usd,
            created_at=session.metadata.created_at,
            last_updated_at=session.metadata.last_updated_at,
        )


# JSON encoder for custom types
class FactoryEncoder(json.JSONEncoder):
    """JSON encoder that handles Feature Factory model types."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, PurePath):
            return str(obj)
        if isinstance(obj, (set, frozenset)):
            return sorted(obj, key=str)
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def model_to_json(obj: Any, **kwargs: Any) -> str:
    """Serialize a model object to JSON string."""
    return json.dumps(obj, cls=FactoryEncoder, **kwargs)
