"""
Error taxonomy for Feature Factory.

This module provides:
- ErrorCategory enum for classifying workflow failures
- FactoryError base exception carrying category and recoverability
- Concrete exceptions for configuration, workflow state, agent calls and storage

Inside a run, failures are converted into ``workflow-error`` events rather
than raised; these exceptions surface only at construction time (bad config,
unknown workflow) or from the collaborators the orchestrator calls.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """
    Classification of workflow failures.

    Determines whether a run may be retried from its last checkpoint.
    """

    CONFIGURATION = "configuration"        # Invalid settings, never enters a run
    HOOK_REJECTION = "hook-rejection"      # A pre/post-phase hook failed
    BUDGET_EXHAUSTED = "budget-exhausted"  # Cost or turn ceiling reached
    AGENT_FAILURE = "agent-failure"        # Agent call raised or reported failure
    CHECKPOINT = "checkpoint"              # Checkpoint could not be created
    ROLLBACK = "rollback"                  # Rollback failed, manual repair needed
    REJECTED = "rejected"                  # Human rejected a phase at the approval gate
    PERSISTENCE = "persistence"            # Session snapshot could not be saved
    INTERNAL = "internal"                  # Unexpected error inside the orchestrator

    @property
    def recoverable(self) -> bool:
        """Whether failures of this category can be retried."""
        return self in (
            ErrorCategory.HOOK_REJECTION,
            ErrorCategory.AGENT_FAILURE,
            ErrorCategory.CHECKPOINT,
        )


class FactoryError(Exception):
    """
    Base exception for Feature Factory errors.

    Includes the error category for handling decisions.
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.CONFIGURATION,
        recoverable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.recoverable = category.recoverable if recoverable is None else recoverable


class ConfigError(FactoryError):
    """Raised when configuration is invalid or cannot be loaded."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, recoverable=False)


class WorkflowError(FactoryError):
    """Raised for invalid workflow definitions or unknown sessions."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, recoverable=False)


class WorkflowStateError(FactoryError):
    """Raised when a workflow state transition is not allowed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, recoverable=False)


class AgentInvocationError(FactoryError):
    """
    Raised by an agent-invocation collaborator when a call fails.

    Transport and model errors are recoverable by default so the caller
    may retry the phase from its checkpoint.
    """

    def __init__(
        self,
        message: str,
        agent_id: str = "",
        recoverable: bool = True,
    ) -> None:
        super().__init__(message, category=ErrorCategory.AGENT_FAILURE, recoverable=recoverable)
        self.agent_id = agent_id


class SessionStoreError(FactoryError):
    """Raised when session persistence operations fail."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.PERSISTENCE, recoverable=False)
