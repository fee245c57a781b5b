"""Workflow event types emitted by the orchestrator."""

from feature_factory.events.types import EventType, WorkflowEvent

__all__ = ["EventType", "WorkflowEvent"]
