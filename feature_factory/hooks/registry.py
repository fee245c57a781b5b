"""Hook infrastructure for phase validation.

Hooks are small checks run by the orchestrator around a phase. A hook never
raises into the orchestrator: HookRegistry.execute_hook converts unknown
names and exceptions into failed HookResults.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional
import logging

from feature_factory.models import HookResult, PhaseResult, WorkflowState

if TYPE_CHECKING:
    from feature_factory.config import FactoryConfig

logger = logging.getLogger(__name__)


@dataclass
class HookContext:
    """Read-only view of the run handed to a hook.

    Attributes:
        working_directory: Directory the workflow operates on.
        previous_phase_results: Results recorded so far, keyed by agent id.
        workflow_state: Snapshot of the run state.
        verbose: Whether the hook should log progress.
    """

    working_directory: str
    previous_phase_results: Dict[str, PhaseResult] = field(default_factory=dict)
    workflow_state: Optional[WorkflowState] = None
    verbose: bool = False


class PhaseHook(ABC):
    """Base class for phase hooks.

    Subclasses set ``name`` and ``description`` and implement ``execute``.
    """

    name: str = ""
    description: str = ""

    @abstractmethod
    def execute(self, context: HookContext) -> HookResult:
        """Run the check and report whether the phase may proceed."""


class HookRegistry:
    """Named collection of hooks injected into the orchestrator."""

    def __init__(self, hooks: Optional[List[PhaseHook]] = None):
        self._hooks: Dict[str, PhaseHook] = {}
        for hook in hooks or []:
            self.register(hook)

    def register(self, hook: PhaseHook) -> None:
        """Register a hook under its name, replacing any earlier one."""
        if not hook.name:
            raise ValueError("Hook must have a name")
        self._hooks[hook.name] = hook

    def get(self, name: str) -> Optional[PhaseHook]:
        return self._hooks.get(name)

    def has_hook(self, name: str) -> bool:
        return name in self._hooks

    def list_hooks(self) -> List[PhaseHook]:
        return list(self._hooks.values())

    def execute_hook(self, name: str, context: HookContext) -> HookResult:
        """Execute a hook by name.

        Args:
            name: Registered hook name.
            context: Context passed to the hook.

        Returns:
            The hook's result, or a failed result when the hook is unknown
            or raised.
        """
        hook = self._hooks.get(name)
        if hook is None:
            return HookResult(passed=False, error=f"Unknown hook: {name}")

        try:
            return hook.execute(context)
        except Exception as e:
            logger.warning("Hook %s raised: %s", name, e)
            return HookResult(passed=False, error=f"Hook {name} threw an error: {e}")


def default_hook_registry(config: Optional["FactoryConfig"] = None) -> HookRegistry:
    """Build a registry with the stock enforcement hooks.

    Args:
        config: Supplies the test and coverage commands. Defaults are used
            when None.
    """
    from feature_factory.config import CoverageConfig
    from feature_factory.hooks.coverage_threshold import (
        CoverageThresholdHook,
        make_coverage_runner,
    )
    from feature_factory.hooks.tdd_enforcement import TddEnforcementHook
    from feature_factory.hooks.test_passing import TestPassingEnforcementHook
    from feature_factory.hooks.test_runner import make_test_runner

    runner = make_test_runner(config.tests if config else None)
    coverage = config.coverage if config else CoverageConfig()
    return HookRegistry([
        TddEnforcementHook(test_runner=runner),
        TestPassingEnforcementHook(test_runner=runner),
        CoverageThresholdHook(
            coverage_runner=make_coverage_runner(coverage),
            threshold_percent=coverage.threshold_percent,
        ),
    ])
