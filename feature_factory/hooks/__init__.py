"""Phase hooks: registry, enforcement hooks and the runners they share."""

from feature_factory.hooks.coverage_threshold import (
    CoverageReport,
    CoverageThresholdHook,
    make_coverage_runner,
    parse_coverage_output,
    run_coverage,
)
from feature_factory.hooks.registry import (
    HookContext,
    HookRegistry,
    PhaseHook,
    default_hook_registry,
)
from feature_factory.hooks.tdd_enforcement import TddEnforcementHook
from feature_factory.hooks.test_passing import TestPassingEnforcementHook
from feature_factory.hooks.test_runner import (
    TestRunResult,
    make_test_runner,
    parse_test_output,
    run_tests,
)

__all__ = [
    "CoverageReport",
    "CoverageThresholdHook",
    "HookContext",
    "HookRegistry",
    "PhaseHook",
    "TddEnforcementHook",
    "TestPassingEnforcementHook",
    "TestRunResult",
    "default_hook_registry",
    "make_coverage_runner",
    "make_test_runner",
    "parse_coverage_output",
    "parse_test_output",
    "run_coverage",
    "run_tests",
]
