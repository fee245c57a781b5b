"""
Built-in workflow definitions.

Each workflow is an immutable sequence of phases. Phases flagged with
``requires_approval`` suspend the run for a human decision when the approval
mode is ``after-each-phase``.

Acceptance checks read agreed keys from the agent output:

    approved, function_specs, tests_created, all_tests_failing,
    all_tests_passing, root_cause, verdict, tests_failed

A check returns None when the result is acceptable, or the reason it is not.
"""

from __future__ import annotations

from typing import Any, Optional

from feature_factory.errors import WorkflowError
from feature_factory.models import PhaseResult, PhaseSpec, WorkflowDefinition

TDD_ENFORCEMENT = "tdd-enforcement"
TEST_PASSING_ENFORCEMENT = "test-passing-enforcement"
COVERAGE_THRESHOLD = "coverage-threshold"


# =============================================================================
# Acceptance checks
# =============================================================================


def _output(result: PhaseResult) -> dict[str, Any]:
    return result.output if isinstance(result.output, dict) else {}


def design_approved(result: PhaseResult) -> Optional[str]:
    if _output(result).get("approved") is not True:
        return "architect did not approve the design"
    return None


def has_function_specs(result: PhaseResult) -> Optional[str]:
    if not _output(result).get("function_specs"):
        return "specification lists no function specs"
    return None


def tests_created(result: PhaseResult) -> Optional[str]:
    if not _output(result).get("tests_created"):
        return "no tests were created"
    return None


def red_tests_created(result: PhaseResult) -> Optional[str]:
    """Tests exist and every one of them fails."""
    reason = tests_created(result)
    if reason:
        return reason
    if _output(result).get("all_tests_failing") is not True:
        return "new tests must all fail before implementation"
    return None


def all_tests_passing(result: PhaseResult) -> Optional[str]:
    if _output(result).get("all_tests_passing") is not True:
        return "tests are not all passing"
    return None


def root_cause_found(result: PhaseResult) -> Optional[str]:
    if not _output(result).get("root_cause"):
        return "no root cause identified"
    return None


def qa_not_failed(result: PhaseResult) -> Optional[str]:
    if _output(result).get("verdict") == "FAILED":
        return "QA verdict is FAILED"
    return None


def clean_baseline(result: PhaseResult) -> Optional[str]:
    """QA passed with zero failing tests."""
    reason = qa_not_failed(result)
    if reason:
        return reason
    if _output(result).get("tests_failed") != 0:
        return "baseline has failing tests"
    return None


def review_approved(result: PhaseResult) -> Optional[str]:
    if _output(result).get("verdict") != "APPROVED":
        return "reviewer did not approve"
    return None


# =============================================================================
# Workflows
# =============================================================================


NEW_FEATURE = WorkflowDefinition(
    name="new-feature",
    description="Full TDD pipeline for new features",
    phases=(
        PhaseSpec("architect", "Design Review", requires_approval=True,
                  validation=design_approved),
        PhaseSpec("spec", "Specification", requires_approval=True,
                  validation=has_function_specs),
        PhaseSpec("test-gen", "TDD Red Phase", validation=red_tests_created),
        PhaseSpec("dev", "TDD Green Phase", pre_phase_hook_ids=(TDD_ENFORCEMENT,),
                  validation=all_tests_passing),
        PhaseSpec("qa", "Quality Assurance", pre_phase_hook_ids=(COVERAGE_THRESHOLD,),
                  validation=qa_not_failed),
        PhaseSpec("review", "Code Review", requires_approval=True,
                  validation=review_approved),
        PhaseSpec("docs", "Documentation"),
    ),
)

BUG_FIX = WorkflowDefinition(
    name="bug-fix",
    description="Diagnosis and fix pipeline for existing bugs",
    phases=(
        PhaseSpec("architect", "Root Cause Diagnosis", requires_approval=True,
                  validation=root_cause_found),
        PhaseSpec("test-gen", "Regression Tests", validation=red_tests_created),
        PhaseSpec("dev", "Bug Fix Implementation", pre_phase_hook_ids=(TDD_ENFORCEMENT,),
                  validation=all_tests_passing),
        PhaseSpec("review", "Fix Review", requires_approval=True,
                  validation=review_approved),
        PhaseSpec("qa", "Regression Check", validation=qa_not_failed),
    ),
)

REFACTOR = WorkflowDefinition(
    name="refactor",
    description="Safe refactoring pipeline that preserves behavior",
    phases=(
        PhaseSpec("qa", "Test Baseline", pre_phase_hook_ids=(TEST_PASSING_ENFORCEMENT,),
                  validation=clean_baseline),
        PhaseSpec("architect", "Refactor Review", requires_approval=True,
                  validation=design_approved),
        PhaseSpec(
            "dev",
            "Refactor Implementation",
            pre_phase_hook_ids=(TEST_PASSING_ENFORCEMENT,),
            validation=all_tests_passing,
        ),
        PhaseSpec("review", "Code Quality Review", requires_approval=True,
                  validation=review_approved),
        PhaseSpec("qa", "Final Verification", pre_phase_hook_ids=(TEST_PASSING_ENFORCEMENT,),
                  validation=clean_baseline),
    ),
)

BUILTIN_WORKFLOWS: dict[str, WorkflowDefinition] = {
    workflow.name: workflow for workflow in (NEW_FEATURE, BUG_FIX, REFACTOR)
}


def get_workflow(
    name: str,
    workflows: Optional[dict[str, WorkflowDefinition]] = None,
) -> WorkflowDefinition:
    """
    Look up a workflow by name.

    Args:
        name: Workflow name.
        workflows: Mapping to search. Defaults to the built-in workflows.

    Raises:
        WorkflowError: If no workflow has that name.
    """
    registry = BUILTIN_WORKFLOWS if workflows is None else workflows
    try:
        return registry[name]
    except KeyError:
        known = ", ".join(sorted(registry)) or "none"
        raise WorkflowError(f"Unknown workflow: {name} (available: {known})")
