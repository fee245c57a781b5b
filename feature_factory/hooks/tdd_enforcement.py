"""TDD enforcement hook.

Runs before the dev phase to verify the Red step of test-driven development:
tests were generated by the test-gen phase, and at least one of them fails.
"""

from typing import Optional
import logging

from feature_factory.hooks.registry import HookContext, PhaseHook
from feature_factory.hooks.test_runner import TestRunner, make_test_runner
from feature_factory.models import HookResult

logger = logging.getLogger(__name__)


class TddEnforcementHook(PhaseHook):
    """Blocks the dev phase unless generated tests exist and fail.

    Attributes:
        test_runner: Callable running the tests in a working directory.
        test_agent_id: Agent id of the phase expected to create the tests.
    """

    name = "tdd-enforcement"
    description = "Verifies tests exist and fail before the dev phase (TDD Red phase)"

    def __init__(
        self,
        test_runner: Optional[TestRunner] = None,
        test_agent_id: str = "test-gen",
    ):
        self.test_runner = test_runner or make_test_runner()
        self.test_agent_id = test_agent_id

    def execute(self, context: HookContext) -> HookResult:
        test_gen = context.previous_phase_results.get(self.test_agent_id)
        if test_gen is None:
            return HookResult(
                passed=False,
                error=f"TDD VIOLATION: {self.test_agent_id} phase has not run. "
                      "Cannot proceed to dev phase.",
            )
        if not test_gen.success:
            return HookResult(
                passed=False,
                error=f"TDD VIOLATION: {self.test_agent_id} phase failed. "
                      "Cannot proceed to dev phase.",
            )

        output = test_gen.output if isinstance(test_gen.output, dict) else {}
        tests_created = output.get("tests_created") or 0
        if not tests_created:
            return HookResult(
                passed=False,
                error="TDD VIOLATION: No tests were created in the test generation phase. "
                      "Cannot proceed without failing tests.",
            )

        if context.verbose:
            logger.info("[tdd-enforcement] Running tests to verify Red phase...")

        result = self.test_runner(context.working_directory)

        if result.error:
            return HookResult(
                passed=False,
                error=f"TDD VIOLATION: Could not run tests: {result.error}",
                data={"raw_output": result.raw_output},
            )

        if not result.tests_found:
            return HookResult(
                passed=False,
                error="TDD VIOLATION: No tests found when running the test command. "
                      "Test files may not be configured correctly.",
                data={"raw_output": result.raw_output},
            )

        counts = {
            "total_tests": result.total_tests,
            "passing_tests": result.passing_tests,
            "failing_tests": result.failing_tests,
        }

        if result.failing_tests == 0:
            return HookResult(
                passed=False,
                error=f"TDD VIOLATION: All {result.total_tests} tests pass. "
                      "Tests must FAIL before implementation.",
                data={**counts, "raw_output": result.raw_output},
            )

        if context.verbose:
            logger.info(
                "[tdd-enforcement] Red phase verified: %d/%d tests failing",
                result.failing_tests,
                result.total_tests,
            )

        warnings = []
        if result.passing_tests > 0:
            warnings.append(
                f"{result.passing_tests} tests already pass. "
                "These may be from previous work or helper tests."
            )

        return HookResult(passed=True, warnings=warnings, data=counts)
