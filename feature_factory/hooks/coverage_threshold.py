"""Coverage threshold hook.

Runs before the QA phase: the dev phase must have finished with all tests
passing, and overall coverage must reach the configured threshold.

Two summary formats are understood:
- coverage.py terminal report (``TOTAL   120   18   85%``), as printed by
  ``pytest --cov`` or ``coverage report``
- Jest text summary (``Statements : 85.71% ( 12/14 )``); overall coverage is
  the mean of statement and branch coverage
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Union
import logging
import re
import shlex
import subprocess

from feature_factory.config import CoverageConfig
from feature_factory.hooks.registry import HookContext, PhaseHook
from feature_factory.models import HookResult

logger = logging.getLogger(__name__)

DEFAULT_COVERAGE_THRESHOLD = 80.0

_PY_TOTAL = re.compile(r"^TOTAL\s+(?:\d+\s+){2,4}(\d+(?:\.\d+)?)%", re.MULTILINE)
_PY_FILE = re.compile(r"^(\S+\.py)\s+(?:\d+\s+){2,4}(\d+(?:\.\d+)?)%", re.MULTILINE)
_JEST_STATEMENTS = re.compile(r"Statements\s*:\s*([\d.]+)%", re.IGNORECASE)
_JEST_BRANCHES = re.compile(r"Branch(?:es)?\s*:\s*([\d.]+)%", re.IGNORECASE)
_JEST_FILE = re.compile(r"^\s*([\w/.-]+\.(?:js|jsx|ts|tsx))\s*\|\s*([\d.]+)", re.MULTILINE)

# Files listed in a failure message
_MAX_LISTED_FILES = 5


@dataclass
class FileCoverage:
    """Coverage of a single file."""

    path: str
    percent: float


@dataclass
class CoverageReport:
    """Parsed coverage summary.

    Attributes:
        percent: Overall coverage used against the threshold.
        statement_percent: Statement coverage, when reported.
        branch_percent: Branch coverage, when reported.
        files_below: Files under the threshold, lowest first.
        raw_output: Combined stdout and stderr.
        error: Set when coverage could not be measured or parsed.
    """

    percent: float = 0.0
    statement_percent: Optional[float] = None
    branch_percent: Optional[float] = None
    files_below: List[FileCoverage] = field(default_factory=list)
    raw_output: str = ""
    error: Optional[str] = None

    def summary(self, threshold_percent: float) -> dict:
        """Event-friendly data for a hook result."""
        data = {
            "coverage_percent": round(self.percent, 2),
            "threshold_percent": threshold_percent,
            "files_below_threshold": [
                {"path": f.path, "percent": f.percent} for f in self.files_below
            ],
        }
        if self.statement_percent is not None:
            data["statement_percent"] = self.statement_percent
        if self.branch_percent is not None:
            data["branch_percent"] = self.branch_percent
        return data


CoverageRunner = Callable[[str], CoverageReport]


def _files_below(pattern: "re.Pattern", output: str, threshold_percent: float) -> List[FileCoverage]:
    files = [
        FileCoverage(path=match.group(1), percent=float(match.group(2)))
        for match in pattern.finditer(output)
    ]
    return sorted(
        (f for f in files if f.percent < threshold_percent),
        key=lambda f: f.percent,
    )


def parse_coverage_output(
    output: str,
    threshold_percent: float = DEFAULT_COVERAGE_THRESHOLD,
) -> CoverageReport:
    """Parse a coverage summary.

    Args:
        output: Combined stdout and stderr of the coverage command.
        threshold_percent: Files below this are listed in ``files_below``.

    Returns:
        CoverageReport. ``error`` is set when no known summary was found.
    """
    total = _PY_TOTAL.search(output)
    if total:
        percent = float(total.group(1))
        return CoverageReport(
            percent=percent,
            statement_percent=percent,
            files_below=_files_below(_PY_FILE, output, threshold_percent),
            raw_output=output,
        )

    statements = _JEST_STATEMENTS.search(output)
    if statements:
        statement_percent = float(statements.group(1))
        branches = _JEST_BRANCHES.search(output)
        branch_percent = float(branches.group(1)) if branches else None
        if branch_percent is None:
            percent = statement_percent
        else:
            percent = (statement_percent + branch_percent) / 2
        return CoverageReport(
            percent=percent,
            statement_percent=statement_percent,
            branch_percent=branch_percent,
            files_below=_files_below(_JEST_FILE, output, threshold_percent),
            raw_output=output,
        )

    return CoverageReport(raw_output=output, error="Could not parse coverage data from output")


def run_coverage(
    working_directory: Union[str, Path],
    config: Optional[CoverageConfig] = None,
) -> CoverageReport:
    """Run the configured coverage command and parse its summary.

    Failing tests give a non-zero exit code but still print coverage, so the
    exit code is ignored.
    """
    config = config or CoverageConfig()
    cmd = [*shlex.split(config.command), *config.args]
    logger.debug("Running coverage: %s (cwd=%s)", " ".join(cmd), working_directory)

    try:
        result = subprocess.run(
            cmd,
            cwd=str(working_directory),
            timeout=config.timeout_seconds,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        return CoverageReport(error=f"Coverage command not found: {cmd[0]}")
    except subprocess.TimeoutExpired:
        return CoverageReport(error=f"Coverage run timed out after {config.timeout_seconds}s")

    return parse_coverage_output(
        (result.stdout or "") + (result.stderr or ""),
        config.threshold_percent,
    )


def make_coverage_runner(config: Optional[CoverageConfig] = None) -> CoverageRunner:
    """Bind a coverage configuration into a CoverageRunner callable."""

    def runner(working_directory: str) -> CoverageReport:
        return run_coverage(working_directory, config)

    return runner


class CoverageThresholdHook(PhaseHook):
    """Blocks the QA phase until tests pass and coverage reaches the threshold.

    Attributes:
        coverage_runner: Callable measuring coverage in a working directory.
        threshold_percent: Minimum overall coverage.
        dev_agent_id: Agent id of the phase expected to make the tests pass.
    """

    name = "coverage-threshold"
    description = "Verifies test coverage meets the threshold before the QA phase"

    def __init__(
        self,
        coverage_runner: Optional[CoverageRunner] = None,
        threshold_percent: float = DEFAULT_COVERAGE_THRESHOLD,
        dev_agent_id: str = "dev",
    ):
        self.coverage_runner = coverage_runner or make_coverage_runner()
        self.threshold_percent = threshold_percent
        self.dev_agent_id = dev_agent_id

    def execute(self, context: HookContext) -> HookResult:
        dev = context.previous_phase_results.get(self.dev_agent_id)
        if dev is None:
            return HookResult(
                passed=False,
                error=f"Coverage threshold hook: {self.dev_agent_id} phase has not run.",
            )
        if not dev.success:
            return HookResult(
                passed=False,
                error=f"Coverage threshold hook: {self.dev_agent_id} phase failed. "
                      "Cannot check coverage.",
            )

        output = dev.output if isinstance(dev.output, dict) else {}
        if output.get("all_tests_passing") is not True:
            return HookResult(
                passed=False,
                error="Coverage threshold hook: tests are not passing. "
                      "Fix tests before checking coverage.",
            )

        if context.verbose:
            logger.info("[coverage-threshold] Running coverage analysis...")

        report = self.coverage_runner(context.working_directory)
        if report.error:
            return HookResult(
                passed=False,
                error=f"Coverage threshold hook: {report.error}",
                data={"raw_output": report.raw_output},
            )

        data = report.summary(self.threshold_percent)

        if report.percent < self.threshold_percent:
            listed = "\n".join(
                f"  - {f.path}: {f.percent:.1f}%"
                for f in report.files_below[:_MAX_LISTED_FILES]
            )
            return HookResult(
                passed=False,
                error=f"Coverage threshold not met: {report.percent:.1f}% < "
                      f"{self.threshold_percent:g}%",
                warnings=[f"Files below threshold:\n{listed}"] if listed else [],
                data=data,
            )

        if context.verbose:
            logger.info(
                "[coverage-threshold] Coverage %.1f%% (threshold %g%%)",
                report.percent,
                self.threshold_percent,
            )

        warnings = []
        if report.files_below:
            warnings.append(
                f"{len(report.files_below)} file(s) below "
                f"{self.threshold_percent:g}% coverage"
            )
        return HookResult(passed=True, warnings=warnings, data=data)
