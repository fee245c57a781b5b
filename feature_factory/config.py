"""
Configuration loading and validation for Feature Factory.

This module handles:
- Loading .feature-factory/config.yaml from the working directory
- Environment variable resolution (${VAR} syntax)
- FEATURE_FACTORY_* environment overrides
- Fail-fast validation of budget, turn and context limits
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from feature_factory.errors import ConfigError

APPROVAL_MODES = ("after-each-phase", "at-end", "none")

DEFAULT_STATE_DIR = ".feature-factory"


@dataclass
class BudgetConfig:
    """
    Cost and turn ceilings for a workflow run.

    Validated on construction: a run can never start with a non-positive limit.
    """
    max_budget_usd: float = 5.0                # Hard cost ceiling for the whole run
    max_turns_per_agent: int = 50              # Turn ceiling for a single phase

    def __post_init__(self) -> None:
        if self.max_budget_usd <= 0:
            raise ConfigError("budget.max_budget_usd must be greater than 0")
        if self.max_turns_per_agent <= 0:
            raise ConfigError("budget.max_turns_per_agent must be greater than 0")


@dataclass
class ContextConfig:
    """Context window limits for tool output truncation and history compaction."""
    bash_output_max_chars: int = 30_000        # ~7.5k tokens
    bash_head_lines: int = 150                 # Errors surface early
    bash_tail_lines: int = 150                 # Summaries surface late
    read_output_max_chars: int = 40_000        # ~10k tokens
    grep_output_max_chars: int = 20_000        # ~5k tokens
    grep_max_matches: int = 100
    glob_max_paths: int = 200
    default_output_max_chars: int = 20_000
    compaction_threshold_tokens: int = 100_000
    keep_recent_turn_pairs: int = 8            # 16 messages

    def __post_init__(self) -> None:
        for name, value in vars(self).items():
            if value <= 0:
                raise ConfigError(f"context.{name} must be greater than 0")
        # Char caps must leave room for the truncation marker
        for name in (
            "bash_output_max_chars",
            "read_output_max_chars",
            "grep_output_max_chars",
            "default_output_max_chars",
        ):
            if getattr(self, name) < 200:
                raise ConfigError(f"context.{name} must be at least 200")


@dataclass
class CheckpointConfig:
    """Checkpoint behavior around phases."""
    enabled: bool = True                       # Tag HEAD before each phase
    require_version_control: bool = False      # Fail the run instead of skipping outside git
    cleanup_on_complete: bool = False          # Delete session tags once the run completes


@dataclass
class TestRunnerConfig:
    """Test execution configuration used by the enforcement hooks."""
    command: str = "pytest"                    # Test command
    args: list[str] = field(default_factory=lambda: ["-q"])  # Additional arguments
    timeout_seconds: int = 300                 # Timeout for test execution in seconds


@dataclass
class CoverageConfig:
    """Coverage measurement used by the coverage threshold hook."""
    command: str = "pytest"                    # Command printing a coverage summary
    args: list[str] = field(default_factory=lambda: ["--cov", "--cov-report=term", "-q"])
    threshold_percent: float = 80.0            # Minimum overall coverage
    timeout_seconds: int = 600

    def __post_init__(self) -> None:
        if not 0 <= self.threshold_percent <= 100:
            raise ConfigError("coverage.threshold_percent must be between 0 and 100")


@dataclass
class FactoryConfig:
    """
    Main configuration for Feature Factory.

    This is the top-level config loaded from config.yaml.
    """
    # Paths
    working_directory: str = "."
    state_dir: str = DEFAULT_STATE_DIR

    # Behavior
    approval_mode: str = "after-each-phase"
    verbose: bool = False

    # Nested configurations
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)
    tests: TestRunnerConfig = field(default_factory=TestRunnerConfig)
    coverage: CoverageConfig = field(default_factory=CoverageConfig)

    def __post_init__(self) -> None:
        """Resolve the working directory and validate the approval mode."""
        self.working_directory = str(Path(self.working_directory).absolute())
        if self.approval_mode not in APPROVAL_MODES:
            raise ConfigError(
                f"approval_mode must be one of: {', '.join(APPROVAL_MODES)}"
            )

    @property
    def state_path(self) -> Path:
        """Absolute path to the workflow-local state directory."""
        return Path(self.working_directory) / self.state_dir

    @property
    def sessions_path(self) -> Path:
        """Absolute path to the sessions directory."""
        return self.state_path / "sessions"

    @property
    def logs_path(self) -> Path:
        """Absolute path to the logs directory."""
        return self.state_path / "logs"


# Module-level cache for the loaded configuration
_config_cache: Optional[FactoryConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _parse_budget_config(data: dict[str, Any]) -> BudgetConfig:
    """Parse budget configuration from dict."""
    try:
        return BudgetConfig(
            max_budget_usd=float(data.get("max_budget_usd", 5.0)),
            max_turns_per_agent=int(data.get("max_turns_per_agent", 50)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid budget configuration: {e}")


def _parse_context_config(data: dict[str, Any]) -> ContextConfig:
    """Parse context window configuration from dict."""
    defaults = ContextConfig()
    values = {}
    for name, default in vars(defaults).items():
        try:
            values[name] = int(data.get(name, default))
        except (TypeError, ValueError):
            raise ConfigError(f"context.{name} must be an integer")
    return ContextConfig(**values)


def _parse_checkpoint_config(data: dict[str, Any]) -> CheckpointConfig:
    """Parse checkpoint configuration from dict."""
    return CheckpointConfig(
        enabled=bool(data.get("enabled", True)),
        require_version_control=bool(data.get("require_version_control", False)),
        cleanup_on_complete=bool(data.get("cleanup_on_complete", False)),
    )


def _parse_tests_config(data: dict[str, Any]) -> TestRunnerConfig:
    """Parse tests configuration from dict."""
    command = data.get("command", "pytest")
    if not command:
        raise ConfigError("tests.command must not be empty")
    return TestRunnerConfig(
        command=command,
        args=list(data.get("args", ["-q"])),
        timeout_seconds=int(data.get("timeout_seconds", 300)),
    )


def _parse_coverage_config(data: dict[str, Any]) -> CoverageConfig:
    """Parse coverage configuration from dict."""
    command = data.get("command", "pytest")
    if not command:
        raise ConfigError("coverage.command must not be empty")
    try:
        return CoverageConfig(
            command=command,
            args=list(data.get("args", ["--cov", "--cov-report=term", "-q"])),
            threshold_percent=float(data.get("threshold_percent", 80.0)),
            timeout_seconds=int(data.get("timeout_seconds", 600)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid coverage configuration: {e}")


def _parse_bool(value: str) -> bool:
    """Interpret an environment flag value."""
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """
    Apply FEATURE_FACTORY_* environment variable overrides.

    Environment values take precedence over the config file.
    """
    data = dict(data)
    budget = dict(data.get("budget") or {})

    max_budget = os.environ.get("FEATURE_FACTORY_MAX_BUDGET")
    if max_budget:
        try:
            budget["max_budget_usd"] = float(max_budget)
        except ValueError:
            raise ConfigError(f"FEATURE_FACTORY_MAX_BUDGET is not a number: {max_budget}")

    max_turns = os.environ.get("FEATURE_FACTORY_MAX_TURNS")
    if max_turns:
        try:
            budget["max_turns_per_agent"] = int(max_turns)
        except ValueError:
            raise ConfigError(f"FEATURE_FACTORY_MAX_TURNS is not an integer: {max_turns}")

    data["budget"] = budget

    approval_mode = os.environ.get("FEATURE_FACTORY_APPROVAL_MODE")
    if approval_mode:
        data["approval_mode"] = approval_mode

    verbose = os.environ.get("FEATURE_FACTORY_VERBOSE")
    if verbose:
        data["verbose"] = _parse_bool(verbose)

    return data


def config_from_dict(
    data: dict[str, Any],
    working_directory: Optional[str] = None,
) -> FactoryConfig:
    """
    Build a validated FactoryConfig from a raw mapping.

    Args:
        data: Parsed YAML (or equivalent) mapping.
        working_directory: Overrides ``working_directory`` from the mapping.

    Raises:
        ConfigError: If any value is invalid.
    """
    data = _resolve_env_vars(data)
    return FactoryConfig(
        working_directory=working_directory or data.get("working_directory", "."),
        state_dir=data.get("state_dir", DEFAULT_STATE_DIR),
        approval_mode=data.get("approval_mode", "after-each-phase"),
        verbose=bool(data.get("verbose", False)),
        budget=_parse_budget_config(data.get("budget") or {}),
        context=_parse_context_config(data.get("context") or {}),
        checkpoints=_parse_checkpoint_config(data.get("checkpoints") or {}),
        tests=_parse_tests_config(data.get("tests") or {}),
        coverage=_parse_coverage_config(data.get("coverage") or {}),
    )


def load_config(
    config_path: Optional[str] = None,
    working_directory: Optional[str] = None,
) -> FactoryConfig:
    """
    Load configuration from config.yaml.

    Args:
        config_path: Optional path to config file. If not provided, looks for
                     .feature-factory/config.yaml under the working directory
                     and falls back to defaults when it is absent.
        working_directory: Directory the workflow operates on. Defaults to cwd.

    Returns:
        FactoryConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or an explicit path cannot be loaded.
    """
    base = Path(working_directory or ".")

    if config_path is None:
        path = base / DEFAULT_STATE_DIR / "config.yaml"
        if not path.exists():
            return config_from_dict(_apply_env_overrides({}), str(base))
    else:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    return config_from_dict(_apply_env_overrides(raw_data), working_directory)


def get_config(
    config_path: Optional[str] = None,
    working_directory: Optional[str] = None,
    force_reload: bool = False,
) -> FactoryConfig:
    """
    Get the cached configuration, loading it if necessary.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path, working_directory)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
