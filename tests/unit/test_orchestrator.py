"""Tests for the workflow orchestrator.

Workflows here are small custom definitions so each test controls exactly
which agents, hooks and approval gates are involved.
"""

from dataclasses import replace
from pathlib import Path
from unittest.mock import Mock, call

import pytest

from feature_factory.checkpoints import CheckpointManager, CheckpointResult, checkpoint_tag_name
from feature_factory.config import BudgetConfig, CheckpointConfig
from feature_factory.errors import AgentInvocationError, WorkflowError, WorkflowStateError
from feature_factory.hooks import HookRegistry, PhaseHook
from feature_factory.logger import FactoryLogger
from feature_factory.models import (
    HookResult,
    PhaseResult,
    PhaseSpec,
    WorkflowDefinition,
    WorkflowState,
    WorkflowStatus,
    WorkItem,
)
from feature_factory.orchestrator import Orchestrator, RunOptions

DESIGN_BUILD = WorkflowDefinition("design-build", "Design then build", (
    PhaseSpec("architect", "Design", requires_approval=True),
    PhaseSpec("dev", "Build"),
))

THREE_STEP = WorkflowDefinition("three-step", "Design, build, verify", (
    PhaseSpec("architect", "Design"),
    PhaseSpec("dev", "Build"),
    PhaseSpec("qa", "Verify"),
))

GUARDED = WorkflowDefinition("guarded", "Build behind a pre-phase gate", (
    PhaseSpec("architect", "Design"),
    PhaseSpec("dev", "Build", pre_phase_hook_ids=("gate",)),
))

POST_CHECKED = WorkflowDefinition("post-checked", "Build with a post-phase gate", (
    PhaseSpec("dev", "Build", post_phase_hook_ids=("gate",)),
))


def build_is_green(result):
    if result.output.get("green") is not True:
        return "build is not green"
    return None


VALIDATED = WorkflowDefinition("validated", "Build with an acceptance check", (
    PhaseSpec("architect", "Design"),
    PhaseSpec("dev", "Build", validation=build_is_green, post_phase_hook_ids=("gate",)),
))

WORKFLOWS = {w.name: w for w in (DESIGN_BUILD, THREE_STEP, GUARDED, POST_CHECKED, VALIDATED)}


class GateHook(PhaseHook):
    """Hook with a fixed verdict that records the contexts it saw."""

    name = "gate"
    description = "Fixed verdict"

    def __init__(self, passed=True, error=None):
        self.passed = passed
        self.error = error
        self.contexts = []

    def execute(self, context):
        self.contexts.append(context)
        return HookResult(passed=self.passed, error=self.error, data={"raw_output": "...", "checked": True})


def kinds(events):
    return [event.kind for event in events]


def make_orchestrator(invoker, config, hooks=None, **kwargs):
    return Orchestrator(
        invoker,
        config,
        hooks=hooks if hooks is not None else HookRegistry([GateHook()]),
        workflows=WORKFLOWS,
        **kwargs,
    )


def mock_checkpoints(tags_for=None):
    """CheckpointManager double whose checkpoints always succeed."""
    manager = Mock(spec=CheckpointManager)
    manager.create_checkpoint.return_value = CheckpointResult(success=True, tag_name="t", commit_hash="abc")
    manager.list_checkpoints.side_effect = tags_for or (lambda session_id: [])
    manager.rollback_to_checkpoint.return_value = CheckpointResult(success=True)
    manager.cleanup_checkpoints.return_value = []
    return manager


PHASE_EVENTS = ["phase-started", "cost-update", "phase-completed"]


# =============================================================================
# Starting a run
# =============================================================================


class TestRunWorkflow:
    """Tests for starting and completing runs."""

    def test_completes_all_phases_in_order(self, fake_invoker, factory_config):
        orchestrator = make_orchestrator(fake_invoker, factory_config)

        run = orchestrator.run_workflow("three-step", "Add login")
        events = run.drain()

        assert kinds(events) == ["workflow-started"] + PHASE_EVENTS * 3 + ["workflow-completed"]
        assert [e.phase for e in events if e.kind == "phase-completed"] == ["Design", "Build", "Verify"]
        assert all(e.session_id == run.session_id for e in events)
        assert fake_invoker.called_agents() == ["architect", "dev", "qa"]
        assert run.status == WorkflowStatus.COMPLETED
        assert run.state.current_phase_index == 3
        assert run.state.total_cost_usd == pytest.approx(0.3)
        assert run.state.total_turns == 6
        assert run.next_event() is None

    def test_persists_final_state(self, fake_invoker, factory_config):
        orchestrator = make_orchestrator(fake_invoker, factory_config)

        run = orchestrator.run_workflow("three-step", "Add login")
        run.drain()

        persisted = orchestrator.session_store.load(run.session_id)
        assert persisted is not None
        assert persisted.state.status == WorkflowStatus.COMPLETED
        assert sorted(persisted.state.phase_results) == ["architect", "dev", "qa"]

    def test_iterating_the_run_yields_events(self, fake_invoker, factory_config):
        run = make_orchestrator(fake_invoker, factory_config).run_workflow("three-step", "Add login")

        events = list(run)

        assert events[0].kind == "workflow-started"
        assert events[-1].kind == "workflow-completed"
        with pytest.raises(StopIteration):
            next(run)

    def test_passes_prior_outputs_and_context(self, fake_invoker, factory_config):
        orchestrator = make_orchestrator(fake_invoker, factory_config)

        orchestrator.run_workflow("three-step", "Add login").drain()

        first, second = fake_invoker.requests[:2]
        assert first.phase_input.previous_outputs == {}
        assert second.phase_input.previous_outputs == {"architect": {"summary": "architect done"}}
        assert [m.role for m in first.context_messages] == ["user"]
        assert [m.role for m in second.context_messages] == ["user", "assistant", "user"]
        assert second.context_messages[0].content == "Add login"
        assert second.budget_remaining_usd == pytest.approx(4.9)
        assert second.working_directory == factory_config.working_directory

    def test_accepts_work_item(self, fake_invoker, factory_config):
        orchestrator = make_orchestrator(fake_invoker, factory_config)

        run = orchestrator.run_workflow("three-step", WorkItem("Crash on empty input", priority="high"))
        run.drain()

        assert run.state.task_description == "[HIGH] Crash on empty input"
        assert fake_invoker.requests[0].phase_input.task_description == "[HIGH] Crash on empty input"

    def test_logs_events_for_the_session(self, fake_invoker, factory_config):
        orchestrator = make_orchestrator(fake_invoker, factory_config)

        run = orchestrator.run_workflow("three-step", "Add login")
        run.drain()

        logger = FactoryLogger("orchestrator", factory_config)
        assert len(logger.entries(session_id=run.session_id, event_types=["workflow-completed"])) == 1
        build = logger.entries(session_id=run.session_id, phase_index=1)
        assert [e.event_type for e in build] == ["phase-started", "phase-completed"]


class TestConfigurationErrors:
    """Configuration problems raise before any event or session exists."""

    def test_unknown_workflow(self, fake_invoker, factory_config):
        orchestrator = make_orchestrator(fake_invoker, factory_config)

        with pytest.raises(WorkflowError, match="Unknown workflow: deploy"):
            orchestrator.run_workflow("deploy", "Ship it")
        assert not factory_config.sessions_path.exists()

    def test_unsupported_agent(self, invoker_class, factory_config):
        orchestrator = make_orchestrator(invoker_class(agents={"architect"}), factory_config)

        with pytest.raises(WorkflowError, match="unsupported agent: dev"):
            orchestrator.run_workflow("design-build", "Add login")
        assert not factory_config.sessions_path.exists()

    def test_unknown_hook(self, fake_invoker, factory_config):
        orchestrator = make_orchestrator(fake_invoker, factory_config, hooks=HookRegistry())

        with pytest.raises(WorkflowError, match="unknown hook: gate"):
            orchestrator.run_workflow("guarded", "Add login")

    def test_empty_task(self, fake_invoker, factory_config):
        orchestrator = make_orchestrator(fake_invoker, factory_config)

        with pytest.raises(WorkflowError, match="must not be empty"):
            orchestrator.run_workflow("three-step", "   ")


# =============================================================================
# Approval gates
# =============================================================================


class TestApproval:
    """Tests for approval gates, approve and reject."""

    @pytest.fixture
    def config(self, factory_config):
        return replace(factory_config, approval_mode="after-each-phase")

    def test_suspends_at_gate(self, fake_invoker, config):
        orchestrator = make_orchestrator(fake_invoker, config)

        run = orchestrator.run_workflow("design-build", "Add login")
        events = run.drain()

        assert kinds(events) == ["workflow-started"] + PHASE_EVENTS + ["approval-requested"]
        assert "Design completed: 1 files created" in events[-1].payload["summary"]
        assert run.awaiting_approval
        assert run.is_suspended
        assert run.next_event() is None
        persisted = orchestrator.session_store.load(run.session_id)
        assert persisted.state.status == WorkflowStatus.AWAITING_APPROVAL

    def test_approve_continues_with_feedback(self, fake_invoker, config):
        orchestrator = make_orchestrator(fake_invoker, config)
        run = orchestrator.run_workflow("design-build", "Add login")
        run.drain()

        orchestrator.approve(run.session_id, feedback="Use JWT")
        events = run.drain()

        assert kinds(events) == ["approval-received"] + PHASE_EVENTS + ["workflow-completed"]
        assert events[0].payload == {"approved": True, "feedback": "Use JWT"}
        dev_request = fake_invoker.requests[1]
        assert dev_request.phase_input.feedback == "Use JWT"
        assert "Reviewer feedback: Use JWT" in dev_request.context_messages[-1].content
        assert run.status == WorkflowStatus.COMPLETED

    def test_approve_requires_gate(self, fake_invoker, config):
        orchestrator = make_orchestrator(fake_invoker, config)
        run = orchestrator.run_workflow("three-step", "Add login")
        run.drain()

        with pytest.raises(WorkflowStateError, match="not awaiting approval"):
            orchestrator.approve(run.session_id)
        with pytest.raises(WorkflowError, match="No active run"):
            orchestrator.approve("missing-session")

    def test_no_gates_when_approval_disabled(self, fake_invoker, factory_config):
        run = make_orchestrator(fake_invoker, factory_config).run_workflow("design-build", "Add login")

        assert "approval-requested" not in kinds(run.drain())
        assert run.status == WorkflowStatus.COMPLETED

    def test_at_end_mode_gates_last_phase_only(self, fake_invoker, factory_config):
        config = replace(factory_config, approval_mode="at-end")
        orchestrator = make_orchestrator(fake_invoker, config)

        run = orchestrator.run_workflow("three-step", "Add login")
        events = run.drain()

        assert kinds(events) == ["workflow-started"] + PHASE_EVENTS * 3 + ["approval-requested"]
        assert events[-1].phase == "Verify"

        orchestrator.approve(run.session_id)
        assert kinds(run.drain()) == ["approval-received", "workflow-completed"]

    def test_reject_rolls_back_phase_checkpoint(self, fake_invoker, config):
        config = replace(config, checkpoints=CheckpointConfig(enabled=True))
        checkpoints = mock_checkpoints(lambda sid: [checkpoint_tag_name(sid, 0, "Design")])
        orchestrator = make_orchestrator(fake_invoker, config, checkpoints=checkpoints)
        run = orchestrator.run_workflow("design-build", "Add login")
        run.drain()

        orchestrator.reject(run.session_id, "Too complex")
        events = run.drain()

        tag = checkpoint_tag_name(run.session_id, 0, "Design")
        checkpoints.rollback_to_checkpoint.assert_called_once_with(tag)
        assert kinds(events) == ["approval-received", "workflow-error"]
        assert events[0].payload["approved"] is False
        error = events[1]
        assert error.recoverable is False
        assert error.category == "rejected"
        assert "Phase 'Design' rejected: Too complex." in error.error
        assert f"Rolled back to checkpoint {tag}" in error.error
        assert run.status == WorkflowStatus.FAILED
        assert fake_invoker.called_agents() == ["architect"]

    def test_reject_reports_failed_rollback(self, fake_invoker, config):
        config = replace(config, checkpoints=CheckpointConfig(enabled=True))
        checkpoints = mock_checkpoints(lambda sid: [checkpoint_tag_name(sid, 0, "Design")])
        checkpoints.rollback_to_checkpoint.return_value = CheckpointResult(success=False, error="index locked")
        orchestrator = make_orchestrator(fake_invoker, config, checkpoints=checkpoints)
        run = orchestrator.run_workflow("design-build", "Add login")
        run.drain()

        orchestrator.reject(run.session_id, "Too complex")
        error = run.drain()[-1]

        assert error.category == "rollback"
        assert "index locked" in error.error
        assert "Manual repair required" in error.error

    def test_reject_without_checkpoint(self, fake_invoker, config):
        orchestrator = make_orchestrator(fake_invoker, config)
        run = orchestrator.run_workflow("design-build", "Add login")
        run.drain()

        orchestrator.reject(run.session_id, "Wrong approach")
        error = run.drain()[-1]

        assert error.category == "rejected"
        assert "No checkpoint available" in error.error

    def test_reject_at_end_restores_earliest_checkpoint(self, fake_invoker, factory_config):
        config = replace(
            factory_config,
            approval_mode="at-end",
            checkpoints=CheckpointConfig(enabled=True),
        )
        checkpoints = mock_checkpoints(lambda sid: [
            checkpoint_tag_name(sid, i, name) for i, name in enumerate(["Design", "Build", "Verify"])
        ])
        orchestrator = make_orchestrator(fake_invoker, config, checkpoints=checkpoints)
        run = orchestrator.run_workflow("three-step", "Add login")
        run.drain()

        orchestrator.reject(run.session_id, "Start over")
        run.drain()

        checkpoints.rollback_to_checkpoint.assert_called_once_with(
            checkpoint_tag_name(run.session_id, 0, "Design")
        )


# =============================================================================
# Cancellation
# =============================================================================


class TestCancel:
    """Tests for cancellation."""

    def test_cancel_at_gate(self, fake_invoker, factory_config):
        config = replace(factory_config, approval_mode="after-each-phase")
        orchestrator = make_orchestrator(fake_invoker, config)
        run = orchestrator.run_workflow("design-build", "Add login")
        run.drain()

        orchestrator.cancel(run.session_id)

        assert run.status == WorkflowStatus.CANCELLED
        assert run.next_event() is None
        assert orchestrator.session_store.load(run.session_id).state.status == WorkflowStatus.CANCELLED
        with pytest.raises(WorkflowStateError):
            orchestrator.cancel(run.session_id)
        with pytest.raises(WorkflowStateError):
            orchestrator.approve(run.session_id)

    def test_cancel_during_phase_discards_result(self, fake_invoker, factory_config):
        orchestrator = make_orchestrator(fake_invoker, factory_config)
        holder = {}

        def cancel_midway(request):
            orchestrator.cancel(holder["run"].session_id)
            return PhaseResult("dev", True, cost_usd=0.2, turns_used=1)

        fake_invoker.handlers["dev"] = cancel_midway
        run = orchestrator.run_workflow("three-step", "Add login")
        holder["run"] = run

        events = run.drain()

        assert kinds(events) == ["workflow-started"] + PHASE_EVENTS + ["phase-started"]
        assert run.status == WorkflowStatus.CANCELLED
        assert "dev" not in run.state.phase_results
        assert run.state.total_cost_usd == pytest.approx(0.3)
        assert fake_invoker.called_agents() == ["architect", "dev"]

    def test_progress_callback_stops_agent_after_cancel(self, fake_invoker, factory_config):
        orchestrator = make_orchestrator(fake_invoker, factory_config)
        holder = {"answers": []}

        def cooperative(request):
            orchestrator.cancel(holder["run"].session_id)
            holder["answers"].append(request.report_progress(0.05, 1))
            return PhaseResult("architect", True, cost_usd=0.05, turns_used=1)

        fake_invoker.handlers["architect"] = cooperative
        run = orchestrator.run_workflow("three-step", "Add login")
        holder["run"] = run
        run.drain()

        assert holder["answers"] == [False]
        assert run.status == WorkflowStatus.CANCELLED


# =============================================================================
# Failures and retry
# =============================================================================


class TestFailures:
    """Tests for hook, agent and budget failures."""

    def test_pre_hook_failure_blocks_phase(self, fake_invoker, factory_config):
        gate = GateHook(passed=False, error="nope")
        orchestrator = make_orchestrator(fake_invoker, factory_config, hooks=HookRegistry([gate]))

        run = orchestrator.run_workflow("guarded", "Add login")
        events = run.drain()

        assert kinds(events) == (
            ["workflow-started"] + PHASE_EVENTS + ["phase-started", "pre-phase-hook", "workflow-error"]
        )
        hook_event, error = events[-2], events[-1]
        assert hook_event.payload == {"hook": "gate", "passed": False, "data": {"checked": True}}
        assert error.error == "Pre-phase hook 'gate' failed: nope"
        assert error.category == "hook-rejection"
        assert error.recoverable is True
        assert run.status == WorkflowStatus.FAILED
        assert fake_invoker.called_agents() == ["architect"]
        assert "architect" in gate.contexts[0].previous_phase_results

    def test_passing_pre_hook_is_reported(self, fake_invoker, factory_config):
        run = make_orchestrator(fake_invoker, factory_config).run_workflow("guarded", "Add login")

        events = run.drain()

        assert "pre-phase-hook" in kinds(events)
        assert run.status == WorkflowStatus.COMPLETED

    def test_post_hook_failure(self, fake_invoker, factory_config):
        hooks = HookRegistry([GateHook(passed=False, error="lint failed")])
        run = make_orchestrator(fake_invoker, factory_config, hooks=hooks).run_workflow("post-checked", "Tidy")

        events = run.drain()

        assert "phase-completed" not in kinds(events)
        assert events[-1].error == "Post-phase hook 'gate' failed: lint failed"
        assert run.status == WorkflowStatus.FAILED

    def test_agent_exception_becomes_error_event(self, fake_invoker, factory_config):
        def broken(request):
            raise RuntimeError("socket closed")

        fake_invoker.handlers["dev"] = broken
        run = make_orchestrator(fake_invoker, factory_config).run_workflow("three-step", "Add login")

        error = run.drain()[-1]

        assert error.kind == "workflow-error"
        assert error.error == "Agent dev raised RuntimeError: socket closed"
        assert error.category == "agent-failure"
        assert error.recoverable is True
        assert run.status == WorkflowStatus.FAILED
        assert run.state.error == error.error

    def test_non_recoverable_invocation_error(self, fake_invoker, factory_config):
        def out_of_quota(request):
            raise AgentInvocationError("quota exhausted", agent_id="dev", recoverable=False)

        fake_invoker.handlers["dev"] = out_of_quota
        run = make_orchestrator(fake_invoker, factory_config).run_workflow(
            "three-step", "Add login", RunOptions(allow_retry=True)
        )

        error = run.drain()[-1]

        assert error.recoverable is False
        assert error.payload == {"awaiting_retry": False}
        assert run.status == WorkflowStatus.FAILED

    def test_unsuccessful_result_is_recorded(self, fake_invoker, factory_config):
        fake_invoker.handlers["dev"] = lambda request: PhaseResult(
            "dev", False, error="compile error", cost_usd=0.2, turns_used=4
        )
        run = make_orchestrator(fake_invoker, factory_config).run_workflow("three-step", "Add login")

        error = run.drain()[-1]

        assert error.error == "compile error"
        assert run.state.phase_results["dev"].success is False
        assert run.state.total_cost_usd == pytest.approx(0.3)

    def test_budget_exhausted_before_phase(self, invoker_class, factory_config):
        invoker = invoker_class(cost_usd=0.15)
        config = replace(factory_config, budget=BudgetConfig(max_budget_usd=0.25))
        run = make_orchestrator(invoker, config).run_workflow(
            "three-step", "Add login", RunOptions(allow_retry=True)
        )

        error = run.drain()[-1]

        assert error.category == "budget-exhausted"
        assert error.recoverable is False
        assert error.error == "Budget exceeded: $0.30 of $0.25"
        assert invoker.called_agents() == ["architect", "dev"]
        assert run.status == WorkflowStatus.FAILED

    def test_set_and_path_output_is_saved_as_plain_values(self, fake_invoker, factory_config):
        fake_invoker.handlers["architect"] = lambda request: PhaseResult(
            "architect", True, output={"paths": {Path("b.py"), Path("a.py")}}
        )
        orchestrator = make_orchestrator(fake_invoker, factory_config)
        run = orchestrator.run_workflow("three-step", "Add login")

        run.drain()

        assert run.status == WorkflowStatus.COMPLETED
        saved = orchestrator.session_store.load(run.session_id)
        assert saved.state.phase_results["architect"].output == {"paths": ["a.py", "b.py"]}

    def test_unsaveable_output_becomes_error_event(self, fake_invoker, factory_config):
        fake_invoker.handlers["dev"] = lambda request: PhaseResult(
            "dev", True, output={"handle": object()}
        )
        run = make_orchestrator(fake_invoker, factory_config).run_workflow("three-step", "Add login")

        events = run.drain()

        error = events[-1]
        assert error.kind == "workflow-error"
        assert error.category == "persistence"
        assert error.recoverable is False
        assert "not serializable" in error.error
        assert "phase-completed" not in kinds(events[-3:])
        assert run.status == WorkflowStatus.FAILED
        assert run.next_event() is None
        assert fake_invoker.called_agents() == ["architect", "dev"]

    def test_unexpected_error_inside_phase_becomes_error_event(self, fake_invoker, factory_config):
        fake_invoker.handlers["dev"] = lambda request: "not a phase result"
        run = make_orchestrator(fake_invoker, factory_config).run_workflow("three-step", "Add login")

        error = run.drain()[-1]

        assert error.kind == "workflow-error"
        assert error.category == "internal"
        assert error.phase == "Build"
        assert error.recoverable is False
        assert run.status == WorkflowStatus.FAILED
        assert run.next_event() is None


class TestPhaseValidation:
    """Tests for per-phase acceptance checks."""

    def test_rejected_result_fails_phase(self, fake_invoker, factory_config):
        gate = GateHook()
        orchestrator = make_orchestrator(fake_invoker, factory_config, hooks=HookRegistry([gate]))
        run = orchestrator.run_workflow("validated", "Add login")

        events = run.drain()

        error = events[-1]
        assert kinds(events[-3:]) == ["phase-started", "cost-update", "workflow-error"]
        assert error.error == "Phase validation failed for 'Build': build is not green"
        assert error.category == "agent-failure"
        assert error.recoverable is True
        assert run.status == WorkflowStatus.FAILED
        assert gate.contexts == []

    def test_accepted_result_completes(self, fake_invoker, factory_config):
        fake_invoker.handlers["dev"] = lambda request: PhaseResult("dev", True, output={"green": True})
        run = make_orchestrator(fake_invoker, factory_config).run_workflow("validated", "Add login")

        run.drain()

        assert run.status == WorkflowStatus.COMPLETED

    def test_raising_check_fails_phase(self, fake_invoker, factory_config):
        fake_invoker.handlers["dev"] = lambda request: PhaseResult("dev", True, output=None)
        run = make_orchestrator(fake_invoker, factory_config).run_workflow("validated", "Add login")

        error = run.drain()[-1]

        assert error.error.startswith("Phase validation failed for 'Build': AttributeError")
        assert run.status == WorkflowStatus.FAILED

    def test_rejected_result_can_be_retried(self, fake_invoker, factory_config):
        outputs = [{"green": False}, {"green": True}]
        fake_invoker.handlers["dev"] = lambda request: PhaseResult("dev", True, output=outputs.pop(0))
        orchestrator = make_orchestrator(fake_invoker, factory_config)
        run = orchestrator.run_workflow("validated", "Add login", RunOptions(allow_retry=True))

        assert run.drain()[-1].payload == {"awaiting_retry": True}

        orchestrator.retry(run.session_id)
        run.drain()

        assert run.status == WorkflowStatus.COMPLETED
        assert fake_invoker.called_agents() == ["architect", "dev", "dev"]


class TestRetry:
    """Tests for holding a run after a recoverable error."""

    def test_retry_reruns_failed_phase(self, fake_invoker, factory_config):
        attempts = []

        def flaky(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise AgentInvocationError("timeout", agent_id="dev")
            return PhaseResult("dev", True, cost_usd=0.1, turns_used=1)

        fake_invoker.handlers["dev"] = flaky
        orchestrator = make_orchestrator(fake_invoker, factory_config)
        run = orchestrator.run_workflow("three-step", "Add login", RunOptions(allow_retry=True))

        error = run.drain()[-1]
        assert error.recoverable is True
        assert error.payload == {"awaiting_retry": True}
        assert run.awaiting_retry
        assert run.status == WorkflowStatus.RUNNING

        orchestrator.retry(run.session_id)
        events = run.drain()

        assert kinds(events) == PHASE_EVENTS * 2 + ["workflow-completed"]
        assert len(attempts) == 2
        assert run.state.error is None
        assert run.status == WorkflowStatus.COMPLETED

    def test_retry_requires_held_run(self, fake_invoker, factory_config):
        orchestrator = make_orchestrator(fake_invoker, factory_config)
        run = orchestrator.run_workflow("three-step", "Add login")
        run.drain()

        with pytest.raises(WorkflowStateError, match="not awaiting a retry"):
            orchestrator.retry(run.session_id)

    def test_retry_after_agent_failure_rolls_back(self, fake_invoker, factory_config):
        config = replace(factory_config, checkpoints=CheckpointConfig(enabled=True))
        checkpoints = mock_checkpoints(lambda sid: [checkpoint_tag_name(sid, 1, "Build")])
        attempts = []

        def flaky(request):
            attempts.append(request)
            if len(attempts) == 1:
                return PhaseResult("dev", False, error="tests still red")
            return PhaseResult("dev", True)

        fake_invoker.handlers["dev"] = flaky
        orchestrator = make_orchestrator(fake_invoker, config, checkpoints=checkpoints)
        run = orchestrator.run_workflow("three-step", "Add login", RunOptions(allow_retry=True))
        run.drain()

        orchestrator.retry(run.session_id)
        run.drain()

        checkpoints.rollback_to_checkpoint.assert_called_once_with(
            checkpoint_tag_name(run.session_id, 1, "Build")
        )
        assert run.status == WorkflowStatus.COMPLETED

    def test_failed_rollback_aborts_retry(self, fake_invoker, factory_config):
        config = replace(factory_config, checkpoints=CheckpointConfig(enabled=True))
        checkpoints = mock_checkpoints(lambda sid: [checkpoint_tag_name(sid, 1, "Build")])
        checkpoints.rollback_to_checkpoint.return_value = CheckpointResult(success=False, error="locked")
        fake_invoker.handlers["dev"] = lambda request: PhaseResult("dev", False, error="red")
        orchestrator = make_orchestrator(fake_invoker, config, checkpoints=checkpoints)
        run = orchestrator.run_workflow("three-step", "Add login", RunOptions(allow_retry=True))
        run.drain()

        orchestrator.retry(run.session_id)
        error = run.drain()[-1]

        assert error.category == "rollback"
        assert error.recoverable is False
        assert run.status == WorkflowStatus.FAILED


# =============================================================================
# Cost reporting and the governor mid-phase
# =============================================================================


class TestCostReporting:
    """Tests for cost-update events and progress callbacks."""

    def test_cost_updates_never_decrease(self, fake_invoker, factory_config):
        def reporting(request):
            request.report_progress(0.3, 1)
            request.report_progress(0.2, 2)
            request.report_progress(0.5, 3)
            return PhaseResult("architect", True, cost_usd=0.4, turns_used=3)

        fake_invoker.handlers["architect"] = reporting
        run = make_orchestrator(fake_invoker, factory_config).run_workflow("three-step", "Add login")

        costs = [e.current_cost_usd for e in run.drain() if e.kind == "cost-update"]

        assert costs[:4] == pytest.approx([0.3, 0.3, 0.5, 0.5])
        assert costs == sorted(costs)
        assert run.state.phase_results["architect"].cost_usd == pytest.approx(0.5)

    def test_budget_breach_mid_phase_aborts(self, fake_invoker, factory_config):
        config = replace(factory_config, budget=BudgetConfig(max_budget_usd=1.0))
        answers = []

        def expensive(request):
            answers.append(request.report_progress(1.5, 2))
            return PhaseResult("architect", True, cost_usd=1.5, turns_used=2)

        fake_invoker.handlers["architect"] = expensive
        run = make_orchestrator(fake_invoker, config).run_workflow("three-step", "Add login")

        error = run.drain()[-1]

        assert answers == [False]
        assert error.category == "budget-exhausted"
        assert error.recoverable is False
        assert error.error.startswith("Budget exhausted during phase 'Design'")
        assert fake_invoker.called_agents() == ["architect"]

    def test_turn_limit_mid_phase_aborts(self, fake_invoker, factory_config):
        config = replace(factory_config, budget=BudgetConfig(max_turns_per_agent=5))

        def chatty(request):
            assert request.turns_remaining == 5
            request.report_progress(0.01, 5)
            return PhaseResult("architect", True, cost_usd=0.01, turns_used=5)

        fake_invoker.handlers["architect"] = chatty
        run = make_orchestrator(fake_invoker, config).run_workflow("three-step", "Add login")

        error = run.drain()[-1]

        assert error.error.startswith("Turn limit reached during phase 'Design'")


# =============================================================================
# Checkpoints
# =============================================================================


class TestCheckpointIntegration:
    """Tests for checkpoint creation around phases."""

    def test_checkpoint_before_each_phase(self, fake_invoker, factory_config):
        config = replace(
            factory_config,
            checkpoints=CheckpointConfig(enabled=True, cleanup_on_complete=True),
        )
        checkpoints = mock_checkpoints()
        orchestrator = make_orchestrator(fake_invoker, config, checkpoints=checkpoints)

        run = orchestrator.run_workflow("three-step", "Add login")
        run.drain()

        sid = run.session_id
        assert checkpoints.create_checkpoint.call_args_list == [
            call(sid, "Design", 0),
            call(sid, "Build", 1),
            call(sid, "Verify", 2),
        ]
        checkpoints.cleanup_checkpoints.assert_called_once_with(sid)

    def test_skipped_checkpoint_is_only_a_warning(self, fake_invoker, factory_config):
        config = replace(factory_config, checkpoints=CheckpointConfig(enabled=True))
        checkpoints = mock_checkpoints()
        checkpoints.create_checkpoint.return_value = CheckpointResult(
            success=False, skipped=True, error="Not a git repository"
        )

        run = make_orchestrator(fake_invoker, config, checkpoints=checkpoints).run_workflow(
            "three-step", "Add login"
        )
        run.drain()

        assert run.status == WorkflowStatus.COMPLETED

    def test_required_checkpoint_failure_fails_phase(self, fake_invoker, factory_config):
        config = replace(
            factory_config,
            checkpoints=CheckpointConfig(enabled=True, require_version_control=True),
        )
        checkpoints = mock_checkpoints()
        checkpoints.create_checkpoint.return_value = CheckpointResult(
            success=False, skipped=True, error="Not a git repository"
        )

        run = make_orchestrator(fake_invoker, config, checkpoints=checkpoints).run_workflow(
            "three-step", "Add login"
        )
        error = run.drain()[-1]

        assert error.category == "checkpoint"
        assert error.recoverable is True
        assert fake_invoker.requests == []


# =============================================================================
# Resume and discard
# =============================================================================


class TestResume:
    """Tests for rebuilding runs from persisted sessions."""

    def test_resume_at_gate_in_new_process(self, fake_invoker, factory_config):
        config = replace(factory_config, approval_mode="after-each-phase")
        first = make_orchestrator(fake_invoker, config)
        session_id = first.run_workflow("design-build", "Add login").drain()[0].session_id

        second = make_orchestrator(fake_invoker, config)
        run = second.resume(session_id)

        assert kinds(run.drain()) == ["workflow-resumed"]
        assert run.awaiting_approval

        second.approve(session_id)
        assert kinds(run.drain()) == ["approval-received"] + PHASE_EVENTS + ["workflow-completed"]
        assert fake_invoker.requests[-1].phase_input.previous_outputs == {
            "architect": {"summary": "architect done"}
        }

    def test_resume_running_session_reruns_current_phase(self, fake_invoker, factory_config):
        orchestrator = make_orchestrator(fake_invoker, factory_config)
        state = WorkflowState(
            session_id="20250101000000-deadbeef",
            workflow_name="three-step",
            task_description="Add login",
            current_phase_index=1,
        )
        state.record_result(PhaseResult("architect", True, output={"design": "x"}, cost_usd=0.1))
        orchestrator.session_store.save(state)

        run = orchestrator.resume(state.session_id)
        events = run.drain()

        assert kinds(events) == ["workflow-resumed"] + PHASE_EVENTS * 2 + ["workflow-completed"]
        assert fake_invoker.called_agents() == ["dev", "qa"]
        assert run.state.total_cost_usd == pytest.approx(0.3)

    def test_resume_with_retry_option_holds_on_failure(self, fake_invoker, factory_config):
        orchestrator = make_orchestrator(fake_invoker, factory_config)
        state = WorkflowState(
            session_id="20250101000000-feedface",
            workflow_name="three-step",
            task_description="Add login",
            current_phase_index=1,
        )
        orchestrator.session_store.save(state)
        fake_invoker.handlers["dev"] = lambda request: PhaseResult("dev", False, error="red")

        run = orchestrator.resume(state.session_id, RunOptions(allow_retry=True))
        error = run.drain()[-1]

        assert error.payload == {"awaiting_retry": True}
        assert run.awaiting_retry
        assert run.status == WorkflowStatus.RUNNING

    def test_resume_returns_active_run(self, fake_invoker, factory_config):
        config = replace(factory_config, approval_mode="after-each-phase")
        orchestrator = make_orchestrator(fake_invoker, config)
        run = orchestrator.run_workflow("design-build", "Add login")
        run.drain()

        assert orchestrator.resume(run.session_id) is run

    def test_resume_finished_session(self, fake_invoker, factory_config):
        run = make_orchestrator(fake_invoker, factory_config).run_workflow("three-step", "Add login")
        run.drain()

        with pytest.raises(WorkflowStateError, match="cannot be resumed"):
            make_orchestrator(fake_invoker, factory_config).resume(run.session_id)

    def test_resume_unknown_session(self, fake_invoker, factory_config):
        with pytest.raises(WorkflowError, match="Unknown session"):
            make_orchestrator(fake_invoker, factory_config).resume("20250101000000-00000000")


class TestDiscard:
    """Tests for Orchestrator.discard."""

    def test_discard_removes_session_and_tags(self, fake_invoker, factory_config):
        config = replace(factory_config, approval_mode="after-each-phase")
        checkpoints = mock_checkpoints()
        orchestrator = make_orchestrator(fake_invoker, config, checkpoints=checkpoints)
        run = orchestrator.run_workflow("design-build", "Add login")
        run.drain()

        assert orchestrator.discard(run.session_id) is True

        checkpoints.cleanup_checkpoints.assert_called_once_with(run.session_id)
        assert orchestrator.session_store.load(run.session_id) is None
        assert orchestrator.get_run(run.session_id) is None
        assert run.next_event() is None
        assert orchestrator.discard(run.session_id) is False
