"""
Workflow Orchestrator for Feature Factory.

This module drives a workflow run phase by phase:
1. Configuration checks (unknown workflow, unsupported agent, unknown hook)
   raise before any event is produced.
2. For each phase:
   - pre-phase hooks
   - budget and turn governor check
   - git checkpoint of the working tree
   - agent invocation with the task, prior outputs and compacted context
   - cost accounting, post-phase hooks, persistence
   - optional approval gate
3. Human decisions (approve, reject, cancel, retry) resume a suspended run.

A run is consumed as a stream of WorkflowEvents. Inside a run every failure
becomes a ``workflow-error`` event; nothing raises across a phase boundary.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Callable, Iterator, Optional, Union

from feature_factory.agents import AgentInvoker, AgentRequest, PhaseInput
from feature_factory.budget import check_budget
from feature_factory.checkpoints import CheckpointManager, checkpoint_tag_name
from feature_factory.config import FactoryConfig
from feature_factory.context_manager import ConversationHistory, Message
from feature_factory.errors import (
    AgentInvocationError,
    ErrorCategory,
    SessionStoreError,
    WorkflowError,
    WorkflowStateError,
)
from feature_factory.events import EventType, WorkflowEvent
from feature_factory.hooks import HookContext, HookRegistry, default_hook_registry
from feature_factory.logger import FactoryLogger, LogLevel
from feature_factory.models import (
    PhaseResult,
    PhaseSpec,
    WorkflowDefinition,
    WorkflowState,
    WorkflowStatus,
    WorkItem,
)
from feature_factory.session_store import SessionStore, generate_session_id
from feature_factory.workflows import BUILTIN_WORKFLOWS, get_workflow

if TYPE_CHECKING:
    from feature_factory.models import HookResult


@dataclass
class RunOptions:
    """Per-run behavior switches."""
    allow_retry: bool = False      # Hold on recoverable errors instead of failing


class WorkflowRun:
    """
    One workflow run, consumed as a stream of events.

    The run is an explicit state machine: ``next_event()`` performs the next
    pending step (a phase, completion, or the work queued by a human
    decision) until it has an event to return, and returns None while the
    run is suspended (awaiting approval or a retry) or finished. Iterating
    the run drains events up to the next suspension point.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        workflow: WorkflowDefinition,
        state: WorkflowState,
        options: RunOptions,
    ) -> None:
        self._orchestrator = orchestrator
        self.workflow = workflow
        self.state = state
        self.options = options

        self._events: deque[WorkflowEvent] = deque()
        self._action: Optional[Callable[[], None]] = None
        self._executing = False
        self._cancel_requested = False
        self._retry: Optional[tuple[int, bool]] = None   # (phase index, roll back first)
        self._pending_feedback: Optional[str] = None
        self._discarded = False                          # Session file deleted; never persist again
        self._last_reported_cost = state.total_cost_usd
        self.history = ConversationHistory([Message(role="user", content=state.task_description)])

    # -------------------------------------------------------------------------
    # Event stream
    # -------------------------------------------------------------------------

    def next_event(self) -> Optional[WorkflowEvent]:
        """Return the next event, or None while suspended or once finished."""
        while not self._events:
            if self._cancel_requested and not self.state.status.is_terminal:
                self._orchestrator._apply_cancel(self)
            if self._action is None:
                return None
            action, self._action = self._action, None
            self._executing = True
            try:
                action()
            except Exception as e:
                self._orchestrator._abort(self, e)
            finally:
                self._executing = False
        return self._events.popleft()

    def __iter__(self) -> Iterator[WorkflowEvent]:
        return self

    def __next__(self) -> WorkflowEvent:
        event = self.next_event()
        if event is None:
            raise StopIteration
        return event

    def drain(self) -> list[WorkflowEvent]:
        """Collect every event up to the next suspension point."""
        return list(self)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self.state.session_id

    @property
    def status(self) -> WorkflowStatus:
        return self.state.status

    @property
    def is_finished(self) -> bool:
        """Whether the run reached a terminal status."""
        return self.state.status.is_terminal

    @property
    def awaiting_approval(self) -> bool:
        return self.state.status == WorkflowStatus.AWAITING_APPROVAL

    @property
    def awaiting_retry(self) -> bool:
        """Whether the run is held after a recoverable error."""
        return self._retry is not None and not self.is_finished

    @property
    def is_suspended(self) -> bool:
        """Whether the run needs a human decision before it can continue."""
        return not self.is_finished and (self.awaiting_approval or self.awaiting_retry)

    # -------------------------------------------------------------------------
    # Internal hooks for the orchestrator
    # -------------------------------------------------------------------------

    def _enqueue(self, event: WorkflowEvent) -> None:
        self._events.append(event)

    def _schedule(self, action: Optional[Callable[[], None]]) -> None:
        self._action = action


class Orchestrator:
    """
    Runs workflows against an agent collaborator.

    Collaborators are injected: the agent invoker, the hook registry, the
    session store and the checkpoint manager. Missing ones are built from
    the configuration.
    """

    def __init__(
        self,
        invoker: AgentInvoker,
        config: FactoryConfig,
        hooks: Optional[HookRegistry] = None,
        workflows: Optional[dict[str, WorkflowDefinition]] = None,
        session_store: Optional[SessionStore] = None,
        checkpoints: Optional[CheckpointManager] = None,
        logger: Optional[FactoryLogger] = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            invoker: Agent collaborator executing phases.
            config: Validated FactoryConfig.
            hooks: Hook registry. Defaults to default_hook_registry(config).
            workflows: Workflow definitions by name. Defaults to the built-ins.
            session_store: Session persistence. Defaults to a store rooted at
                the working directory.
            checkpoints: Checkpoint manager. Defaults to one for the working
                directory.
            logger: JSONL logger. Defaults to an "orchestrator" stream.
        """
        self.invoker = invoker
        self.config = config
        self._logger = logger or FactoryLogger("orchestrator", config)
        self.hooks = hooks if hooks is not None else default_hook_registry(config)
        self.workflows = dict(BUILTIN_WORKFLOWS if workflows is None else workflows)
        self.session_store = session_store or SessionStore(
            config.working_directory, config.state_dir, logger=self._logger
        )
        self.checkpoints = checkpoints or CheckpointManager(
            config.working_directory, logger=self._logger
        )
        self._runs: dict[str, WorkflowRun] = {}

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = LogLevel.INFO,
        session_id: Optional[str] = None,
        phase_index: Optional[int] = None,
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(
                event_type, data, level=level,
                session_id=session_id, phase_index=phase_index,
            )

    # =========================================================================
    # Caller API
    # =========================================================================

    def run_workflow(
        self,
        workflow_name: str,
        task: Union[str, WorkItem],
        options: Optional[RunOptions] = None,
    ) -> WorkflowRun:
        """
        Start a workflow run.

        Args:
            workflow_name: Name of a registered workflow.
            task: Task description, or a WorkItem rendered into one.
            options: Run options.

        Returns:
            The WorkflowRun; iterate it to drive the workflow.

        Raises:
            WorkflowError: If the workflow is unknown, the task is empty, or
                a phase names an unsupported agent or unregistered hook.
        """
        workflow = get_workflow(workflow_name, self.workflows)
        self.validate_workflow(workflow)

        description = task.to_task_description() if isinstance(task, WorkItem) else task
        if not description or not description.strip():
            raise WorkflowError("Task description must not be empty")

        state = WorkflowState(
            session_id=generate_session_id(),
            workflow_name=workflow.name,
            task_description=description,
        )
        run = WorkflowRun(self, workflow, state, options or RunOptions())
        self._runs[state.session_id] = run

        self._persist(run)
        self._emit(
            run,
            EventType.WORKFLOW_STARTED,
            total_phases=len(workflow.phases),
            payload={"workflow": workflow.name, "description": description},
        )
        run._schedule(lambda: self._execute_phase(run, 0))
        return run

    def validate_workflow(self, workflow: WorkflowDefinition) -> None:
        """
        Check that every agent and hook a workflow names is available.

        Raises:
            WorkflowError: On the first unresolved agent id or hook id.
        """
        for phase in workflow.phases:
            if not self.invoker.supports(phase.agent_id):
                raise WorkflowError(
                    f"Workflow '{workflow.name}' phase '{phase.display_name}' "
                    f"uses unsupported agent: {phase.agent_id}"
                )
            for hook_id in (*phase.pre_phase_hook_ids, *phase.post_phase_hook_ids):
                if not self.hooks.has_hook(hook_id):
                    raise WorkflowError(
                        f"Workflow '{workflow.name}' phase '{phase.display_name}' "
                        f"uses unknown hook: {hook_id}"
                    )

    def get_run(self, session_id: str) -> Optional[WorkflowRun]:
        """Active (in-memory) run for a session, if any."""
        return self._runs.get(session_id)

    def approve(self, session_id: str, feedback: Optional[str] = None) -> WorkflowRun:
        """
        Approve the phase a run is waiting on and continue.

        Feedback, when given, is passed to the next phase's input.

        Raises:
            WorkflowError: If the session has no active run.
            WorkflowStateError: If the run is not awaiting approval.
        """
        run = self._require_run(session_id)
        if not run.awaiting_approval:
            raise WorkflowStateError(f"Session {session_id} is not awaiting approval")

        index = run.state.current_phase_index
        phase = run.workflow.phases[index]
        run.state.transition_to(WorkflowStatus.RUNNING)
        run._pending_feedback = feedback
        self._persist(run)
        self._emit(
            run,
            EventType.APPROVAL_RECEIVED,
            phase=phase.display_name,
            agent_id=phase.agent_id,
            phase_index=index,
            payload={"approved": True, "feedback": feedback},
        )
        run._schedule(self._next_step(run, index + 1))
        return run

    def reject(self, session_id: str, reason: str) -> WorkflowRun:
        """
        Reject the phase a run is waiting on.

        The working tree is rolled back to the phase's checkpoint (the
        earliest checkpoint of the session in ``at-end`` mode), the run
        fails, and the error event states the rollback outcome.

        Raises:
            WorkflowError: If the session has no active run.
            WorkflowStateError: If the run is not awaiting approval.
        """
        run = self._require_run(session_id)
        if not run.awaiting_approval:
            raise WorkflowStateError(f"Session {session_id} is not awaiting approval")

        index = run.state.current_phase_index
        phase = run.workflow.phases[index]

        if self.config.approval_mode == "at-end":
            rolled_back, outcome = self._rollback(run, earliest=True)
        else:
            rolled_back, outcome = self._rollback(run, index=index)

        message = f"Phase '{phase.display_name}' rejected: {reason}. {outcome}"
        run.state.transition_to(WorkflowStatus.FAILED, error=message)
        self._persist(run)

        self._emit(
            run,
            EventType.APPROVAL_RECEIVED,
            phase=phase.display_name,
            agent_id=phase.agent_id,
            phase_index=index,
            payload={"approved": False, "feedback": reason},
        )
        self._emit(
            run,
            EventType.WORKFLOW_ERROR,
            phase=phase.display_name,
            agent_id=phase.agent_id,
            phase_index=index,
            error=message,
            recoverable=False,
            category=(ErrorCategory.REJECTED if rolled_back else ErrorCategory.ROLLBACK).value,
            payload={"rolled_back": rolled_back},
        )
        run._schedule(None)
        return run

    def cancel(self, session_id: str) -> WorkflowRun:
        """
        Request cancellation of a run.

        Applied at the next phase boundary, or at once when the run is
        suspended. Results of an in-flight phase are discarded and no
        further events are produced.

        Raises:
            WorkflowError: If the session has no active run.
            WorkflowStateError: If the run already finished.
        """
        run = self._require_run(session_id)
        if run.is_finished:
            raise WorkflowStateError(
                f"Session {session_id} is already {run.status.value}"
            )
        run._cancel_requested = True
        if not run._executing:
            self._apply_cancel(run)
        return run

    def retry(self, session_id: str) -> WorkflowRun:
        """
        Re-run the phase a held run failed on.

        Only available for runs started with ``allow_retry=True`` that hit a
        recoverable error. Agent and post-hook failures roll back to the
        phase's checkpoint first.

        Raises:
            WorkflowError: If the session has no active run.
            WorkflowStateError: If the run is not held for a retry.
        """
        run = self._require_run(session_id)
        if not run.awaiting_retry:
            raise WorkflowStateError(f"Session {session_id} is not awaiting a retry")

        index, roll_back = run._retry
        run._retry = None

        if roll_back:
            rolled_back, outcome = self._rollback(run, index=index)
            if not rolled_back:
                self._fail(
                    run,
                    run.workflow.phases[index],
                    index,
                    f"Retry aborted: {outcome}",
                    ErrorCategory.ROLLBACK,
                    recoverable=False,
                )
                return run
            self._log("retry_rolled_back", {"outcome": outcome}, session_id=session_id)

        run.state.error = None
        self._persist(run)
        run._schedule(lambda: self._execute_phase(run, index))
        return run

    def resume(self, session_id: str, options: Optional[RunOptions] = None) -> WorkflowRun:
        """
        Rebuild a run from its persisted session.

        A session awaiting approval resumes suspended at its gate; a running
        session re-runs its current phase. Run options are not persisted, so
        the caller supplies them again.

        Raises:
            WorkflowError: If the session does not exist or its workflow is unknown.
            WorkflowStateError: If the session already finished.
        """
        existing = self._runs.get(session_id)
        if existing is not None and not existing.is_finished:
            return existing

        session = self.session_store.load(session_id)
        if session is None:
            raise WorkflowError(f"Unknown session: {session_id}")

        state = session.state
        if state.status.is_terminal:
            raise WorkflowStateError(
                f"Session {session_id} is {state.status.value} and cannot be resumed"
            )

        workflow = get_workflow(state.workflow_name, self.workflows)
        self.validate_workflow(workflow)

        run = WorkflowRun(self, workflow, state, options or RunOptions())
        self._runs[session_id] = run

        index = state.current_phase_index
        self._emit(
            run,
            EventType.WORKFLOW_RESUMED,
            phase_index=index,
            total_phases=len(workflow.phases),
            current_cost_usd=state.total_cost_usd,
            payload={"status": state.status.value},
        )

        if state.status == WorkflowStatus.RUNNING:
            state.error = None
            run._schedule(self._next_step(run, index))
        return run

    def discard(self, session_id: str) -> bool:
        """
        Delete a session and its checkpoint tags.

        An active run is cancelled first.

        Returns:
            True if a session file was deleted.
        """
        run = self._runs.pop(session_id, None)
        if run is not None:
            run._discarded = True
            if not run.is_finished:
                run._cancel_requested = True
                if not run._executing:
                    self._apply_cancel(run)

        deleted_tags = self.checkpoints.cleanup_checkpoints(session_id)
        deleted = self.session_store.delete(session_id)
        self._log("session_discarded", {
            "deleted_session": deleted,
            "deleted_tags": deleted_tags,
        }, session_id=session_id)
        return deleted

    # =========================================================================
    # Phase execution
    # =========================================================================

    def _next_step(self, run: WorkflowRun, index: int) -> Callable[[], None]:
        if index >= len(run.workflow.phases):
            return lambda: self._complete(run)
        return lambda: self._execute_phase(run, index)

    def _execute_phase(self, run: WorkflowRun, index: int) -> None:
        """Run one phase end to end and schedule whatever comes next."""
        state = run.state
        workflow = run.workflow
        phase = workflow.phases[index]

        state.set_phase_index(index, len(workflow.phases))
        save_error = self._persist(run)
        self._emit(
            run,
            EventType.PHASE_STARTED,
            phase=phase.display_name,
            agent_id=phase.agent_id,
            phase_index=index,
            total_phases=len(workflow.phases),
        )
        if save_error:
            self._fail(
                run, phase, index, save_error,
                ErrorCategory.PERSISTENCE,
                recoverable=False,
            )
            return

        # Pre-phase hooks
        for hook_id in phase.pre_phase_hook_ids:
            hook_result = self.hooks.execute_hook(hook_id, self._hook_context(run))
            self._emit(
                run,
                EventType.PRE_PHASE_HOOK,
                phase=phase.display_name,
                agent_id=phase.agent_id,
                phase_index=index,
                error=hook_result.error,
                payload=self._hook_payload(hook_id, hook_result),
            )
            if not hook_result.passed:
                self._fail(
                    run, phase, index,
                    f"Pre-phase hook '{hook_id}' failed: {hook_result.error}",
                    ErrorCategory.HOOK_REJECTION,
                    recoverable=True,
                    roll_back_on_retry=False,
                )
                return

        # Governor
        budget = check_budget(state, self.config.budget)
        if not budget.within_budget:
            self._fail(
                run, phase, index,
                f"Budget exceeded: ${state.total_cost_usd:.2f} of "
                f"${self.config.budget.max_budget_usd:.2f}",
                ErrorCategory.BUDGET_EXHAUSTED,
                recoverable=False,
            )
            return

        # Checkpoint
        if self.config.checkpoints.enabled:
            checkpoint = self.checkpoints.create_checkpoint(
                state.session_id, phase.display_name, index
            )
            if not checkpoint.success:
                self._log("checkpoint_warning", {
                    "phase": phase.display_name,
                    "skipped": checkpoint.skipped,
                    "error": checkpoint.error,
                }, level=LogLevel.WARN, session_id=state.session_id, phase_index=index)
                if self.config.checkpoints.require_version_control:
                    self._fail(
                        run, phase, index,
                        f"Checkpoint failed: {checkpoint.error}",
                        ErrorCategory.CHECKPOINT,
                        recoverable=True,
                        roll_back_on_retry=False,
                    )
                    return

        # Input and context
        phase_input = PhaseInput(
            task_description=state.task_description,
            previous_outputs={
                agent_id: result.output
                for agent_id, result in state.phase_results.items()
                if result.success
            },
            feedback=run._pending_feedback,
        )
        run._pending_feedback = None
        if index > 0 or phase_input.feedback:
            run.history.append(Message(role="user", content=self._render_input(phase, phase_input)))
            self._ensure_alternation(run)

        compaction = run.history.compact_if_needed(self.config.context)
        if compaction is not None and compaction.turn_pairs_removed:
            self._log("context_compacted", {
                "turn_pairs_removed": compaction.turn_pairs_removed,
            }, session_id=state.session_id, phase_index=index)

        # Agent invocation
        progress = {"cost": 0.0, "turns": 0, "abort": None}

        def report_progress(cost_usd: float, turns: int) -> bool:
            progress["cost"] = max(progress["cost"], cost_usd)
            progress["turns"] = max(progress["turns"], turns)
            if run._cancel_requested:
                return False
            self._report_cost(run, state.total_cost_usd + progress["cost"])
            status = check_budget(
                state, self.config.budget, progress["cost"], progress["turns"]
            )
            if not status.within_budget:
                progress["abort"] = status.reason
                return False
            return True

        request = AgentRequest(
            agent_id=phase.agent_id,
            phase_input=phase_input,
            working_directory=self.config.working_directory,
            budget_remaining_usd=budget.remaining_usd,
            turns_remaining=budget.remaining_turns,
            context_messages=list(run.history.messages),
            context_config=self.config.context,
            report_progress=report_progress,
        )

        result: Optional[PhaseResult] = None
        invoke_error: Optional[str] = None
        invoke_recoverable = True
        try:
            result = self.invoker.invoke(request)
        except AgentInvocationError as e:
            invoke_error = str(e)
            invoke_recoverable = e.recoverable
        except Exception as e:
            invoke_error = f"Agent {phase.agent_id} raised {type(e).__name__}: {e}"

        if result is not None:
            cost = max(result.cost_usd, progress["cost"])
            turns = max(result.turns_used, progress["turns"])
        else:
            cost, turns = progress["cost"], progress["turns"]

        if run._cancel_requested:
            state.add_usage(cost, turns)
            self._apply_cancel(run)
            return

        if result is not None:
            result = replace(result, agent_id=phase.agent_id, cost_usd=cost, turns_used=turns)
            state.record_result(result)
            run.history.append(Message(role="assistant", content=self._render_result(result)))
        else:
            state.add_usage(cost, turns)
        self._report_cost(run, state.total_cost_usd)

        if progress["abort"]:
            self._fail(
                run, phase, index,
                f"{progress['abort']} during phase '{phase.display_name}': "
                f"${state.total_cost_usd:.2f} of ${self.config.budget.max_budget_usd:.2f}, "
                f"{turns} of {self.config.budget.max_turns_per_agent} turns",
                ErrorCategory.BUDGET_EXHAUSTED,
                recoverable=False,
            )
            return

        if result is None or not result.success:
            error = invoke_error or (result.error if result else None) or "Agent failed"
            self._fail(
                run, phase, index, error,
                ErrorCategory.AGENT_FAILURE,
                recoverable=invoke_recoverable,
            )
            return

        # Phase validation
        if phase.validation is not None:
            validation_error = self._validate_result(phase, result)
            if validation_error:
                self._fail(
                    run, phase, index, validation_error,
                    ErrorCategory.AGENT_FAILURE,
                    recoverable=True,
                )
                return

        # Post-phase hooks
        for hook_id in phase.post_phase_hook_ids:
            hook_result = self.hooks.execute_hook(hook_id, self._hook_context(run))
            self._log("post_phase_hook", self._hook_payload(hook_id, hook_result),
                      session_id=state.session_id, phase_index=index)
            if not hook_result.passed:
                self._fail(
                    run, phase, index,
                    f"Post-phase hook '{hook_id}' failed: {hook_result.error}",
                    ErrorCategory.HOOK_REJECTION,
                    recoverable=True,
                )
                return

        save_error = self._persist(run)
        if save_error:
            self._fail(
                run, phase, index, save_error,
                ErrorCategory.PERSISTENCE,
                recoverable=False,
            )
            return

        self._emit(
            run,
            EventType.PHASE_COMPLETED,
            phase=phase.display_name,
            agent_id=phase.agent_id,
            phase_index=index,
            total_phases=len(workflow.phases),
            result=result.to_dict(),
        )

        # Approval gate
        if self._requires_approval(phase, index, len(workflow.phases)):
            state.transition_to(WorkflowStatus.AWAITING_APPROVAL)
            self._persist(run)
            self._emit(
                run,
                EventType.APPROVAL_REQUESTED,
                phase=phase.display_name,
                agent_id=phase.agent_id,
                phase_index=index,
                result=result.to_dict(),
                payload={"summary": self._phase_summary(phase, result)},
            )
            run._schedule(None)
            return

        run._schedule(self._next_step(run, index + 1))

    def _complete(self, run: WorkflowRun) -> None:
        state = run.state
        state.set_phase_index(len(run.workflow.phases), len(run.workflow.phases))
        state.transition_to(WorkflowStatus.COMPLETED)
        self._persist(run)
        self._emit(
            run,
            EventType.WORKFLOW_COMPLETED,
            current_cost_usd=state.total_cost_usd,
            total_phases=len(run.workflow.phases),
            payload={
                "total_turns": state.total_turns,
                "phases_completed": sorted(state.phase_results),
            },
        )
        if self.config.checkpoints.enabled and self.config.checkpoints.cleanup_on_complete:
            self.checkpoints.cleanup_checkpoints(state.session_id)

    def _requires_approval(self, phase: PhaseSpec, index: int, phase_count: int) -> bool:
        mode = self.config.approval_mode
        if mode == "after-each-phase":
            return phase.requires_approval
        if mode == "at-end":
            return index == phase_count - 1
        return False

    # =========================================================================
    # Failure, cancellation and rollback
    # =========================================================================

    def _fail(
        self,
        run: WorkflowRun,
        phase: PhaseSpec,
        index: int,
        message: str,
        category: ErrorCategory,
        recoverable: bool,
        roll_back_on_retry: bool = True,
    ) -> None:
        """
        Emit a workflow-error and either fail the run or hold it for retry.
        """
        state = run.state
        hold = recoverable and run.options.allow_retry
        if hold:
            state.error = message
            run._retry = (index, roll_back_on_retry)
        else:
            state.transition_to(WorkflowStatus.FAILED, error=message)
        self._persist(run)
        self._emit(
            run,
            EventType.WORKFLOW_ERROR,
            phase=phase.display_name,
            agent_id=phase.agent_id,
            phase_index=index,
            error=message,
            recoverable=recoverable,
            category=category.value,
            payload={"awaiting_retry": hold},
        )
        run._schedule(None)

    def _apply_cancel(self, run: WorkflowRun) -> None:
        """Move a run to cancelled without producing events."""
        run._schedule(None)
        run._retry = None
        if run.state.status.is_terminal:
            return
        run.state.transition_to(WorkflowStatus.CANCELLED)
        self._persist(run)
        self._log("workflow_cancelled", {
            "phase_index": run.state.current_phase_index,
        }, session_id=run.session_id)

    def _rollback(
        self,
        run: WorkflowRun,
        index: Optional[int] = None,
        earliest: bool = False,
    ) -> tuple[bool, str]:
        """
        Roll the working tree back to a checkpoint of the run.

        Returns:
            Tuple of (ok, outcome message). A run without a checkpoint is ok
            and leaves the working tree untouched.
        """
        session_id = run.session_id
        existing = set(self.checkpoints.list_checkpoints(session_id))
        candidates = [
            checkpoint_tag_name(session_id, i, phase.display_name)
            for i, phase in enumerate(run.workflow.phases)
            if earliest or i == index
        ]
        tag_name = next((tag for tag in candidates if tag in existing), None)
        if tag_name is None:
            return True, "No checkpoint available; working tree left unchanged."

        result = self.checkpoints.rollback_to_checkpoint(tag_name)
        if result.success:
            return True, f"Rolled back to checkpoint {tag_name}."
        return False, f"Rollback to {tag_name} failed: {result.error}. Manual repair required."

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_run(self, session_id: str) -> WorkflowRun:
        run = self._runs.get(session_id)
        if run is None:
            raise WorkflowError(f"No active run for session: {session_id}")
        return run

    def _emit(self, run: WorkflowRun, event_type: EventType, **fields: Any) -> None:
        event = WorkflowEvent(event_type=event_type, session_id=run.session_id, **fields)
        run._enqueue(event)
        level = LogLevel.ERROR if event_type == EventType.WORKFLOW_ERROR else LogLevel.INFO
        self._log(event_type.value, event.to_dict(), level=level, session_id=run.session_id)

    def _report_cost(self, run: WorkflowRun, current_cost: float) -> None:
        """Emit a cost-update that never goes below the last reported value."""
        value = max(run._last_reported_cost, current_cost)
        run._last_reported_cost = value
        self._emit(
            run,
            EventType.COST_UPDATE,
            current_cost_usd=value,
            budget_remaining_usd=max(0.0, self.config.budget.max_budget_usd - value),
        )

    def _persist(self, run: WorkflowRun) -> Optional[str]:
        """Save the run state; returns an error message if the save failed."""
        if run._discarded:
            return None
        try:
            self.session_store.save(run.state)
        except SessionStoreError as e:
            self._log("persist_failed", {"error": str(e)}, level=LogLevel.ERROR,
                      session_id=run.session_id)
            return str(e)
        return None

    def _abort(self, run: WorkflowRun, exc: Exception) -> None:
        """Turn an unexpected exception inside a step into a terminal workflow-error."""
        state = run.state
        message = f"Internal error: {type(exc).__name__}: {exc}"
        self._log("workflow_aborted", {"error": message}, level=LogLevel.ERROR,
                  session_id=run.session_id)
        run._schedule(None)
        run._retry = None
        if not state.status.is_terminal:
            state.transition_to(WorkflowStatus.FAILED, error=message)
            self._persist(run)

        index = state.current_phase_index
        phase = run.workflow.phases[index] if index < len(run.workflow.phases) else None
        self._emit(
            run,
            EventType.WORKFLOW_ERROR,
            phase=phase.display_name if phase else None,
            agent_id=phase.agent_id if phase else None,
            phase_index=index,
            error=message,
            recoverable=False,
            category=ErrorCategory.INTERNAL.value,
        )

    @staticmethod
    def _validate_result(phase: PhaseSpec, result: PhaseResult) -> Optional[str]:
        """Run a phase's acceptance check; returns the failure message, if any."""
        try:
            reason = phase.validation(result)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
        if not reason:
            return None
        return f"Phase validation failed for '{phase.display_name}': {reason}"

    def _hook_context(self, run: WorkflowRun) -> HookContext:
        return HookContext(
            working_directory=self.config.working_directory,
            previous_phase_results=dict(run.state.phase_results),
            workflow_state=run.state,
            verbose=self.config.verbose,
        )

    @staticmethod
    def _hook_payload(hook_id: str, result: HookResult) -> dict[str, Any]:
        payload: dict[str, Any] = {"hook": hook_id, "passed": result.passed}
        if result.warnings:
            payload["warnings"] = list(result.warnings)
        if result.data:
            payload["data"] = {k: v for k, v in result.data.items() if k != "raw_output"}
        return payload

    @staticmethod
    def _ensure_alternation(run: WorkflowRun) -> None:
        """Merge a trailing pair of same-role messages left by a failed phase."""
        messages = run.history.messages
        if len(messages) < 2 or messages[-1].role != messages[-2].role:
            return
        if isinstance(messages[-1].content, str) and isinstance(messages[-2].content, str):
            last = messages.pop()
            messages[-1] = Message(last.role, f"{messages[-1].content}\n\n{last.content}")

    @staticmethod
    def _render_input(phase: PhaseSpec, phase_input: PhaseInput) -> str:
        lines = [f"Phase: {phase.display_name} ({phase.agent_id})"]
        if phase_input.feedback:
            lines.append(f"Reviewer feedback: {phase_input.feedback}")
        return "\n".join(lines)

    @staticmethod
    def _render_result(result: PhaseResult) -> str:
        return json.dumps({
            "agent_id": result.agent_id,
            "success": result.success,
            "output": result.output,
            "files_created": result.files_created,
            "files_modified": result.files_modified,
        }, default=str)

    @staticmethod
    def _phase_summary(phase: PhaseSpec, result: PhaseResult) -> str:
        return (
            f"{phase.display_name} completed: "
            f"{len(result.files_created)} files created, "
            f"{len(result.files_modified)} files modified, "
            f"{len(result.commits)} commits, ${result.cost_usd:.2f}"
        )
