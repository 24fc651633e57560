"""
Tests for step executors and the step dispatcher.

This module wires the dispatcher through InMemoryExecutorFactory with recording collaborators.
"""

import concurrent.futures
import threading
import time
from datetime import timedelta
from unittest.mock import Mock

import pytest

from maestro.application.adapter import (
    ExecutionContext,
    ExpressionConditionEvaluator,
    ParameterBinder,
    ParameterResolver,
)
from maestro.application.executor import DRY_RUN_PREFIX, StepDispatcher
from maestro.application.port import WorkflowLogger
from maestro.application.retry import RetryCoordinator
from maestro.domain.entity import ConditionalStep, ModuleCallStep, ParallelStep, ScriptStep
from maestro.domain.error import StepExecutionError
from maestro.domain.port import CollaboratorBase
from maestro.domain.service import MAX_DEPTH
from maestro.domain.value_object import ExecutionOptions, HandlerResult, RetryPolicy, StepStatus
from maestro.infrastructure.adapter.in_memory.collaborator_resolver import InMemoryCollaboratorResolver
from maestro.infrastructure.adapter.in_memory.executor_factory import InMemoryExecutorFactory


class RecordingShell(CollaboratorBase):
    """Shell stand-in that records commands and fails those containing 'fail'."""

    collaborator_name = "shell"

    def __init__(self):
        self.commands: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def run(self, command: str, shell: str = "bash") -> HandlerResult:
        with self._lock:
            self.commands.append((command, shell))
        if "fail" in command:
            return HandlerResult(success=False, error=f"exit 1: {command}", exit_code=1)
        if "slow" in command:
            time.sleep(0.5)
        return HandlerResult(output=f"ran {command}", exit_code=0)


class Inventory(CollaboratorBase):
    """Network-sensitive collaborator that fails transiently a configurable number of times."""

    collaborator_name = "inventory"
    retriable = True

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0

    def count(self, host: str, replicas: int) -> dict:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("connection reset by peer")
        return {"host": host, "replicas": replicas}

    def reject(self) -> None:
        raise StepExecutionError("quota exceeded", category="quota")


class TestStepDispatcher:
    """Test cases for StepDispatcher."""

    def setup_method(self):
        """Setup test fixtures."""
        self.shell = RecordingShell()
        self.inventory = Inventory()
        self.sleeps: list[float] = []
        self.events = Mock(spec=WorkflowLogger)
        self.factory = InMemoryExecutorFactory(
            resolver=InMemoryCollaboratorResolver([self.shell, self.inventory]),
            binder=ParameterBinder(),
            values=ParameterResolver(),
            conditions=ExpressionConditionEvaluator(),
            retry=RetryCoordinator(RetryPolicy(max_retries=3), sleep=self.sleeps.append),
            execution_options=ExecutionOptions(max_concurrency=4),
            events=self.events,
        )
        self.dispatcher: StepDispatcher = self.factory.dispatcher
        self.ctx = ExecutionContext(
            {"region": "eu", "env": "dev", "replicas": "2"},
            env={"context": "dev", "workflow_id": "wf-1"},
        )

    def test_script_step_substitutes_command(self):
        """Test that a script step runs the resolved command through the shell collaborator."""
        result = self.dispatcher.dispatch(ScriptStep(name="a", command="deploy {{region}}", shell="sh"), self.ctx)

        assert result.status is StepStatus.COMPLETED
        assert result.output == "ran deploy eu"
        assert result.step_type == "script"
        assert result.attempts == 1
        assert self.shell.commands == [("deploy eu", "sh")]

    def test_script_step_uses_default_shell(self):
        self.dispatcher.dispatch(ScriptStep(name="a", command="echo"), self.ctx)

        assert self.shell.commands == [("echo", "bash")]

    def test_script_failure(self):
        """Test that a failing command is captured as a Failed result, not raised."""
        result = self.dispatcher.dispatch(ScriptStep(name="a", command="fail now"), self.ctx)

        assert result.status is StepStatus.FAILED
        assert result.error == "Step 'a' failed: exit 1: fail now"
        assert result.error_type == "StepExecutionError"

    def test_unresolved_placeholder_fails_step(self):
        result = self.dispatcher.dispatch(ScriptStep(name="a", command="echo {{zone}}"), self.ctx)

        assert result.status is StepStatus.FAILED
        assert "Unresolved placeholder '{{zone}}'" in result.error
        assert result.error_type == "ParameterResolutionError"
        assert self.shell.commands == []

    def test_guard_false_skips(self):
        """Test that a false guard on a script step records Skipped without running it."""
        step = ScriptStep(name="a", command="echo", condition="$params.env == 'prod'")

        result = self.dispatcher.dispatch(step, self.ctx)

        assert result.status is StepStatus.SKIPPED
        assert result.output == "Condition not met: $params.env == 'prod'"
        assert self.shell.commands == []

    def test_guard_true_runs(self):
        step = ScriptStep(name="a", command="echo", condition="$env.context == 'dev'")

        assert self.dispatcher.dispatch(step, self.ctx).status is StepStatus.COMPLETED

    def test_module_step_binds_and_preserves_types(self):
        """Test that module parameters are resolved and coerced to the operation's hints."""
        step = ModuleCallStep(
            name="m", collaborator="inventory", operation="count", parameters={"host": "h-{{region}}", "replicas": "{{replicas}}"}
        )

        result = self.dispatcher.dispatch(step, self.ctx)

        assert result.status is StepStatus.COMPLETED
        assert result.output == {"host": "h-eu", "replicas": 2}

    def test_module_step_retries_transient_errors(self):
        """Test that a retriable collaborator is retried with backoff."""
        self.inventory.failures = 2
        step = ModuleCallStep(name="m", collaborator="inventory", operation="count", parameters={"host": "h", "replicas": 1})

        result = self.dispatcher.dispatch(step, self.ctx)

        assert result.status is StepStatus.COMPLETED
        assert result.attempts == 3
        assert self.sleeps == [1.0, 2.0]
        retry_events = [c for c in self.events.log.call_args_list if c.args[1] == "retry scheduled"]
        assert len(retry_events) == 2

    def test_module_step_exhausts_retries(self):
        self.inventory.failures = 10
        step = ModuleCallStep(name="m", collaborator="inventory", operation="count", parameters={"host": "h", "replicas": 1})

        result = self.dispatcher.dispatch(step, self.ctx)

        assert result.status is StepStatus.FAILED
        assert result.attempts == 4
        assert result.error.startswith("Step 'm' failed after 4 attempts")

    def test_step_retries_override(self):
        """Test that a step's own retries bound the attempts."""
        self.inventory.failures = 10
        step = ModuleCallStep(
            name="m", collaborator="inventory", operation="count", parameters={"host": "h", "replicas": 1}, retries=1
        )

        assert self.dispatcher.dispatch(step, self.ctx).attempts == 2

    def test_non_retriable_collaborator_is_not_retried(self):
        """Test that the shell collaborator gets a single attempt by default."""
        result = self.dispatcher.dispatch(ScriptStep(name="a", command="fail timeout"), self.ctx)

        assert result.attempts == 1
        assert len(self.shell.commands) == 1

    def test_category_not_retriable(self):
        result = self.dispatcher.dispatch(ModuleCallStep(name="m", collaborator="inventory", operation="reject"), self.ctx)

        assert result.status is StepStatus.FAILED
        assert result.attempts == 1
        assert "quota exceeded" in result.error

    def test_unknown_collaborator_and_operation(self):
        missing = self.dispatcher.dispatch(ModuleCallStep(name="m", collaborator="nope", operation="x"), self.ctx)
        bad_op = self.dispatcher.dispatch(ModuleCallStep(name="n", collaborator="inventory", operation="x"), self.ctx)

        assert missing.status is StepStatus.FAILED
        assert "No collaborator registered under 'nope'" in missing.error
        assert "has no operation 'x'" in bad_op.error

    def test_step_timeout(self):
        """Test that a step exceeding its timeout fails with a timeout error."""
        result = self.dispatcher.dispatch(ScriptStep(name="a", command="slow", timeout=0.05, retries=0), self.ctx)

        assert result.status is StepStatus.FAILED
        assert result.error_type == "StepTimeoutError"
        assert "Timed out after 0.05s" in result.error

    def test_dry_run_does_not_call_collaborators(self):
        """Test that dry runs resolve steps but never invoke a collaborator."""
        ctx = ExecutionContext({"region": "eu"}, env={"context": "dev"}, dry_run=True)

        script = self.dispatcher.dispatch(ScriptStep(name="a", command="deploy {{region}}"), ctx)
        module = self.dispatcher.dispatch(
            ModuleCallStep(name="m", collaborator="unregistered", operation="go", parameters={"r": "{{region}}"}), ctx
        )

        assert script.output == f"{DRY_RUN_PREFIX} would execute: deploy eu"
        assert module.output == f"{DRY_RUN_PREFIX} would execute: unregistered.go(r='eu')"
        assert module.status is StepStatus.COMPLETED
        assert self.shell.commands == []

    def test_conditional_takes_else_branch(self):
        """Test that only the taken branch runs and produces children."""
        step = ConditionalStep(
            name="c",
            condition="$params.env == 'prod'",
            then_steps=[ScriptStep(name="prod", command="deploy prod")],
            else_steps=[ScriptStep(name="dev", command="deploy dev")],
        )

        result = self.dispatcher.dispatch(step, self.ctx)

        assert result.status is StepStatus.COMPLETED
        assert result.output == {"branch": "else"}
        assert [child.name for child in result.children] == ["dev"]
        assert self.shell.commands == [("deploy dev", "bash")]

    def test_conditional_without_taken_branch(self):
        step = ConditionalStep(name="c", condition="$params.env == 'prod'", then_steps=[ScriptStep(name="p", command="x")])

        result = self.dispatcher.dispatch(step, self.ctx)

        assert result.status is StepStatus.COMPLETED
        assert result.children == []

    def test_conditional_unknown_variable_fails(self):
        step = ConditionalStep(name="c", condition="$params.zone == 'a'", then_steps=[ScriptStep(name="p", command="x")])

        result = self.dispatcher.dispatch(step, self.ctx)

        assert result.status is StepStatus.FAILED
        assert result.error_type == "ConditionEvaluationError"

    def test_branch_failure_skips_remaining_siblings(self):
        """Test fail-fast inside a branch."""
        step = ConditionalStep(
            name="c",
            condition="$env.context == 'dev'",
            then_steps=[
                ScriptStep(name="one", command="fail"),
                ScriptStep(name="two", command="echo two"),
            ],
        )

        result = self.dispatcher.dispatch(step, self.ctx)

        assert result.status is StepStatus.FAILED
        assert [c.status for c in result.children] == [StepStatus.FAILED, StepStatus.SKIPPED]
        assert result.children[1].output == "Skipped after sibling 'one' failed"

    def test_branch_continue_on_error(self):
        ctx = ExecutionContext({}, env={"context": "dev"}, continue_on_error=True)
        step = ConditionalStep(
            name="c",
            condition="$env.context == 'dev'",
            then_steps=[ScriptStep(name="one", command="fail"), ScriptStep(name="two", command="echo two")],
        )

        result = self.dispatcher.dispatch(step, ctx)

        assert result.status is StepStatus.COMPLETED
        assert [c.status for c in result.children] == [StepStatus.FAILED, StepStatus.COMPLETED]

    def test_parallel_joins_all_children_in_order(self):
        """Test that a failing child does not stop its siblings and order is preserved."""
        step = ParallelStep(
            name="p",
            parallel_steps=[
                ScriptStep(name="a", command="slow a"),
                ScriptStep(name="b", command="fail b"),
                ScriptStep(name="c", command="echo c"),
            ],
        )

        result = self.dispatcher.dispatch(step, self.ctx)

        assert result.status is StepStatus.FAILED
        assert [c.name for c in result.children] == ["a", "b", "c"]
        assert [c.status for c in result.children] == [StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.COMPLETED]
        assert result.end_time >= max(c.end_time for c in result.children)

    def test_parallel_runs_concurrently(self):
        """Test that sub-steps overlap in time."""
        steps = [ScriptStep(name=f"s{i}", command=f"slow {i}") for i in range(4)]

        started = time.monotonic()
        result = self.dispatcher.dispatch(ParallelStep(name="p", parallel_steps=steps), self.ctx)
        elapsed = time.monotonic() - started

        assert result.status is StepStatus.COMPLETED
        assert elapsed < 1.5

    def test_parallel_step_concurrency_is_capped_by_engine(self, monkeypatch):
        """Test that a step's max_concurrency cannot exceed the engine ceiling."""
        sizes: list[int] = []

        class SizedPool(concurrent.futures.ThreadPoolExecutor):
            def __init__(self, max_workers=None, **kwargs):
                sizes.append(max_workers)
                super().__init__(max_workers=max_workers, **kwargs)

        monkeypatch.setattr(concurrent.futures, "ThreadPoolExecutor", SizedPool)
        steps = [ScriptStep(name=f"s{i}", command=f"echo {i}") for i in range(6)]

        self.dispatcher.dispatch(ParallelStep(name="wide", parallel_steps=steps, max_concurrency=64), self.ctx)
        self.dispatcher.dispatch(ParallelStep(name="narrow", parallel_steps=steps, max_concurrency=2), self.ctx)

        assert sizes == [4, 2]

    def test_dry_run_composites_take_no_time(self):
        ctx = ExecutionContext({"env": "dev"}, env={"context": "dev"}, dry_run=True)
        conditional = ConditionalStep(
            name="c", condition="$params.env == 'dev'", then_steps=[ScriptStep(name="a", command="echo a")]
        )
        parallel = ParallelStep(name="p", parallel_steps=[ScriptStep(name="b", command="echo b")])

        results = [self.dispatcher.dispatch(step, ctx) for step in (conditional, parallel)]

        assert [r.status for r in results] == [StepStatus.COMPLETED, StepStatus.COMPLETED]
        assert [r.end_time - r.start_time for r in results] == [timedelta(0), timedelta(0)]
        assert self.shell.commands == []

    def test_depth_guard(self):
        ctx = ExecutionContext({}, depth=MAX_DEPTH + 1)

        result = self.dispatcher.dispatch(ScriptStep(name="a", command="echo"), ctx)

        assert result.status is StepStatus.FAILED
        assert "Maximum nesting depth" in result.error

    def test_run_sequence_empty(self):
        assert self.dispatcher.run_sequence([], self.ctx) == []
        assert self.dispatcher.run_concurrently([], self.ctx) == []

    def test_emits_step_events(self):
        """Test that started and completed events carry the workflow and step."""
        self.dispatcher.dispatch(ScriptStep(name="a", command="echo"), self.ctx)

        messages = [c.args[1] for c in self.events.log.call_args_list]
        assert messages == ["step started", "step completed"]
        assert self.events.log.call_args.kwargs["workflow_id"] == "wf-1"
        assert self.events.log.call_args.kwargs["step"] == "a"


class TestAsyncOperations:
    """Test cases for awaitable collaborator operations."""

    def test_async_operation_is_awaited(self):
        class Notifier(CollaboratorBase):
            collaborator_name = "notifier"

            async def send(self, channel: str) -> str:
                return f"sent to {channel}"

        factory = InMemoryExecutorFactory(
            resolver=InMemoryCollaboratorResolver([Notifier]),
            binder=ParameterBinder(),
            values=ParameterResolver(),
            conditions=ExpressionConditionEvaluator(),
            retry=RetryCoordinator(sleep=lambda s: None),
            execution_options=ExecutionOptions(),
        )
        step = ModuleCallStep(name="n", collaborator="notifier", operation="send", parameters={"channel": "ops"})

        result = factory.dispatcher.dispatch(step, ExecutionContext({}))

        assert result.status is StepStatus.COMPLETED
        assert result.output == "sent to ops"


@pytest.mark.parametrize("failures, expected", [(0, 1), (1, 2), (3, 4)])
def test_attempt_counts(failures, expected):
    """Test that attempts reported in the result match the calls made."""
    inventory = Inventory(failures=failures)
    factory = InMemoryExecutorFactory(
        resolver=InMemoryCollaboratorResolver([inventory]),
        binder=ParameterBinder(),
        values=ParameterResolver(),
        conditions=ExpressionConditionEvaluator(),
        retry=RetryCoordinator(RetryPolicy(max_retries=3), sleep=lambda s: None),
        execution_options=ExecutionOptions(),
    )
    step = ModuleCallStep(name="m", collaborator="inventory", operation="count", parameters={"host": "h", "replicas": 1})

    result = factory.dispatcher.dispatch(step, ExecutionContext({}))

    assert result.attempts == expected
    assert inventory.calls == expected
