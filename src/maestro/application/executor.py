import asyncio
import concurrent.futures
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from maestro.application.adapter import ExecutionContext
from maestro.application.port import (
    Binder,
    CollaboratorResolver,
    ConditionEvaluator,
    ExecutorFactory,
    PlaceholderResolver,
    StepExecutor,
    WorkflowLogger,
)
from maestro.application.retry import RetryCoordinator
from maestro.domain.entity import ConditionalStep, ModuleCallStep, ParallelStep, ScriptStep, StepResult, StepTypes
from maestro.domain.error import StepExecutionError, StepTimeoutError, ValidationError
from maestro.domain.port import CollaboratorBase
from maestro.domain.service import MAX_DEPTH
from maestro.domain.value_object import ExecutionOptions, HandlerResult, StepStatus

logger = logging.getLogger(__name__)

DRY_RUN_PREFIX = "[DRY RUN]"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def step_type(step: StepTypes) -> str:
    return type(step).__struct_config__.tag


def failed_result(step: StepTypes, start: datetime, error: BaseException, attempts: int = 1) -> StepResult:
    """
    StepResult for a step whose execution raised.

    The message names the step, the attempt count when the step was retried, and the underlying error.
    """
    if attempts > 1:
        message = f"Step '{step.name}' failed after {attempts} attempts: {error}"
    else:
        message = f"Step '{step.name}' failed: {error}"
    return StepResult(
        name=step.name,
        status=StepStatus.FAILED,
        start_time=start,
        end_time=utcnow(),
        step_type=step_type(step),
        error=message,
        error_type=type(error).__name__,
        attempts=attempts,
    )


def skipped_result(step: StepTypes, reason: str) -> StepResult:
    now = utcnow()
    return StepResult(
        name=step.name,
        status=StepStatus.SKIPPED,
        start_time=now,
        end_time=now,
        step_type=step_type(step),
        output=reason,
    )


def dry_run_result(step: StepTypes, description: str) -> StepResult:
    now = utcnow()
    return StepResult(
        name=step.name,
        status=StepStatus.COMPLETED,
        start_time=now,
        end_time=now,
        step_type=step_type(step),
        output=f"{DRY_RUN_PREFIX} would execute: {description}",
    )


def composite_status(children: list[StepResult], ctx: ExecutionContext) -> StepStatus:
    if not ctx.continue_on_error and any(child.status is StepStatus.FAILED for child in children):
        return StepStatus.FAILED
    return StepStatus.COMPLETED


class OperationInvoker:
    """Calls a collaborator operation with the retry policy, timeout and result conventions of the engine."""

    def __init__(self, retry: RetryCoordinator, events: WorkflowLogger | None = None, step_timeout: float | None = None):
        self.retry = retry
        self.events = events
        self.step_timeout = step_timeout

    def invoke(
        self,
        step: ScriptStep | ModuleCallStep,
        collaborator: CollaboratorBase,
        operation_name: str,
        kwargs: dict[str, Any],
        ctx: ExecutionContext,
    ) -> StepResult:
        start = utcnow()
        operation = collaborator.get_operation(operation_name)
        timeout = step.timeout if step.timeout is not None else self.step_timeout

        policy = self.retry.policy
        if step.retries is not None:
            policy = policy.with_max_retries(step.retries)
        elif not collaborator.is_retriable(operation_name):
            policy = policy.with_max_retries(0)

        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            if self.events is not None:
                self.events.log(
                    "warning",
                    "retry scheduled",
                    workflow_id=ctx.workflow_id,
                    step=step.name,
                    attempt=attempt,
                    delay=delay,
                    error=str(error),
                )

        outcome = self.retry.execute_with_retry(
            lambda: self._attempt(operation, kwargs, timeout), policy, on_retry=on_retry
        )
        if not outcome.success:
            return failed_result(step, start, outcome.last_error, outcome.attempts)
        return StepResult(
            name=step.name,
            status=StepStatus.COMPLETED,
            start_time=start,
            end_time=utcnow(),
            step_type=step_type(step),
            output=outcome.result,
            attempts=outcome.attempts,
        )

    def _attempt(self, operation: Callable[..., Any], kwargs: dict[str, Any], timeout: float | None) -> Any:
        if timeout is None:
            return self._call(operation, kwargs)
        # The worker is not joined on expiry; the call keeps running detached.
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="maestro-step")
        future = pool.submit(self._call, operation, kwargs)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            raise StepTimeoutError(f"Timed out after {timeout}s", timeout) from None
        finally:
            pool.shutdown(wait=False)

    def _call(self, operation: Callable[..., Any], kwargs: dict[str, Any]) -> Any:
        result = operation(**kwargs)
        if inspect.isawaitable(result):
            result = asyncio.run(_await(result))
        if isinstance(result, HandlerResult):
            if not result.success:
                raise StepExecutionError(
                    result.error or f"Operation reported failure (exit code {result.exit_code})",
                    category=result.category,
                    exit_code=result.exit_code,
                )
            return result.output
        return result


async def _await(awaitable: Any) -> Any:
    return await awaitable


class ScriptExecutor(StepExecutor):
    """Executes a script step by substituting its command and running it through the shell collaborator."""

    def __init__(
        self,
        resolver: CollaboratorResolver,
        values: PlaceholderResolver,
        invoker: OperationInvoker,
        execution_options: ExecutionOptions,
    ):
        self.resolver = resolver
        self.values = values
        self.invoker = invoker
        self.execution_options = execution_options

    def execute(self, step: ScriptStep, ctx: ExecutionContext) -> StepResult:
        command = self.values.resolve(step.command, ctx)
        shell = step.shell or self.execution_options.default_shell
        if ctx.dry_run:
            return dry_run_result(step, command)
        collaborator = self.resolver.resolve(self.execution_options.shell_collaborator)
        return self.invoker.invoke(step, collaborator, "run", {"command": command, "shell": shell}, ctx)


class ModuleCallExecutor(StepExecutor):
    """Executes a module step by resolving its collaborator and calling the named operation."""

    def __init__(
        self,
        resolver: CollaboratorResolver,
        binder: Binder,
        values: PlaceholderResolver,
        invoker: OperationInvoker,
    ):
        self.resolver = resolver
        self.binder = binder
        self.values = values
        self.invoker = invoker

    def execute(self, step: ModuleCallStep, ctx: ExecutionContext) -> StepResult:
        parameters = self.values.resolve_any(step.parameters, ctx)
        if ctx.dry_run:
            return dry_run_result(step, f"{step.collaborator}.{step.operation}({_render_kwargs(parameters)})")
        collaborator = self.resolver.resolve(step.collaborator)
        bound = self.binder.bind(collaborator.get_operation(step.operation), parameters)
        return self.invoker.invoke(step, collaborator, step.operation, bound, ctx)


def _render_kwargs(parameters: dict[str, Any]) -> str:
    return ", ".join(f"{key}={value!r}" for key, value in parameters.items())


class ConditionalExecutor(StepExecutor):
    """Evaluates the condition and runs the taken branch sequentially. The other branch records nothing."""

    def __init__(self, dispatcher: "StepDispatcher", conditions: ConditionEvaluator):
        self.dispatcher = dispatcher
        self.conditions = conditions

    def execute(self, step: ConditionalStep, ctx: ExecutionContext) -> StepResult:
        start = utcnow()
        taken = self.conditions.evaluate(step.condition, ctx)
        branch = "then" if taken else "else"
        children = self.dispatcher.run_sequence(step.then_steps if taken else step.else_steps, ctx.nested())
        return StepResult(
            name=step.name,
            status=composite_status(children, ctx),
            start_time=start,
            end_time=start if ctx.dry_run else max([utcnow(), *(child.end_time for child in children)]),
            step_type=step_type(step),
            output={"branch": branch},
            children=children,
        )


class ParallelExecutor(StepExecutor):
    """Executes sub-steps concurrently on a bounded thread pool and joins on all of them."""

    def __init__(self, dispatcher: "StepDispatcher", execution_options: ExecutionOptions):
        self.dispatcher = dispatcher
        self.execution_options = execution_options

    def execute(self, step: ParallelStep, ctx: ExecutionContext) -> StepResult:
        start = utcnow()
        children = self.dispatcher.run_concurrently(step.parallel_steps, ctx.nested(), step.max_concurrency)
        end = start if ctx.dry_run else max([start, *(child.end_time for child in children)])
        return StepResult(
            name=step.name,
            status=composite_status(children, ctx),
            start_time=start,
            end_time=end,
            step_type=step_type(step),
            children=children,
        )


class StepDispatcher:
    """
    Executes one step of any variant and always returns a StepResult.

    Guards on script and module steps are evaluated here; a false guard yields a Skipped result.
    Errors raised while executing a step are captured into a Failed result and never propagate.
    """

    def __init__(
        self,
        executor_factory: ExecutorFactory,
        conditions: ConditionEvaluator,
        execution_options: ExecutionOptions,
        events: WorkflowLogger | None = None,
    ):
        self.executor_factory = executor_factory
        self.conditions = conditions
        self.execution_options = execution_options
        self.events = events

    def dispatch(self, step: StepTypes, ctx: ExecutionContext) -> StepResult:
        """
        Execute a step and return its result.

        :param step: The step to execute
        :type step: StepTypes
        :param ctx: Context of the owning workflow at this nesting level
        :type ctx: ExecutionContext
        :returns: The step's result
        :rtype: StepResult
        """
        start = utcnow()
        self._event("debug", "step started", step, ctx)
        try:
            if ctx.depth > MAX_DEPTH:
                raise ValidationError(f"Maximum nesting depth of {MAX_DEPTH} exceeded")
            guard = None if isinstance(step, ConditionalStep) else step.guard()
            if guard and not self.conditions.evaluate(guard, ctx):
                result = skipped_result(step, f"Condition not met: {guard}")
            else:
                result = self.executor_factory.get_executor(step).execute(step, ctx)
        except Exception as e:
            logger.debug("Step '%s' raised", step.name, exc_info=True)
            result = failed_result(step, start, e, getattr(e, "attempts", 1))

        if result.status is StepStatus.FAILED:
            self._event("error", "step failed", step, ctx, error=result.error, attempts=result.attempts)
        elif result.status is StepStatus.SKIPPED:
            self._event("info", "step skipped", step, ctx, reason=result.output)
        else:
            self._event("info", "step completed", step, ctx, duration=result.duration, attempts=result.attempts)
        return result

    def run_sequence(self, steps: list[StepTypes], ctx: ExecutionContext) -> list[StepResult]:
        """
        Run sibling steps in declared order.

        After a failure, unless ``continue_on_error`` is set, the remaining siblings are recorded as Skipped.
        """
        results: list[StepResult] = []
        failed: str | None = None
        for step in steps:
            if failed is not None:
                results.append(skipped_result(step, f"Skipped after sibling '{failed}' failed"))
                continue
            result = self.dispatch(step, ctx)
            results.append(result)
            if result.status is StepStatus.FAILED and not ctx.continue_on_error:
                failed = step.name
        return results

    def run_concurrently(
        self, steps: list[StepTypes], ctx: ExecutionContext, max_concurrency: int | None = None
    ) -> list[StepResult]:
        """
        Run sibling steps on a bounded worker pool, wait for all of them and return results in declared order.

        Each worker receives its own copy of the context. A failing sibling does not prevent the others from running.
        """
        if not steps:
            return []
        ceiling = self.execution_options.max_concurrency
        workers = max(1, min(len(steps), max_concurrency or ceiling, ceiling))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="maestro-parallel") as pool:
            futures = [pool.submit(self.dispatch, step, ctx.copy()) for step in steps]
            # Keep order as declared
            return [future.result() for future in futures]

    def _event(self, level: str, message: str, step: StepTypes, ctx: ExecutionContext, **fields: Any) -> None:
        if self.events is not None:
            self.events.log(
                level,
                message,
                workflow_id=ctx.workflow_id,
                step=step.name,
                step_type=step_type(step),
                depth=ctx.depth,
                **fields,
            )
