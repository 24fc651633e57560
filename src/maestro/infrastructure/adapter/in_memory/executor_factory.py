from typing import assert_never

from maestro.application.executor import (
    ConditionalExecutor,
    ModuleCallExecutor,
    OperationInvoker,
    ParallelExecutor,
    ScriptExecutor,
    StepDispatcher,
)
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
from maestro.domain.entity import ConditionalStep, ModuleCallStep, ParallelStep, ScriptStep, StepTypes
from maestro.domain.value_object import ExecutionOptions


class InMemoryExecutorFactory(ExecutorFactory):
    """Creates step executors and owns the dispatcher that composite executors recurse through."""

    def __init__(
        self,
        resolver: CollaboratorResolver,
        binder: Binder,
        values: PlaceholderResolver,
        conditions: ConditionEvaluator,
        retry: RetryCoordinator,
        execution_options: ExecutionOptions,
        events: WorkflowLogger | None = None,
    ):
        self.resolver = resolver
        self.binder = binder
        self.values = values
        self.conditions = conditions
        self.execution_options = execution_options
        self.invoker = OperationInvoker(retry, events, execution_options.step_timeout)
        self.dispatcher = StepDispatcher(self, conditions, execution_options, events)

    def get_executor(self, step: StepTypes) -> StepExecutor:
        """
        Get the appropriate executor for the given step type.

        :param step: The step to get an executor for
        :type step: StepTypes
        :returns: The executor for the given step type
        :rtype: StepExecutor
        """
        if isinstance(step, ScriptStep):
            return ScriptExecutor(self.resolver, self.values, self.invoker, self.execution_options)
        elif isinstance(step, ModuleCallStep):
            return ModuleCallExecutor(self.resolver, self.binder, self.values, self.invoker)
        elif isinstance(step, ConditionalStep):
            return ConditionalExecutor(self.dispatcher, self.conditions)
        elif isinstance(step, ParallelStep):
            return ParallelExecutor(self.dispatcher, self.execution_options)
        else:
            assert_never(step)
