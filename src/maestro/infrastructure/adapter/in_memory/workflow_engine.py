import logging
import uuid
from datetime import datetime, timezone

from maestro.application.adapter import ExecutionContext
from maestro.application.executor import StepDispatcher
from maestro.application.port import HistoryStore, WorkflowEngine, WorkflowLogger, WorkflowRegistry
from maestro.domain.entity import PlaybookDefinition, StepResult, WorkflowContext, WorkflowInstance, WorkflowResult
from maestro.domain.error import CancellationError
from maestro.domain.service import check_workflow_id, require_valid
from maestro.domain.value_object import ExecutionMode, StepStatus, WorkflowStatus

logger = logging.getLogger(__name__)


class UUIDGenerator:
    """Generates unique identifiers using UUID."""

    def generate(self) -> str:
        """
        Generate a unique identifier.

        :returns: A unique identifier string
        :rtype: str
        """
        return uuid.uuid4().hex


class InMemoryWorkflowEngine(WorkflowEngine):
    """
    Drives one workflow instance at a time per calling thread.

    Top-level steps run in declared order. Before each one, and once after the last, the registry is asked whether a stop was
    requested. A failed step ends the workflow unless ``continue_on_error`` is set. Finished instances
    move to the registry history and, when a history store is configured, are persisted there.
    """

    def __init__(
        self,
        dispatcher: StepDispatcher,
        registry: WorkflowRegistry,
        history_store: HistoryStore | None = None,
        events: WorkflowLogger | None = None,
        id_generator: UUIDGenerator | None = None,
    ):
        """
        :param dispatcher: Dispatcher executing individual steps
        :type dispatcher: StepDispatcher
        :param registry: Registry tracking active and finished instances
        :type registry: WorkflowRegistry
        :param history_store: Optional persistent store for finished instances
        :type history_store: HistoryStore | None
        :param events: Structured event sink for workflow transitions
        :type events: WorkflowLogger | None
        :param id_generator: Source of workflow ids
        :type id_generator: UUIDGenerator | None
        """
        self.dispatcher = dispatcher
        self.registry = registry
        self.history_store = history_store
        self.events = events
        self.ids = id_generator if id_generator is not None else UUIDGenerator()

    def prepare(
        self,
        playbook: PlaybookDefinition,
        context: WorkflowContext,
        workflow_id: str | None = None,
    ) -> WorkflowInstance:
        require_valid(playbook)
        instance = WorkflowInstance(
            workflow_id=check_workflow_id(workflow_id) if workflow_id is not None else self.ids.generate(),
            playbook=playbook,
            context=context,
            start_time=datetime.now(timezone.utc),
        )
        self.registry.register(instance)
        return instance

    def run(
        self,
        playbook: PlaybookDefinition,
        context: WorkflowContext,
        workflow_id: str | None = None,
    ) -> WorkflowResult:
        return self.execute(self.prepare(playbook, context, workflow_id))

    def execute(self, instance: WorkflowInstance) -> WorkflowResult:
        """
        Executes the steps of a registered instance and finalizes it.

        :param instance: An instance returned by :meth:`prepare`
        :type instance: WorkflowInstance
        :returns: The result of executing the workflow
        :rtype: WorkflowResult
        """
        workflow_id = instance.workflow_id
        ctx = ExecutionContext.for_instance(instance)
        self._event(
            "info",
            "workflow started",
            instance,
            execution_mode=instance.context.execution_mode.value,
            environment=instance.context.environment.value,
            dry_run=instance.context.dry_run,
        )
        try:
            if instance.context.execution_mode is ExecutionMode.PARALLEL:
                status, error = self._run_parallel(instance, ctx)
            else:
                status, error = self._run_sequential(instance, ctx)
        except CancellationError as e:
            status, error = WorkflowStatus.STOPPED, str(e)
        except Exception as e:
            self.registry.finalize(workflow_id, WorkflowStatus.FAILED, error=f"Internal error: {e}")
            logger.exception("Workflow %s aborted", workflow_id)
            raise

        finished = self.registry.finalize(workflow_id, status, error)
        if self.history_store is not None:
            self.history_store.save(finished)
        self._event(
            "error" if status is WorkflowStatus.FAILED else "info",
            f"workflow {status.value}",
            finished,
            steps_completed=finished.metrics.steps_completed,
            steps_failed=finished.metrics.steps_failed,
            retries=finished.metrics.retries_performed,
            error=error,
        )
        return WorkflowResult.from_instance(finished)

    def _run_sequential(self, instance: WorkflowInstance, ctx: ExecutionContext) -> tuple[WorkflowStatus, str | None]:
        for step in instance.playbook.steps:
            self._checkpoint(instance, f"before step '{step.name}'")
            result = self.dispatcher.dispatch(step, ctx)
            self._record(instance, result)
            if result.status is StepStatus.FAILED and not ctx.continue_on_error:
                return WorkflowStatus.FAILED, result.error
        # A stop requested while the last step ran takes effect once it returns.
        self._checkpoint(instance, f"after step '{instance.playbook.steps[-1].name}'")
        return WorkflowStatus.COMPLETED, None

    def _run_parallel(self, instance: WorkflowInstance, ctx: ExecutionContext) -> tuple[WorkflowStatus, str | None]:
        # Top-level steps fan out together, so stops are honoured before the fan-out and after the join.
        self._checkpoint(instance, "before any step ran")
        results = self.dispatcher.run_concurrently(instance.playbook.steps, ctx)
        for result in results:
            self._record(instance, result)
        failures = [result for result in results if result.status is StepStatus.FAILED]
        if failures and not ctx.continue_on_error:
            return WorkflowStatus.FAILED, failures[0].error
        self._checkpoint(instance, "after all steps joined")
        return WorkflowStatus.COMPLETED, None

    def _checkpoint(self, instance: WorkflowInstance, where: str) -> None:
        if self.registry.is_stop_requested(instance.workflow_id):
            raise CancellationError(f"Workflow stopped {where}")

    def _record(self, instance: WorkflowInstance, result: StepResult) -> None:
        instance.step_results.append(result)
        metrics = instance.metrics
        if result.status is StepStatus.COMPLETED:
            metrics.steps_completed += 1
        elif result.status is StepStatus.FAILED:
            metrics.steps_failed += 1
        else:
            metrics.steps_skipped += 1
        metrics.retries_performed += result.retries

    def _event(self, level: str, message: str, instance: WorkflowInstance, **fields) -> None:
        if self.events is not None:
            self.events.log(level, message, workflow_id=instance.workflow_id, playbook=instance.playbook.name, **fields)
