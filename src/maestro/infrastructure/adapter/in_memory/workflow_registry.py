import logging
import threading
from collections import OrderedDict
from datetime import datetime, timezone

from maestro.application.port import WorkflowRegistry
from maestro.domain.entity import WorkflowInstance, WorkflowSummary
from maestro.domain.error import DuplicateWorkflowError
from maestro.domain.value_object import StopResult, WorkflowStatus

logger = logging.getLogger(__name__)


class InMemoryWorkflowRegistry(WorkflowRegistry):
    """
    Thread-safe store of active and historical workflow instances.

    Every read and write goes through one re-entrant lock. History keeps at most ``history_limit``
    finished instances; the oldest are evicted first.
    """

    def __init__(self, history_limit: int = 100):
        if history_limit < 0:
            raise ValueError("history_limit must not be negative")
        self.history_limit = history_limit
        self._lock = threading.RLock()
        self._active: dict[str, WorkflowInstance] = {}
        self._history: OrderedDict[str, WorkflowInstance] = OrderedDict()

    def register(self, instance: WorkflowInstance) -> None:
        with self._lock:
            if instance.workflow_id in self._active or instance.workflow_id in self._history:
                raise DuplicateWorkflowError(f"Workflow '{instance.workflow_id}' already exists")
            self._active[instance.workflow_id] = instance
        logger.debug("Registered workflow %s", instance.workflow_id)

    def get(self, workflow_id: str) -> WorkflowInstance | None:
        with self._lock:
            return self._active.get(workflow_id) or self._history.get(workflow_id)

    def list_active(self) -> list[WorkflowInstance]:
        with self._lock:
            return list(self._active.values())

    def list_history(self) -> list[WorkflowInstance]:
        with self._lock:
            return list(self._history.values())

    def stop(self, workflow_id: str) -> StopResult:
        """
        Request cooperative cancellation.

        The executor honors the request before its next top-level step, or once the last one returns. In-flight work is never interrupted.

        :param workflow_id: Id of a running workflow
        :type workflow_id: str
        :returns: Success, or the reason the request was refused
        :rtype: StopResult
        """
        with self._lock:
            instance = self._active.get(workflow_id)
            if instance is None:
                finished = self._history.get(workflow_id)
                if finished is not None:
                    return StopResult(
                        success=False,
                        error=f"Workflow '{workflow_id}' is not running (status: {finished.status.value})",
                    )
                return StopResult(success=False, error=f"Workflow '{workflow_id}' not found")
            instance.stop_requested = True
        logger.info("Stop requested for workflow %s", workflow_id)
        return StopResult(success=True)

    def is_stop_requested(self, workflow_id: str) -> bool:
        with self._lock:
            instance = self._active.get(workflow_id)
            return instance is not None and instance.stop_requested

    def finalize(self, workflow_id: str, status: WorkflowStatus, error: str | None = None) -> WorkflowInstance:
        if not status.is_terminal:
            raise ValueError(f"Cannot finalize workflow with non-terminal status '{status.value}'")
        with self._lock:
            try:
                instance = self._active.pop(workflow_id)
            except KeyError:
                raise KeyError(f"Workflow '{workflow_id}' is not active") from None
            instance.status = status
            instance.end_time = datetime.now(timezone.utc)
            instance.error = error
            self._history[workflow_id] = instance
            while len(self._history) > self.history_limit:
                evicted, _ = self._history.popitem(last=False)
                logger.debug("Evicted workflow %s from in-memory history", evicted)
        return instance

    def purge(self, older_than: datetime) -> int:
        """
        Drop finished instances that ended before ``older_than``.

        :returns: Number of instances removed
        :rtype: int
        """
        with self._lock:
            expired = [
                workflow_id
                for workflow_id, instance in self._history.items()
                if instance.end_time is not None and instance.end_time < older_than
            ]
            for workflow_id in expired:
                del self._history[workflow_id]
        return len(expired)

    def summary(self) -> WorkflowSummary:
        with self._lock:
            instances = [*self._active.values(), *self._history.values()]
            return WorkflowSummary(
                active_count=len(self._active),
                history_count=len(self._history),
                instances=instances,
            )
