from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Mapping

from maestro.domain.entity import (
    PlaybookDefinition,
    StepResult,
    StepTypes,
    WorkflowContext,
    WorkflowInstance,
    WorkflowResult,
    WorkflowSummary,
)
from maestro.domain.port import CollaboratorBase
from maestro.domain.value_object import StopResult, WorkflowStatus


class Context(ABC):
    """Abstract interface for the read-only runtime context of a workflow."""

    @property
    @abstractmethod
    def parameters(self) -> Mapping[str, Any]:
        """Resolved playbook parameters."""

    @abstractmethod
    def lookup(self, namespace: str, path: tuple[str, ...]) -> Any:
        """
        Look up a variable such as ``params.region`` or ``env.context``.

        :param namespace: ``params`` or ``env``
        :type namespace: str
        :param path: Key path below the namespace
        :type path: tuple[str, ...]
        :returns: The referenced value
        :raises KeyError: If the variable does not exist
        """


class WorkflowEngine(ABC):
    """Abstract base class defining the workflow engine interface."""

    @abstractmethod
    def prepare(
        self,
        playbook: PlaybookDefinition,
        context: WorkflowContext,
        workflow_id: str | None = None,
    ) -> WorkflowInstance:
        """
        Validates the playbook and registers a new running workflow instance.

        :raises ValidationError: If the playbook is invalid; nothing is registered
        :raises DuplicateWorkflowError: If ``workflow_id`` is already known
        """

    @abstractmethod
    def execute(self, instance: WorkflowInstance) -> WorkflowResult:
        """Runs a prepared instance to a terminal status."""

    @abstractmethod
    def run(
        self,
        playbook: PlaybookDefinition,
        context: WorkflowContext,
        workflow_id: str | None = None,
    ) -> WorkflowResult:
        """
        Runs the given playbook as a new workflow instance.

        :param playbook: The validated playbook to execute
        :type playbook: PlaybookDefinition
        :param context: Resolved parameters and execution flags
        :type context: WorkflowContext
        :param workflow_id: Optional workflow identifier
        :type workflow_id: str | None
        :returns: The result of executing the workflow
        :rtype: WorkflowResult
        """
        ...


class StepExecutor(ABC):
    """Abstract executor interface for executing one playbook step variant."""

    @abstractmethod
    def execute(self, step: Any, ctx: Context) -> StepResult:
        """
        Execute a step and return its result.

        :param step: The step to execute
        :type step: Any
        :param ctx: The workflow context
        :type ctx: Context
        :returns: The result of executing the step
        :rtype: StepResult
        """
        ...


class ExecutorFactory(ABC):
    """Abstract factory for creating step executors."""

    @abstractmethod
    def get_executor(self, step: StepTypes) -> StepExecutor:
        """
        Get an executor for the given step.

        :param step: The step to get an executor for
        :type step: StepTypes
        :returns: An executor capable of executing the step
        :rtype: StepExecutor
        """


class CollaboratorResolver(ABC):
    """Abstract base class defining collaborator resolution interface."""

    @abstractmethod
    def resolve(self, name: str) -> CollaboratorBase:
        """
        Resolves and returns a collaborator instance by its name.

        :param name: The name of the collaborator to resolve
        :type name: str
        :returns: The resolved collaborator instance
        :rtype: CollaboratorBase
        :raises: KeyError if the collaborator is not found
        """
        ...

    @abstractmethod
    def register(self, collaborator: type[CollaboratorBase] | CollaboratorBase) -> None:
        """Add a collaborator class or instance to the resolver."""

    @abstractmethod
    def names(self) -> list[str]:
        """Names of all registered collaborators."""


class PlaceholderResolver(ABC):
    """Abstract interface for resolving ``{{name}}`` placeholders."""

    @abstractmethod
    def resolve(self, template: str, ctx: Context) -> str:
        """
        Substitute every placeholder in a template string.

        :param template: Text that may contain placeholders
        :type template: str
        :param ctx: The workflow context to resolve against
        :type ctx: Context
        :returns: The substituted text
        :rtype: str
        :raises ParameterResolutionError: If a placeholder cannot be resolved
        """

    @abstractmethod
    def resolve_any(self, value: Any, ctx: Context) -> Any:
        """Resolve placeholders inside arbitrarily nested dicts, lists and strings."""


class ConditionEvaluator(ABC):
    """Abstract interface for evaluating guard and branch conditions."""

    @abstractmethod
    def evaluate(self, expression: str, ctx: Context) -> bool:
        """
        Evaluate a condition expression.

        :raises ConditionEvaluationError: If the expression is malformed or references an unknown variable
        """


class Binder(ABC):
    """Abstract interface for binding parameters to collaborator operations."""

    @abstractmethod
    def bind(self, operation: Callable[..., Any], params: dict[str, Any]) -> dict[str, Any]:
        """
        Bind parameters to an operation's signature.

        :param operation: The collaborator operation to bind parameters for
        :type operation: Callable[..., Any]
        :param params: The parameters to bind
        :type params: dict[str, Any]
        :returns: Dictionary of bound parameters
        :rtype: dict[str, Any]
        """


class WorkflowRegistry(ABC):
    """Abstract interface for the store of active and historical workflow instances."""

    @abstractmethod
    def register(self, instance: WorkflowInstance) -> None:
        """
        Track a new running instance.

        :raises DuplicateWorkflowError: If the workflow id is already known
        """

    @abstractmethod
    def get(self, workflow_id: str) -> WorkflowInstance | None: ...

    @abstractmethod
    def list_active(self) -> list[WorkflowInstance]: ...

    @abstractmethod
    def list_history(self) -> list[WorkflowInstance]: ...

    @abstractmethod
    def stop(self, workflow_id: str) -> StopResult:
        """Request cooperative cancellation of a running workflow."""

    @abstractmethod
    def is_stop_requested(self, workflow_id: str) -> bool: ...

    @abstractmethod
    def finalize(self, workflow_id: str, status: WorkflowStatus, error: str | None = None) -> WorkflowInstance:
        """
        Move a running instance to a terminal status and into history.

        :returns: The finalized instance
        :raises KeyError: If the workflow is not active
        """

    @abstractmethod
    def purge(self, older_than: datetime) -> int:
        """Drop finished instances that ended before ``older_than`` and return how many were removed."""

    @abstractmethod
    def summary(self) -> WorkflowSummary: ...


class PlaybookStore(ABC):
    """Abstract interface for saving and loading playbook definitions."""

    @abstractmethod
    def load(self, name: str) -> PlaybookDefinition:
        """
        Load a playbook by name.

        :raises PlaybookNotFoundError: If no playbook has that name
        """

    @abstractmethod
    def save(self, playbook: PlaybookDefinition) -> None: ...

    @abstractmethod
    def delete(self, name: str) -> bool: ...

    @abstractmethod
    def list_names(self) -> list[str]: ...


class HistoryStore(ABC):
    """Abstract interface for persisting completed workflow instances."""

    @abstractmethod
    def save(self, instance: WorkflowInstance) -> None: ...

    @abstractmethod
    def load(self, workflow_id: str) -> WorkflowInstance:
        """
        Load a completed workflow.

        :raises KeyError: If no workflow with that id was saved
        """

    @abstractmethod
    def list_ids(self) -> list[str]: ...

    @abstractmethod
    def purge(self, older_than: datetime) -> int:
        """
        Delete workflows that ended before ``older_than``.

        :returns: Number of workflows removed
        """


class WorkflowLogger(ABC):
    """Abstract interface for structured workflow and step transition events."""

    @abstractmethod
    def log(self, level: str, message: str, **context: Any) -> None:
        """
        Record a structured event.

        :param level: ``debug``, ``info``, ``warning`` or ``error``
        :type level: str
        :param message: Event description
        :type message: str
        :param context: Workflow id, step name and other event fields
        """
