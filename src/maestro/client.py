from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

from maestro.application.service import Orchestrator
from maestro.domain.entity import PlaybookDefinition, WorkflowInstance, WorkflowResult, WorkflowSummary
from maestro.domain.port import CollaboratorBase
from maestro.domain.value_object import EnvironmentContext, ExecutionMode, StopResult, ValidationReport


class Client:
    """
    Unified client façade for playbook execution.

    The Client is the only thing users interact with. It exposes methods like .collaborator(),
    .run() and .status(), and holds the orchestrator of the chosen backend under the hood.
    """

    def __init__(self, orchestrator: Orchestrator, resolver=None):
        """
        Initialize the client with an orchestrator.

        :param orchestrator: The orchestrator owning the registry, stores and engine
        :type orchestrator: Orchestrator
        :param resolver: The collaborator resolver used by the orchestrator's executors
        """
        self._orchestrator = orchestrator
        self._resolver = resolver

    @property
    def orchestrator(self) -> Orchestrator:
        return self._orchestrator

    def collaborator(self, collaborator: type[CollaboratorBase] | CollaboratorBase) -> "Client":
        """
        Register a collaborator class or instance.

        :param collaborator: The collaborator to register under its ``collaborator_name``
        :type collaborator: type[CollaboratorBase] | CollaboratorBase
        :returns: This client, for chaining
        :rtype: Client
        """
        if self._resolver is None:
            raise NotImplementedError("Backend does not support collaborator registration")
        self._resolver.register(collaborator)
        return self

    def collaborators(self) -> list[str]:
        if self._resolver is None:
            raise NotImplementedError("Backend does not support collaborator listing")
        return self._resolver.names()

    def run(
        self,
        playbook: PlaybookDefinition | dict | str | Path,
        parameters: Mapping[str, Any] | None = None,
        execution_mode: ExecutionMode | str = ExecutionMode.SEQUENTIAL,
        environment_context: EnvironmentContext | str = EnvironmentContext.DEV,
        dry_run: bool = False,
        continue_on_error: bool = False,
        workflow_id: str | None = None,
    ) -> WorkflowResult:
        """
        Execute a playbook and wait for its result.

        :param playbook: Stored playbook name, path to a playbook file, dictionary or definition
        :type playbook: PlaybookDefinition | dict | str | Path
        :param parameters: Parameter values
        :type parameters: Mapping[str, Any] | None
        :param workflow_id: Optional workflow identifier
        :type workflow_id: str | None
        :returns: The workflow execution result
        :rtype: WorkflowResult
        """
        return self._orchestrator.invoke_playbook_workflow(
            playbook,
            parameters,
            execution_mode=execution_mode,
            environment_context=environment_context,
            dry_run=dry_run,
            continue_on_error=continue_on_error,
            workflow_id=workflow_id,
        )

    def start(
        self,
        playbook: PlaybookDefinition | dict | str | Path,
        parameters: Mapping[str, Any] | None = None,
        **options: Any,
    ) -> str:
        """
        Start a playbook in the background.

        :returns: The workflow id, usable with :meth:`status`, :meth:`stop` and :meth:`wait`
        :rtype: str
        """
        return self._orchestrator.start_playbook_workflow(playbook, parameters, **options)

    def wait(self, workflow_id: str, timeout: float | None = None) -> WorkflowResult:
        return self._orchestrator.wait_for_workflow(workflow_id, timeout)

    def status(self, workflow_id: str | None = None) -> WorkflowInstance | WorkflowSummary | None:
        """
        Retrieve one workflow instance, or a summary of all tracked workflows.

        :param workflow_id: The workflow identifier, or None for the summary
        :type workflow_id: str | None
        :returns: The instance, None if unknown, or the summary
        :rtype: WorkflowInstance | WorkflowSummary | None
        """
        return self._orchestrator.get_workflow_status(workflow_id)

    def stop(self, workflow_id: str) -> StopResult:
        return self._orchestrator.stop_workflow(workflow_id)

    def history(self) -> list[WorkflowInstance]:
        return self._orchestrator.list_history()

    def validate(self, playbook: PlaybookDefinition | dict | str | Path) -> ValidationReport:
        return self._orchestrator.validate_playbook(playbook)

    def list_playbooks(self) -> list[str]:
        return self._orchestrator.list_playbooks()

    def save_playbook(self, playbook: PlaybookDefinition | dict) -> PlaybookDefinition:
        return self._orchestrator.save_playbook(playbook)

    def load_playbook(self, name: str) -> PlaybookDefinition:
        return self._orchestrator.load_playbook(name)

    def delete_playbook(self, name: str) -> bool:
        return self._orchestrator.delete_playbook(name)

    def purge_history(self, older_than: datetime) -> int:
        return self._orchestrator.purge_history(older_than)

    def close(self) -> None:
        """Wait for background workflows and release the worker pool."""
        self._orchestrator.shutdown(wait=True)

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
