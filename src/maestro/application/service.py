import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

import msgspec

from maestro.application.port import HistoryStore, PlaybookStore, WorkflowEngine, WorkflowRegistry
from maestro.domain.entity import (
    ParameterSpec,
    PlaybookDefinition,
    WorkflowContext,
    WorkflowInstance,
    WorkflowResult,
    WorkflowSummary,
)
from maestro.domain.error import ValidationError
from maestro.domain.service import validate_playbook
from maestro.domain.value_object import EnvironmentContext, ExecutionMode, StopResult, ValidationReport

logger = logging.getLogger(__name__)

PLAYBOOK_SUFFIXES = (".json", ".yaml", ".yml")

PlaybookSource = PlaybookDefinition | dict | str | Path


def decode_playbook(data: bytes, suffix: str = ".json", source: str = "<input>") -> PlaybookDefinition:
    """
    Decodes a playbook document.

    :param data: Raw JSON or YAML bytes
    :type data: bytes
    :param suffix: File suffix selecting the format
    :type suffix: str
    :param source: Where the document came from, used in error messages
    :type source: str
    :returns: The decoded playbook (not yet validated)
    :rtype: PlaybookDefinition
    :raises ValidationError: If the document cannot be decoded into a playbook
    """
    try:
        if suffix.lower() in (".yaml", ".yml"):
            return msgspec.yaml.decode(data, type=PlaybookDefinition)
        return msgspec.json.decode(data, type=PlaybookDefinition)
    except msgspec.DecodeError as e:
        raise ValidationError(f"Invalid playbook in {source}: {e}") from e


def load_playbook(data: PlaybookSource) -> PlaybookDefinition:
    """
    Decodes and validates a playbook from a dictionary, a file path or a decoded definition.

    :param data: The playbook as a dictionary, path to a ``.json``/``.yaml``/``.yml`` file, or definition
    :type data: PlaybookDefinition | dict | str | Path
    :returns: The validated playbook
    :rtype: PlaybookDefinition
    :raises ValidationError: If the playbook is malformed or fails validation
    """
    if isinstance(data, PlaybookDefinition):
        definition = data
    elif isinstance(data, dict):
        report = validate_playbook(data)
        if not report.is_valid:
            raise ValidationError(f"Playbook '{data.get('name', '')}' is invalid", report.errors)
        definition = msgspec.convert(data, type=PlaybookDefinition)
    else:
        path = Path(data)
        try:
            raw = path.read_bytes()
        except OSError as e:
            raise ValidationError(f"Cannot read playbook file {path}: {e}") from e
        definition = decode_playbook(raw, path.suffix, source=str(path))

    report = validate_playbook(definition)
    if not report.is_valid:
        raise ValidationError(f"Playbook '{definition.name}' is invalid", report.errors)
    for warning in report.warnings:
        logger.warning("Playbook '%s': %s", definition.name, warning)
    return definition


_TRUE = {"true", "1", "yes", "y", "on"}
_FALSE = {"false", "0", "no", "n", "off"}


def coerce_parameter(name: str, spec: ParameterSpec, value: Any) -> Any:
    """
    Coerce a supplied parameter value to its declared type.

    Strings are parsed for ``int``, ``number``, ``bool``, ``array`` and ``object`` parameters.

    :raises ValueError: If the value cannot represent the declared type
    """
    kind = spec.type.lower()
    if value is None or kind == "any":
        return value
    if kind == "string":
        return value if isinstance(value, str) else str(value)
    if kind in ("int", "integer"):
        if isinstance(value, bool):
            raise ValueError(f"Parameter '{name}' expects an integer, got a boolean")
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"Parameter '{name}' expects an integer, got {value!r}")
        return int(value)
    if kind in ("number", "float"):
        if isinstance(value, bool):
            raise ValueError(f"Parameter '{name}' expects a number, got a boolean")
        return float(value) if isinstance(value, str) else value
    if kind in ("bool", "boolean"):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"Parameter '{name}' expects a boolean, got {value!r}")
    if kind in ("array", "object"):
        expected = list if kind == "array" else dict
        if isinstance(value, str):
            try:
                value = msgspec.json.decode(value)
            except msgspec.DecodeError:
                raise ValueError(f"Parameter '{name}' expects JSON {kind}, got {value!r}") from None
        if not isinstance(value, expected):
            raise ValueError(f"Parameter '{name}' expects an {kind}, got {type(value).__name__}")
        return value
    raise ValueError(f"Parameter '{name}' has unsupported type '{spec.type}'")


def resolve_parameters(definition: PlaybookDefinition, supplied: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Apply defaults, enforce required parameters and coerce values to their declared types.

    Undeclared parameters are passed through with a warning.

    :param definition: The playbook declaring the parameter schema
    :type definition: PlaybookDefinition
    :param supplied: Caller-supplied parameter values
    :type supplied: Mapping[str, Any] | None
    :returns: The resolved parameter map
    :rtype: dict[str, Any]
    :raises ValidationError: If a required parameter is missing or a value has the wrong type
    """
    supplied = dict(supplied or {})
    resolved: dict[str, Any] = {}
    errors: list[str] = []

    for name, spec in definition.parameters.items():
        if name in supplied:
            value = supplied.pop(name)
        elif spec.default is not None:
            value = spec.default
        elif spec.required:
            errors.append(f"Missing required parameter '{name}'")
            continue
        else:
            value = None
        try:
            resolved[name] = coerce_parameter(name, spec, value)
        except (TypeError, ValueError) as e:
            errors.append(str(e))

    for name, value in supplied.items():
        logger.warning("Playbook '%s' does not declare parameter '%s'", definition.name, name)
        resolved[name] = value

    if errors:
        raise ValidationError(f"Invalid parameters for playbook '{definition.name}'", errors)
    return resolved


class Orchestrator:
    """
    Owns the registry, stores and engine of one orchestration engine and exposes its operations.

    Workflows run either on the calling thread (:meth:`invoke_playbook_workflow`) or on an owned
    background pool (:meth:`start_playbook_workflow`).
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        registry: WorkflowRegistry,
        playbooks: PlaybookStore,
        history: HistoryStore | None = None,
        max_background_workflows: int = 4,
    ):
        """
        :param engine: The workflow engine executing playbooks
        :type engine: WorkflowEngine
        :param registry: Registry of active and recent workflow instances
        :type registry: WorkflowRegistry
        :param playbooks: Store that playbook names are resolved against
        :type playbooks: PlaybookStore
        :param history: Persistent store of finished instances
        :type history: HistoryStore | None
        :param max_background_workflows: Workers of the background pool
        :type max_background_workflows: int
        """
        self.engine = engine
        self.registry = registry
        self.playbooks = playbooks
        self.history = history
        self._lock = threading.Lock()
        self._futures: dict[str, Future] = {}
        self._max_background_workflows = max_background_workflows
        self._pool: ThreadPoolExecutor | None = None

    def _definition(self, playbook: PlaybookSource) -> PlaybookDefinition:
        if isinstance(playbook, (PlaybookDefinition, dict, Path)):
            return load_playbook(playbook)
        if playbook.lower().endswith(PLAYBOOK_SUFFIXES) and Path(playbook).is_file():
            return load_playbook(playbook)
        return load_playbook(self.playbooks.load(playbook))

    def _prepare(
        self,
        playbook: PlaybookSource,
        parameters: Mapping[str, Any] | None,
        execution_mode: ExecutionMode | str,
        environment_context: EnvironmentContext | str,
        dry_run: bool,
        continue_on_error: bool,
        workflow_id: str | None,
    ) -> WorkflowInstance:
        definition = self._definition(playbook)
        context = WorkflowContext(
            parameters=resolve_parameters(definition, parameters),
            environment=EnvironmentContext(environment_context),
            execution_mode=ExecutionMode(execution_mode),
            dry_run=dry_run,
            continue_on_error=continue_on_error,
        )
        return self.engine.prepare(definition, context, workflow_id)

    def invoke_playbook_workflow(
        self,
        playbook: PlaybookSource,
        parameters: Mapping[str, Any] | None = None,
        execution_mode: ExecutionMode | str = ExecutionMode.SEQUENTIAL,
        environment_context: EnvironmentContext | str = EnvironmentContext.DEV,
        dry_run: bool = False,
        continue_on_error: bool = False,
        workflow_id: str | None = None,
    ) -> WorkflowResult:
        """
        Runs a playbook to completion on the calling thread.

        A playbook that fails validation, or parameters that fail the schema, produce a failed result
        listing ``validation_errors``; no workflow instance is created for them.

        :param playbook: Playbook name in the store, path to a playbook file, dictionary or definition
        :type playbook: PlaybookDefinition | dict | str | Path
        :param parameters: Parameter values
        :type parameters: Mapping[str, Any] | None
        :param execution_mode: ``sequential``, ``parallel`` or ``conditional``
        :type execution_mode: ExecutionMode | str
        :param environment_context: ``dev``, ``staging`` or ``prod``
        :type environment_context: EnvironmentContext | str
        :param dry_run: Resolve and evaluate everything but call no collaborator
        :type dry_run: bool
        :param continue_on_error: Keep going after a failed step
        :type continue_on_error: bool
        :param workflow_id: Optional workflow identifier
        :type workflow_id: str | None
        :returns: The workflow result
        :rtype: WorkflowResult
        :raises PlaybookNotFoundError: If a playbook name is not in the store
        :raises DuplicateWorkflowError: If ``workflow_id`` is already known
        :raises ValueError: If the execution mode or environment is not recognised
        """
        try:
            instance = self._prepare(
                playbook, parameters, execution_mode, environment_context, dry_run, continue_on_error, workflow_id
            )
        except ValidationError as e:
            name = _playbook_label(playbook)
            logger.warning("Rejected playbook %s: %s", name, "; ".join(e.errors))
            return WorkflowResult.rejected(name, e.errors, dry_run=dry_run)
        return self.engine.execute(instance)

    def start_playbook_workflow(
        self,
        playbook: PlaybookSource,
        parameters: Mapping[str, Any] | None = None,
        execution_mode: ExecutionMode | str = ExecutionMode.SEQUENTIAL,
        environment_context: EnvironmentContext | str = EnvironmentContext.DEV,
        dry_run: bool = False,
        continue_on_error: bool = False,
        workflow_id: str | None = None,
    ) -> str:
        """
        Registers a workflow and runs it on the background pool.

        The instance is registered before this returns, so it can be queried and stopped immediately.

        :returns: The workflow id
        :rtype: str
        :raises ValidationError: If the playbook or its parameters are invalid
        """
        instance = self._prepare(
            playbook, parameters, execution_mode, environment_context, dry_run, continue_on_error, workflow_id
        )
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._max_background_workflows, thread_name_prefix="maestro-workflow"
                )
            future = self._pool.submit(self.engine.execute, instance)
            self._futures[instance.workflow_id] = future
        # Runs inline when the future is already done, so it must be added outside the lock.
        future.add_done_callback(lambda _: self._forget(instance.workflow_id))
        return instance.workflow_id

    def _forget(self, workflow_id: str) -> None:
        with self._lock:
            self._futures.pop(workflow_id, None)

    def wait_for_workflow(self, workflow_id: str, timeout: float | None = None) -> WorkflowResult:
        """
        Block until a workflow finishes and return its result.

        :param workflow_id: Id returned by :meth:`start_playbook_workflow`, or of any finished workflow
        :type workflow_id: str
        :param timeout: Seconds to wait, forever when None
        :type timeout: float | None
        :returns: The workflow result
        :rtype: WorkflowResult
        :raises TimeoutError: If the workflow is still running after ``timeout``
        :raises KeyError: If the workflow is unknown
        """
        with self._lock:
            future = self._futures.get(workflow_id)
        if future is not None:
            return future.result(timeout=timeout)
        # Finished background workflows are rebuilt from the registry or the history store.
        instance = self.get_workflow_status(workflow_id)
        if instance is None:
            raise KeyError(f"Workflow '{workflow_id}' not found")
        if not instance.status.is_terminal:
            raise KeyError(f"Workflow '{workflow_id}' was not started by this orchestrator")
        return WorkflowResult.from_instance(instance)

    def get_workflow_status(self, workflow_id: str | None = None) -> WorkflowInstance | WorkflowSummary | None:
        """
        Look up one workflow, or summarize the registry.

        :param workflow_id: Workflow to look up; None for a summary of all tracked workflows
        :type workflow_id: str | None
        :returns: The instance, None if unknown, or a summary when no id is given
        :rtype: WorkflowInstance | WorkflowSummary | None
        """
        if workflow_id is None:
            return self.registry.summary()
        instance = self.registry.get(workflow_id)
        if instance is None and self.history is not None:
            try:
                instance = self.history.load(workflow_id)
            except KeyError:
                return None
        return instance

    def stop_workflow(self, workflow_id: str) -> StopResult:
        return self.registry.stop(workflow_id)

    def list_history(self) -> list[WorkflowInstance]:
        """
        Finished workflows, oldest first.

        Read from the history store when one is configured, so workflows of earlier processes are included.

        :returns: Finished workflow instances
        :rtype: list[WorkflowInstance]
        """
        if self.history is None:
            return self.registry.list_history()
        return [self.history.load(workflow_id) for workflow_id in self.history.list_ids()]

    def validate_playbook(self, definition: PlaybookSource) -> ValidationReport:
        """
        Validate a playbook without running it.

        :param definition: Dictionary, definition, file path, or name of a stored playbook
        :type definition: PlaybookDefinition | dict | str | Path
        :returns: The validation report
        :rtype: ValidationReport
        """
        if isinstance(definition, (PlaybookDefinition, dict)):
            return validate_playbook(definition)
        try:
            if isinstance(definition, Path) or (
                definition.lower().endswith(PLAYBOOK_SUFFIXES) and Path(definition).is_file()
            ):
                path = Path(definition)
                decoded = decode_playbook(path.read_bytes(), path.suffix, source=str(path))
            else:
                decoded = self.playbooks.load(definition)
        except (ValidationError, OSError) as e:
            return ValidationReport(is_valid=False, errors=getattr(e, "errors", None) or [str(e)])
        return validate_playbook(decoded)

    def list_playbooks(self) -> list[str]:
        return self.playbooks.list_names()

    def load_playbook(self, name: str) -> PlaybookDefinition:
        return self.playbooks.load(name)

    def save_playbook(self, definition: PlaybookDefinition | dict) -> PlaybookDefinition:
        """
        Validate and store a playbook, replacing any playbook with the same name.

        :raises ValidationError: If the playbook is invalid
        """
        playbook = load_playbook(definition)
        self.playbooks.save(playbook)
        return playbook

    def delete_playbook(self, name: str) -> bool:
        return self.playbooks.delete(name)

    def purge_history(self, older_than: datetime) -> int:
        """
        Remove finished workflows that ended before ``older_than`` from memory and the history store.

        :returns: Number removed from the history store, or from memory when there is no store
        :rtype: int
        """
        removed = self.registry.purge(older_than)
        if self.history is not None:
            removed = self.history.purge(older_than)
        return removed

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)


def _playbook_label(playbook: PlaybookSource) -> str:
    if isinstance(playbook, PlaybookDefinition):
        return playbook.name
    if isinstance(playbook, dict):
        return str(playbook.get("name", ""))
    return str(playbook)
