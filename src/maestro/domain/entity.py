from datetime import datetime
from typing import Any

import msgspec

from maestro.domain.value_object import (
    EnvironmentContext,
    ExecutionMode,
    StepStatus,
    WorkflowMetrics,
    WorkflowStatus,
)


class ParameterSpec(msgspec.Struct, frozen=True, forbid_unknown_fields=True):
    """Declared playbook parameter."""

    type: str = "string"
    required: bool = False
    default: Any = None
    description: str = ""


class Step(msgspec.Struct, frozen=True, tag_field="type", forbid_unknown_fields=True):
    """Base class for playbook steps. ``name`` is unique among its siblings."""

    name: str

    def validate(self) -> list[str]:
        """
        Check the variant-specific required fields.

        :returns: Human-readable problems, empty when the step is well formed
        :rtype: list[str]
        """
        raise NotImplementedError

    def branches(self) -> list[list["StepTypes"]]:
        """Nested step lists owned by this step."""
        return []

    def templates(self) -> list[str]:
        """Strings that undergo ``{{name}}`` substitution when this step runs."""
        return []

    def guard(self) -> str | None:
        """The condition expression attached to this step, if any."""
        return None


class ScriptStep(Step, kw_only=True, tag="script"):
    """Runs a command through the shell collaborator.

    Optional: retries and timeout override the engine defaults for this step.
    """

    command: str
    shell: str | None = None
    condition: str | None = None
    retries: int | None = None
    timeout: float | None = None
    description: str = ""

    def validate(self) -> list[str]:
        problems = []
        if not self.command or not self.command.strip():
            problems.append(f"Script step '{self.name}' has an empty 'command'")
        if self.retries is not None and self.retries < 0:
            problems.append(f"Script step '{self.name}' has negative 'retries'")
        if self.timeout is not None and self.timeout <= 0:
            problems.append(f"Script step '{self.name}' must use a positive 'timeout'")
        return problems

    def templates(self) -> list[str]:
        return [self.command]

    def guard(self) -> str | None:
        return self.condition


class ConditionalStep(Step, kw_only=True, tag="condition"):
    """Evaluates ``condition`` and runs either ``then`` or ``else`` steps sequentially."""

    condition: str
    then_steps: "list[StepTypes]" = msgspec.field(default_factory=list, name="then")
    else_steps: "list[StepTypes]" = msgspec.field(default_factory=list, name="else")
    description: str = ""

    def validate(self) -> list[str]:
        problems = []
        if not self.condition or not self.condition.strip():
            problems.append(f"Conditional step '{self.name}' is missing 'condition'")
        if not self.then_steps and not self.else_steps:
            problems.append(f"Conditional step '{self.name}' needs at least one of 'then' or 'else'")
        return problems

    def branches(self) -> list[list["StepTypes"]]:
        return [self.then_steps, self.else_steps]

    def guard(self) -> str | None:
        return self.condition


class ParallelStep(Step, kw_only=True, tag="parallel"):
    """Runs sub-steps concurrently on a bounded worker pool and joins on all of them."""

    parallel_steps: "list[StepTypes]" = msgspec.field(default_factory=list, name="parallel")
    max_concurrency: int | None = None
    description: str = ""

    def validate(self) -> list[str]:
        problems = []
        if not self.parallel_steps:
            problems.append(f"Parallel step '{self.name}' has no sub-steps in 'parallel'")
        if self.max_concurrency is not None and self.max_concurrency < 1:
            problems.append(f"Parallel step '{self.name}' must use a positive 'max_concurrency'")
        return problems

    def branches(self) -> list[list["StepTypes"]]:
        return [self.parallel_steps]


class ModuleCallStep(Step, kw_only=True, tag="module"):
    """Invokes ``function`` on the named collaborator module with ``parameters``."""

    collaborator: str = msgspec.field(name="module")
    operation: str = msgspec.field(name="function")
    parameters: dict[str, Any] = msgspec.field(default_factory=dict)
    condition: str | None = None
    retries: int | None = None
    timeout: float | None = None
    description: str = ""

    def validate(self) -> list[str]:
        problems = []
        if not self.collaborator or not self.collaborator.strip():
            problems.append(f"Module step '{self.name}' is missing 'module'")
        if not self.operation or not self.operation.strip():
            problems.append(f"Module step '{self.name}' is missing 'function'")
        if self.retries is not None and self.retries < 0:
            problems.append(f"Module step '{self.name}' has negative 'retries'")
        if self.timeout is not None and self.timeout <= 0:
            problems.append(f"Module step '{self.name}' must use a positive 'timeout'")
        return problems

    def templates(self) -> list[str]:
        found: list[str] = []

        def walk(value: Any) -> None:
            if isinstance(value, str):
                found.append(value)
            elif isinstance(value, dict):
                for item in value.values():
                    walk(item)
            elif isinstance(value, list):
                for item in value:
                    walk(item)

        walk(self.parameters)
        return found

    def guard(self) -> str | None:
        return self.condition


StepTypes = ScriptStep | ConditionalStep | ParallelStep | ModuleCallStep


class PlaybookDefinition(msgspec.Struct, frozen=True, forbid_unknown_fields=True):
    """A named, versioned, declarative step graph plus its parameter schema."""

    name: str = ""
    description: str = ""
    version: str = ""
    parameters: dict[str, ParameterSpec] = msgspec.field(default_factory=dict)
    steps: list[StepTypes] = msgspec.field(default_factory=list)
    required_collaborators: list[str] = msgspec.field(default_factory=list, name="requiredModules")

    def to_dict(self) -> dict[str, Any]:
        return msgspec.to_builtins(self)

    def to_json(self) -> str:
        return msgspec.json.encode(self).decode()


class StepResult(msgspec.Struct, forbid_unknown_fields=True):
    """Outcome of one dispatched step. Composite steps carry their sub-step results in ``children``."""

    name: str
    status: StepStatus
    start_time: datetime
    end_time: datetime
    step_type: str = ""
    output: Any = None
    error: str | None = None
    error_type: str | None = None
    attempts: int = 0
    children: "list[StepResult]" = msgspec.field(default_factory=list)

    @property
    def duration(self) -> float:
        """Elapsed seconds between start and end."""
        return (self.end_time - self.start_time).total_seconds()

    @property
    def retries(self) -> int:
        """Retries performed by this step and everything nested under it."""
        own = max(self.attempts - 1, 0)
        return own + sum(child.retries for child in self.children)


class WorkflowContext(msgspec.Struct, frozen=True, forbid_unknown_fields=True):
    """Serializable snapshot of the resolved runtime context of a workflow."""

    parameters: dict[str, Any] = msgspec.field(default_factory=dict)
    environment: EnvironmentContext = EnvironmentContext.DEV
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    dry_run: bool = False
    continue_on_error: bool = False


class WorkflowInstance(msgspec.Struct, forbid_unknown_fields=True):
    """One runtime execution of a playbook."""

    workflow_id: str
    playbook: PlaybookDefinition
    context: WorkflowContext
    start_time: datetime
    status: WorkflowStatus = WorkflowStatus.RUNNING
    step_results: list[StepResult] = msgspec.field(default_factory=list)
    end_time: datetime | None = None
    metrics: WorkflowMetrics = msgspec.field(default_factory=WorkflowMetrics)
    stop_requested: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return msgspec.to_builtins(self)

    def to_json(self) -> str:
        return msgspec.json.encode(self).decode()


class WorkflowResult(msgspec.Struct, forbid_unknown_fields=True):
    """Result of invoking a playbook, including status and all top-level step results."""

    workflow_id: str | None
    playbook: str
    status: WorkflowStatus
    success: bool
    step_results: list[StepResult] = msgspec.field(default_factory=list)
    metrics: WorkflowMetrics = msgspec.field(default_factory=WorkflowMetrics)
    start_time: datetime | None = None
    end_time: datetime | None = None
    dry_run: bool = False
    error: str | None = None
    validation_errors: list[str] = msgspec.field(default_factory=list)

    @classmethod
    def from_instance(cls, instance: WorkflowInstance) -> "WorkflowResult":
        """
        Build the caller-facing result from a finalized workflow instance.

        :param instance: A workflow instance whose status left ``running``
        :type instance: WorkflowInstance
        :returns: The workflow result
        :rtype: WorkflowResult
        """
        return cls(
            workflow_id=instance.workflow_id,
            playbook=instance.playbook.name,
            status=instance.status,
            success=instance.status == WorkflowStatus.COMPLETED,
            step_results=list(instance.step_results),
            metrics=instance.metrics,
            start_time=instance.start_time,
            end_time=instance.end_time,
            dry_run=instance.context.dry_run,
            error=instance.error,
        )

    @classmethod
    def rejected(cls, playbook: str, errors: list[str], dry_run: bool = False) -> "WorkflowResult":
        """Result for a playbook refused before any workflow instance was created."""
        return cls(
            workflow_id=None,
            playbook=playbook,
            status=WorkflowStatus.FAILED,
            success=False,
            dry_run=dry_run,
            error="; ".join(errors),
            validation_errors=list(errors),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert the WorkflowResult to a dictionary."""
        return msgspec.to_builtins(self)

    def to_json(self) -> str:
        """Convert the WorkflowResult to a JSON string."""
        return msgspec.json.encode(self).decode()

    def to_yaml(self) -> str:
        """Convert the WorkflowResult to a YAML string."""
        return msgspec.yaml.encode(self).decode()


class WorkflowSummary(msgspec.Struct, forbid_unknown_fields=True):
    """Registry overview returned when no workflow id is given."""

    active_count: int
    history_count: int
    instances: list[WorkflowInstance] = msgspec.field(default_factory=list)
