class MaestroError(Exception):
    """Base class for all errors raised by the orchestration engine."""


class ValidationError(MaestroError):
    """
    Raised when a playbook definition or its runtime parameters are structurally invalid.

    :param message: Summary of the failure
    :type message: str
    :param errors: Individual validation messages
    :type errors: list[str] | None
    """

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = list(errors) if errors else [message]


class ConditionEvaluationError(MaestroError):
    """Raised when a condition expression is malformed or references an unknown variable."""

    def __init__(self, message: str, expression: str | None = None):
        super().__init__(message)
        self.expression = expression


class ParameterResolutionError(MaestroError):
    """Raised when a ``{{name}}`` placeholder cannot be resolved against the workflow context."""

    def __init__(self, message: str, placeholder: str | None = None):
        super().__init__(message)
        self.placeholder = placeholder


class StepExecutionError(MaestroError):
    """
    Raised when a collaborator reports a failure for a step operation.

    :param message: The collaborator's error message
    :type message: str
    :param category: Structured error category supplied by the collaborator (e.g. ``network``)
    :type category: str | None
    :param retriable: Explicit retriability, overrides the classifier when not None
    :type retriable: bool | None
    :param exit_code: Process exit code, when the collaborator ran a process
    :type exit_code: int | None
    """

    def __init__(
        self,
        message: str,
        category: str | None = None,
        retriable: bool | None = None,
        exit_code: int | None = None,
    ):
        super().__init__(message)
        self.category = category
        self.retriable = retriable
        self.exit_code = exit_code
        self.attempts = 1


class StepTimeoutError(StepExecutionError):
    """Raised when a step exceeds its timeout. The underlying call may keep running detached."""

    def __init__(self, message: str, timeout: float):
        super().__init__(message, category="timeout")
        self.timeout = timeout


class CancellationError(MaestroError):
    """Raised when a workflow has been stopped externally."""


class PlaybookNotFoundError(MaestroError, KeyError):
    """Raised when a playbook name is not present in the playbook store."""

    def __init__(self, name: str):
        super().__init__(f"Playbook '{name}' not found")
        self.name = name

    def __str__(self) -> str:
        return self.args[0]


class DuplicateWorkflowError(MaestroError, ValueError):
    """Raised when registering a workflow id that is already known to the registry."""


class ConfigurationError(MaestroError):
    """Raised when engine configuration cannot be loaded or is invalid."""
