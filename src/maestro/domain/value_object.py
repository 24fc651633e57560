from dataclasses import dataclass
from enum import Enum
from typing import Any

import msgspec
from msgspec import structs

DEFAULT_RETRIABLE_PATTERNS = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "connection aborted",
    "temporarily unavailable",
    "temporary failure",
    "network is unreachable",
    "service unavailable",
    "too many requests",
    "rate limit",
)

DEFAULT_RETRIABLE_CATEGORIES = (
    "network",
    "timeout",
    "throttled",
    "transient",
    "unavailable",
)


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self is not WorkflowStatus.RUNNING


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"


class EnvironmentContext(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class RetryPolicy(msgspec.Struct, frozen=True, forbid_unknown_fields=True):
    """
    Bounded retry policy with exponential backoff.

    The delay before retry ``n`` (1-based) is ``min(base_delay * backoff_multiplier ** (n - 1), max_delay)``.
    Total attempts never exceed ``max_retries + 1``.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    retriable_patterns: tuple[str, ...] = DEFAULT_RETRIABLE_PATTERNS
    retriable_categories: tuple[str, ...] = DEFAULT_RETRIABLE_CATEGORIES

    def delay_for(self, attempt: int) -> float:
        """
        Backoff delay to wait after the given failed attempt.

        :param attempt: The 1-based attempt number that just failed
        :type attempt: int
        :returns: Seconds to sleep before the next attempt
        :rtype: float
        """
        delay = self.base_delay * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(delay, self.max_delay)

    def with_max_retries(self, max_retries: int) -> "RetryPolicy":
        return structs.replace(self, max_retries=max_retries)


@dataclass
class ExecutionOptions:
    """Engine-wide step execution settings shared by every workflow an engine runs."""

    max_concurrency: int = 8
    step_timeout: float | None = None
    default_shell: str = "bash"
    shell_collaborator: str = "shell"


@dataclass
class RetryOutcome:
    """Outcome of ``RetryCoordinator.execute_with_retry``."""

    success: bool
    result: Any = None
    attempts: int = 0
    last_error: Exception | None = None


class HandlerResult(msgspec.Struct, forbid_unknown_fields=True):
    """What a collaborator operation reports back for one invocation."""

    success: bool = True
    output: Any = None
    error: str | None = None
    exit_code: int | None = None
    category: str | None = None


class ValidationReport(msgspec.Struct, forbid_unknown_fields=True):
    """Result of validating a playbook definition."""

    is_valid: bool
    errors: list[str] = msgspec.field(default_factory=list)
    warnings: list[str] = msgspec.field(default_factory=list)


class StopResult(msgspec.Struct, forbid_unknown_fields=True):
    success: bool
    error: str | None = None


class WorkflowMetrics(msgspec.Struct, forbid_unknown_fields=True):
    """Counters maintained by the executor over the top-level steps of one workflow."""

    steps_completed: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0
    retries_performed: int = 0
