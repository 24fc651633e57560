import copy
import inspect
import logging
import types
import typing
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Mapping, Union, get_args, get_origin

import msgspec

from maestro.application.port import Binder, ConditionEvaluator, Context, PlaceholderResolver, WorkflowLogger
from maestro.domain.entity import WorkflowInstance
from maestro.domain.error import ConditionEvaluationError, ParameterResolutionError
from maestro.domain.expression import parse, truthy
from maestro.domain.service import PLACEHOLDER_PATTERN

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

EVENT_LOGGER_NAME = "maestro.events"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class ExecutionContext(Context):
    """
    Read-only runtime context of one workflow instance.

    Parameters and ``env`` variables are exposed through mapping proxies. Parallel workers
    and nested branches receive their own copies through :meth:`copy` and :meth:`nested`.
    """

    def __init__(
        self,
        parameters: Mapping[str, Any],
        env: Mapping[str, Any] | None = None,
        dry_run: bool = False,
        continue_on_error: bool = False,
        depth: int = 1,
    ):
        self._parameters = MappingProxyType(dict(parameters))
        self._env = MappingProxyType(dict(env or {}))
        self.dry_run = dry_run
        self.continue_on_error = continue_on_error
        self.depth = depth

    @classmethod
    def for_instance(cls, instance: WorkflowInstance) -> "ExecutionContext":
        """
        Build the context for a registered workflow instance.

        :param instance: The workflow instance about to run
        :type instance: WorkflowInstance
        :returns: A context exposing the instance parameters and its ``env`` variables
        :rtype: ExecutionContext
        """
        context = instance.context
        env = {
            "context": context.environment.value,
            "workflow_id": instance.workflow_id,
            "playbook": instance.playbook.name,
            "execution_mode": context.execution_mode.value,
            "dry_run": context.dry_run,
        }
        return cls(
            parameters=context.parameters,
            env=env,
            dry_run=context.dry_run,
            continue_on_error=context.continue_on_error,
        )

    @property
    def parameters(self) -> Mapping[str, Any]:
        return self._parameters

    @property
    def env(self) -> Mapping[str, Any]:
        return self._env

    @property
    def workflow_id(self) -> str | None:
        return self._env.get("workflow_id")

    def lookup(self, namespace: str, path: tuple[str, ...]) -> Any:
        if namespace == "params":
            current: Any = self._parameters
        elif namespace == "env":
            current = self._env
        else:
            raise KeyError(namespace)
        for key in path:
            if not isinstance(current, Mapping) or key not in current:
                raise KeyError(".".join((namespace, *path)))
            current = current[key]
        return current

    def copy(self) -> "ExecutionContext":
        """Independent copy whose parameter values share no mutable state with this context."""
        return ExecutionContext(
            copy.deepcopy(dict(self._parameters)),
            dict(self._env),
            self.dry_run,
            self.continue_on_error,
            self.depth,
        )

    def nested(self) -> "ExecutionContext":
        """Context for the sub-steps of a composite step, one level deeper."""
        child = self.copy()
        child.depth = self.depth + 1
        return child


class ParameterBinder(Binder):
    """Binds parameters (accepting mixed types) to collaborator operation arguments with type coercion.

    Parameters the operation does not accept are dropped unless it takes ``**kwargs``.
    """

    def bind(self, operation: Callable[..., Any], params: dict[str, Any]) -> dict[str, Any]:
        sig = inspect.signature(operation)
        hints = typing.get_type_hints(operation, include_extras=False)
        bound: dict[str, Any] = {}
        accepts_kwargs = False
        for name, parameter in sig.parameters.items():
            if parameter.kind is inspect.Parameter.VAR_KEYWORD:
                accepts_kwargs = True
                continue
            if name == "self" or name not in params:
                continue
            bound[name] = self._coerce(params[name], hints.get(name, Any))
        if accepts_kwargs:
            for name, value in params.items():
                bound.setdefault(name, value)
        return bound

    def _coerce(self, value: Any, target_type: Any) -> Any:
        """Coerces a string value to the target type, handling Optional and PEP 604 unions."""
        if target_type is Any or (isinstance(target_type, type) and isinstance(value, target_type)):
            return value
        origin = get_origin(target_type)
        if isinstance(target_type, types.UnionType) or origin is Union:
            args = get_args(target_type)
            if type(None) in args and (value is None or (isinstance(value, str) and value.strip().lower() in {"none", "null", ""})):
                return None
            for arg in args:
                if arg is type(None):
                    continue
                try:
                    return self._coerce(value, arg)
                except (TypeError, ValueError):
                    continue
            return value
        if isinstance(value, str):
            if target_type is int:
                return int(value)
            if target_type is float:
                return float(value)
            if target_type is bool:
                v = value.strip().lower()
                if v in {"true", "1", "yes", "y"}:
                    return True
                if v in {"false", "0", "no", "n"}:
                    return False
                raise ValueError(f"Cannot interpret {value!r} as a boolean")
        return value


def stringify(value: Any) -> str:
    """Text form of a parameter value as it appears inside a substituted command."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return msgspec.json.encode(value).decode()
    return str(value)


class ParameterResolver(PlaceholderResolver):
    """Resolves ``{{name}}`` and ``{{env.name}}`` placeholders against an execution context.

    Rules:
    - If a string is exactly a single placeholder like ``"{{count}}"``, ``resolve_any`` returns the
      referenced value as-is (preserving type).
    - Otherwise placeholders are interpolated as text, in a single pass, so resolved values are never
      re-scanned.
    - An unknown name raises :class:`ParameterResolutionError`.
    """

    def resolve(self, template: str, ctx: Context) -> str:
        return PLACEHOLDER_PATTERN.sub(lambda match: stringify(self._lookup(match.group(1), ctx)), template)

    def resolve_any(self, value: Any, ctx: Context) -> Any:
        if isinstance(value, dict):
            return {k: self.resolve_any(v, ctx) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_any(v, ctx) for v in value]
        if isinstance(value, str):
            # Exact single-token match => return raw value to preserve type
            m = PLACEHOLDER_PATTERN.fullmatch(value.strip())
            if m:
                return self._lookup(m.group(1), ctx)
            return self.resolve(value, ctx)
        return value

    def _lookup(self, name: str, ctx: Context) -> Any:
        if name.startswith("env."):
            namespace, path = "env", tuple(name[4:].split("."))
        else:
            namespace, path = "params", (name,)
        try:
            return ctx.lookup(namespace, path)
        except KeyError:
            raise ParameterResolutionError(f"Unresolved placeholder '{{{{{name}}}}}'", placeholder=name) from None


class ExpressionConditionEvaluator(ConditionEvaluator):
    """Evaluates conditions with the restricted expression language in :mod:`maestro.domain.expression`."""

    def evaluate(self, expression: str, ctx: Context) -> bool:
        def lookup(namespace: str, path: tuple[str, ...]) -> Any:
            try:
                return ctx.lookup(namespace, path)
            except KeyError:
                reference = "$" + ".".join((namespace, *path))
                raise ConditionEvaluationError(f"Unknown variable '{reference}'", expression) from None

        return truthy(parse(expression).evaluate(lookup))


class StructuredWorkflowLogger(WorkflowLogger):
    """Emits one JSON document per workflow or step event to the ``maestro.events`` logger."""

    def __init__(self, logger: logging.Logger | None = None):
        self._logger = logger if logger is not None else logging.getLogger(EVENT_LOGGER_NAME)

    def log(self, level: str, message: str, **context: Any) -> None:
        try:
            levelno = _LEVELS[level.lower()]
        except KeyError:
            raise ValueError(f"Unknown log level: {level}") from None
        if not self._logger.isEnabledFor(levelno):
            return
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level.lower(),
            "event": message,
            **context,
        }
        self._logger.log(levelno, msgspec.json.encode(event, enc_hook=str).decode())


def configure_logging(level: str = "INFO") -> None:
    """
    Set up a console handler for the root logger.

    :param level: Level name such as ``INFO`` or ``DEBUG``
    :type level: str
    """
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
