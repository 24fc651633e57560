import re
from typing import Any

import msgspec

from maestro.domain.entity import ModuleCallStep, PlaybookDefinition, ScriptStep, StepTypes
from maestro.domain.error import ConditionEvaluationError, ValidationError
from maestro.domain.expression import referenced_variables
from maestro.domain.value_object import ValidationReport

MAX_DEPTH = 8

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

WELL_KNOWN_ENV = frozenset({"context", "workflow_id", "playbook", "execution_mode", "dry_run"})

PARAMETER_TYPES = frozenset(
    {"string", "int", "integer", "number", "float", "bool", "boolean", "array", "object", "any"}
)

KNOWN_SHELLS = frozenset({"bash", "sh", "zsh", "pwsh", "powershell", "cmd"})

# Ids double as history file names, so they must survive unchanged on disk.
WORKFLOW_ID_PATTERN = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9_.-]{0,126}[A-Za-z0-9])?")


def check_workflow_id(workflow_id: str) -> str:
    """
    Reject caller-supplied workflow ids that are not plain file-system safe tokens.

    :raises ValueError: If the id contains anything but letters, digits, ``_``, ``.`` and ``-``
    """
    if not WORKFLOW_ID_PATTERN.fullmatch(workflow_id):
        raise ValueError(
            f"Invalid workflow id {workflow_id!r}: use letters, digits, '_', '.' or '-', "
            "starting and ending with a letter or digit"
        )
    return workflow_id


class _Walk:
    """Accumulates findings while walking a playbook's step graph."""

    def __init__(self, definition: PlaybookDefinition):
        self.definition = definition
        self.errors: list[str] = []
        self.warnings: list[str] = []
        self.used_parameters: set[str] = set()

    def steps(self, steps: list[StepTypes], depth: int, scope: str) -> None:
        seen: set[str] = set()
        for step in steps:
            label = step.name or "<unnamed>"
            if not step.name or not step.name.strip():
                self.errors.append(f"A step in {scope} has an empty 'name'")
            elif step.name in seen:
                self.errors.append(f"Duplicate step name '{step.name}' in {scope}")
            seen.add(step.name)

            if depth > MAX_DEPTH:
                self.errors.append(f"Step '{label}' exceeds the maximum nesting depth of {MAX_DEPTH}")
                continue

            self.errors.extend(step.validate())
            for template in step.templates():
                self.placeholders(label, template)
            condition = step.guard()
            if condition:
                self.condition(label, condition)
            if isinstance(step, ScriptStep) and step.shell and step.shell.lower() not in KNOWN_SHELLS:
                self.warnings.append(f"Script step '{label}' uses unrecognised shell '{step.shell}'")
            if (
                isinstance(step, ModuleCallStep)
                and self.definition.required_collaborators
                and step.collaborator not in self.definition.required_collaborators
            ):
                self.warnings.append(
                    f"Module step '{label}' calls '{step.collaborator}' which is not listed in 'requiredModules'"
                )
            for branch in step.branches():
                self.steps(branch, depth + 1, f"step '{label}'")

    def placeholders(self, label: str, template: str) -> None:
        for name in PLACEHOLDER_PATTERN.findall(template):
            if name.startswith("env."):
                if name[4:] not in WELL_KNOWN_ENV:
                    self.errors.append(f"Step '{label}' references unknown context variable '{{{{{name}}}}}'")
            elif name in self.definition.parameters:
                self.used_parameters.add(name)
            else:
                self.errors.append(f"Step '{label}' references undeclared parameter '{{{{{name}}}}}'")

    def condition(self, label: str, expression: str) -> None:
        try:
            variables = referenced_variables(expression)
        except ConditionEvaluationError as e:
            self.errors.append(f"Step '{label}' has an invalid condition: {e}")
            return
        for variable in variables:
            key = variable.path[0]
            if variable.namespace == "params":
                if key in self.definition.parameters:
                    self.used_parameters.add(key)
                else:
                    self.errors.append(f"Step '{label}' condition references undeclared parameter '{variable.reference}'")
            elif key not in WELL_KNOWN_ENV:
                self.errors.append(f"Step '{label}' condition references unknown context variable '{variable.reference}'")


def validate_playbook(data: PlaybookDefinition | dict[str, Any]) -> ValidationReport:
    """
    Validates a playbook's structure without modifying it.

    Errors are structural violations that block execution. Warnings are advisory.

    :param data: A decoded playbook or its raw dictionary form
    :type data: PlaybookDefinition | dict[str, Any]
    :returns: The validation report
    :rtype: ValidationReport
    """
    errors: list[str] = []
    steps_declared = True

    if isinstance(data, dict):
        if not data.get("name"):
            errors.append("Playbook is missing required field 'name'")
        if "steps" not in data:
            errors.append("Playbook is missing required field 'steps'")
            steps_declared = False
        try:
            definition = msgspec.convert(data, type=PlaybookDefinition)
        except msgspec.ValidationError as e:
            errors.append(f"Invalid playbook structure: {e}")
            return ValidationReport(is_valid=False, errors=errors)
    else:
        definition = data
        if not definition.name or not definition.name.strip():
            errors.append("Playbook is missing required field 'name'")

    walk = _Walk(definition)
    walk.errors.extend(errors)

    if steps_declared and not definition.steps:
        walk.errors.append(f"Playbook '{definition.name}' has no steps; field 'steps' must not be empty")
    if not definition.version:
        walk.warnings.append("Playbook has no 'version'")

    for name, spec in definition.parameters.items():
        if spec.type.lower() not in PARAMETER_TYPES:
            walk.errors.append(f"Parameter '{name}' has unsupported type '{spec.type}'")
        if spec.required and spec.default is not None:
            walk.warnings.append(f"Parameter '{name}' is required but also declares a default")

    walk.steps(definition.steps, 1, "playbook")

    for name in definition.parameters:
        if name not in walk.used_parameters:
            walk.warnings.append(f"Parameter '{name}' is declared but never referenced")

    return ValidationReport(is_valid=not walk.errors, errors=walk.errors, warnings=walk.warnings)


def require_valid(definition: PlaybookDefinition) -> PlaybookDefinition:
    """
    Validate a playbook and raise if it has errors.

    :param definition: The playbook to check
    :type definition: PlaybookDefinition
    :returns: The same playbook
    :rtype: PlaybookDefinition
    :raises ValidationError: If validation reports any error
    """
    report = validate_playbook(definition)
    if not report.is_valid:
        raise ValidationError(f"Playbook '{definition.name}' is invalid", report.errors)
    return definition
