"""
Maestro - Playbook Orchestration Engine

Runs declarative playbooks of script, conditional, parallel and module steps against a
parameterized context, with retries for transient failures and a registry of running workflows.
"""

import logging

from maestro.backend import BackendType
from maestro.client import Client
from maestro.config import EngineConfig, load_config
from maestro.domain.entity import PlaybookDefinition, StepResult, WorkflowResult
from maestro.domain.port import CollaboratorBase
from maestro.domain.value_object import EnvironmentContext, ExecutionMode, HandlerResult
from maestro.factory import create

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Client",
    "BackendType",
    "CollaboratorBase",
    "EngineConfig",
    "EnvironmentContext",
    "ExecutionMode",
    "HandlerResult",
    "PlaybookDefinition",
    "StepResult",
    "WorkflowResult",
    "create",
    "load_config",
]
