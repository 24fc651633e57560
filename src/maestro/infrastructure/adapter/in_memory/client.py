import time
from typing import Callable

from maestro.application.adapter import (
    ExpressionConditionEvaluator,
    ParameterBinder,
    ParameterResolver,
    StructuredWorkflowLogger,
)
from maestro.application.port import HistoryStore, PlaybookStore, WorkflowLogger
from maestro.application.retry import RetryCoordinator
from maestro.application.service import Orchestrator
from maestro.config import EngineConfig
from maestro.domain.port import CollaboratorBase
from maestro.infrastructure.adapter.in_memory.collaborator_resolver import InMemoryCollaboratorResolver
from maestro.infrastructure.adapter.in_memory.executor_factory import InMemoryExecutorFactory
from maestro.infrastructure.adapter.in_memory.history_store import InMemoryHistoryStore
from maestro.infrastructure.adapter.in_memory.playbook_store import InMemoryPlaybookStore
from maestro.infrastructure.adapter.in_memory.workflow_engine import InMemoryWorkflowEngine, UUIDGenerator
from maestro.infrastructure.adapter.in_memory.workflow_registry import InMemoryWorkflowRegistry


class InMemoryOrchestrator(Orchestrator):
    """Orchestrator whose collaborators are resolved from an in-memory registry."""

    def __init__(self, resolver: InMemoryCollaboratorResolver, executor_factory: InMemoryExecutorFactory, **kwargs):
        super().__init__(**kwargs)
        self.resolver = resolver
        self.executor_factory = executor_factory


def build(
    collaborators: list[type[CollaboratorBase] | CollaboratorBase],
    config: EngineConfig,
    playbook_store: PlaybookStore,
    history_store: HistoryStore | None,
    events: WorkflowLogger | None = None,
    sleep: Callable[[float], None] = time.sleep,
    id_generator: UUIDGenerator | None = None,
) -> InMemoryOrchestrator:
    """
    Wires an orchestrator around the given stores.

    :param collaborators: Collaborator classes or instances to register
    :type collaborators: list[type[CollaboratorBase] | CollaboratorBase]
    :param config: Engine configuration
    :type config: EngineConfig
    :param playbook_store: Store resolving playbook names
    :type playbook_store: PlaybookStore
    :param history_store: Store for finished workflows
    :type history_store: HistoryStore | None
    :param events: Structured event sink, a :class:`StructuredWorkflowLogger` by default
    :type events: WorkflowLogger | None
    :param sleep: Backoff sleep function
    :type sleep: Callable[[float], None]
    :param id_generator: Source of workflow ids
    :type id_generator: UUIDGenerator | None
    :returns: The wired orchestrator
    :rtype: InMemoryOrchestrator
    """
    events = events if events is not None else StructuredWorkflowLogger()
    resolver = InMemoryCollaboratorResolver(collaborators)
    executor_factory = InMemoryExecutorFactory(
        resolver=resolver,
        binder=ParameterBinder(),
        values=ParameterResolver(),
        conditions=ExpressionConditionEvaluator(),
        retry=RetryCoordinator(config.retry.policy(), sleep=sleep),
        execution_options=config.execution_options(),
        events=events,
    )
    registry = InMemoryWorkflowRegistry(history_limit=config.history_limit)
    engine = InMemoryWorkflowEngine(
        dispatcher=executor_factory.dispatcher,
        registry=registry,
        history_store=history_store,
        events=events,
        id_generator=id_generator,
    )
    return InMemoryOrchestrator(
        resolver=resolver,
        executor_factory=executor_factory,
        engine=engine,
        registry=registry,
        playbooks=playbook_store,
        history=history_store,
    )


def create(
    collaborators: list[type[CollaboratorBase] | CollaboratorBase],
    config: EngineConfig | None = None,
    **kwargs,
) -> InMemoryOrchestrator:
    """
    Creates an orchestrator that keeps playbooks and history in memory.

    :param collaborators: Collaborator classes or instances to register
    :type collaborators: list[type[CollaboratorBase] | CollaboratorBase]
    :param config: Engine configuration, defaults when None
    :type config: EngineConfig | None
    :param kwargs: ``events``, ``sleep`` or ``id_generator`` overrides passed to :func:`build`
    :returns: Configured InMemoryOrchestrator instance
    :rtype: InMemoryOrchestrator
    """
    config = config if config is not None else EngineConfig()
    return build(
        collaborators,
        config,
        playbook_store=InMemoryPlaybookStore(),
        history_store=InMemoryHistoryStore(limit=config.history_limit),
        **kwargs,
    )
