from pathlib import Path

from maestro.config import EngineConfig
from maestro.domain.port import CollaboratorBase
from maestro.infrastructure.adapter.filesystem.history_store import FileSystemHistoryStore
from maestro.infrastructure.adapter.filesystem.playbook_store import FileSystemPlaybookStore
from maestro.infrastructure.adapter.in_memory.client import InMemoryOrchestrator, build


def create(
    collaborators: list[type[CollaboratorBase] | CollaboratorBase],
    config: EngineConfig | None = None,
    playbooks_dir: str | Path | None = None,
    state_dir: str | Path | None = None,
    **kwargs,
) -> InMemoryOrchestrator:
    """
    Creates an orchestrator backed by playbook files and a workflow history directory.

    :param collaborators: Collaborator classes or instances to register
    :type collaborators: list[type[CollaboratorBase] | CollaboratorBase]
    :param config: Engine configuration, defaults when None
    :type config: EngineConfig | None
    :param playbooks_dir: Overrides ``config.playbooks_dir``
    :type playbooks_dir: str | Path | None
    :param state_dir: Overrides ``config.state_dir``
    :type state_dir: str | Path | None
    :returns: Configured orchestrator
    :rtype: InMemoryOrchestrator
    """
    config = config if config is not None else EngineConfig()
    return build(
        collaborators,
        config,
        playbook_store=FileSystemPlaybookStore(playbooks_dir or config.playbooks_dir),
        history_store=FileSystemHistoryStore(state_dir or config.state_dir),
        **kwargs,
    )
