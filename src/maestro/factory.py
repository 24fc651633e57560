from maestro.backend import BackendType
from maestro.client import Client
from maestro.config import EngineConfig
from maestro.domain.port import CollaboratorBase
from maestro.infrastructure.adapter.filesystem.client import create as create_filesystem_orchestrator
from maestro.infrastructure.adapter.in_memory.client import create as create_in_memory_orchestrator
from maestro.infrastructure.provider import builtin_collaborators


def create(
    backend: BackendType = BackendType.IN_MEMORY,
    collaborators: list[type[CollaboratorBase] | CollaboratorBase] | None = None,
    config: EngineConfig | None = None,
    include_builtins: bool = True,
    **kwargs,
) -> Client:
    """
    Factory function to create a Client with the specified backend.

    :param backend: Where playbooks and workflow history are kept
    :type backend: BackendType
    :param collaborators: Optional list of collaborator classes or instances to pre-register
    :type collaborators: list[type[CollaboratorBase] | CollaboratorBase] | None
    :param config: Engine configuration, defaults when None
    :type config: EngineConfig | None
    :param include_builtins: Register the builtin shell collaborator before ``collaborators``
    :type include_builtins: bool
    :param kwargs: Additional backend-specific configuration options
        (``playbooks_dir`` and ``state_dir`` for the filesystem backend; ``events``, ``sleep`` and ``id_generator`` for both)
    :returns: A configured Client instance
    :rtype: Client
    :raises ValueError: If the backend type is unsupported
    """
    registered = [*(builtin_collaborators() if include_builtins else []), *(collaborators or [])]

    if backend == BackendType.IN_MEMORY:
        orchestrator = create_in_memory_orchestrator(registered, config, **kwargs)
    elif backend == BackendType.FILESYSTEM:
        orchestrator = create_filesystem_orchestrator(registered, config, **kwargs)
    else:
        raise ValueError(f"Unsupported backend: {backend}")

    return Client(orchestrator, resolver=orchestrator.resolver)
