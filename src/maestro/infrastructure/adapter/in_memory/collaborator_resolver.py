import threading

from maestro.application.port import CollaboratorResolver
from maestro.domain.port import CollaboratorBase


class InMemoryCollaboratorResolver(CollaboratorResolver):
    """Resolves collaborators from an in-memory registry keyed by ``collaborator_name``."""

    def __init__(self, collaborators: list[type[CollaboratorBase] | CollaboratorBase] | None = None):
        """
        Initializes resolver with an optional collaborator list.

        Classes are instantiated on every resolve; instances are shared across calls.

        :param collaborators: Collaborator classes or instances to register
        :type collaborators: list[type[CollaboratorBase] | CollaboratorBase] | None
        """
        self._lock = threading.Lock()
        self._registry: dict[str, type[CollaboratorBase] | CollaboratorBase] = {}
        for collaborator in collaborators or []:
            self.register(collaborator)

    def register(self, collaborator: type[CollaboratorBase] | CollaboratorBase) -> None:
        if not (
            isinstance(collaborator, CollaboratorBase)
            or (isinstance(collaborator, type) and issubclass(collaborator, CollaboratorBase))
        ):
            raise TypeError(f"{collaborator!r} is not a CollaboratorBase class or instance")
        with self._lock:
            self._registry[collaborator.collaborator_name] = collaborator

    def resolve(self, name: str) -> CollaboratorBase:
        """
        Returns a collaborator instance matching the given name.

        :param name: The name of the collaborator to resolve
        :type name: str
        :returns: Collaborator instance matching the given name
        :rtype: CollaboratorBase
        :raises KeyError: If no collaborator is registered for the given name
        """
        with self._lock:
            try:
                entry = self._registry[name]
            except KeyError:
                raise KeyError(f"No collaborator registered under '{name}'") from None
        return entry() if isinstance(entry, type) else entry

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._registry)
