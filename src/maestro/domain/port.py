import inspect
from typing import Any, Callable


class CollaboratorBase:
    """
    Base class for step collaborators.

    Every public method a subclass defines is an operation that a ``module`` step may call by name
    (``{"module": <collaborator_name>, "function": <operation>}``). Script steps call the ``run``
    operation of the configured shell collaborator.

    Collaborators flagged ``retriable`` (or listing an operation in ``retriable_operations``) are
    network-sensitive: their calls are wrapped in the retry coordinator.
    """

    collaborator_name: str = ""
    retriable: bool = False
    retriable_operations: frozenset[str] = frozenset()

    def __init_subclass__(cls, **kwargs):
        """
        Ensures the subclass exposes at least one operation and has a collaborator name.

        :param kwargs: Additional keyword arguments passed to super().__init_subclass__
        :raises TypeError: If the subclass defines no public operation
        """
        super().__init_subclass__(**kwargs)

        if not cls.operation_names():
            raise TypeError(f"{cls.__name__} must define at least one public operation")

        if not cls.__dict__.get("collaborator_name"):
            cls.collaborator_name = cls.__name__

    @classmethod
    def operation_names(cls) -> list[str]:
        """
        Names of the operations this collaborator exposes.

        :returns: Sorted list of public method names defined below ``CollaboratorBase``
        :rtype: list[str]
        """
        return sorted(
            name
            for name, member in inspect.getmembers(cls, inspect.isfunction)
            if not name.startswith("_") and not hasattr(CollaboratorBase, name)
        )

    def get_operation(self, name: str) -> Callable[..., Any]:
        """
        Look up an operation by name.

        :param name: Operation name as written in the playbook ``function`` field
        :type name: str
        :returns: The bound method
        :raises KeyError: If the collaborator does not expose the operation
        """
        if name not in self.operation_names():
            raise KeyError(f"Collaborator '{self.collaborator_name}' has no operation '{name}'")
        return getattr(self, name)

    def is_retriable(self, operation: str) -> bool:
        return self.retriable or operation in self.retriable_operations
