from enum import Enum


class BackendType(Enum):
    """Supported playbook and history storage backends."""

    IN_MEMORY = "in_memory"
    FILESYSTEM = "filesystem"
