from maestro.domain.port import CollaboratorBase
from maestro.infrastructure.adapter.local.shell import ShellCollaborator


def builtin_collaborators() -> list[type[CollaboratorBase]]:
    """Returns the collaborator classes every client registers unless told otherwise."""
    return [ShellCollaborator]
