import logging
import os
import subprocess
from pathlib import Path

from maestro.domain.error import StepExecutionError
from maestro.domain.port import CollaboratorBase
from maestro.domain.value_object import HandlerResult

logger = logging.getLogger(__name__)


def shell_command(shell: str, command: str) -> list[str]:
    """
    Argument vector that runs ``command`` through ``shell``.

    :raises ValueError: If the shell is not supported
    """
    name = shell.lower()
    if name in ("bash", "sh", "zsh"):
        return [name, "-c", command]
    if name in ("pwsh", "powershell"):
        return [name, "-NoProfile", "-NonInteractive", "-Command", command]
    if name == "cmd":
        return ["cmd", "/c", command]
    raise ValueError(f"Unsupported shell: {shell}")


class ShellCollaborator(CollaboratorBase):
    """Runs script step commands as local subprocesses."""

    collaborator_name = "shell"

    def __init__(self, cwd: str | Path | None = None, env: dict[str, str] | None = None):
        self.cwd = cwd
        self.env = {**os.environ, **env} if env else None

    def run(self, command: str, shell: str = "bash") -> HandlerResult:
        """
        Execute a command and capture its output.

        A non-zero exit status is reported as an unsuccessful result carrying stderr.

        :param command: Fully substituted command text
        :type command: str
        :param shell: One of ``bash``, ``sh``, ``zsh``, ``pwsh``, ``powershell`` or ``cmd``
        :type shell: str
        :returns: Captured stdout, stderr and exit code
        :rtype: HandlerResult
        """
        argv = shell_command(shell, command)
        logger.debug("Running %s", argv)
        try:
            completed = subprocess.run(argv, capture_output=True, text=True, cwd=self.cwd, env=self.env)
        except FileNotFoundError:
            raise StepExecutionError(f"Shell '{shell}' is not available", retriable=False) from None
        if completed.returncode != 0:
            error = completed.stderr.strip() or f"Command exited with status {completed.returncode}"
            return HandlerResult(
                success=False,
                output=completed.stdout.strip(),
                error=error,
                exit_code=completed.returncode,
            )
        return HandlerResult(output=completed.stdout.strip(), exit_code=0)
