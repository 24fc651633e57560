import os
from pathlib import Path

import msgspec
from msgspec import structs

from maestro.domain.error import ConfigurationError
from maestro.domain.value_object import (
    DEFAULT_RETRIABLE_CATEGORIES,
    DEFAULT_RETRIABLE_PATTERNS,
    ExecutionOptions,
    RetryPolicy,
)

DEFAULT_CONFIG_FILE = "maestro.yaml"


class RetrySettings(msgspec.Struct, frozen=True, forbid_unknown_fields=True):
    """Retry behaviour applied to network-sensitive collaborator operations."""

    max_retries: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    retriable_patterns: list[str] = msgspec.field(default_factory=lambda: list(DEFAULT_RETRIABLE_PATTERNS))
    retriable_categories: list[str] = msgspec.field(default_factory=lambda: list(DEFAULT_RETRIABLE_CATEGORIES))

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            backoff_multiplier=self.backoff_multiplier,
            max_delay=self.max_delay,
            retriable_patterns=tuple(self.retriable_patterns),
            retriable_categories=tuple(self.retriable_categories),
        )


class EngineConfig(msgspec.Struct, frozen=True, forbid_unknown_fields=True):
    """Top-level engine configuration."""

    max_concurrency: int = 8
    history_limit: int = 100
    playbooks_dir: str = "orchestration/playbooks"
    state_dir: str = "orchestration/state"
    default_shell: str = "bash"
    shell_collaborator: str = "shell"
    step_timeout: float | None = None
    log_level: str = "INFO"
    retry: RetrySettings = msgspec.field(default_factory=RetrySettings)

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.history_limit < 0:
            raise ValueError("history_limit must not be negative")
        if self.step_timeout is not None and self.step_timeout <= 0:
            raise ValueError("step_timeout must be positive")

    def execution_options(self) -> ExecutionOptions:
        return ExecutionOptions(
            max_concurrency=self.max_concurrency,
            step_timeout=self.step_timeout,
            default_shell=self.default_shell,
            shell_collaborator=self.shell_collaborator,
        )


_ENV_OVERRIDES = {
    "MAESTRO_PLAYBOOKS_DIR": "playbooks_dir",
    "MAESTRO_STATE_DIR": "state_dir",
    "MAESTRO_LOG_LEVEL": "log_level",
}


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load configuration from a YAML or JSON file.

    Falls back to the ``MAESTRO_CONFIG`` environment variable, then ``maestro.yaml`` in the current
    directory, then defaults. ``MAESTRO_PLAYBOOKS_DIR``, ``MAESTRO_STATE_DIR`` and ``MAESTRO_LOG_LEVEL``
    override the corresponding settings.

    :param path: Explicit configuration file, which must exist
    :type path: str | Path | None
    :returns: The engine configuration
    :rtype: EngineConfig
    :raises ConfigurationError: If the file is missing, unreadable or invalid
    """
    explicit = path or os.getenv("MAESTRO_CONFIG")
    config_path = Path(explicit) if explicit else Path(DEFAULT_CONFIG_FILE)

    if config_path.is_file():
        try:
            data = config_path.read_bytes()
            if config_path.suffix == ".json":
                config = msgspec.json.decode(data, type=EngineConfig)
            else:
                config = msgspec.yaml.decode(data or b"{}", type=EngineConfig)
        except (OSError, msgspec.DecodeError) as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e
    elif explicit:
        raise ConfigurationError(f"Configuration file {config_path} does not exist")
    else:
        config = EngineConfig()

    overrides = {field: os.environ[var] for var, field in _ENV_OVERRIDES.items() if os.environ.get(var)}
    if overrides:
        config = structs.replace(config, **overrides)
    return config
