import threading

from maestro.application.port import PlaybookStore
from maestro.domain.entity import PlaybookDefinition
from maestro.domain.error import PlaybookNotFoundError


class InMemoryPlaybookStore(PlaybookStore):
    def __init__(self, playbooks: list[PlaybookDefinition] | None = None):
        self._lock = threading.Lock()
        self._store: dict[str, PlaybookDefinition] = {}
        for playbook in playbooks or []:
            self.save(playbook)

    def load(self, name: str) -> PlaybookDefinition:
        with self._lock:
            try:
                return self._store[name]
            except KeyError:
                raise PlaybookNotFoundError(name) from None

    def save(self, playbook: PlaybookDefinition) -> None:
        with self._lock:
            self._store[playbook.name] = playbook

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._store.pop(name, None) is not None

    def list_names(self) -> list[str]:
        with self._lock:
            return sorted(self._store)
