import logging
import threading
from collections import OrderedDict
from datetime import datetime

from maestro.application.port import HistoryStore
from maestro.domain.entity import WorkflowInstance

logger = logging.getLogger(__name__)


class InMemoryHistoryStore(HistoryStore):
    """Keeps at most ``limit`` finished workflow instances in memory; the oldest are evicted first."""

    def __init__(self, limit: int = 100):
        if limit < 0:
            raise ValueError("limit must not be negative")
        self.limit = limit
        self._lock = threading.Lock()
        self._store: OrderedDict[str, WorkflowInstance] = OrderedDict()

    def save(self, instance: WorkflowInstance) -> None:
        with self._lock:
            self._store.pop(instance.workflow_id, None)
            self._store[instance.workflow_id] = instance
            while len(self._store) > self.limit:
                evicted, _ = self._store.popitem(last=False)
                logger.debug("Evicted workflow %s from history store", evicted)

    def load(self, workflow_id: str) -> WorkflowInstance:
        with self._lock:
            try:
                return self._store[workflow_id]
            except KeyError:
                raise KeyError(f"No history for workflow '{workflow_id}'") from None

    def list_ids(self) -> list[str]:
        with self._lock:
            return list(self._store)

    def purge(self, older_than: datetime) -> int:
        with self._lock:
            expired = [
                workflow_id
                for workflow_id, instance in self._store.items()
                if instance.end_time is not None and instance.end_time < older_than
            ]
            for workflow_id in expired:
                del self._store[workflow_id]
        return len(expired)
