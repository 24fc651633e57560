import logging
import threading
from datetime import datetime
from pathlib import Path

import msgspec

from maestro.application.port import HistoryStore
from maestro.domain.entity import WorkflowInstance
from maestro.domain.service import WORKFLOW_ID_PATTERN, check_workflow_id
from maestro.infrastructure.adapter.filesystem.playbook_store import write_atomic

logger = logging.getLogger(__name__)


class FileSystemHistoryStore(HistoryStore):
    """Persists each finished workflow instance as ``<state_dir>/history/<workflow_id>.json``."""

    def __init__(self, state_dir: str | Path):
        self.directory = Path(state_dir) / "history"
        self._lock = threading.Lock()
        self._decoder = msgspec.json.Decoder(WorkflowInstance)

    def _path(self, workflow_id: str) -> Path:
        return self.directory / f"{check_workflow_id(workflow_id)}.json"

    def save(self, instance: WorkflowInstance) -> None:
        data = msgspec.json.encode(instance, enc_hook=str)
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            write_atomic(self._path(instance.workflow_id), data)
        logger.debug("Saved workflow %s to history", instance.workflow_id)

    def load(self, workflow_id: str) -> WorkflowInstance:
        try:
            data = self._path(workflow_id).read_bytes()
        except (ValueError, FileNotFoundError):
            raise KeyError(f"No history for workflow '{workflow_id}'") from None
        return self._decoder.decode(data)

    def list_ids(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        paths = sorted(self.directory.glob("*.json"), key=lambda p: p.stat().st_mtime)
        return [path.stem for path in paths if WORKFLOW_ID_PATTERN.fullmatch(path.stem)]

    def purge(self, older_than: datetime) -> int:
        """
        Delete history files of workflows that ended before ``older_than``.

        :param older_than: Timezone-aware cut-off
        :type older_than: datetime
        :returns: Number of files removed
        :rtype: int
        """
        removed = 0
        with self._lock:
            for workflow_id in self.list_ids():
                instance = self.load(workflow_id)
                if instance.end_time is not None and instance.end_time < older_than:
                    self._path(workflow_id).unlink()
                    removed += 1
        if removed:
            logger.info("Purged %d workflow(s) from history", removed)
        return removed
