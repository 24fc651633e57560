import logging
import os
import re
import threading
from pathlib import Path

import msgspec

from maestro.application.port import PlaybookStore
from maestro.application.service import PLAYBOOK_SUFFIXES, decode_playbook
from maestro.domain.entity import PlaybookDefinition
from maestro.domain.error import PlaybookNotFoundError

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


def file_stem(name: str) -> str:
    """
    File-system safe stem for a playbook name.

    :raises ValueError: If nothing usable remains of ``name``
    """
    stem = _UNSAFE.sub("_", name.strip()).strip("._")
    if not stem:
        raise ValueError(f"Cannot derive a file name from {name!r}")
    return stem


def write_atomic(path: Path, data: bytes) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)


class FileSystemPlaybookStore(PlaybookStore):
    """
    One playbook per file under a directory.

    ``.json``, ``.yaml`` and ``.yml`` files are read; playbooks are saved as ``<name>.json``.
    """

    def __init__(self, directory: str | Path):
        """
        :param directory: Playbook directory, created on first save
        :type directory: str | Path
        """
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def _find(self, name: str) -> Path | None:
        stem = file_stem(name)
        for suffix in PLAYBOOK_SUFFIXES:
            path = self.directory / f"{stem}{suffix}"
            if path.is_file():
                return path
        return None

    def load(self, name: str) -> PlaybookDefinition:
        path = self._find(name)
        if path is None:
            raise PlaybookNotFoundError(name)
        logger.debug("Loading playbook %s from %s", name, path)
        return decode_playbook(path.read_bytes(), path.suffix, source=str(path))

    def save(self, playbook: PlaybookDefinition) -> None:
        data = msgspec.json.format(msgspec.json.encode(playbook), indent=2)
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            existing = self._find(playbook.name)
            target = self.directory / f"{file_stem(playbook.name)}.json"
            write_atomic(target, data)
            if existing is not None and existing != target:
                existing.unlink()
        logger.info("Saved playbook %s to %s", playbook.name, target)

    def delete(self, name: str) -> bool:
        with self._lock:
            path = self._find(name)
            if path is None:
                return False
            path.unlink()
        logger.info("Deleted playbook %s", name)
        return True

    def list_names(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(
            {path.stem for path in self.directory.iterdir() if path.is_file() and path.suffix in PLAYBOOK_SUFFIXES}
        )
