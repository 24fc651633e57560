"""
Tests for the file-system playbook store.
"""

import json

import pytest

from maestro.domain.entity import PlaybookDefinition, ScriptStep
from maestro.domain.error import PlaybookNotFoundError, ValidationError
from maestro.infrastructure.adapter.filesystem.playbook_store import FileSystemPlaybookStore, file_stem


def make_playbook(name: str = "deploy") -> PlaybookDefinition:
    return PlaybookDefinition(name=name, version="1", steps=[ScriptStep(name="a", command="echo hi")])


class TestFileStem:
    """Test cases for file_stem."""

    @pytest.mark.parametrize(
        "name, expected",
        [("deploy", "deploy"), ("db backup", "db_backup"), ("../etc/passwd", "etc_passwd"), ("v1.2-rc", "v1.2-rc")],
    )
    def test_safe_stems(self, name, expected):
        assert file_stem(name) == expected

    @pytest.mark.parametrize("name", ["", "   ", "../", "///"])
    def test_unusable_names(self, name):
        with pytest.raises(ValueError):
            file_stem(name)


class TestFileSystemPlaybookStore:
    """Test cases for FileSystemPlaybookStore."""

    def setup_method(self):
        """Setup test fixtures."""
        self.playbook = make_playbook()

    def test_save_and_load(self, tmp_path):
        """Test that saved playbooks are written as JSON and decoded back."""
        store = FileSystemPlaybookStore(tmp_path / "playbooks")

        store.save(self.playbook)

        path = tmp_path / "playbooks" / "deploy.json"
        assert path.is_file()
        assert json.loads(path.read_text())["steps"][0]["type"] == "script"
        assert store.load("deploy") == self.playbook

    def test_loads_yaml_files(self, tmp_path):
        (tmp_path / "backup.yml").write_text(
            "name: backup\nversion: '1'\nsteps:\n  - type: script\n    name: dump\n    command: pg_dump\n"
        )
        store = FileSystemPlaybookStore(tmp_path)

        assert store.load("backup").steps[0].command == "pg_dump"

    def test_load_missing(self, tmp_path):
        store = FileSystemPlaybookStore(tmp_path)

        with pytest.raises(PlaybookNotFoundError):
            store.load("ghost")

    def test_load_malformed(self, tmp_path):
        (tmp_path / "broken.json").write_text('{"name": "broken", "steps": [{"type": "nope"}]}')
        store = FileSystemPlaybookStore(tmp_path)

        with pytest.raises(ValidationError, match="broken.json"):
            store.load("broken")

    def test_save_replaces_yaml_version(self, tmp_path):
        """Test that saving over a YAML playbook leaves a single JSON file."""
        (tmp_path / "deploy.yaml").write_text("name: deploy\nsteps:\n  - type: script\n    name: a\n    command: old\n")
        store = FileSystemPlaybookStore(tmp_path)

        store.save(self.playbook)

        assert not (tmp_path / "deploy.yaml").exists()
        assert store.load("deploy").steps[0].command == "echo hi"

    def test_delete(self, tmp_path):
        store = FileSystemPlaybookStore(tmp_path)
        store.save(self.playbook)

        assert store.delete("deploy") is True
        assert store.delete("deploy") is False
        assert store.list_names() == []

    def test_list_names(self, tmp_path):
        store = FileSystemPlaybookStore(tmp_path)
        store.save(make_playbook("b"))
        store.save(make_playbook("a"))
        (tmp_path / "c.yaml").write_text("name: c\n")
        (tmp_path / "notes.txt").write_text("ignored")

        assert store.list_names() == ["a", "b", "c"]

    def test_list_names_missing_directory(self, tmp_path):
        assert FileSystemPlaybookStore(tmp_path / "absent").list_names() == []
