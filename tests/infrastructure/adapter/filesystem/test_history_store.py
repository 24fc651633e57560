"""
Tests for the file-system history store.
"""

from datetime import datetime, timedelta, timezone

import pytest

from maestro.domain.entity import PlaybookDefinition, ScriptStep, StepResult, WorkflowContext, WorkflowInstance
from maestro.domain.value_object import StepStatus, WorkflowStatus
from maestro.infrastructure.adapter.filesystem.history_store import FileSystemHistoryStore


def make_instance(workflow_id: str, ended: datetime) -> WorkflowInstance:
    return WorkflowInstance(
        workflow_id=workflow_id,
        playbook=PlaybookDefinition(name="deploy", version="1", steps=[ScriptStep(name="a", command="true")]),
        context=WorkflowContext(parameters={"region": "eu"}),
        start_time=ended - timedelta(seconds=5),
        status=WorkflowStatus.COMPLETED,
        step_results=[
            StepResult(
                name="a",
                status=StepStatus.COMPLETED,
                start_time=ended - timedelta(seconds=5),
                end_time=ended,
                step_type="script",
                output="ok",
                attempts=1,
            )
        ],
        end_time=ended,
    )


class TestFileSystemHistoryStore:
    """Test cases for FileSystemHistoryStore."""

    def setup_method(self):
        """Setup test fixtures."""
        self.now = datetime.now(timezone.utc)

    def test_save_and_load(self, tmp_path):
        """Test that an instance is written under history/ and read back intact."""
        store = FileSystemHistoryStore(tmp_path)
        instance = make_instance("wf-1", self.now)

        store.save(instance)

        assert (tmp_path / "history" / "wf-1.json").is_file()
        assert store.load("wf-1") == instance

    def test_load_missing(self, tmp_path):
        with pytest.raises(KeyError):
            FileSystemHistoryStore(tmp_path).load("ghost")

    def test_list_ids(self, tmp_path):
        store = FileSystemHistoryStore(tmp_path)
        assert store.list_ids() == []

        store.save(make_instance("wf-1", self.now))
        store.save(make_instance("wf-2", self.now))

        assert set(store.list_ids()) == {"wf-1", "wf-2"}

    def test_unserializable_output_is_stringified(self, tmp_path):
        store = FileSystemHistoryStore(tmp_path)
        instance = make_instance("wf-1", self.now)
        instance.step_results[0].output = {"value": complex(1, 2)}

        store.save(instance)

        assert store.load("wf-1").step_results[0].output == {"value": "(1+2j)"}

    def test_purge(self, tmp_path):
        """Test that only workflows that ended before the cutoff are removed."""
        store = FileSystemHistoryStore(tmp_path)
        store.save(make_instance("old", self.now - timedelta(days=10)))
        store.save(make_instance("new", self.now))

        removed = store.purge(self.now - timedelta(days=1))

        assert removed == 1
        assert store.list_ids() == ["new"]

    def test_survives_new_store_instance(self, tmp_path):
        FileSystemHistoryStore(tmp_path).save(make_instance("wf-1", self.now))

        assert FileSystemHistoryStore(tmp_path).load("wf-1").status is WorkflowStatus.COMPLETED

    def test_ids_are_stored_verbatim(self, tmp_path):
        """Test that listed ids are the real workflow ids and similar ids do not share a file."""
        store = FileSystemHistoryStore(tmp_path)
        store.save(make_instance("a-b", self.now))
        store.save(make_instance("a_b", self.now))

        assert sorted(store.list_ids()) == ["a-b", "a_b"]
        assert store.load("a_b").workflow_id == "a_b"

    def test_unsafe_ids_are_refused(self, tmp_path):
        store = FileSystemHistoryStore(tmp_path)

        with pytest.raises(ValueError, match="Invalid workflow id"):
            store.save(make_instance("a/b", self.now))
        with pytest.raises(KeyError):
            store.load("../a_b")
