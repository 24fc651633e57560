"""
Tests for the unified Client.

This module tests the Client façade over an in-memory orchestrator.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from maestro.application.service import Orchestrator
from maestro.client import Client
from maestro.domain.entity import WorkflowSummary
from maestro.domain.error import PlaybookNotFoundError
from maestro.domain.port import CollaboratorBase
from maestro.domain.value_object import HandlerResult, WorkflowStatus
from maestro.factory import create

PLAYBOOK = {
    "name": "greet",
    "version": "1",
    "parameters": {"who": {"type": "string", "required": True}},
    "steps": [{"type": "script", "name": "hello", "command": "echo hello {{who}}"}],
}


class EchoShell(CollaboratorBase):
    collaborator_name = "shell"

    def run(self, command: str, shell: str = "bash") -> HandlerResult:
        return HandlerResult(output=command)


class Mailer(CollaboratorBase):
    collaborator_name = "mailer"

    def send(self, to: str) -> str:
        return f"mail to {to}"


class TestClient:
    """Test cases for Client."""

    def setup_method(self):
        """Setup test fixtures."""
        self.client = create(collaborators=[EchoShell], include_builtins=False)

    def teardown_method(self):
        self.client.close()

    def test_collaborator_registration_is_chainable(self):
        returned = self.client.collaborator(Mailer)

        assert returned is self.client
        assert self.client.collaborators() == ["mailer", "shell"]

    def test_collaborator_without_resolver(self):
        client = Client(Mock(spec=Orchestrator))

        with pytest.raises(NotImplementedError):
            client.collaborator(Mailer)
        with pytest.raises(NotImplementedError):
            client.collaborators()

    def test_run(self):
        result = self.client.run(PLAYBOOK, {"who": "ops"})

        assert result.success is True
        assert result.step_results[0].output == "echo hello ops"

    def test_run_missing_parameter_is_rejected(self):
        result = self.client.run(PLAYBOOK)

        assert result.success is False
        assert result.validation_errors == ["Missing required parameter 'who'"]

    def test_run_stored_playbook(self):
        """Test saving a playbook and running it by name."""
        self.client.save_playbook(PLAYBOOK)

        assert self.client.list_playbooks() == ["greet"]
        assert self.client.load_playbook("greet").name == "greet"
        assert self.client.run("greet", {"who": "dev"}).success

    def test_run_unknown_name(self):
        with pytest.raises(PlaybookNotFoundError):
            self.client.run("ghost")

    def test_delete_playbook(self):
        self.client.save_playbook(PLAYBOOK)

        assert self.client.delete_playbook("greet") is True
        assert self.client.list_playbooks() == []

    def test_start_wait_and_status(self):
        workflow_id = self.client.start(PLAYBOOK, {"who": "bg"})

        result = self.client.wait(workflow_id, timeout=5)

        assert result.workflow_id == workflow_id
        assert self.client.status(workflow_id).status is WorkflowStatus.COMPLETED
        assert [i.workflow_id for i in self.client.history()] == [workflow_id]

    def test_status_summary_and_unknown(self):
        self.client.run(PLAYBOOK, {"who": "a"})

        summary = self.client.status()

        assert isinstance(summary, WorkflowSummary)
        assert summary.history_count == 1
        assert self.client.status("ghost") is None

    def test_stop_finished_workflow(self):
        result = self.client.run(PLAYBOOK, {"who": "a"})

        stop = self.client.stop(result.workflow_id)

        assert stop.success is False
        assert "not running" in stop.error

    def test_validate(self):
        assert self.client.validate(PLAYBOOK).is_valid
        assert not self.client.validate({"name": "x"}).is_valid

    def test_purge_history(self):
        self.client.run(PLAYBOOK, {"who": "a"})

        removed = self.client.purge_history(datetime.now(timezone.utc) + timedelta(seconds=1))

        assert removed == 1
        assert self.client.history() == []

    def test_context_manager_closes(self):
        orchestrator = Mock(spec=Orchestrator)

        with Client(orchestrator):
            pass

        orchestrator.shutdown.assert_called_once_with(wait=True)
