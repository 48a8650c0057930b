"""Tests for transition tables and the workflow-type registry."""

import pytest
from pydantic import ValidationError

from flowcore.errors import ConfigError, UnsupportedWorkflow
from flowcore.registry import (
    REGISTRY,
    StepSpec,
    TransitionTable,
    WorkflowRegistry,
    default_registry,
)


def test_builtin_types_registered():
    assert {"content-publish", "multi-platform-publish", "approval-routing"} <= set(
        REGISTRY.types()
    )
    table = REGISTRY.get("content-publish")
    assert table.initial_state == "pending_generation"
    assert table.default_priority == 5
    assert table.next_state("pending_generation", "succeeded") == "pending_approval"
    assert table.next_state("pending_approval", "approved") == "publishing"
    assert table.next_state("publishing", "succeeded") == "completed"


def test_unknown_type_raises():
    with pytest.raises(UnsupportedWorkflow):
        REGISTRY.get("does-not-exist")


def test_terminal_states_must_be_present():
    with pytest.raises(ValidationError):
        TransitionTable(
            workflow_type="broken",
            initial_state="a",
            terminal_states=["completed"],
            transitions={"a": {"succeeded": "completed"}},
        )


def test_terminal_state_cannot_have_edges():
    with pytest.raises(ValidationError):
        TransitionTable(
            workflow_type="broken",
            initial_state="a",
            transitions={"a": {"succeeded": "completed"}, "completed": {"again": "a"}},
        )


def test_cancel_outcome_is_reserved():
    with pytest.raises(ValidationError):
        TransitionTable(
            workflow_type="broken",
            initial_state="a",
            transitions={"a": {"cancel": "failed"}},
        )


def test_steps_for_unknown_state_rejected():
    with pytest.raises(ValidationError):
        TransitionTable(
            workflow_type="broken",
            initial_state="a",
            transitions={"a": {"succeeded": "completed"}},
            steps={"nowhere": [StepSpec(kind="x")]},
        )


def test_duplicate_registration_rejected():
    registry = WorkflowRegistry()
    table = TransitionTable(
        workflow_type="simple",
        initial_state="working",
        transitions={"working": {"succeeded": "completed", "failed": "failed"}},
    )
    registry.register(table)
    with pytest.raises(ConfigError):
        registry.register(table)
    registry.register(table, replace=True)
    assert len(registry) == 1


def test_load_definitions_from_yaml(tmp_path):
    path = tmp_path / "workflows.yaml"
    path.write_text(
        """
workflows:
  - workflow_type: report
    initial_state: building
    default_priority: 2
    transitions:
      building:
        succeeded: completed
        failed: failed
    steps:
      building:
        - kind: build_report
"""
    )
    registry = default_registry()
    loaded = registry.load_file(str(path))
    assert loaded == ["report"]
    table = registry.get("report")
    assert table.steps_for("building")[0].kind == "build_report"
    assert "content-publish" in registry


def test_invalid_definition_is_config_error():
    with pytest.raises(ConfigError):
        default_registry([{"workflow_type": "bad", "initial_state": "completed"}])
