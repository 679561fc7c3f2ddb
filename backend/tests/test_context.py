"""Tests for the execution context."""

from datetime import datetime, timezone

import pytest

from core.exceptions import ConfigurationError
from workflow.context import ExecutionContext, step_output_key


@pytest.mark.unit
class TestExecutionContext:
    def test_step_output_key_is_one_based(self):
        assert step_output_key(0) == "step1_output"
        assert step_output_key(4) == "step5_output"

    def test_fixed_fields_are_read_only(self):
        context = ExecutionContext(organization_id="org-1")
        with pytest.raises(ConfigurationError, match="fixed context field"):
            context.set("organization_id", "org-2")

    def test_lookup_merges_variables_and_fixed_fields(self):
        context = ExecutionContext(organization_id="org-1", trigger_source="schedule")
        context.set("total", 5)
        view = context.lookup()
        assert view["total"] == 5
        assert view["organization_id"] == "org-1"
        assert view["trigger_source"] == "schedule"

    def test_fork_isolates_nested_writes(self):
        context = ExecutionContext(organization_id="org-1", variables={"data": {"a": 1}})
        clone = context.fork()
        clone.variables["data"]["a"] = 2
        clone.set("extra", True)
        assert context.get("data") == {"a": 1}
        assert context.get("extra") is None

        context.merge(clone)
        assert context.get("extra") is True

    def test_snapshot_restores(self):
        when = datetime(2024, 1, 2, 3, 4, tzinfo=timezone.utc)
        context = ExecutionContext(
            organization_id="org-1",
            workflow_id="wf-1",
            last_successful_run_at=when,
            variables={"count": 3},
        )
        restored = ExecutionContext.from_dict(context.to_dict())
        assert restored.workflow_id == "wf-1"
        assert restored.last_successful_run_at == when
        assert restored.get("count") == 3
