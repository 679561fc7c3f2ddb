"""Tests for the built-in step handlers."""

from datetime import date

import httpx
import pytest
import respx
from sqlalchemy import select

from db.models.activity_log import ActivityLog
from db.models.data_table import DataTable
from db.models.key_result import KeyResult
from db.models.objective import Objective
from db.models.work_item import WorkItem
from tasks.implementations.basic_steps import LogEventHandler, NotificationHandler, WaitHandler
from tasks.implementations.database_task import (
    DataSourceQueryHandler,
    DatabaseQueryHandler,
    ensure_read_only,
)
from tasks.implementations.http_task import ApiCallHandler, validate_url_safety
from tasks.implementations.strategy_task import StrategyUpdateHandler, compute_new_value
from tasks.implementations.transform_task import (
    ConditionHandler,
    ConditionalPathsHandler,
    DataTransformationHandler,
    ForEachHandler,
)
from tasks.implementations.work_item_task import CreateWorkItemHandler, resolve_due_date
from core.constants import UpdateType
from core.exceptions import ConfigurationError, SafetyBoundaryError
from tasks.registry import get_task_registry


# ─── Registry ───

@pytest.mark.unit
class TestRegistry:
    def test_all_step_types_registered(self):
        types = set(get_task_registry().available_types)
        assert types == {
            "log_event", "notification", "api_call", "data_transformation",
            "condition", "integration_action", "database_query",
            "strategy_update", "data_source_query", "wait", "for_each",
            "conditional", "conditional_paths", "create_work_item",
        }


# ─── Basic steps ───

@pytest.mark.unit
class TestBasicSteps:
    async def test_log_event_records_webhook_metadata(self, step_services, context):
        context.webhook_data = {"event": "order.held", "integration": "pxc", "event_id": "e-1", "data": {"id": 4}}
        result = await LogEventHandler(step_services).run({}, context)
        assert result.success
        assert result.output["event_type"] == "order.held"
        assert result.output["event_id"] == "e-1"
        assert result.output["event_data"] == {"id": 4}

    async def test_log_event_without_webhook(self, step_services, context):
        result = await LogEventHandler(step_services).run({"message": "hi {{workflow_name}}"}, context)
        assert result.output["event_type"] == "unknown"
        assert result.output["message"] == "hi Nightly Sync"

    async def test_notification_via_log(self, step_services, context):
        context.set("count", 3)
        result = await NotificationHandler(step_services).run(
            {"channel": "log", "message": "{{count}} orders held"}, context
        )
        assert result.success
        assert result.output["message"] == "3 orders held"
        assert result.output["channel"] == "log"

    async def test_notification_unknown_channel_not_retryable(self, step_services, context):
        result = await NotificationHandler(step_services).run({"channel": "pigeon"}, context)
        assert not result.success
        assert not result.retryable

    async def test_wait_zero(self, step_services, context):
        result = await WaitHandler(step_services).run({"duration_ms": 0}, context)
        assert result.output == {"waited_ms": 0}

    async def test_wait_rejects_negative(self, step_services, context):
        result = await WaitHandler(step_services).run({"duration_ms": -5}, context)
        assert not result.success


# ─── Transformations ───

@pytest.mark.unit
class TestTransformSteps:
    async def test_formula_with_result_variable(self, step_services, context):
        context.set("revenue", 200)
        context.set("cost", 50)
        result = await DataTransformationHandler(step_services).run(
            {"formula": "({revenue}-{cost})/{revenue}*100", "result_variable": "margin"}, context
        )
        assert result.output == 75
        assert context.get("margin") == 75

    async def test_json_path_and_mapping(self, step_services, context):
        context.set("step1_output", {"data": {"total": 9, "name": "x"}})
        handler = DataTransformationHandler(step_services)
        path = await handler.run(
            {"transformation": {"type": "json_path", "path": "step1_output.data.total"}}, context
        )
        mapping = await handler.run(
            {"transformation": {"type": "mapping", "mapping": {"n": "step1_output.data.name"}}}, context
        )
        assert path.output == 9
        assert mapping.output == {"n": "x"}

    async def test_result_variable_cannot_replace_fixed_field(self, step_services, context):
        result = await DataTransformationHandler(step_services).run(
            {"formula": "1+1", "result_variable": "trigger"}, context
        )
        assert not result.success
        assert not result.retryable
        assert "fixed context field" in result.error

    async def test_transformation_requires_mode(self, step_services, context):
        result = await DataTransformationHandler(step_services).run({}, context)
        assert not result.success
        assert not result.retryable

    async def test_condition_runs_true_branch(self, step_services, context):
        context.set("total", 12)
        config = {
            "condition": {"field": "total", "operator": "greaterThan", "value": 10},
            "if_true": {
                "type": "data_transformation",
                "config": {"formula": "{total}*2", "result_variable": "doubled"},
            },
        }
        result = await ConditionHandler(step_services).run(config, context)
        assert result.output["condition_met"] is True
        assert result.output["branch"] == "if_true"
        assert result.output["branch_output"] == 24
        assert context.get("doubled") == 24

    async def test_condition_without_branch(self, step_services, context):
        context.set("total", 1)
        config = {"condition": {"field": "total", "operator": "greaterThan", "value": 10}}
        result = await ConditionHandler(step_services).run(config, context)
        assert result.output == {"condition_met": False, "branch": None, "branch_output": None}

    async def test_for_each_counts_child_failures(self, step_services, context):
        context.set("items", [1, 2, "x"])
        config = {
            "source_variable": "items",
            "child_steps": [{"type": "data_transformation", "config": {"formula": "{current_item}*2"}}],
        }
        result = await ForEachHandler(step_services).run(config, context)
        assert result.success
        assert result.output["items_processed"] == 3
        assert result.output["success_count"] == 2
        assert result.output["error_count"] == 1
        assert [r.get("output") for r in result.output["results"][:2]] == [2, 4]
        assert context.get("current_item") is None

    async def test_for_each_requires_list(self, step_services, context):
        context.set("items", "nope")
        result = await ForEachHandler(step_services).run({"source_variable": "items"}, context)
        assert not result.success
        assert "is not a list" in result.error

    async def test_conditional_paths_first_match_wins(self, step_services, context):
        context.set("ticket", {"priority": "high", "type": "outage"})
        config = {
            "conditions": [
                {"field": "ticket.priority", "operator": "equals", "value": "low",
                 "path_steps": [{"type": "data_transformation", "config": {"formula": "1", "result_variable": "path"}}]},
                {"conditions": [
                    {"field": "ticket.priority", "operator": "in", "value": "high, urgent"},
                    {"field": "ticket.type", "operator": "contains", "value": "OUT"},
                 ],
                 "pathSteps": [
                     {"type": "data_transformation", "config": {"formula": "2", "result_variable": "path"}},
                     {"type": "data_transformation", "config": {"formula": "{path}*10"}},
                 ]},
                {"field": "ticket.priority", "operator": "is_not_empty",
                 "path_steps": [{"type": "data_transformation", "config": {"formula": "3", "result_variable": "path"}}]},
            ],
        }
        result = await ConditionalPathsHandler(step_services).run(config, context)
        assert result.success, result.error
        assert result.output["path_executed"] is True
        assert result.output["path_index"] == 1
        assert [d["matches"] for d in result.output["matched_condition"]] == [True, True]
        assert result.output["path_results"] == [2, 20]
        assert context.get("path") == 2
        assert context.get("last_output") == 20

    async def test_conditional_paths_default_and_none(self, step_services, context):
        context.set("amount", "5")
        branch = {"field": "amount", "operator": "greater_than_or_equal", "value": "10",
                  "path_steps": [{"type": "log_event", "config": {}}]}
        default = {"steps": [{"type": "data_transformation", "config": {"formula": "{amount}+1"}}]}

        result = await ConditionalPathsHandler(step_services).run(
            {"conditions": [branch], "default_path": default}, context
        )
        assert result.output == {"matched_condition": None, "default_path_executed": True, "path_results": [6]}

        result = await ConditionalPathsHandler(step_services).run({"conditions": [branch]}, context)
        assert result.output == {"matched_condition": None, "no_path_executed": True}

    async def test_conditional_paths_stops_on_failed_step(self, step_services, context):
        config = {
            "conditions": [{"field": "organization_id", "operator": "is_not_empty", "path_steps": [
                {"type": "data_transformation", "config": {}},
                {"type": "data_transformation", "config": {"formula": "1", "result_variable": "after"}},
            ]}],
        }
        result = await ConditionalPathsHandler(step_services).run(config, context)
        assert not result.success
        assert "formula" in result.error
        assert context.get("after") is None


# ─── api_call ───

@pytest.mark.unit
class TestApiCall:
    async def test_templated_get(self, step_services, context):
        context.set("customer_id", 42)
        with respx.mock:
            route = respx.get("https://api.example.com/customers/42").mock(
                return_value=httpx.Response(200, json={"name": "Ann"})
            )
            result = await ApiCallHandler(step_services).run(
                {"url": "https://api.example.com/customers/{{customer_id}}", "result_variable": "customer"},
                context,
            )
        assert route.called
        assert result.output == {"status_code": 200, "data": {"name": "Ann"}}
        assert context.get("customer") == {"name": "Ann"}

    async def test_error_status_fails_with_body(self, step_services, context):
        with respx.mock:
            respx.post("https://api.example.com/orders").mock(
                return_value=httpx.Response(500, json={"error": "down"})
            )
            result = await ApiCallHandler(step_services).run(
                {"url": "https://api.example.com/orders", "method": "POST", "body": {"a": 1}}, context
            )
        assert not result.success
        assert result.retryable
        assert result.output == {"status_code": 500, "body": {"error": "down"}}

    async def test_localhost_blocked(self, step_services, context):
        result = await ApiCallHandler(step_services).run({"url": "http://localhost:8000/x"}, context)
        assert not result.success
        assert not result.retryable

    @pytest.mark.parametrize("url", ["ftp://example.com/x", "http://10.0.0.5/x", "http://127.0.0.1/"])
    def test_url_safety(self, url):
        with pytest.raises(SafetyBoundaryError):
            validate_url_safety(url)


# ─── Database steps ───

@pytest.mark.unit
class TestReadOnlyGuard:
    def test_allows_select_and_with(self):
        assert ensure_read_only("SELECT 1;") == "SELECT 1"
        assert ensure_read_only("-- note\nWITH t AS (SELECT 1) SELECT * FROM t")

    @pytest.mark.parametrize(
        "query",
        [
            "",
            "DELETE FROM key_results",
            "SELECT 1; DROP TABLE key_results",
            "SELECT * INTO backup FROM key_results",
            "WITH x AS (UPDATE key_results SET title = 'a') SELECT 1",
            "/* SELECT */ UPDATE key_results SET title = 'a'",
        ],
    )
    def test_rejects_writes(self, query):
        with pytest.raises(SafetyBoundaryError):
            ensure_read_only(query)


@pytest.mark.integration
class TestDatabaseSteps:
    async def test_database_query_binds_organization(self, step_services, context, add_rows, test_org, other_org):
        await add_rows(
            KeyResult(organization_id=test_org.id, title="Mine", target_value="10"),
            KeyResult(organization_id=other_org.id, title="Theirs"),
        )
        result = await DatabaseQueryHandler(step_services).run(
            {
                "query": "SELECT title FROM key_results WHERE organization_id = :organization_id",
                "result_variable": "krs",
            },
            context,
        )
        assert result.success, result.error
        assert result.output == {"rows": [{"title": "Mine"}], "row_count": 1}
        assert context.get("krs") == [{"title": "Mine"}]

    async def test_database_query_rejects_write(self, step_services, context):
        result = await DatabaseQueryHandler(step_services).run({"query": "DELETE FROM key_results"}, context)
        assert not result.success
        assert not result.retryable

    async def test_data_source_requires_registration(self, step_services, context):
        result = await DataSourceQueryHandler(step_services).run(
            {"source_table": "address_records", "query_config": {"aggregation": "count"}}, context
        )
        assert not result.success
        assert result.error == "Table 'address_records' not found or not accessible for this organization"

    async def test_data_source_updates_key_result(self, step_services, context, add_rows, test_org, session_factory):
        kr = KeyResult(organization_id=test_org.id, title="Work items", target_value="10")
        await add_rows(DataTable(organization_id=test_org.id, table_name="key_results"), kr)
        result = await DataSourceQueryHandler(step_services).run(
            {
                "source_table": "key_results",
                "query_config": {"aggregation": "count"},
                "result_variable": "kr_count",
                "update_key_result": {"key_result_id": kr.id, "update_type": "set_value"},
            },
            context,
        )
        assert result.success, result.error
        assert result.output["result"] == 1
        assert result.output["key_result_update"]["new_value"] == "1"
        assert context.get("kr_count") == 1
        async with session_factory() as session:
            assert (await session.get(KeyResult, kr.id)).current_value == "1"


# ─── strategy_update ───

@pytest.mark.unit
class TestComputeNewValue:
    def test_set_value(self):
        assert compute_new_value(UpdateType.SET_VALUE, 7, "0", None) == "7"

    def test_set_value_requires_value(self):
        with pytest.raises(ConfigurationError):
            compute_new_value(UpdateType.SET_VALUE, None, "0", None)

    def test_increment(self):
        assert compute_new_value(UpdateType.INCREMENT, "2.5", "10", None) == "12.5"
        assert compute_new_value(UpdateType.INCREMENT, 1, None, None) == "1"

    def test_percentage_of_target(self):
        assert compute_new_value(UpdateType.PERCENTAGE, 50, "3", "200") == "100"

    def test_percentage_without_target_skipped(self):
        assert compute_new_value(UpdateType.PERCENTAGE, 50, "3", None) is None


@pytest.mark.integration
class TestStrategyUpdate:
    async def test_set_value_from_variable(self, step_services, context, add_rows, test_org, session_factory):
        kr = KeyResult(organization_id=test_org.id, title="Active customers", current_value="3")
        await add_rows(kr)
        context.set("active_count", 7)
        result = await StrategyUpdateHandler(step_services).run(
            {"type": "key_result", "target_id": kr.id, "update_type": "set_value", "value": "{active_count}"},
            context,
        )
        assert result.success, result.error
        assert result.output["old_value"] == "3"
        assert result.output["new_value"] == "7"

        async with session_factory() as session:
            assert (await session.get(KeyResult, kr.id)).current_value == "7"
            logs = (await session.execute(select(ActivityLog))).scalars().all()
        assert len(logs) == 1
        assert logs[0].description == "Ops Agent performed Nightly Sync"
        assert logs[0].entity_type == "key_result"
        assert logs[0].metadata_["new_value"] == "7"
        assert logs[0].metadata_["title"] == "Active customers"

    async def test_target_id_variable(self, step_services, context, add_rows, test_org):
        objective = Objective(organization_id=test_org.id, title="Grow", current_value="10")
        await add_rows(objective)
        context.set("objective_id", objective.id)
        result = await StrategyUpdateHandler(step_services).run(
            {"type": "objective", "target_id_variable": "objective_id", "update_type": "increment", "value": 5},
            context,
        )
        assert result.output["new_value"] == "15"

    async def test_percentage_without_target_still_audited(self, step_services, context, add_rows, test_org, session_factory):
        kr = KeyResult(organization_id=test_org.id, title="No target", current_value="4")
        await add_rows(kr)
        result = await StrategyUpdateHandler(step_services).run(
            {"type": "key_result", "target_id": kr.id, "update_type": "percentage", "value": 50}, context
        )
        assert result.success
        assert result.output["updated"] is False
        assert result.output["new_value"] == "4"
        async with session_factory() as session:
            logs = (await session.execute(select(ActivityLog))).scalars().all()
        assert len(logs) == 1

    async def test_other_organization_not_found(self, step_services, context, add_rows, other_org):
        kr = KeyResult(organization_id=other_org.id, title="Foreign")
        await add_rows(kr)
        result = await StrategyUpdateHandler(step_services).run(
            {"type": "key_result", "target_id": kr.id, "value": 1}, context
        )
        assert not result.success
        assert not result.retryable
        assert "not found" in result.error

    async def test_unresolved_target_rejected(self, step_services, context):
        result = await StrategyUpdateHandler(step_services).run(
            {"type": "key_result", "target_id": "{missing}", "value": 1}, context
        )
        assert not result.success
        assert "target_id" in result.error


# ─── create_work_item ───

@pytest.mark.unit
class TestDueDate:
    def test_relative_days(self):
        assert resolve_due_date("+3 days", {}, today=date(2024, 3, 30)) == date(2024, 4, 2)

    def test_placeholder_and_template(self):
        assert resolve_due_date("{today}", {}, today=date(2024, 3, 30)) == date(2024, 3, 30)
        assert resolve_due_date("{{ticket.due}}", {"ticket": {"due": "2024-05-01"}}) == date(2024, 5, 1)

    def test_rejects_non_date(self):
        with pytest.raises(ConfigurationError):
            resolve_due_date("soon", {})


@pytest.mark.integration
class TestCreateWorkItem:
    async def test_creates_item_and_activity(self, step_services, context, session_factory):
        context.set("ticket", {"id": 42, "subject": "Router down"})
        result = await CreateWorkItemHandler(step_services).run(
            {
                "title": "Ticket #{{ticket.id}}: {{ticket.subject}}",
                "description": "Opened by {{workflow_name}}",
                "due_date": "2024-06-01",
                "external_reference": "ticket-{{ticket.id}}",
                "result_variable": "work_item_id",
            },
            context,
        )
        assert result.success, result.error
        assert result.output["updated"] is False
        assert context.get("work_item_id") == result.output["work_item_id"]

        async with session_factory() as session:
            item = await session.get(WorkItem, result.output["work_item_id"])
            logs = (await session.execute(select(ActivityLog))).scalars().all()
        assert item.title == "Ticket #42: Router down"
        assert item.description == "Opened by Nightly Sync"
        assert item.status == "Planning"
        assert item.due_date == date(2024, 6, 1)
        assert item.organization_id == context.organization_id
        assert item.workflow_metadata["run_id"] == "run-1"
        assert logs[0].action_type == "creation"
        assert logs[0].entity_type == "work_item"
        assert logs[0].description == "Ops Agent created work item via Nightly Sync"

    async def test_same_reference_updates_instead_of_duplicating(self, step_services, context, session_factory):
        handler = CreateWorkItemHandler(step_services)
        first = await handler.run({"title": "Outage", "external_reference": "ticket-7"}, context)
        second = await handler.run(
            {"title": "Outage (escalated)", "status": "In Progress", "external_reference": "ticket-7"}, context
        )
        assert second.output["updated"] is True
        assert second.output["work_item_id"] == first.output["work_item_id"]

        async with session_factory() as session:
            items = (await session.execute(select(WorkItem))).scalars().all()
        assert len(items) == 1
        assert items[0].title == "Outage (escalated)"
        assert items[0].status == "In Progress"

    async def test_reference_is_scoped_to_organization(self, step_services, context, add_rows, other_org, session_factory):
        await add_rows(WorkItem(organization_id=other_org.id, title="Foreign", external_reference="ticket-7"))
        result = await CreateWorkItemHandler(step_services).run(
            {"title": "Ours", "external_reference": "ticket-7"}, context
        )
        assert result.output["updated"] is False
        async with session_factory() as session:
            assert (await session.get(WorkItem, result.output["work_item_id"])).organization_id == context.organization_id

    async def test_title_required(self, step_services, context):
        result = await CreateWorkItemHandler(step_services).run({"description": "x"}, context)
        assert not result.success
        assert not result.retryable
        assert "title is required" in result.error
