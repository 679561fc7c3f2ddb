"""Read-only database steps: database_query and data_source_query."""

import re
from typing import Any, Dict

import structlog
from sqlalchemy import select, text

from core.exceptions import ConfigurationError, SafetyBoundaryError
from core.utils import to_json_safe
from db.models.data_table import DataTable
from tasks.base_task import BaseStepHandler, StepResult, config_value
from tasks.implementations.strategy_task import StrategyUpdateHandler
from workflow.context import ExecutionContext
from workflow.query_builder import run_data_source_query
from workflow.templating import resolve_parameters

logger = structlog.get_logger(__name__)

_LINE_COMMENT = re.compile(r"--[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_READ_PREFIX = re.compile(r"^(SELECT|WITH)\b", re.IGNORECASE)
_FORBIDDEN = re.compile(
    r"\b(INSERT|UPDATE|DELETE|MERGE|TRUNCATE|DROP|ALTER|CREATE|GRANT|REVOKE|INTO)\b",
    re.IGNORECASE,
)


def ensure_read_only(query: str) -> str:
    """Return the normalized statement, or raise if it could write.

    Raises:
        SafetyBoundaryError: Empty, multi-statement or non-SELECT SQL
    """
    stripped = _BLOCK_COMMENT.sub(" ", query or "")
    stripped = _LINE_COMMENT.sub(" ", stripped).strip()
    if stripped.endswith(";"):
        stripped = stripped[:-1].rstrip()
    if not stripped:
        raise SafetyBoundaryError("Database query is empty")
    if ";" in stripped:
        raise SafetyBoundaryError("Only a single statement is allowed")
    if not _READ_PREFIX.match(stripped):
        raise SafetyBoundaryError("Only SELECT queries are allowed")
    match = _FORBIDDEN.search(stripped)
    if match:
        raise SafetyBoundaryError(f"Keyword '{match.group(1).upper()}' is not allowed in queries")
    return stripped


class DatabaseQueryHandler(BaseStepHandler):
    """Run a parameterized read-only SQL statement.

    Config:
        query: SELECT or WITH statement using ``:name`` bind parameters
        parameters: Values for the bind parameters (templates resolved)

    ``:organization_id`` is always bound to the running organization.
    """

    step_type = "database_query"
    display_name = "Database Query"
    description = "Run a read-only SQL query"

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepResult:
        query = ensure_read_only(config.get("query", ""))
        params = resolve_parameters(
            config_value(config, "parameters", "params", default={}),
            context.lookup(),
        )
        if not isinstance(params, dict):
            raise ConfigurationError("Query parameters must be an object")
        params.setdefault("organization_id", context.organization_id)

        async with self.services.session_factory() as session:
            result = await session.execute(text(query), params)
            rows = [dict(row) for row in result.mappings().all()]

        logger.info("Database query executed", row_count=len(rows))
        output = {"rows": to_json_safe(rows), "row_count": len(rows)}

        result_variable = config_value(config, "result_variable", "resultVariable")
        if result_variable:
            context.set(result_variable, output["rows"])
        return StepResult.ok(output)


class DataSourceQueryHandler(BaseStepHandler):
    """Aggregate over a registered organization table.

    Config:
        source_table: Name of a table registered for the organization
        query_config: ``{filters, aggregation, aggregation_field}``
        result_variable: Context key for the aggregate
        update_key_result: Optional ``{key_result_id, update_type}``; the
            aggregate is written to that key result
    """

    step_type = "data_source_query"
    display_name = "Data Source Query"
    description = "Filter and aggregate organization data"

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepResult:
        table_name = config_value(config, "source_table", "sourceTable")
        if not table_name:
            raise ConfigurationError("data_source_query requires source_table")
        query_config = config_value(config, "query_config", "queryConfig", default={})

        async with self.services.session_factory() as session:
            registration = await session.execute(
                select(DataTable).where(
                    DataTable.organization_id == context.organization_id,
                    DataTable.table_name == table_name,
                    DataTable.is_active == True,  # noqa: E712
                )
            )
            if registration.scalars().first() is None:
                raise ConfigurationError(
                    f"Table '{table_name}' not found or not accessible for this organization"
                )
            output = await run_data_source_query(
                session,
                table_name,
                context.organization_id,
                query_config,
                lookup=context.lookup(),
            )

        output["result"] = to_json_safe(output["result"])
        result_variable = config_value(config, "result_variable", "resultVariable")
        if result_variable:
            context.set(result_variable, output["result"])

        update = config_value(config, "update_key_result", "updateKeyResult")
        if update:
            key_result_id = config_value(update, "key_result_id", "keyResultId")
            if not key_result_id:
                raise ConfigurationError("update_key_result requires key_result_id")
            output["key_result_update"] = await StrategyUpdateHandler(self.services).apply(
                "key_result",
                key_result_id,
                config_value(update, "update_type", "updateType", default="set_value"),
                output["result"],
                context,
            )

        return StepResult.ok(output)


DATABASE_STEP_TYPES = {
    "database_query": DatabaseQueryHandler,
    "data_source_query": DataSourceQueryHandler,
}
