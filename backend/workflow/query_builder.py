"""Tenant-scoped filter and aggregation queries over registered tables.

A data source query names a registered table, a list of filters and one
aggregation::

    {
        "filters": [{"field": "status", "operator": "equals", "value": "active"},
                    {"field": "installed_at", "operator": "greater_than_or_equal",
                     "value": "{currentMonthStart}"},
                    {"field": "airtable_fields.Stage", "operator": "contains", "value": "Live"}],
        "aggregation": "sum",
        "aggregation_field": "monthly_revenue"
    }

Every query is constrained to one organization. Sum and avg come back as
decimal strings; count as an int; min and max as the column's native type.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy import Boolean, Date, DateTime, Float, Integer, Numeric, and_, func, not_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.types import JSON

from core.constants import Aggregation, FilterOperator
from core.exceptions import AggregationFieldError, ConfigurationError
from core.utils import parse_iso_datetime
from db.models.address_record import AddressRecord
from db.models.key_result import KeyResult
from db.models.objective import Objective
from db.models.work_item import WorkItem
from workflow.templating import resolve_dynamic_value

logger = logging.getLogger(__name__)

TABLE_REGISTRY: dict[str, type] = {
    "address_records": AddressRecord,
    "work_items": WorkItem,
    "key_results": KeyResult,
    "objectives": Objective,
}

_NUMERIC_STRING = re.compile(r"^-?\d+(\.\d+)?$")

# Operators usable on JSON text paths
_JSON_OPERATORS = {
    FilterOperator.EQUALS,
    FilterOperator.NOT_EQUALS,
    FilterOperator.CONTAINS,
    FilterOperator.NOT_CONTAINS,
    FilterOperator.STARTS_WITH,
    FilterOperator.ENDS_WITH,
    FilterOperator.IS_NULL,
    FilterOperator.NOT_NULL,
}


def get_registered_model(table_name: str) -> type:
    """Look up a queryable model by table name.

    Raises:
        ConfigurationError: If the table is not registered or has no
            organization column
    """
    model = TABLE_REGISTRY.get(table_name)
    if model is None:
        raise ConfigurationError(f"Table '{table_name}' is not registered for queries")
    if not hasattr(model, "organization_id"):
        raise ConfigurationError(f"Table '{table_name}' is not organization scoped")
    return model


@dataclass
class QueryConfig:
    """Filters plus a single aggregation."""

    filters: list[dict[str, Any]] = field(default_factory=list)
    aggregation: str = Aggregation.COUNT.value
    aggregation_field: Optional[str] = None
    limit: int = 1000

    @classmethod
    def from_dict(cls, config: Optional[Mapping[str, Any]]) -> "QueryConfig":
        config = config or {}
        return cls(
            filters=list(config.get("filters") or []),
            aggregation=config.get("aggregation") or Aggregation.COUNT.value,
            aggregation_field=config.get("aggregation_field") or config.get("aggregationField"),
            limit=int(config.get("limit") or 1000),
        )


def parse_filter_value(value: Any, column_type: Any = None) -> Any:
    """Coerce a filter value: ISO dates, numeric strings and true/false.

    Text targets (string columns and JSON paths) keep numeric-looking values
    as strings so comparisons stay textual.
    """
    if not isinstance(value, str):
        return value

    is_text = column_type is None or not isinstance(
        column_type, (Date, DateTime, Integer, Numeric, Boolean)
    )

    parsed = parse_iso_datetime(value)
    if parsed is not None and not is_text:
        if isinstance(column_type, Date) and not isinstance(column_type, DateTime):
            return parsed.date()
        return parsed

    if _NUMERIC_STRING.match(value) and not is_text:
        if "." in value:
            return Decimal(value)
        return int(value)

    if value in ("true", "false") and not is_text:
        return value == "true"

    return value


class QueryBuilder:
    """Builds and runs one aggregation query for one organization."""

    def __init__(
        self,
        model: type,
        organization_id: str,
        lookup: Optional[Mapping[str, Any]] = None,
        today: Optional[date] = None,
    ):
        if not hasattr(model, "organization_id"):
            raise ConfigurationError(f"Model {model.__name__} is not organization scoped")
        self.model = model
        self.organization_id = organization_id
        self.lookup = lookup or {}
        self.today = today

    # ─── Filters ───────────────────────────────────────────

    def _column(self, name: str):
        column = self.model.__table__.columns.get(name)
        if column is None:
            raise ConfigurationError(
                f"Field '{name}' not found in table '{self.model.__tablename__}'"
            )
        return getattr(self.model, column.key)

    def _json_text(self, field_name: str):
        column_name, _, path = field_name.partition(".")
        column = self._column(column_name)
        if not isinstance(column.type, JSON):
            raise ConfigurationError(f"Field '{column_name}' is not a JSON column")
        keys = path.split(".")
        if len(keys) == 1:
            return column[keys[0]].as_string()
        return column[tuple(keys)].as_string()

    def _resolve(self, value: Any) -> Any:
        return resolve_dynamic_value(value, self.lookup, today=self.today)

    def build_condition(self, spec: Mapping[str, Any]) -> ColumnElement:
        """Translate one ``{field, operator, value}`` filter into SQL."""
        field_name = spec.get("field")
        operator = spec.get("operator")
        if not field_name:
            raise ConfigurationError("Filter is missing 'field'")
        try:
            op = FilterOperator(operator)
        except ValueError:
            raise ConfigurationError(f"Unsupported operator: {operator}")

        raw_value = self._resolve(spec.get("value"))

        if "." in field_name:
            if op not in _JSON_OPERATORS:
                raise ConfigurationError(f"Operator '{op.value}' not supported for JSON fields")
            target = self._json_text(field_name)
            value = None if raw_value is None else str(raw_value)
        else:
            target = self._column(field_name)
            if op in (FilterOperator.IN, FilterOperator.NOT_IN):
                items = raw_value
                if isinstance(items, str):
                    items = [item.strip() for item in items.split(",") if item.strip()]
                elif not isinstance(items, (list, tuple)):
                    items = [items]
                values = [parse_filter_value(self._resolve(item), target.type) for item in items]
                return target.in_(values) if op == FilterOperator.IN else target.not_in(values)
            value = parse_filter_value(raw_value, target.type)

        if op == FilterOperator.EQUALS:
            return target.is_(None) if value is None else target == value
        if op == FilterOperator.NOT_EQUALS:
            return target.is_not(None) if value is None else target != value
        if op == FilterOperator.CONTAINS:
            return target.icontains(str(value), autoescape=True)
        if op == FilterOperator.NOT_CONTAINS:
            return not_(target.icontains(str(value), autoescape=True))
        if op == FilterOperator.STARTS_WITH:
            return target.istartswith(str(value), autoescape=True)
        if op == FilterOperator.ENDS_WITH:
            return target.iendswith(str(value), autoescape=True)
        if op == FilterOperator.IS_NULL:
            return target.is_(None)
        if op == FilterOperator.NOT_NULL:
            return target.is_not(None)
        if op == FilterOperator.GREATER_THAN:
            return target > value
        if op == FilterOperator.LESS_THAN:
            return target < value
        if op == FilterOperator.GREATER_THAN_OR_EQUAL:
            return target >= value
        return target <= value

    def where_clause(self, filters: list[Mapping[str, Any]]) -> ColumnElement:
        """Organization scope AND every filter."""
        conditions = [self.model.organization_id == self.organization_id]
        for spec in filters:
            conditions.append(self.build_condition(spec))
        return and_(*conditions)

    # ─── Aggregation ───────────────────────────────────────

    def _aggregation_column(self, query: QueryConfig, aggregation: Aggregation):
        if not query.aggregation_field:
            raise ConfigurationError(f"Aggregation '{aggregation.value}' requires aggregation_field")
        column = self._column(query.aggregation_field)
        numeric = isinstance(column.type, (Integer, Numeric, Float))
        if aggregation in (Aggregation.SUM, Aggregation.AVG) and not numeric:
            raise AggregationFieldError(
                query.aggregation_field,
                aggregation.value,
                detail=f"column type is {column.type}",
            )
        return column

    async def execute(self, session: AsyncSession, query: QueryConfig) -> Any:
        """Run the aggregation.

        Returns:
            int for count, decimal string for sum/avg ("0" when no rows),
            native value or None for min/max
        """
        try:
            aggregation = Aggregation(query.aggregation)
        except ValueError:
            raise ConfigurationError(f"Unsupported aggregation: {query.aggregation}")

        where = self.where_clause(query.filters)

        if aggregation == Aggregation.COUNT:
            stmt = select(func.count()).select_from(self.model).where(where)
            return int((await session.execute(stmt)).scalar() or 0)

        column = self._aggregation_column(query, aggregation)

        if aggregation == Aggregation.SUM:
            stmt = select(func.sum(column)).where(where)
            total = (await session.execute(stmt)).scalar()
            return _decimal_string(total)

        if aggregation == Aggregation.AVG:
            stmt = select(func.sum(column), func.count(column)).where(where)
            total, counted = (await session.execute(stmt)).one()
            if total is None or not counted:
                return "0"
            return _decimal_string(Decimal(_decimal_string(total)) / Decimal(counted))

        fn = func.min if aggregation == Aggregation.MIN else func.max
        return (await session.execute(select(fn(column)).where(where))).scalar()


def _decimal_string(value: Any) -> str:
    if value is None:
        return "0"
    if isinstance(value, float):
        value = Decimal(repr(value))
    text = format(Decimal(value), "f")
    if not _NUMERIC_STRING.match(text):
        raise ConfigurationError(f"Aggregation produced non-numeric result '{text}'")
    return text


async def run_data_source_query(
    session: AsyncSession,
    table_name: str,
    organization_id: str,
    query_config: Mapping[str, Any],
    lookup: Optional[Mapping[str, Any]] = None,
    today: Optional[date] = None,
) -> dict[str, Any]:
    """Resolve the table, run the query and describe the result."""
    model = get_registered_model(table_name)
    query = QueryConfig.from_dict(query_config)
    result = await QueryBuilder(model, organization_id, lookup, today).execute(session, query)
    logger.info(
        f"Data source query on {table_name}: {query.aggregation} over "
        f"{len(query.filters)} filters -> {result!r}"
    )
    return {
        "result": result,
        "table": table_name,
        "aggregation": query.aggregation,
        "filter_count": len(query.filters),
    }
