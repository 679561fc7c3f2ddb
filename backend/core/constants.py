"""Constants and enums for the automation engine."""

from enum import Enum


class RunStatus(str, Enum):
    """Workflow run status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerSource(str, Enum):
    """How a workflow run was invoked."""

    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"


class StepType(str, Enum):
    """Step kinds understood by the step executor."""

    LOG_EVENT = "log_event"
    NOTIFICATION = "notification"
    API_CALL = "api_call"
    DATA_TRANSFORMATION = "data_transformation"
    CONDITION = "condition"
    INTEGRATION_ACTION = "integration_action"
    DATABASE_QUERY = "database_query"
    STRATEGY_UPDATE = "strategy_update"
    DATA_SOURCE_QUERY = "data_source_query"
    WAIT = "wait"
    FOR_EACH = "for_each"
    CONDITIONAL_PATHS = "conditional_paths"
    CREATE_WORK_ITEM = "create_work_item"


class StrategyTargetType(str, Enum):
    """Business entities a strategy_update step can mutate."""

    KEY_RESULT = "key_result"
    OBJECTIVE = "objective"


class UpdateType(str, Enum):
    """How a strategy_update computes the new value."""

    SET_VALUE = "set_value"
    INCREMENT = "increment"
    PERCENTAGE = "percentage"


class Aggregation(str, Enum):
    """Aggregations supported by data source queries."""

    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


class FilterOperator(str, Enum):
    """Filter operators supported by data source queries."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_NULL = "is_null"
    NOT_NULL = "not_null"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"


class ConditionOperator(str, Enum):
    """Operators for condition steps."""

    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    EXISTS = "exists"


class ActivityAction(str, Enum):
    """Activity log action type."""

    AGENT_ACTION = "agent_action"
    CREATE = "creation"
    UPDATE = "update"


class IntegrationPlatform(str, Enum):
    """Integration types with a registered action provider."""

    SPLYNX = "splynx"
    PXC = "pxc"
    OPENAI = "openai"
