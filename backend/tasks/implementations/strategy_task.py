"""strategy_update step: mutate a key result or objective value.

Values are stored as decimal strings. Every update appends an activity log
entry attributed to the workflow's assigned user; that write is
best-effort and never fails the update.
"""

from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from core.constants import ActivityAction, StrategyTargetType, UpdateType
from core.exceptions import ConfigurationError, NotFoundError
from core.utils import to_decimal, utc_now
from db.models.key_result import KeyResult
from db.models.objective import Objective
from services.activity_service import record_activity
from services.base import BaseService
from tasks.base_task import BaseStepHandler, StepResult, config_value
from workflow.context import ExecutionContext
from workflow.templating import render_template, resolve_dynamic_value

logger = structlog.get_logger(__name__)

TARGET_MODELS = {
    StrategyTargetType.KEY_RESULT: KeyResult,
    StrategyTargetType.OBJECTIVE: Objective,
}


def _resolve(value: Any, context: ExecutionContext) -> Any:
    lookup = context.lookup()
    return resolve_dynamic_value(render_template(value, lookup), lookup)


def _decimal(value: Any, label: str) -> Decimal:
    number = to_decimal(value)
    if number is None or not number.is_finite():
        raise ConfigurationError(f"{label} is not numeric: {value!r}")
    return number


def compute_new_value(
    update_type: UpdateType,
    value: Any,
    current_value: Optional[str],
    target_value: Optional[str],
) -> Optional[str]:
    """New stored value, or None when nothing should change.

    percentage sets the value to ``target * value / 100`` and is skipped
    when the entity has no target.
    """
    if update_type == UpdateType.SET_VALUE:
        if value is None:
            raise ConfigurationError("set_value requires a value")
        return str(value)
    if update_type == UpdateType.INCREMENT:
        current = to_decimal(current_value) or Decimal(0)
        return str(current + _decimal(value, "Increment"))
    if not target_value:
        return None
    return str(_decimal(target_value, "Target value") * _decimal(value, "Percentage") / 100)


class StrategyUpdateHandler(BaseStepHandler):
    """Update the value of a key result or objective.

    Config:
        type / target_type: key_result or objective
        target_id: Literal id, ``{varName}`` or ``{{path}}``
        target_id_variable: Context key holding the id (wins over target_id)
        update_type: set_value (default), increment or percentage
        value: Literal, ``{varName}`` or ``{{path}}``
    """

    step_type = "strategy_update"
    display_name = "Strategy Update"
    description = "Set, increment or percentage-update a key result or objective"

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepResult:
        target_type = config_value(config, "target_type", "type")
        if not target_type:
            raise ConfigurationError("Strategy update requires type")

        target_id = None
        id_variable = config_value(config, "target_id_variable", "targetIdVariable")
        if id_variable:
            target_id = context.get(id_variable)
        if not target_id:
            target_id = _resolve(config_value(config, "target_id", "targetId"), context)
        if not target_id or (isinstance(target_id, str) and target_id.startswith("{")):
            raise ConfigurationError("Strategy update requires target_id or target_id_variable")

        output = await self.apply(
            target_type,
            str(target_id),
            config_value(config, "update_type", "updateType", default=UpdateType.SET_VALUE.value),
            _resolve(config.get("value"), context),
            context,
        )
        return StepResult.ok(output)

    async def apply(
        self,
        target_type: str,
        target_id: str,
        update_type: str,
        value: Any,
        context: ExecutionContext,
    ) -> Dict[str, Any]:
        """Apply one update and write the audit record."""
        try:
            kind = StrategyTargetType(target_type)
        except ValueError:
            raise ConfigurationError(f"Unsupported strategy target type: {target_type}")
        try:
            update = UpdateType(update_type)
        except ValueError:
            raise ConfigurationError(f"Unsupported update type: {update_type}")

        async with self.services.session_factory() as session:
            service = BaseService(TARGET_MODELS[kind], session)
            entity = await service.get_by_id_and_org(target_id, context.organization_id)
            if entity is None:
                raise NotFoundError(f"{kind.value} {target_id} not found")

            old_value = entity.current_value
            new_value = compute_new_value(update, value, old_value, entity.target_value)
            updated = new_value is not None
            if updated:
                entity.current_value = new_value
                if kind == StrategyTargetType.OBJECTIVE:
                    entity.last_calculated_at = utc_now()
                await session.commit()
            title = entity.title

        logger.info(
            "Strategy value updated" if updated else "Strategy update skipped (no target value)",
            target_type=kind.value,
            target_id=target_id,
            update_type=update.value,
            old_value=old_value,
            new_value=new_value,
        )

        agent_name = context.assigned_user_name or "Unknown Agent"
        workflow_name = context.workflow_name or "Workflow"
        await record_activity(
            self.services.session_factory,
            organization_id=context.organization_id,
            entity_type=kind.value,
            entity_id=target_id,
            description=f"{agent_name} performed {workflow_name}",
            user_id=context.assigned_user_id,
            action_type=ActivityAction.AGENT_ACTION.value,
            metadata={
                "title": title,
                "new_value": new_value if updated else old_value,
                "old_value": old_value,
                "update_type": update.value,
                "trigger_source": context.trigger_source or "workflow",
                "workflow_id": context.workflow_id,
                "workflow_name": context.workflow_name,
                "run_id": context.run_id,
            },
        )

        return {
            "updated": updated,
            "type": kind.value,
            "target_id": target_id,
            "update_type": update.value,
            "old_value": old_value,
            "new_value": new_value if updated else old_value,
        }


STRATEGY_STEP_TYPES = {
    "strategy_update": StrategyUpdateHandler,
}
