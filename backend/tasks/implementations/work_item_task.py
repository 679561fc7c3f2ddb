"""create_work_item step: open (or refresh) a work item from a workflow."""

import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select

from core.constants import ActivityAction
from core.exceptions import ConfigurationError
from core.utils import parse_iso_datetime, utc_now
from db.models.work_item import WorkItem
from services.activity_service import record_activity
from tasks.base_task import BaseStepHandler, StepResult, config_value
from workflow.context import ExecutionContext
from workflow.templating import render_template, resolve_dynamic_value

logger = structlog.get_logger(__name__)

_RELATIVE_DAYS = re.compile(r"^\+\s*(\d+)\s*(?:days?)?$", re.IGNORECASE)


def resolve_due_date(value: Any, lookup: Dict[str, Any], today: Optional[date] = None) -> Optional[date]:
    """``+N days``, ``{today}``-style placeholders, templates or ISO dates.

    Raises:
        ConfigurationError: The value does not resolve to a date
    """
    if value in (None, ""):
        return None
    today = today or utc_now().date()
    if isinstance(value, str):
        match = _RELATIVE_DAYS.match(value.strip())
        if match:
            return today + timedelta(days=int(match.group(1)))
    resolved = resolve_dynamic_value(render_template(value, lookup), lookup, today=today)
    if isinstance(resolved, datetime):
        return resolved.date()
    if isinstance(resolved, date):
        return resolved
    parsed = parse_iso_datetime(resolved) if isinstance(resolved, str) else None
    if parsed is None:
        raise ConfigurationError(f"due_date is not a date: {value!r}")
    return parsed.date()


class CreateWorkItemHandler(BaseStepHandler):
    """Create a work item in the run's organization.

    Config:
        title: Required; ``{{...}}`` templates are rendered
        description, status, priority, assigned_to, team_id: Optional
        due_date: ``+3 days``, ``{today}``, a template or an ISO date
        external_reference: When an item of the organization already
            carries this reference it is updated instead of duplicated
        result_variable: Context key receiving the work item id

    Output: ``{work_item_id, title, updated}``.
    """

    step_type = "create_work_item"
    display_name = "Create Work Item"
    description = "Create or update a work item"

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepResult:
        lookup = context.lookup()
        title = render_template(config.get("title"), lookup)
        if not title:
            raise ConfigurationError("title is required for create_work_item step")

        description = render_template(config.get("description"), lookup)
        reference = render_template(
            config_value(config, "external_reference", "externalReference"), lookup
        )
        fields = {
            "title": str(title),
            "status": config.get("status") or "Planning",
            "priority": config.get("priority"),
            "assigned_to": render_template(config_value(config, "assigned_to", "assigneeId"), lookup),
            "team_id": config_value(config, "team_id", "teamId"),
            "due_date": resolve_due_date(config_value(config, "due_date", "dueDate"), lookup),
        }
        metadata = {
            "workflow_id": context.workflow_id,
            "run_id": context.run_id,
            "external_reference": reference,
        }

        async with self.services.session_factory() as session:
            existing = None
            if reference:
                existing = (await session.execute(
                    select(WorkItem).where(
                        WorkItem.organization_id == context.organization_id,
                        WorkItem.external_reference == str(reference),
                    )
                )).scalars().first()

            if existing is not None:
                old_title, old_status = existing.title, existing.status
                for key, value in fields.items():
                    if value is not None:
                        setattr(existing, key, value)
                if description:
                    existing.description = description
                existing.workflow_metadata = metadata
                item = existing
            else:
                item = WorkItem(
                    organization_id=context.organization_id,
                    description=description or "",
                    external_reference=str(reference) if reference else None,
                    workflow_metadata=metadata,
                    created_by=context.user_id,
                    **fields,
                )
                session.add(item)
            await session.commit()
            work_item_id = item.id

        updated = existing is not None
        logger.info(
            "Work item updated" if updated else "Work item created",
            work_item_id=work_item_id,
            title=fields["title"],
        )

        agent_name = context.assigned_user_name or "Automation Agent"
        workflow_name = context.workflow_name or "Workflow"
        activity = {
            "title": fields["title"],
            "status": fields["status"],
            "external_reference": reference,
            "trigger_source": context.trigger_source or "workflow",
            "workflow_id": context.workflow_id,
            "workflow_name": context.workflow_name,
            "run_id": context.run_id,
        }
        if updated:
            activity.update(old_title=old_title, old_status=old_status)
        await record_activity(
            self.services.session_factory,
            organization_id=context.organization_id,
            entity_type="work_item",
            entity_id=work_item_id,
            description=f"{agent_name} {'updated' if updated else 'created'} work item via {workflow_name}",
            user_id=context.assigned_user_id,
            action_type=ActivityAction.AGENT_ACTION.value if updated else ActivityAction.CREATE.value,
            metadata=activity,
        )

        result_variable = config_value(config, "result_variable", "resultVariable")
        if result_variable:
            context.set(result_variable, work_item_id)
        return StepResult.ok({"work_item_id": work_item_id, "title": fields["title"], "updated": updated})


WORK_ITEM_STEP_TYPES = {
    "create_work_item": CreateWorkItemHandler,
}
