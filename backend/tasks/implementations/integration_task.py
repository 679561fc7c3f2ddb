"""
Integration Action — run a named action of a stored integration.

The integration row is loaded within the run's organization, its
credentials are decrypted, and the action is routed through the
ActionDispatcher to the platform provider.
"""

from typing import Any, Dict

import structlog

from core.exceptions import ConfigurationError
from services.integration_service import IntegrationService
from tasks.base_task import BaseStepHandler, StepResult, config_value
from workflow.context import ExecutionContext
from workflow.templating import resolve_parameters

logger = structlog.get_logger(__name__)


class IntegrationActionHandler(BaseStepHandler):
    """Execute an action on a configured integration.

    Config:
        integration_id: Integration row id (must belong to the organization)
        action: Provider action name, e.g. ``fetch_orders``
        parameters: Action parameters (``{{...}}`` templates resolved)
        result_variable: Context key for the action result
    """

    step_type = "integration_action"
    display_name = "Integration Action"
    description = "Run an action against Splynx, PXC or OpenAI"

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepResult:
        integration_id = config_value(config, "integration_id", "integrationId")
        action = config.get("action")
        if not integration_id or not action:
            raise ConfigurationError("integration_action requires integration_id and action")

        async with self.services.session_factory() as session:
            integration = await IntegrationService(session).get_for_org(
                str(integration_id), context.organization_id
            )
            platform_type = integration.platform_type
            credentials = IntegrationService.credentials_for(integration)

        parameters = resolve_parameters(config.get("parameters") or {}, context.lookup())
        logger.info(
            "Dispatching integration action",
            integration_id=integration_id,
            platform=platform_type,
            action=action,
        )
        result = await self.services.dispatcher.execute_integration_action(
            platform_type, action, parameters, credentials, context
        )

        result_variable = config_value(config, "result_variable", "resultVariable")
        if result_variable:
            context.set(result_variable, result)
        return StepResult.ok(result)


INTEGRATION_STEP_TYPES = {
    "integration_action": IntegrationActionHandler,
}
