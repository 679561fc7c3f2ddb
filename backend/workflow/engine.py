"""Workflow Execution Engine — sequential step runner.

A workflow is an ordered list of steps::

    [
        {"type": "data_source_query", "name": "Count active",
         "config": {"source_table": "address_records",
                    "query_config": {"filters": [...], "aggregation": "count"},
                    "result_variable": "active_count"}},
        {"type": "strategy_update", "name": "Update KR",
         "config": {"type": "key_result", "target_id": "kr-1",
                    "update_type": "set_value", "value": "{active_count}"}}
    ]

Each step runs through the retry wrapper. Its output is stored in the
context under ``step{N}_output`` (1-based) so later steps can reference it
with ``{{step1_output.result}}``. The first failing step aborts the run.

A run row exists before the first step executes and is finalized exactly
once; progress is persisted after every step.
"""

import asyncio
import logging
import traceback
from typing import Any, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings, get_settings
from core.constants import ActivityAction, StrategyTargetType, TriggerSource
from core.exceptions import ConfigurationError, NotFoundError, WorkflowExecutionError
from core.logging_config import run_log_context
from core.utils import ensure_aware, to_json_safe, utc_now
from db.base import new_id
from db.models.workflow import Workflow
from integrations.dispatcher import ActionDispatcher
from notifications.manager import NotificationManager, get_notification_manager
from services.activity_service import record_activity
from services.run_recorder import RunRecorder
from services.workflow_service import WorkflowService
from tasks.base_task import StepResult, StepServices
from tasks.registry import TaskRegistry, get_task_registry
from workflow.context import ExecutionContext, step_output_key
from workflow.retry_strategies import RetryPolicy, execute_step_with_retry

logger = logging.getLogger(__name__)


# ─── Step Executor ────────────────────────────────────────────

class StepExecutor:
    """Runs one step through the handler registered for its type.

    Never raises: unknown types and handler errors come back as failed
    StepResults.
    """

    def __init__(self, services: StepServices, registry: Optional[TaskRegistry] = None):
        self.services = services
        self.registry = registry or get_task_registry()
        self.services.execute_step = self.execute_step

    async def execute_step(self, step: dict, context: ExecutionContext) -> StepResult:
        step_type = step.get("type")
        handler = self.registry.create_instance(step_type, self.services)
        if handler is None:
            return StepResult.failed(f"Unknown step type: {step_type}", retryable=False)
        return await handler.run(step.get("config") or {}, context, step_name=step.get("name"))


# ─── Workflow Executor ────────────────────────────────────────

class WorkflowExecutor:
    """Executes workflows and persists their runs."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[Settings] = None,
        notifications: Optional[NotificationManager] = None,
        dispatcher: Optional[ActionDispatcher] = None,
        registry: Optional[TaskRegistry] = None,
        recorder: Optional[RunRecorder] = None,
        sleep=asyncio.sleep,
    ):
        if session_factory is None:
            from db.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal

        self.session_factory = session_factory
        self.settings = settings or get_settings()
        services = StepServices(
            session_factory=session_factory,
            settings=self.settings,
            notifications=notifications or get_notification_manager(),
            dispatcher=dispatcher or ActionDispatcher(session_factory, self.settings),
        )
        self.step_executor = StepExecutor(services, registry)
        self.recorder = recorder or RunRecorder(session_factory)
        self._sleep = sleep

    def build_context(self, workflow: Workflow, invocation: Optional[dict] = None) -> ExecutionContext:
        """Seed the execution context from the workflow and the invocation.

        Raises:
            ConfigurationError: If the invocation names another organization
        """
        invocation = invocation or {}
        organization_id = invocation.get("organization_id") or invocation.get("organizationId")
        if organization_id and organization_id != workflow.organization_id:
            raise ConfigurationError(
                f"Workflow {workflow.id} does not belong to organization {organization_id}"
            )

        trigger_source = (
            invocation.get("trigger_source")
            or invocation.get("triggerSource")
            or TriggerSource.MANUAL.value
        )
        webhook_data = invocation.get("webhook_data")
        if webhook_data is None and trigger_source == TriggerSource.WEBHOOK.value:
            webhook_data = invocation.get("payload")

        return ExecutionContext(
            organization_id=workflow.organization_id,
            trigger_source=trigger_source,
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            schedule_id=invocation.get("schedule_id"),
            user_id=invocation.get("user_id"),
            assigned_user_id=workflow.assigned_user_id,
            assigned_user_name=workflow.assigned_user_name,
            last_successful_run_at=ensure_aware(workflow.last_successful_run_at),
            webhook_data=webhook_data,
            manual_data=invocation.get("manual_data"),
            trigger=dict(invocation.get("trigger") or {}),
            variables=dict(invocation.get("variables") or {}),
        )

    async def execute_workflow(self, workflow: Workflow, invocation: Optional[dict] = None) -> str:
        """Execute every step of ``workflow`` in order.

        Args:
            workflow: Workflow row (``steps`` and ``retry_config`` are read)
            invocation: ``{trigger_source, organization_id, schedule_id,
                user_id, webhook_data | payload, manual_data, variables}``

        Returns:
            The id of the completed run

        Raises:
            WorkflowExecutionError: A step failed; the run is already
                persisted as failed and the error carries its id
        """
        context = self.build_context(workflow, invocation)
        steps = list(workflow.steps or [])
        policy = RetryPolicy.from_dict(workflow.retry_config)

        context.run_id = new_id()
        run = await self.recorder.create_run(
            workflow_id=workflow.id,
            organization_id=workflow.organization_id,
            trigger_source=context.trigger_source,
            total_steps=len(steps),
            context_data=context.to_dict(),
            run_id=context.run_id,
        )

        with run_log_context(
            run_id=run.id, workflow_id=workflow.id, organization_id=workflow.organization_id
        ):
            await self._run_steps(workflow, context, steps, policy, run.id)
        await self._post_completion(workflow, context)
        return run.id

    async def _run_steps(
        self,
        workflow: Workflow,
        context: ExecutionContext,
        steps: list[dict],
        policy: RetryPolicy,
        run_id: str,
    ) -> None:
        """Run the steps and finalize the run as completed or failed."""
        logger.info(
            f"Executing workflow '{workflow.name}' ({workflow.id}), run {run_id}: "
            f"{len(steps)} steps, {policy.attempts} attempts per step"
        )

        execution_log: list[dict] = []
        steps_completed = 0
        retry_count = 0

        try:
            for index, step in enumerate(steps):
                step_name = step.get("name") or step.get("type")
                start = utc_now()
                result = await execute_step_with_retry(
                    self.step_executor.execute_step, step, context, policy, sleep=self._sleep
                )
                end = utc_now()
                retry_count += result.attempts - 1

                entry: dict[str, Any] = {
                    "index": index,
                    "step": index + 1,
                    "type": step.get("type"),
                    "name": step_name,
                    "start_time": start.isoformat(),
                    "end_time": end.isoformat(),
                    "duration_ms": int((end - start).total_seconds() * 1000),
                    "success": result.success,
                    "attempts": result.attempts,
                }
                if result.success:
                    entry["output"] = to_json_safe(result.output)
                else:
                    entry["error"] = result.error
                    if result.output is not None:
                        entry["output"] = to_json_safe(result.output)
                execution_log.append(entry)

                if not result.success:
                    message = f"Step {index + 1} ({step_name}) failed: {result.error}"
                    await self.recorder.fail_run(
                        run_id,
                        execution_log,
                        steps_completed,
                        error_message=message,
                        error_trace=result.stack,
                        retry_count=retry_count,
                    )
                    raise WorkflowExecutionError(message, run_id=run_id)

                steps_completed += 1
                context.set(step_output_key(index), to_json_safe(result.output))
                await self.recorder.record_progress(
                    run_id, execution_log, steps_completed, retry_count
                )

        except WorkflowExecutionError:
            raise
        except asyncio.CancelledError:
            logger.warning(f"Run {run_id} cancelled after {steps_completed} step(s)")
            await self.recorder.fail_run(
                run_id,
                execution_log,
                steps_completed,
                error_message="Run cancelled",
                retry_count=retry_count,
            )
            raise
        except Exception as e:
            message = f"Workflow execution error: {e}"
            logger.error(f"Run {run_id}: {message}", exc_info=True)
            await self.recorder.fail_run(
                run_id,
                execution_log,
                steps_completed,
                error_message=message,
                error_trace=traceback.format_exc(),
                retry_count=retry_count,
            )
            raise WorkflowExecutionError(message, run_id=run_id) from e

        await self.recorder.complete_run(
            run_id,
            execution_log,
            steps_completed,
            result_data=context.to_dict(),
            retry_count=retry_count,
        )

    async def execute_workflow_by_id(
        self,
        workflow_id: str,
        organization_id: str,
        invocation: Optional[dict] = None,
    ) -> str:
        """Load a workflow within an organization and execute it."""
        async with self.session_factory() as session:
            workflow = await WorkflowService(session).get_by_id_and_org(workflow_id, organization_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        invocation = dict(invocation or {})
        invocation.setdefault("organization_id", organization_id)
        return await self.execute_workflow(workflow, invocation)

    async def _post_completion(self, workflow: Workflow, context: ExecutionContext) -> None:
        """Note the completed run against the entities the workflow contributes to.

        Best-effort: nothing here can fail a completed run.
        """
        targets = [
            (StrategyTargetType.KEY_RESULT.value, workflow.target_key_result_id),
            (StrategyTargetType.OBJECTIVE.value, workflow.target_objective_id),
            ("team", workflow.assigned_team_id),
        ]
        for entity_type, entity_id in targets:
            if not entity_id:
                continue
            try:
                logger.info(f"Run {context.run_id} contributes to {entity_type} {entity_id}")
                await record_activity(
                    self.session_factory,
                    organization_id=workflow.organization_id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    description=f"Workflow '{workflow.name}' completed",
                    user_id=workflow.assigned_user_id,
                    action_type=ActivityAction.UPDATE.value,
                    metadata={
                        "workflow_id": workflow.id,
                        "run_id": context.run_id,
                        "trigger_source": context.trigger_source,
                    },
                )
            except Exception as e:
                logger.warning(f"Post-completion hook failed for run {context.run_id}: {e}")
