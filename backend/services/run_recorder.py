"""Persistence of workflow run state.

The executor writes a run through three calls: ``create_run`` before the
first step, ``record_progress`` after every step, and exactly one of
``complete_run`` / ``fail_run`` at the end. Writes for one recorder are
serialized with a lock, and a progress write that arrives after the final
write is dropped, so a stale progress update never overwrites the
terminal state.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from core.constants import RunStatus
from core.utils import to_json_safe, utc_now
from db.base import new_id
from db.models.workflow_run import WorkflowRun
from services.workflow_service import WorkflowService

logger = logging.getLogger(__name__)


class RunRecorder:
    """Creates and finalizes WorkflowRun rows in short transactions."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        self._lock = asyncio.Lock()

    async def create_run(
        self,
        workflow_id: str,
        organization_id: str,
        trigger_source: str,
        total_steps: int,
        context_data: dict[str, Any],
        started_at: Optional[datetime] = None,
        run_id: Optional[str] = None,
    ) -> WorkflowRun:
        """Persist a new run in ``running`` state and stamp the workflow.

        A caller that needs the id before the row exists passes ``run_id``.
        """
        started_at = started_at or utc_now()
        async with self._lock:
            async with self.session_factory() as session:
                run = WorkflowRun(
                    id=run_id or new_id(),
                    workflow_id=workflow_id,
                    organization_id=organization_id,
                    status=RunStatus.RUNNING.value,
                    trigger_source=trigger_source,
                    started_at=started_at,
                    total_steps=total_steps,
                    steps_completed=0,
                    execution_log=[],
                    context_data=to_json_safe(context_data),
                )
                session.add(run)
                await WorkflowService(session).mark_run_started(workflow_id, started_at)
                await session.commit()
                logger.info(f"Run {run.id} started for workflow {workflow_id} ({trigger_source})")
                return run

    async def record_progress(
        self,
        run_id: str,
        execution_log: list[dict],
        steps_completed: int,
        retry_count: int = 0,
    ) -> bool:
        """Persist the step log so far.

        Returns:
            False if the run was already finalized and the write was dropped
        """
        async with self._lock:
            async with self.session_factory() as session:
                run = await session.get(WorkflowRun, run_id)
                if run is None or run.status != RunStatus.RUNNING.value:
                    logger.debug(f"Dropping stale progress write for run {run_id}")
                    return False
                run.execution_log = to_json_safe(execution_log)
                run.steps_completed = steps_completed
                run.retry_count = retry_count
                await session.commit()
                return True

    async def _finalize(
        self,
        run_id: str,
        status: RunStatus,
        execution_log: list[dict],
        steps_completed: int,
        retry_count: int,
        **fields: Any,
    ) -> Optional[WorkflowRun]:
        async with self._lock:
            async with self.session_factory() as session:
                run = await session.get(WorkflowRun, run_id)
                if run is None:
                    logger.error(f"Run {run_id} not found while finalizing as {status.value}")
                    return None
                if run.status != RunStatus.RUNNING.value:
                    logger.warning(f"Run {run_id} already finalized as {run.status}")
                    return run

                completed_at = utc_now()
                run.status = status.value
                run.completed_at = completed_at
                if run.started_at is not None:
                    started = run.started_at
                    if started.tzinfo is None:
                        started = started.replace(tzinfo=completed_at.tzinfo)
                    run.duration_ms = int((completed_at - started).total_seconds() * 1000)
                run.execution_log = to_json_safe(execution_log)
                run.steps_completed = steps_completed
                run.retry_count = retry_count
                for key, value in fields.items():
                    setattr(run, key, value)

                await WorkflowService(session).mark_run_finished(
                    run.workflow_id, status, run.started_at
                )
                await session.commit()
                return run

    async def complete_run(
        self,
        run_id: str,
        execution_log: list[dict],
        steps_completed: int,
        result_data: dict[str, Any],
        retry_count: int = 0,
    ) -> Optional[WorkflowRun]:
        run = await self._finalize(
            run_id,
            RunStatus.COMPLETED,
            execution_log,
            steps_completed,
            retry_count,
            result_data=to_json_safe(result_data),
        )
        if run is not None:
            logger.info(f"Run {run_id} completed in {run.duration_ms}ms")
        return run

    async def fail_run(
        self,
        run_id: str,
        execution_log: list[dict],
        steps_completed: int,
        error_message: str,
        error_trace: Optional[str] = None,
        retry_count: int = 0,
    ) -> Optional[WorkflowRun]:
        run = await self._finalize(
            run_id,
            RunStatus.FAILED,
            execution_log,
            steps_completed,
            retry_count,
            error_message=error_message,
            error_trace=error_trace,
        )
        if run is not None:
            logger.error(f"Run {run_id} failed: {error_message}")
        return run
