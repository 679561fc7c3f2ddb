"""Workflow service — lookups and run bookkeeping on the workflow row."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import RunStatus
from db.models.workflow import Workflow
from services.base import BaseService

logger = logging.getLogger(__name__)


class WorkflowService(BaseService[Workflow]):
    """Service for workflow lookups and last-run bookkeeping."""

    def __init__(self, db: AsyncSession):
        super().__init__(Workflow, db)

    async def mark_run_started(self, workflow_id: str, started_at: datetime) -> None:
        await self.update(workflow_id, {
            "last_run_at": started_at,
            "last_run_status": RunStatus.RUNNING.value,
        })

    async def mark_run_finished(
        self,
        workflow_id: str,
        status: RunStatus,
        started_at: datetime,
    ) -> Optional[Workflow]:
        """Record the outcome of a run on the workflow.

        A completed run also advances ``last_successful_run_at``, which is
        the ``since`` boundary for the next incremental fetch.
        """
        data = {"last_run_status": status.value}
        if status == RunStatus.COMPLETED:
            data["last_successful_run_at"] = started_at
        workflow = await self.update(workflow_id, data)
        if workflow is None:
            logger.warning(f"Workflow {workflow_id} vanished before its run finished")
        return workflow
