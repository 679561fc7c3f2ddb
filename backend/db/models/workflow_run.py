"""WorkflowRun model for the automation engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import RunStatus
from db.base import BaseModel


class WorkflowRun(BaseModel):
    """One execution attempt of a workflow.

    A run row is created in ``running`` state before the first step executes
    and is finalized exactly once as ``completed`` or ``failed``.

    Attributes:
        workflow_id: Foreign key to Workflow
        organization_id: Owning organization
        status: running, completed or failed
        trigger_source: manual, schedule or webhook
        started_at / completed_at: Wall-clock bounds of the run
        duration_ms: Total run duration
        steps_completed: Number of steps that finished successfully
        total_steps: Number of top-level steps configured
        retry_count: Extra attempts spent across all steps
        execution_log: Ordered per-step log entries
        context_data: Snapshot of the initial execution context
        result_data: Final execution context on success
        error_message / error_trace: Failure details
    """

    __tablename__ = "workflow_runs"

    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    status: Mapped[str] = mapped_column(default=RunStatus.RUNNING.value, index=True)
    trigger_source: Mapped[str] = mapped_column(nullable=False, default="manual")
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_ms: Mapped[Optional[int]] = mapped_column(nullable=True)
    steps_completed: Mapped[int] = mapped_column(default=0)
    total_steps: Mapped[int] = mapped_column(default=0)
    retry_count: Mapped[int] = mapped_column(default=0)
    execution_log: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    context_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    result_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_trace: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    workflow: Mapped["Workflow"] = relationship(
        "Workflow", back_populates="runs", lazy="noload"
    )
