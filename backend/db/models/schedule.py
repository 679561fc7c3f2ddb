"""Schedule model for the automation engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class Schedule(BaseModel):
    """Schedule model for workflow scheduling.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Owning organization
        workflow_id: Foreign key to Workflow
        cron_expression: Cron expression for schedule
        timezone: IANA timezone the cron expression is evaluated in
        is_active: Whether schedule fires
        next_run_at: Timestamp of next scheduled run
        last_run_at: Timestamp of the most recent fire
    """

    __tablename__ = "workflow_schedules"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    cron_expression: Mapped[str] = mapped_column(nullable=False)
    timezone: Mapped[str] = mapped_column(nullable=False, default="UTC")
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    last_run_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # noload: async sessions cannot lazy-load
    workflow: Mapped["Workflow"] = relationship(
        "Workflow", back_populates="schedules", lazy="noload"
    )
