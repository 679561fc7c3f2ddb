"""Workflow model for the automation engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


def default_retry_config() -> dict:
    return {"max_retries": 3, "retry_delay_seconds": 60}


class Workflow(BaseModel):
    """Workflow model representing an automation workflow.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Foreign key to Organization
        name: Workflow name
        description: Workflow description
        trigger_type: How the workflow is normally started (manual, schedule, webhook)
        is_enabled: Whether workflow can be executed
        steps: Ordered JSON list of step objects ``{type, name, config}``
        retry_config: ``{max_retries, retry_delay_seconds}`` applied to every step
        assigned_user_id: Actor that audit records are attributed to
        assigned_user_name: Display name of that actor
        target_key_result_id: Key result this workflow contributes to
        target_objective_id: Objective this workflow contributes to
        assigned_team_id: Team that owns the workflow
        last_run_at: Start time of the most recent run
        last_run_status: Status of the most recent run
        last_successful_run_at: Start time of the most recent completed run,
            the lower bound for incremental fetches
    """

    __tablename__ = "workflows"

    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[str] = mapped_column(nullable=False, default="")
    trigger_type: Mapped[str] = mapped_column(nullable=False, default="manual")
    is_enabled: Mapped[bool] = mapped_column(default=True, index=True)
    steps: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    retry_config: Mapped[Optional[dict]] = mapped_column(
        JSON, nullable=True, default=default_retry_config
    )

    assigned_user_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    assigned_user_name: Mapped[Optional[str]] = mapped_column(nullable=True)
    target_key_result_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    target_objective_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    assigned_team_id: Mapped[Optional[str]] = mapped_column(nullable=True)

    last_run_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_run_status: Mapped[Optional[str]] = mapped_column(nullable=True)
    last_successful_run_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    organization: Mapped["Organization"] = relationship(
        "Organization", back_populates="workflows", lazy="noload"
    )
    runs: Mapped[list["WorkflowRun"]] = relationship(
        "WorkflowRun",
        back_populates="workflow",
        cascade="all, delete-orphan",
        lazy="noload",
    )
    schedules: Mapped[list["Schedule"]] = relationship(
        "Schedule",
        back_populates="workflow",
        cascade="all, delete-orphan",
        lazy="noload",
    )
