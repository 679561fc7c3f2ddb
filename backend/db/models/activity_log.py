"""ActivityLog model for the automation engine."""

from typing import Optional

from sqlalchemy import JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ActivityAction
from db.base import BaseModel


class ActivityLog(BaseModel):
    """Append-only audit record of changes made by users or agents.

    Attributes:
        organization_id: Owning organization
        user_id: Actor who performed the action (a workflow's assigned user
            for automated changes)
        action_type: agent_action, creation or update
        entity_type: Type of entity affected (key_result, objective, ...)
        entity_id: ID of the entity affected
        description: Human readable summary
        metadata_: JSON details (stored in the ``metadata`` column)
    """

    __tablename__ = "activity_logs"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    action_type: Mapped[str] = mapped_column(
        default=ActivityAction.AGENT_ACTION.value, index=True
    )
    entity_type: Mapped[str] = mapped_column(nullable=False, index=True)
    entity_id: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
