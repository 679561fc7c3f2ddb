"""WorkItem model for the automation engine."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, Date, DateTime, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class WorkItem(BaseModel):
    """Task or ticket tracked against a team.

    ``external_reference`` links the item to a record in another system
    (a helpdesk ticket, for instance); workflows use it to update an
    existing item instead of creating a duplicate.
    """

    __tablename__ = "work_items"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    title: Mapped[str] = mapped_column(nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(nullable=False, default="open", index=True)
    priority: Mapped[Optional[int]] = mapped_column(nullable=True)
    assigned_to: Mapped[Optional[str]] = mapped_column(nullable=True)
    team_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(nullable=True)
    external_reference: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    workflow_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    estimate_hours: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(8, 2), nullable=True
    )
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
