"""Objective model for the automation engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class Objective(BaseModel):
    """Strategic objective. Values are decimal strings like KeyResult."""

    __tablename__ = "objectives"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    team_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    title: Mapped[str] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(nullable=False, default="active")
    current_value: Mapped[Optional[str]] = mapped_column(nullable=True, default="0")
    target_value: Mapped[Optional[str]] = mapped_column(nullable=True)
    last_calculated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
