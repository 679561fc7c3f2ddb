"""KeyResult model for the automation engine."""

from typing import Optional

from sqlalchemy import ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class KeyResult(BaseModel):
    """Measurable outcome under an objective.

    ``current_value`` and ``target_value`` are decimal strings so repeated
    automated updates never accumulate float drift.
    """

    __tablename__ = "key_results"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    objective_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("objectives.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    title: Mapped[str] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(nullable=False, default="active")
    current_value: Mapped[Optional[str]] = mapped_column(nullable=True, default="0")
    target_value: Mapped[Optional[str]] = mapped_column(nullable=True)
    unit: Mapped[Optional[str]] = mapped_column(nullable=True)
