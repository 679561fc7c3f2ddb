"""Organization: the tenant boundary."""

from typing import Optional

from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class Organization(BaseModel):
    """A tenant.

    Objectives, key results, work items, business rows, workflows,
    schedules and integrations all carry this organization's id, and data
    source queries are always filtered by it.
    """

    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(index=True)
    slug: Mapped[str] = mapped_column(unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(default=True)
    settings: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    workflows: Mapped[list["Workflow"]] = relationship(
        back_populates="organization", cascade="all, delete-orphan", lazy="noload"
    )
    integrations: Mapped[list["Integration"]] = relationship(
        back_populates="organization", cascade="all, delete-orphan", lazy="noload"
    )
