"""DataTable model for the automation engine."""

from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class DataTable(BaseModel):
    """Registration of a business table an organization may query."""

    __tablename__ = "data_tables"
    __table_args__ = (
        UniqueConstraint("organization_id", "table_name", name="uq_data_tables_org_table"),
    )

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    table_name: Mapped[str] = mapped_column(nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True)
