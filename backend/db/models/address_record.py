"""AddressRecord model for the automation engine."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, DateTime, Numeric
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class AddressRecord(BaseModel):
    """Premises record synced from an external base.

    ``airtable_fields`` holds the raw semi-structured source columns and is
    addressed by dotted filter fields such as ``airtable_fields.Status``.
    """

    __tablename__ = "address_records"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    address: Mapped[str] = mapped_column(nullable=False)
    postcode: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    status: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    monthly_revenue: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    airtable_fields: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    installed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
