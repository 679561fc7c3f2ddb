"""Integration model for the automation engine."""

from typing import Optional

from sqlalchemy import ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class Integration(BaseModel):
    """Connection to an external provider.

    Attributes:
        organization_id: Owning organization
        name: Display name
        platform_type: Provider key (splynx, pxc, openai)
        credentials_encrypted: ``iv_hex:ciphertext_hex`` credential blob
        is_active: Whether the integration may be used
    """

    __tablename__ = "integrations"

    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(nullable=False)
    platform_type: Mapped[str] = mapped_column(nullable=False, index=True)
    credentials_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True)

    organization: Mapped["Organization"] = relationship(
        "Organization", back_populates="integrations", lazy="noload"
    )

    def __repr__(self) -> str:
        return f"<Integration {self.platform_type}:{self.id}>"
