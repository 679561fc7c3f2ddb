"""EmailTemplate model for the automation engine."""

from sqlalchemy import Text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class EmailTemplate(BaseModel):
    """Organization-owned subject/body template for broadcast sends.

    Subject and body may contain ``{{dotted.path}}`` tokens resolved against
    the recipient and the execution context.
    """

    __tablename__ = "email_templates"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(nullable=False)
    subject: Mapped[str] = mapped_column(nullable=False, default="")
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(default=True)
