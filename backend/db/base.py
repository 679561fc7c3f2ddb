"""Declarative base and the shared columns of every table."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from core.utils import utc_now


def new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class BaseModel(Base):
    """Abstract parent of all tables: string UUID key plus UTC timestamps.

    Defaults are evaluated in Python, so a freshly flushed row already
    carries ``id`` and ``created_at`` without a refresh round trip.
    """

    __abstract__ = True

    id: Mapped[str] = mapped_column(primary_key=True, default=new_id)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id}>"
