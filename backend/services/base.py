"""Generic, organization-aware row access shared by the services.

Every tenant-owned model carries ``organization_id``; lookups that take an
organization never return a row belonging to another one.
"""

from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.base import BaseModel

ModelType = TypeVar("ModelType", bound=BaseModel)


class BaseService(Generic[ModelType]):
    """Fetch and patch rows of one model within a caller-owned session.

    Subclass it for model-specific helpers, or use it directly:

        schedule = await BaseService(Schedule, session).get_by_id(schedule_id)

    The caller commits; the service only flushes.
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    async def get_by_id(self, id: str) -> Optional[ModelType]:
        return await self._first(select(self.model).where(self.model.id == id))

    async def get_by_id_and_org(self, id: str, organization_id: str) -> Optional[ModelType]:
        """Return the row only when it belongs to ``organization_id``."""
        return await self._first(
            select(self.model).where(
                self.model.id == id,
                self.model.organization_id == organization_id,
            )
        )

    async def update(
        self,
        id: str,
        data: dict[str, Any],
        organization_id: Optional[str] = None,
    ) -> Optional[ModelType]:
        """Apply ``data`` to the row and flush.

        Keys the model does not define and keys whose value is None are
        ignored, so a partial dict never clears an existing column.

        Returns:
            The patched row, or None when no matching row exists.
        """
        if organization_id and hasattr(self.model, "organization_id"):
            instance = await self.get_by_id_and_org(id, organization_id)
        else:
            instance = await self.get_by_id(id)
        if instance is None:
            return None

        for key, value in data.items():
            if value is not None and hasattr(instance, key):
                setattr(instance, key, value)

        await self.db.flush()
        return instance

    async def _first(self, query) -> Optional[ModelType]:
        result = await self.db.execute(query)
        return result.scalar_one_or_none()
