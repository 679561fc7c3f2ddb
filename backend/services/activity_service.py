"""Activity log writer.

Audit writes are best-effort: a failure is logged and swallowed so it can
never fail the mutation or the run that produced it.
"""

import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from core.constants import ActivityAction
from core.utils import to_json_safe
from db.models.activity_log import ActivityLog

logger = logging.getLogger(__name__)


async def record_activity(
    session_factory: async_sessionmaker,
    organization_id: str,
    entity_type: str,
    entity_id: str,
    description: str,
    user_id: Optional[str] = None,
    action_type: str = ActivityAction.AGENT_ACTION.value,
    metadata: Optional[dict[str, Any]] = None,
) -> Optional[ActivityLog]:
    """Append an activity record in its own transaction.

    Returns:
        The stored record, or None if the write failed.
    """
    try:
        async with session_factory() as session:
            entry = ActivityLog(
                organization_id=organization_id,
                user_id=user_id,
                action_type=action_type,
                entity_type=entity_type,
                entity_id=entity_id,
                description=description,
                metadata_=to_json_safe(metadata or {}),
            )
            session.add(entry)
            await session.commit()
            return entry
    except Exception as e:
        logger.error(
            f"Failed to record activity for {entity_type} {entity_id}: {e}",
            exc_info=True,
        )
        return None
