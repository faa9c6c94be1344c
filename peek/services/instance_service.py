"""Instance resolver: which upstream instances a user may see."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peek.db.models import StashInstance, UserStashInstance

logger = logging.getLogger(__name__)


async def get_enabled_instances(db: AsyncSession) -> list[StashInstance]:
    result = await db.execute(
        select(StashInstance)
        .where(StashInstance.enabled.is_(True))
        .order_by(StashInstance.priority.asc(), StashInstance.id.asc())
    )
    return list(result.scalars().all())


async def get_instance_priorities(db: AsyncSession) -> dict[str, int]:
    """instance id -> priority (lower wins), for every configured instance."""
    result = await db.execute(select(StashInstance.id, StashInstance.priority))
    return {row.id: row.priority for row in result.all()}


async def get_user_allowed_instance_ids(db: AsyncSession, user_id: int) -> list[str]:
    """Instances visible to a user.

    - no explicit selection: every enabled instance
    - explicit selection: the selection intersected with enabled instances
    - any failure: [] (fail closed, never "all")
    """
    try:
        enabled = [instance.id for instance in await get_enabled_instances(db)]

        result = await db.execute(
            select(UserStashInstance.instance_id).where(UserStashInstance.user_id == user_id)
        )
        selected = {row[0] for row in result.all()}
        if not selected:
            return enabled
        return [instance_id for instance_id in enabled if instance_id in selected]
    except Exception as e:
        logger.warning(f"Instance resolution failed for user {user_id}, failing closed: {e}")
        return []
