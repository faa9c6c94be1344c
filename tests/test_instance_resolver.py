from sqlalchemy import update

from peek.db.models import StashInstance, UserStashInstance
from peek.services.instance_service import get_enabled_instances, get_user_allowed_instance_ids


class BrokenSession:
    async def execute(self, *args, **kwargs):
        raise RuntimeError("connection lost")


async def test_no_selection_means_every_enabled_instance(seeded):
    assert await get_user_allowed_instance_ids(seeded, 1) == ["a", "b"]


async def test_explicit_selection(seeded):
    db = seeded
    db.add(UserStashInstance(user_id=1, instance_id="b"))
    await db.commit()

    assert await get_user_allowed_instance_ids(db, 1) == ["b"]
    assert await get_user_allowed_instance_ids(db, 2) == ["a", "b"]


async def test_disabled_instances_are_never_visible(seeded):
    db = seeded
    db.add(UserStashInstance(user_id=1, instance_id="b"))
    await db.execute(update(StashInstance).where(StashInstance.id == "b").values(enabled=False))
    await db.commit()

    assert [i.id for i in await get_enabled_instances(db)] == ["a"]
    assert await get_user_allowed_instance_ids(db, 1) == []
    assert await get_user_allowed_instance_ids(db, 2) == ["a"]


async def test_selection_of_unknown_instance(seeded):
    db = seeded
    db.add(UserStashInstance(user_id=1, instance_id="gone"))
    await db.commit()
    assert await get_user_allowed_instance_ids(db, 1) == []


async def test_failure_fails_closed():
    assert await get_user_allowed_instance_ids(BrokenSession(), 1) == []
