import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

# Settings and the engine are built at import time, so point them at a
# throwaway SQLite file before anything from peek is imported.
_DB_DIR = tempfile.mkdtemp(prefix="peek-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{Path(_DB_DIR) / 'peek.db'}"
os.environ["CACHE_ENABLED"] = "false"
os.environ["REFRESH_ON_STARTUP"] = "false"
os.environ["ADMIN_API_KEY"] = "test-admin-key"

import pytest

from peek.db.database import Base, engine, async_session_maker
from peek.db.models import (
    Gallery, Group, GroupTag, Image, ImageGallery, Performer, PerformerTag, Scene,
    SceneGallery, SceneGroup, ScenePerformer, SceneTag, StashInstance, Studio, Tag,
    TagParent, User, UserEntityData,
)

STASHDB = "https://stashdb.org/graphql"
NOW = datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture
async def session_maker():
    """Fresh schema per test."""
    from peek.core.tasks import TaskManager
    from peek.services import catalog_snapshot, exclusion_compute
    from peek.services.exclusion_service import clear_all_cache

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    clear_all_cache()
    exclusion_compute._pending.clear()
    catalog_snapshot._mirror = None
    TaskManager.reset_instance()

    yield async_session_maker

    await engine.dispose()


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


async def seed_catalog(session) -> None:
    """Two instances ("a" and "b") sharing some ids.

    Instance a:
      studios s1 <- s2 (s2's parent is s1)
      tags t1 <- t2 (t2's parent is t1), t3
      performers p1 (StashDB X1, tag t3), p2
      scene 1: "Sunny Day", studio s2, performer p1, tag t2, group g1
      scene 2: "Night Walk", studio s1, performer p2, tag t3, gallery gal1
      scene 3: "Solo Session", no relations
      scene 4: deleted
      group g1 (tag t3), gallery gal1 with image i1
    Instance b:
      tag t1, performer p1 (StashDB X1), scene 1 "Sunny Day B" tagged t1
    """
    session.add_all([
        StashInstance(id="a", name="Main", url="http://a.local:9999", priority=0),
        StashInstance(id="b", name="Backup", url="http://b.local:9999", priority=1),
        User(id=1, username="alice"),
        User(id=2, username="bob"),
    ])
    session.add_all([
        Studio(id="s1", instance_id="a", name="Parent Studio", image_path="http://a.local:9999/studio/s1/image?apikey=secret"),
        Studio(id="s2", instance_id="a", name="Child Studio", parent_id="s1"),
        Tag(id="t1", instance_id="a", name="Outdoor"),
        Tag(id="t2", instance_id="a", name="Beach", parent_ids=["t1"]),
        Tag(id="t3", instance_id="a", name="Indoor"),
        Tag(id="t1", instance_id="b", name="Outdoor"),
        Performer(
            id="p1", instance_id="a", name="Alice Anders", birthdate="1990-03-15",
            stash_ids=[{"endpoint": STASHDB, "stash_id": "X1"}], scene_count=1,
        ),
        Performer(id="p2", instance_id="a", name="Bea Brown", birthdate="2001-07-01", scene_count=1),
        Performer(
            id="p1", instance_id="b", name="Alice A.",
            stash_ids=[{"endpoint": STASHDB, "stash_id": "X1"}],
        ),
        Scene(
            id="1", instance_id="a", title="Sunny Day", studio_id="s2", rating100=80,
            date="2023-05-01", duration=1800, width=1920, height=1080,
            path_screenshot="http://a.local:9999/scene/1/screenshot?apikey=secret",
            stash_created_at=NOW - timedelta(days=3),
        ),
        Scene(
            id="2", instance_id="a", title="Night Walk", studio_id="s1",
            date="2022-01-10", duration=600, width=1280, height=720,
            stash_created_at=NOW - timedelta(days=2),
        ),
        Scene(
            id="3", instance_id="a", title="Solo Session", duration=1200, width=1080, height=1920,
            stash_created_at=NOW - timedelta(days=1),
        ),
        Scene(id="4", instance_id="a", title="Removed", deleted_at=NOW),
        Scene(
            id="1", instance_id="b", title="Sunny Day B", duration=900, width=640, height=480,
            stash_created_at=NOW,
        ),
        Group(id="g1", instance_id="a", name="Summer Series"),
        Gallery(id="gal1", instance_id="a", title="Night Shots"),
        Image(id="i1", instance_id="a", title="Moon", width=800, height=600),
    ])
    session.add_all([
        TagParent(tag_id="t2", tag_instance_id="a", parent_id="t1", parent_instance_id="a"),
        ScenePerformer(scene_id="1", scene_instance_id="a", performer_id="p1", performer_instance_id="a"),
        ScenePerformer(scene_id="2", scene_instance_id="a", performer_id="p2", performer_instance_id="a"),
        SceneTag(scene_id="1", scene_instance_id="a", tag_id="t2", tag_instance_id="a"),
        SceneTag(scene_id="2", scene_instance_id="a", tag_id="t3", tag_instance_id="a"),
        SceneTag(scene_id="1", scene_instance_id="b", tag_id="t1", tag_instance_id="b"),
        SceneGroup(scene_id="1", scene_instance_id="a", group_id="g1", group_instance_id="a", scene_index=1),
        SceneGallery(scene_id="2", scene_instance_id="a", gallery_id="gal1", gallery_instance_id="a"),
        ImageGallery(image_id="i1", image_instance_id="a", gallery_id="gal1", gallery_instance_id="a"),
        PerformerTag(performer_id="p1", performer_instance_id="a", tag_id="t3", tag_instance_id="a"),
        GroupTag(group_id="g1", group_instance_id="a", tag_id="t3", tag_instance_id="a"),
    ])
    await session.commit()


@pytest.fixture
async def seeded(db):
    await seed_catalog(db)
    return db


async def add_overlay(session, user_id: int, entity_type: str, entity_id: str, instance_id: str = "a", **fields):
    session.add(UserEntityData(
        user_id=user_id, entity_type=entity_type, entity_id=entity_id, instance_id=instance_id, **fields,
    ))
    await session.commit()
