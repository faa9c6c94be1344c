import asyncio
from datetime import datetime

import pytest
from sqlalchemy import select

from conftest import add_overlay
from peek.core.errors import CatalogUnavailableError
from peek.db.models import SystemMetadata, UserEntityRanking, UserHiddenEntity
from peek.query.identity import CompositeKey
from peek.services.catalog_snapshot import CatalogMirror, CatalogSnapshot, load_snapshot, refresh_catalog
from peek.services.exclusion_service import is_excluded


def _snapshot(version):
    return CatalogSnapshot(version=version, refreshed_at=datetime(2024, 1, 1))


async def test_snapshot_contents(seeded, session_maker):
    snapshot = await load_snapshot(session_maker, 3)
    assert snapshot.version == 3
    assert snapshot.instances == ("a", "b")
    assert snapshot.priorities == {"a": 0, "b": 1}
    assert snapshot.entity_counts["scene"] == 4
    assert snapshot.entity_counts["performer"] == 3

    assert snapshot.expand("tag", (CompositeKey("t1", "a"),), 1) == (CompositeKey("t1", "a"), CompositeKey("t2", "a"))
    assert snapshot.expand("studio", (CompositeKey("s1"),), -1) == (CompositeKey("s1"), CompositeKey("s2"))
    assert snapshot.expand("tag", (CompositeKey("t1", "b"),), -1) == (CompositeKey("t1", "b"),)


async def test_unknown_hierarchy(seeded, session_maker):
    snapshot = await load_snapshot(session_maker, 1)
    with pytest.raises(ValueError):
        snapshot.expand("performer", (CompositeKey("p1"),), 1)


async def test_require_snapshot_before_first_load():
    mirror = CatalogMirror()
    with pytest.raises(CatalogUnavailableError):
        mirror.require_snapshot()


async def test_refresh_swaps_and_bumps_version():
    mirror = CatalogMirror()

    async def loader(version):
        return _snapshot(version)

    assert await mirror.refresh(loader)
    assert mirror.cache_version == 1
    assert await mirror.refresh(loader)
    assert mirror.cache_version == 2
    assert mirror.require_snapshot().version == 2


async def test_concurrent_refresh_is_a_noop():
    mirror = CatalogMirror()
    release = asyncio.Event()
    calls = []

    async def slow_loader(version):
        calls.append(version)
        await release.wait()
        return _snapshot(version)

    first = asyncio.create_task(mirror.refresh(slow_loader))
    await asyncio.sleep(0)
    assert mirror.is_refreshing
    assert await mirror.refresh(slow_loader) is False

    with pytest.raises(CatalogUnavailableError):
        mirror.require_snapshot()

    release.set()
    assert await first is True
    assert calls == [1]
    assert not mirror.is_refreshing


async def test_failed_refresh_keeps_previous_snapshot():
    mirror = CatalogMirror()

    async def loader(version):
        return _snapshot(version)

    async def broken(version):
        raise RuntimeError("mirror tables unavailable")

    await mirror.refresh(loader)
    with pytest.raises(RuntimeError):
        await mirror.refresh(broken)
    assert mirror.cache_version == 1
    assert mirror.current.version == 1
    assert not mirror.is_refreshing


async def test_post_swap_failure_keeps_new_snapshot():
    mirror = CatalogMirror()

    async def loader(version):
        return _snapshot(version)

    async def on_swap(snapshot):
        raise RuntimeError("recompute failed")

    assert await mirror.refresh(loader, on_swap)
    assert mirror.cache_version == 1


async def test_full_refresh(seeded, session_maker):
    db = seeded
    await add_overlay(db, 1, "scene", "1", play_count=1)
    db.add(UserHiddenEntity(user_id=2, entity_type="scene", entity_id="3", instance_id="a"))
    await db.commit()

    mirror = CatalogMirror()
    assert await refresh_catalog(mirror, session_maker)
    assert mirror.cache_version == 1
    assert mirror.current.entity_counts["scene"] == 4

    metadata = {
        row.key: row.value
        for row in (await db.execute(select(SystemMetadata))).scalars().all()
    }
    assert metadata["cache_version"] == "1"
    assert "last_refresh" in metadata

    rankings = (await db.execute(
        select(UserEntityRanking).where(UserEntityRanking.user_id == 1, UserEntityRanking.entity_type == "scene")
    )).scalars().all()
    assert [r.entity_id for r in rankings] == ["1"]

    assert await is_excluded(db, 2, "scene", "3", "a")
