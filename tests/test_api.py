import pytest
from httpx import ASGITransport, AsyncClient

from conftest import add_overlay
from peek.api.v1 import recommendations
from peek.core.tasks import TaskManager
from peek.db.models import UserStashInstance
from peek.main import app, limiter
from peek.services.catalog_snapshot import get_mirror

USER_1 = {"X-Peek-User-Id": "1"}
ADMIN = {"Authorization": "Bearer test-admin-key"}


@pytest.fixture
async def client(seeded):
    limiter.enabled = False
    recommendations.limiter.enabled = False
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    limiter.enabled = True
    recommendations.limiter.enabled = True


# ==================== Health ====================

async def test_health_before_first_refresh(client):
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "starting"
    assert body["cacheVersion"] == 0
    assert body["isRefreshing"] is False


async def test_root(client):
    response = await client.get("/")
    assert response.json()["health"] == "/health"


# ==================== Library ====================

async def test_query_scenes(client):
    response = await client.post("/api/v1/library/scene/query", json={
        "filters": {"title": {"value": "sunny", "modifier": "INCLUDES"}},
        "sort": "title",
        "sort_direction": "ASC",
        "per_page": 1,
    })
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert body["per_page"] == 1
    assert body["has_more"] is True
    assert body["items"][0]["title"] == "Sunny Day"
    assert body["items"][0]["performers"][0]["id"] == "p1"


async def test_query_validation_errors(client):
    unknown_field = await client.post("/api/v1/library/scene/query", json={"filters": {"nope": {"value": 1}}})
    assert unknown_field.status_code == 400

    bad_number = await client.post(
        "/api/v1/library/scene/query", json={"filters": {"duration": {"value": "abc"}}}
    )
    assert bad_number.status_code == 400

    unknown_kind = await client.post("/api/v1/library/movie/query", json={})
    assert unknown_kind.status_code == 400


async def test_depth_filter_before_refresh_is_unavailable(client):
    response = await client.post(
        "/api/v1/library/scene/query", json={"filters": {"tags": {"value": ["t1:a"], "depth": -1}}}
    )
    assert response.status_code == 503
    assert response.headers["Retry-After"] == "30"


async def test_user_instance_selection_applies(client, seeded):
    seeded.add(UserStashInstance(user_id=1, instance_id="b"))
    await seeded.commit()

    response = await client.post("/api/v1/library/scene/query", json={}, headers=USER_1)
    assert [item["instance_id"] for item in response.json()["items"]] == ["b"]


async def test_lookup_by_ids(client):
    response = await client.post("/api/v1/library/performer/ids", json={"ids": ["p1:b", "p2"]})
    assert response.status_code == 200
    assert [(i["id"], i["instance_id"]) for i in response.json()["items"]] == [("p1", "b"), ("p2", "a")]


# ==================== Hidden ====================

async def test_hidden_requires_a_user(client):
    assert (await client.get("/api/v1/hidden")).status_code == 401


async def test_hide_and_unhide(client):
    response = await client.post(
        "/api/v1/hidden", json={"entity_type": "scene", "entity_id": "2", "instance_id": "a"}, headers=USER_1,
    )
    assert response.json() == {"success": True}

    listed = (await client.get("/api/v1/hidden", headers=USER_1)).json()
    assert listed["total"] == 1
    assert listed["items"][0]["name"] == "Night Walk"

    scenes = (await client.post("/api/v1/library/scene/query", json={}, headers=USER_1)).json()
    assert "2" not in [item["id"] for item in scenes["items"]]

    response = await client.delete(
        "/api/v1/hidden", params={"entity_type": "scene", "entity_id": "2", "instance_id": "a"}, headers=USER_1,
    )
    assert response.status_code == 200
    scenes = (await client.post("/api/v1/library/scene/query", json={}, headers=USER_1)).json()
    assert "2" in [item["id"] for item in scenes["items"]]


async def test_bulk_hide_and_unhide_all(client):
    response = await client.post("/api/v1/hidden/bulk", headers=USER_1, json=[
        {"entity_type": "tag", "entity_id": "t3", "instance_id": "a"},
        {"entity_type": "performer", "entity_id": "p2"},
    ])
    assert response.json() == {"success": 2, "failed": 0}

    response = await client.delete("/api/v1/hidden/all", headers=USER_1)
    assert response.json() == {"removed": 2}


async def test_hide_unknown_type(client):
    response = await client.post("/api/v1/hidden", json={"entity_type": "movie", "entity_id": "1"}, headers=USER_1)
    assert response.status_code == 400


# ==================== Stats and recommendations ====================

async def test_my_stats(client, seeded):
    await add_overlay(seeded, 1, "scene", "1", play_count=2)
    response = await client.get("/api/v1/stats/me", headers=USER_1)
    assert response.status_code == 200
    body = response.json()
    assert body["engagement"]["total_play_count"] == 2
    assert body["library"]["scenes"] == 4


async def test_recommendations(client, seeded):
    await add_overlay(seeded, 1, "performer", "p1", favorite=True)
    response = await client.get("/api/v1/recommendations/scenes", headers=USER_1)
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["scenes"][0]["id"] == "1"
    assert body["criteria"]["favorited_performers"] == 1


async def test_recommendations_without_signals(client):
    body = (await client.get("/api/v1/recommendations/scenes", headers={"X-Peek-User-Id": "2"})).json()
    assert body["scenes"] == []
    assert body["message"] == "No recommendations yet"


# ==================== Admin ====================

async def test_admin_requires_key(client):
    assert (await client.post("/api/v1/admin/refresh")).status_code == 401
    response = await client.post("/api/v1/admin/refresh", headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401


async def test_admin_refresh(client):
    response = await client.post("/api/v1/admin/refresh", headers=ADMIN)
    assert response.json() == {"started": True, "cache_version": 0}

    task = TaskManager.get_instance().get_task("catalog_refresh_manual")
    if task is not None:
        await task
    assert get_mirror().cache_version == 1

    health = (await client.get("/health")).json()
    assert health["status"] == "healthy"
    assert health["entityCounts"]["scene"] == 4
    assert health["lastRefresh"] is not None


async def test_admin_recompute_and_duplicates(client):
    response = await client.post("/api/v1/admin/exclusions/recompute", headers=ADMIN)
    assert response.json() == {"success": 2, "failed": 0, "errors": []}

    stats = (await client.get("/api/v1/admin/duplicates/stats", headers=ADMIN)).json()
    assert stats["performer"] == {"groups": 1, "duplicate_entities": 1}

    groups = (await client.get("/api/v1/admin/duplicates/performer", headers=ADMIN)).json()
    assert groups[0]["primary"] == {"id": "p1", "instance_id": "a", "name": "Alice Anders", "priority": 0}
    assert [m["instance_id"] for m in groups[0]["members"]] == ["a", "b"]
