from sqlalchemy import select

from peek.db.models import Scene
from peek.query.sorting import RANDOM_MODULUS, normalize_seed, numeric_id, random_rank, seeded_random_rank


def test_rank_is_deterministic_and_bounded():
    for entity_id in (1, 2, 99999, 2147483646):
        rank = random_rank(entity_id, 42)
        assert rank == random_rank(entity_id, 42)
        assert 0 <= rank < RANDOM_MODULUS


def test_missing_seed_uses_default():
    assert normalize_seed(None) == 12345
    assert normalize_seed(0) == 12345
    assert random_rank(5, None) == random_rank(5, 12345)


def test_different_seeds_give_different_orders():
    ids = list(range(1, 40))
    order_a = sorted(ids, key=lambda i: random_rank(i, 1))
    order_b = sorted(ids, key=lambda i: random_rank(i, 2))
    assert order_a != order_b
    assert sorted(order_a) == ids


async def test_sql_expression_matches_python_twin(db):
    ids = ("3", "17", "1024", "65537", "0012", "p1", "12a", "1234567890123456789")
    db.add_all([Scene(id=entity_id, instance_id="a", title=f"S{entity_id}") for entity_id in ids])
    await db.commit()

    rank = seeded_random_rank(Scene.id, 777)
    rows = (await db.execute(select(Scene.id, rank))).all()
    assert {row[0]: row[1] for row in rows} == {row[0]: random_rank(row[0], 777) for row in rows}


def test_non_numeric_ids_rank_as_zero():
    assert numeric_id("0012") == 12
    assert numeric_id(42) == 42
    for entity_id in ("p1", "12a", "", "١٢", "1234567890123456789"):
        assert numeric_id(entity_id) == 0
        assert random_rank(entity_id, 9) == random_rank(0, 9)
