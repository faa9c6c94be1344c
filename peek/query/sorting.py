"""Sort tables and the seeded pseudo-random order.

The random order ranks each row by a pure function of its numeric id and a
seed. Every multiplication is reduced modulo 2^31 - 1, so intermediate
values stay within 64-bit integers on every backend and the same seed always
yields the same order. `random_rank` is the Python twin of the SQL
expression and must stay in step with it.

Stash ids are numeric strings. An id that is not (or is too long to fit a
BIGINT) ranks as id 0 instead of failing the cast, so such rows share one
rank under a seed and fall back to the id tie-break.
"""

from sqlalchemy import BigInteger, and_, case, cast, func

from peek.core.errors import ClientInputError
from peek.query.lowering import LoweringContext, operand_expr
from peek.query.predicates import RelationCount
from peek.services.ratings import effective_rating_expr

RANDOM_MODULUS = 2147483647  # 2^31 - 1
RANDOM_MULTIPLIER_A = 52959209
RANDOM_MULTIPLIER_B = 1047483763
DEFAULT_RANDOM_SEED = 12345
MAX_NUMERIC_ID_DIGITS = 18

DEFAULT_SORT = "created_at"


def normalize_seed(seed: int | None) -> int:
    if not seed:
        return DEFAULT_RANDOM_SEED
    return int(seed) % RANDOM_MODULUS


def numeric_id(entity_id) -> int:
    text = str(entity_id)
    if text.isascii() and text.isdigit() and len(text) <= MAX_NUMERIC_ID_DIGITS:
        return int(text)
    return 0


def random_rank(entity_id, seed: int | None) -> int:
    """Rank of one id under a seed (mirrors seeded_random_rank)."""
    m = RANDOM_MODULUS
    base = (numeric_id(entity_id) + normalize_seed(seed)) % m
    return ((base * base % m) * RANDOM_MULTIPLIER_A % m + base * RANDOM_MULTIPLIER_B % m) % m


def seeded_random_rank(id_column, seed: int | None):
    """SQL expression ranking rows by id under a seed."""
    m = RANDOM_MODULUS
    is_numeric = and_(
        func.length(id_column).between(1, MAX_NUMERIC_ID_DIGITS),
        func.ltrim(id_column, "0123456789") == "",
    )
    id_value = case((is_numeric, cast(id_column, BigInteger)), else_=0)
    base = (id_value + normalize_seed(seed)) % m
    return ((base * base % m) * RANDOM_MULTIPLIER_A % m + base * RANDOM_MULTIPLIER_B % m) % m


# ============ Sort tables ============

def _col(name):
    return lambda ctx: getattr(ctx.model, name)


def _lower(name):
    return lambda ctx: func.lower(getattr(ctx.model, name))


def _overlay(name):
    return lambda ctx: func.coalesce(getattr(ctx.overlay, name), 0)


def _overlay_raw(name):
    return lambda ctx: getattr(ctx.overlay, name)


def _rating(ctx):
    return effective_rating_expr(ctx.overlay, ctx.model)


def _count(relation):
    return lambda ctx: operand_expr(RelationCount(relation), ctx)


_COMMON = {
    "created_at": _col("stash_created_at"),
    "updated_at": _col("stash_updated_at"),
}

SORT_TABLES = {
    "scene": {
        **_COMMON,
        "date": _col("date"),
        "title": _lower("title"),
        "duration": _col("duration"),
        "filesize": _col("file_size"),
        "bitrate": _col("bit_rate"),
        "framerate": _col("frame_rate"),
        "path": _col("file_path"),
        "performer_count": _count("performers"),
        "tag_count": _count("tags"),
        "rating": _rating,
        "rating100": _col("rating100"),
        "user_rating": _overlay("rating"),
        "last_played_at": _overlay_raw("last_played_at"),
        "play_count": _overlay("play_count"),
        "play_duration": _overlay("play_duration"),
        "o_counter": _overlay("o_count"),
        "resume_time": _overlay("resume_time"),
    },
    "performer": {
        **_COMMON,
        "name": _lower("name"),
        "birthdate": _col("birthdate"),
        "height": _col("height_cm"),
        "rating": _rating,
        "scene_count": _col("scene_count"),
        "o_counter": _overlay("o_count"),
        "play_count": _overlay("play_count"),
    },
    "studio": {
        **_COMMON,
        "name": _lower("name"),
        "rating": _rating,
        "scene_count": _col("scene_count"),
        "o_counter": _overlay("o_count"),
        "play_count": _overlay("play_count"),
    },
    "tag": {
        **_COMMON,
        "name": _lower("name"),
        "rating": _rating,
        "scene_count": _col("scene_count"),
        "o_counter": _overlay("o_count"),
        "play_count": _overlay("play_count"),
    },
    "gallery": {
        **_COMMON,
        "title": _lower("title"),
        "date": _col("date"),
        "rating": _rating,
        "image_count": _col("image_count"),
    },
    "group": {
        **_COMMON,
        "name": _lower("name"),
        "date": _col("date"),
        "duration": _col("duration"),
        "rating": _rating,
        "scene_count": _col("scene_count"),
    },
    "image": {
        **_COMMON,
        "title": _lower("title"),
        "date": _col("date"),
        "rating": _rating,
        "o_counter": _overlay("o_count"),
        "filesize": _col("file_size"),
    },
    "clip": {
        **_COMMON,
        "title": _lower("title"),
        "seconds": _col("seconds"),
    },
}


def normalize_direction(direction: str | None) -> str:
    if not direction:
        return "DESC"
    value = direction.upper()
    if value not in ("ASC", "DESC"):
        raise ClientInputError(f"Invalid sort direction: {direction!r}")
    return value


def build_order_by(ctx: LoweringContext, sort: str | None, direction: str | None, seed: int | None = None) -> list:
    """ORDER BY clauses for a sort key, with id/instance tie-breaks in the same direction."""
    direction = normalize_direction(direction)
    table = SORT_TABLES[ctx.kind]

    if sort == "random":
        primary = seeded_random_rank(ctx.model.id, seed)
        primary = primary.asc() if direction == "ASC" else primary.desc()
    else:
        expression = table.get(sort or DEFAULT_SORT)
        if expression is None:
            expression = table[DEFAULT_SORT]
            direction = "DESC"
        primary = expression(ctx)
        primary = primary.asc().nullslast() if direction == "ASC" else primary.desc().nullslast()

    if direction == "ASC":
        return [primary, ctx.model.id.asc(), ctx.model.instance_id.asc()]
    return [primary, ctx.model.id.desc(), ctx.model.instance_id.desc()]
