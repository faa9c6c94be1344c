"""Effective rating: the single fallback rule used by filters, sorts and scoring.

    effective rating = user overlay rating -> upstream rating100 -> 0

Recommendation scoring additionally treats a favorite with no rating at
either tier as IMPLICIT_FAVORITE_RATING.
"""

from sqlalchemy import func, literal

IMPLICIT_FAVORITE_RATING = 85


def effective_rating(user_rating: int | None, upstream_rating: int | None = None) -> int:
    if user_rating is not None:
        return user_rating
    if upstream_rating is not None:
        return upstream_rating
    return 0


def scoring_rating(
    user_rating: int | None,
    upstream_rating: int | None,
    favorite: bool,
) -> int:
    """Rating used to weight a scene in recommendations."""
    if user_rating is None and upstream_rating is None and favorite:
        return IMPLICIT_FAVORITE_RATING
    return effective_rating(user_rating, upstream_rating)


def effective_rating_expr(overlay, model):
    """SQL twin of effective_rating() for an overlay alias joined onto a model."""
    upstream = getattr(model, "rating100", None)
    if overlay is None:
        if upstream is None:
            return literal(0)
        return func.coalesce(upstream, 0)
    if upstream is None:
        return func.coalesce(overlay.rating, 0)
    return func.coalesce(overlay.rating, upstream, 0)
