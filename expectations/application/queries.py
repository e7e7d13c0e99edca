"""
Read-only queries behind the discovery, ranking and profile endpoints.

Nothing here writes. Balances are read as the points engine left them.
"""

import logging
import random

from django.conf import settings
from django.db.models import Avg, Count, ExpressionWrapper, F, FloatField, IntegerField

from expectations.domain.awards import PRE_HOLD_POINTS
from expectations.models import Movie, PointsAccount, Rating

logger = logging.getLogger(__name__)

DISCOVER_MODES = ("underrated", "overrated")
SURPRISING_MODES = ("best", "worst")

DISCOVER_TOP_DEFAULT = 50
DISCOVER_TOP_MIN = 5
DISCOVER_TOP_MAX = 200

SURPRISING_SCAN_LIMIT = 200
SURPRISING_LIMIT = 30


def _expectations_setting(name, default):
    return getattr(settings, "EXPECTATIONS", {}).get(name, default)


def _movie_payload(movie_id, movie):
    return {
        "movie_id": movie_id,
        "title": movie.title if movie else None,
        "poster_url": movie.poster_url if movie else None,
        "release_year": movie.release_year if movie else None,
    }


def movie_expectation_gaps(descending=True, min_ratings=1):
    """
    Per-movie aggregate over every completed (pre, post) pair.

    Returns a queryset of dicts with movie_id, avg_gap, pre_avg, post_avg and
    ratings_count, ordered by avg_gap.
    """
    gap = ExpressionWrapper(F("post_rating") - F("pre_rating"), output_field=IntegerField())
    order = "-avg_gap" if descending else "avg_gap"

    return (
        Rating.objects
        .filter(pre_rating__isnull=False, post_rating__isnull=False)
        .values("movie_id")
        .annotate(
            avg_gap=Avg(gap, output_field=FloatField()),
            pre_avg=Avg("pre_rating", output_field=FloatField()),
            post_avg=Avg("post_rating", output_field=FloatField()),
            ratings_count=Count("id"),
        )
        .filter(ratings_count__gte=min_ratings)
        .order_by(order, "movie_id")
    )


def with_movies(rows):
    """Joins aggregate rows with the cached movie metadata."""
    rows = list(rows)
    movies = Movie.objects.in_bulk([row["movie_id"] for row in rows])
    return [
        {
            **_movie_payload(row["movie_id"], movies.get(row["movie_id"])),
            "gap": row["avg_gap"],
            "pre_avg": row["pre_avg"],
            "post_avg": row["post_avg"],
            "ratings_count": row["ratings_count"],
        }
        for row in rows
    ]


def clamp_top(top):
    if top is None:
        return DISCOVER_TOP_DEFAULT
    return min(max(top, DISCOVER_TOP_MIN), DISCOVER_TOP_MAX)


def discover_movie(mode="underrated", top=None, page=0, choice=random.choice):
    """
    Picks one movie at random out of a page of the expectation gap ranking.

    underrated walks the ranking from the largest positive gap, overrated from
    the most negative. Returns None when the page is empty.
    """
    if mode not in DISCOVER_MODES:
        raise ValueError(f"mode must be one of {DISCOVER_MODES}, got {mode!r}")

    top = clamp_top(top)
    page = max(page, 0)
    offset = page * top

    rows = movie_expectation_gaps(descending=mode == "underrated")[offset:offset + top]
    rows = with_movies(rows)

    if not rows:
        logger.info("Discover found nothing: mode=%s top=%s page=%s", mode, top, page)
        return None

    return choice(rows)


def surprising_movies(mode="best", min_ratings=1):
    """Movies that beat (best) or missed (worst) expectations the most."""
    if mode not in SURPRISING_MODES:
        raise ValueError(f"mode must be one of {SURPRISING_MODES}, got {mode!r}")

    rows = movie_expectation_gaps(descending=mode == "best", min_ratings=min_ratings)
    return with_movies(rows[:SURPRISING_SCAN_LIMIT])[:SURPRISING_LIMIT]


def display_name(user):
    return user.get_username() or f"User {str(user.pk)[:6]}"


def leaderboard(limit=None):
    """Accounts ranked by available points, highest first."""
    if limit is None:
        limit = _expectations_setting("LEADERBOARD_SIZE", 50)

    accounts = (
        PointsAccount.objects
        .select_related("user")
        .order_by("-points_available", "user_id")[:limit]
    )

    return [
        {
            "rank": index,
            "id": account.user_id,
            "username": display_name(account.user),
            "points_available": account.points_available,
            "points_on_hold": account.points_on_hold,
        }
        for index, account in enumerate(accounts, start=1)
    ]


def account_summary(user_id):
    account = PointsAccount.objects.filter(user_id=user_id).first()
    if account is None:
        return {"points_available": 0, "points_on_hold": 0}
    return {
        "points_available": account.points_available,
        "points_on_hold": account.points_on_hold,
    }


def pending_ratings(user_id, limit=None):
    """Movies the user pre-rated but hasn't post-rated yet, newest first."""
    if limit is None:
        limit = _expectations_setting("PENDING_RATINGS_LIMIT", 8)

    ratings = list(
        Rating.objects
        .filter(user_id=user_id, pre_rating__isnull=False, post_rating__isnull=True)
        .order_by("-created_at", "-id")[:limit]
    )
    movies = Movie.objects.in_bulk([rating.movie_id for rating in ratings])

    return [
        {
            **_movie_payload(rating.movie_id, movies.get(rating.movie_id)),
            "pre_rating": rating.pre_rating,
            "created_at": rating.created_at,
        }
        for rating in ratings
    ]


def pending_potential_points(user_id):
    pending = Rating.objects.filter(
        user_id=user_id, pre_rating__isnull=False, post_rating__isnull=True,
    ).count()
    return pending * PRE_HOLD_POINTS
