"""
Application Use Cases: Ratings and Points

Saving a rating and applying points are two separate operations. The web layer
first persists the rating, then asks the points engine to reconcile the ledger
with whatever is now stored for that (user, movie) pair.

Core guarantees of apply_points:

- Atomicity: the read-check-mutate sequence runs inside one transaction.atomic() block.
- Row-level locking: select_for_update() on the account row, then on the rating row.
  Calls for the same user serialise on the account row; different users never
  share a lock.
- Idempotency: the explicit award_state on the rating decides whether a transition
  already fired, and a unique constraint on (user, movie_id, kind) in PointsAward
  backs it at the database level.
- Race-condition safety: balances are updated with F() expressions.
- Explicit domain signaling: every rejection raises a domain exception and leaves
  storage untouched.
"""

import logging
from dataclasses import asdict, dataclass

from django.db import IntegrityError, OperationalError, transaction
from django.db.models import F

from expectations.domain.awards import AwardKind, is_consistent, next_transition
from expectations.domain.exceptions import (
    InvalidAwardState,
    InvalidRating,
    RatingNotFound,
    TransientStorageFailure,
    Unauthorized,
)
from expectations.models import Movie, PointsAccount, PointsAward, Rating

logger = logging.getLogger(__name__)

MOVIE_FIELDS = ("title", "poster_url", "release_year", "description")


@dataclass(frozen=True)
class PointsResult:
    points_available: int
    points_on_hold: int
    did_pre_hold: bool = False
    did_release: bool = False

    @classmethod
    def from_account(cls, account, transition=None):
        kind = transition.kind if transition is not None else None
        return cls(
            points_available=account.points_available,
            points_on_hold=account.points_on_hold,
            did_pre_hold=kind == AwardKind.PRE_HOLD,
            did_release=kind == AwardKind.RELEASE,
        )

    def as_dict(self):
        return asdict(self)


def validate_rating_value(field, value):
    if value is None:
        return None
    # bool is an int subclass; True must not pass as a rating of 1.
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRating(field, value)
    if not 1 <= value <= 10:
        raise InvalidRating(field, value)
    return value


def save_rating(user_id, movie_id, pre_rating=None, post_rating=None, movie=None):
    """
    Upserts the rating for (user_id, movie_id).

    Only the fields passed in are written; the other one keeps its stored value.
    The award state is never touched here. Callers follow up with apply_points
    once this returns, so the rating is committed before the engine reads it.
    """
    pre_rating = validate_rating_value("pre_rating", pre_rating)
    post_rating = validate_rating_value("post_rating", post_rating)

    if pre_rating is None and post_rating is None:
        raise InvalidRating("pre_rating", None)

    values = {}
    if pre_rating is not None:
        values["pre_rating"] = pre_rating
    if post_rating is not None:
        values["post_rating"] = post_rating

    with transaction.atomic():
        if movie:
            cache_movie(movie_id, movie)

        rating, created = (
            Rating.objects
            .select_for_update()
            .get_or_create(user_id=user_id, movie_id=movie_id, defaults=values)
        )

        if not created:
            for field, value in values.items():
                setattr(rating, field, value)
            rating.save(update_fields=[*values, "updated_at"])

    logger.info(
        "Rating saved: user=%s movie=%s pre=%s post=%s created=%s",
        user_id, movie_id, rating.pre_rating, rating.post_rating, created,
    )
    return rating


def cache_movie(movie_id, movie):
    defaults = {field: movie.get(field) for field in MOVIE_FIELDS if field in movie}
    if defaults.get("description") is None:
        defaults.pop("description", None)
    if not defaults.get("title"):
        defaults.pop("title", None)
    Movie.objects.update_or_create(
        tmdb_id=movie_id,
        defaults=defaults,
        create_defaults={"title": f"Movie {movie_id}", **defaults},
    )


def apply_points(user_id, movie_id, *, caller_id):
    """
    Reconciles the points ledger with the stored rating for (user_id, movie_id).

    caller_id is the identity the transport verified and must equal user_id.
    It is required so no call path can skip the identity check.

    Returns a PointsResult with the balances after the call and which transition
    fired, if any. Repeated calls with unchanged ratings change nothing.
    """
    if caller_id != user_id:
        logger.warning(
            "Points rejected: caller=%s user=%s movie=%s",
            caller_id, user_id, movie_id,
        )
        raise Unauthorized(user_id, caller_id)

    try:
        # Checked before locking so a missing rating never creates an account.
        if not Rating.objects.filter(user_id=user_id, movie_id=movie_id).exists():
            raise RatingNotFound(user_id, movie_id)
        return _apply_points_atomically(user_id, movie_id)
    except (OperationalError, IntegrityError) as exc:
        logger.warning(
            "Points transaction rolled back: user=%s movie=%s error=%s",
            user_id, movie_id, exc,
        )
        raise TransientStorageFailure(user_id, movie_id) from exc


def _apply_points_atomically(user_id, movie_id):
    with transaction.atomic():
        # Account first, then rating: the same lock order for every call.
        account, _ = (
            PointsAccount.objects
            .select_for_update()
            .get_or_create(user_id=user_id)
        )

        try:
            rating = (
                Rating.objects
                .select_for_update()
                .get(user_id=user_id, movie_id=movie_id)
            )
        except Rating.DoesNotExist:
            raise RatingNotFound(user_id, movie_id)

        recorded = list(
            PointsAward.objects
            .filter(user_id=user_id, movie_id=movie_id)
            .values_list("kind", flat=True)
        )

        if not is_consistent(rating.award_state, recorded):
            logger.error(
                "Award state mismatch: user=%s movie=%s state=%s recorded=%s",
                user_id, movie_id, rating.award_state, sorted(recorded),
            )
            raise InvalidAwardState(
                user_id, movie_id,
                f"state {rating.award_state!r} with recorded awards {sorted(recorded)}",
            )

        transition = next_transition(
            rating.award_state, rating.pre_rating, rating.post_rating,
        )

        if transition is None:
            logger.debug(
                "Points unchanged: user=%s movie=%s state=%s",
                user_id, movie_id, rating.award_state,
            )
            return PointsResult.from_account(account)

        if account.points_on_hold + transition.on_hold_delta < 0:
            logger.error(
                "Hold balance too low to release: user=%s movie=%s on_hold=%s",
                user_id, movie_id, account.points_on_hold,
            )
            raise InvalidAwardState(
                user_id, movie_id,
                f"points_on_hold {account.points_on_hold} cannot cover the release",
            )

        PointsAward.objects.create(
            user_id=user_id,
            movie_id=movie_id,
            kind=transition.kind,
            points_available_delta=transition.available_delta,
            points_on_hold_delta=transition.on_hold_delta,
        )

        # F() expressions make the UPDATE use the database value, not the Python-cached one
        PointsAccount.objects.filter(pk=account.pk).update(
            points_available=F("points_available") + transition.available_delta,
            points_on_hold=F("points_on_hold") + transition.on_hold_delta,
        )

        rating.award_state = transition.target
        rating.save(update_fields=["award_state", "updated_at"])

        account.refresh_from_db()

    logger.info(
        "Points applied: user=%s movie=%s transition=%s available=%s on_hold=%s",
        user_id, movie_id, transition.kind,
        account.points_available, account.points_on_hold,
    )
    return PointsResult.from_account(account, transition)
