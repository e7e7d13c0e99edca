"""
Persistence models for ratings and the points ledger.

- Rating holds one user's pre/post pair for a movie plus the award state the
  points engine has reached for that pair.
- PointsAccount holds a user's balances. Only the points engine writes it.
- PointsAward records each credited transition. Its unique constraint on
  (user, movie_id, kind) stops a transition from being credited twice even if
  two transactions race past the award state check.
- Movie caches the metadata shown next to expectation gap aggregates.
"""

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models

from expectations.domain.awards import AwardKind, AwardState

RATING_VALIDATORS = [MinValueValidator(1), MaxValueValidator(10)]


class Movie(models.Model):
    """Cached movie metadata, keyed by TMDB id."""

    tmdb_id = models.IntegerField(primary_key=True)
    title = models.CharField(max_length=500)
    poster_url = models.URLField(max_length=500, blank=True, null=True)
    release_year = models.PositiveSmallIntegerField(blank=True, null=True)
    description = models.TextField(blank=True, default="")
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.title} ({self.tmdb_id})"


class Rating(models.Model):
    """
    One user's pre and post rating for a movie.

    award_state is written only by the points engine and records how far the
    pair has been rewarded.
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="ratings",
    )

    # TMDB id. Not a foreign key: a rating may be saved before the movie is cached.
    movie_id = models.IntegerField()

    pre_rating = models.PositiveSmallIntegerField(
        blank=True, null=True, validators=RATING_VALIDATORS
    )
    post_rating = models.PositiveSmallIntegerField(
        blank=True, null=True, validators=RATING_VALIDATORS
    )

    award_state = models.CharField(
        max_length=16,
        choices=AwardState.choices,
        default=AwardState.NONE,
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["user", "movie_id"], name="unique_rating_per_user_movie"
            ),
            models.CheckConstraint(
                condition=models.Q(pre_rating__isnull=True)
                | models.Q(pre_rating__gte=1, pre_rating__lte=10),
                name="pre_rating_between_1_and_10",
            ),
            models.CheckConstraint(
                condition=models.Q(post_rating__isnull=True)
                | models.Q(post_rating__gte=1, post_rating__lte=10),
                name="post_rating_between_1_and_10",
            ),
        ]

    @property
    def gap(self):
        if self.pre_rating is None or self.post_rating is None:
            return None
        return self.post_rating - self.pre_rating

    def __str__(self):
        return f"Rating {self.user_id}/{self.movie_id} - {self.pre_rating} -> {self.post_rating}"


class PointsAccount(models.Model):
    """
    A user's point balances.

    Only the points engine mutates this row, always under select_for_update().
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="points_account",
    )

    points_available = models.IntegerField(default=0)
    points_on_hold = models.IntegerField(default=0)

    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=models.Q(points_available__gte=0),
                name="points_available_non_negative",
            ),
            models.CheckConstraint(
                condition=models.Q(points_on_hold__gte=0),
                name="points_on_hold_non_negative",
            ),
        ]

    def __str__(self):
        return f"Account {self.user_id} - Available: {self.points_available} Hold: {self.points_on_hold}"


class PointsAward(models.Model):
    """
    One credited transition for a (user, movie) pair.

    The unique constraint on (user, movie_id, kind) stops the same transition
    from being credited twice under retries or racing requests.
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="points_awards",
    )
    movie_id = models.IntegerField()
    kind = models.CharField(max_length=16, choices=AwardKind.choices)

    points_available_delta = models.IntegerField()
    points_on_hold_delta = models.IntegerField()

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["user", "movie_id", "kind"], name="unique_award_per_transition"
            ),
        ]
        ordering = ["created_at", "id"]

    def __str__(self):
        return f"Award {self.kind} {self.user_id}/{self.movie_id}"
