import threading
import time
from unittest import mock

from django.contrib.auth import get_user_model
from django.db import IntegrityError, OperationalError, connection
from django.test import TestCase, TransactionTestCase

from expectations.application.use_cases import PointsResult, apply_points, save_rating
from expectations.domain.awards import AwardState
from expectations.domain.exceptions import (
    InvalidAwardState,
    InvalidRating,
    RatingNotFound,
    TransientStorageFailure,
    Unauthorized,
)
from expectations.models import Movie, PointsAccount, PointsAward, Rating

User = get_user_model()

MOVIE = 550


def balances(user):
    account = PointsAccount.objects.filter(user=user).first()
    if account is None:
        return (0, 0)
    return (account.points_available, account.points_on_hold)


class ApplyPointsTest(TestCase):
    """
    Tests for the points engine.

    Each call re-reads the stored rating, so ratings are saved first exactly as
    the web layer does.
    """

    def setUp(self):
        self.user = User.objects.create_user(username="viewer", password="secret")

    def test_pre_then_post_then_duplicate(self):
        save_rating(self.user.id, MOVIE, pre_rating=8)
        first = apply_points(self.user.id, MOVIE, caller_id=self.user.id)
        self.assertEqual(
            first,
            PointsResult(points_available=0, points_on_hold=5, did_pre_hold=True, did_release=False),
        )

        save_rating(self.user.id, MOVIE, post_rating=9)
        second = apply_points(self.user.id, MOVIE, caller_id=self.user.id)
        self.assertEqual(
            second,
            PointsResult(points_available=10, points_on_hold=0, did_pre_hold=False, did_release=True),
        )

        third = apply_points(self.user.id, MOVIE, caller_id=self.user.id)
        self.assertEqual(
            third,
            PointsResult(points_available=10, points_on_hold=0, did_pre_hold=False, did_release=False),
        )

        rating = Rating.objects.get(user=self.user, movie_id=MOVIE)
        self.assertEqual(rating.award_state, AwardState.RELEASED)
        self.assertEqual(PointsAward.objects.filter(user=self.user).count(), 2)

    def test_pre_only_is_idempotent(self):
        save_rating(self.user.id, MOVIE, pre_rating=6)

        apply_points(self.user.id, MOVIE, caller_id=self.user.id)
        for _ in range(5):
            result = apply_points(self.user.id, MOVIE, caller_id=self.user.id)
            self.assertFalse(result.did_pre_hold)
            self.assertFalse(result.did_release)

        self.assertEqual(balances(self.user), (0, 5))
        self.assertEqual(PointsAward.objects.count(), 1)

    def test_direct_release(self):
        """Both ratings present on the first call credit 10 with no hold."""
        save_rating(self.user.id, MOVIE, pre_rating=4, post_rating=9)

        result = apply_points(self.user.id, MOVIE, caller_id=self.user.id)

        self.assertTrue(result.did_release)
        self.assertFalse(result.did_pre_hold)
        self.assertEqual(balances(self.user), (10, 0))

    def test_hold_and_release_conserve_hold_balance(self):
        save_rating(self.user.id, 1, pre_rating=5)
        apply_points(self.user.id, 1, caller_id=self.user.id)
        before = balances(self.user)

        save_rating(self.user.id, MOVIE, pre_rating=7)
        apply_points(self.user.id, MOVIE, caller_id=self.user.id)
        save_rating(self.user.id, MOVIE, post_rating=3)
        apply_points(self.user.id, MOVIE, caller_id=self.user.id)

        after = balances(self.user)
        self.assertEqual(after[0], before[0] + 10)
        self.assertEqual(after[1], before[1])

    def test_missing_rating_raises_not_found_without_side_effects(self):
        with self.assertRaises(RatingNotFound):
            apply_points(self.user.id, MOVIE, caller_id=self.user.id)

        self.assertFalse(PointsAccount.objects.filter(user=self.user).exists())
        self.assertEqual(PointsAward.objects.count(), 0)

    def test_rerating_after_release_changes_nothing(self):
        save_rating(self.user.id, MOVIE, pre_rating=8, post_rating=9)
        apply_points(self.user.id, MOVIE, caller_id=self.user.id)

        save_rating(self.user.id, MOVIE, pre_rating=2)
        save_rating(self.user.id, MOVIE, post_rating=10)
        result = apply_points(self.user.id, MOVIE, caller_id=self.user.id)

        self.assertFalse(result.did_release)
        self.assertEqual(balances(self.user), (10, 0))

    def test_post_without_pre_waits_for_pre(self):
        save_rating(self.user.id, MOVIE, post_rating=7)

        result = apply_points(self.user.id, MOVIE, caller_id=self.user.id)
        self.assertEqual(result, PointsResult(points_available=0, points_on_hold=0))

        save_rating(self.user.id, MOVIE, pre_rating=5)
        result = apply_points(self.user.id, MOVIE, caller_id=self.user.id)
        self.assertTrue(result.did_release)
        self.assertEqual(balances(self.user), (10, 0))

    def test_users_do_not_affect_each_other(self):
        other = User.objects.create_user(username="other", password="secret")

        save_rating(self.user.id, MOVIE, pre_rating=8)
        save_rating(other.id, MOVIE, pre_rating=3, post_rating=4)

        apply_points(self.user.id, MOVIE, caller_id=self.user.id)
        apply_points(other.id, MOVIE, caller_id=other.id)

        self.assertEqual(balances(self.user), (0, 5))
        self.assertEqual(balances(other), (10, 0))

    def test_mismatched_caller_is_rejected(self):
        other = User.objects.create_user(username="other", password="secret")
        save_rating(self.user.id, MOVIE, pre_rating=8)

        with self.assertRaises(Unauthorized):
            apply_points(self.user.id, MOVIE, caller_id=other.id)

        self.assertEqual(balances(self.user), (0, 0))
        self.assertEqual(
            Rating.objects.get(user=self.user, movie_id=MOVIE).award_state,
            AwardState.NONE,
        )

    def test_caller_identity_is_required(self):
        save_rating(self.user.id, MOVIE, pre_rating=8)

        with self.assertRaises(TypeError):
            apply_points(self.user.id, MOVIE)

        self.assertEqual(balances(self.user), (0, 0))

    def test_matching_caller_is_accepted(self):
        save_rating(self.user.id, MOVIE, pre_rating=8)

        result = apply_points(self.user.id, MOVIE, caller_id=self.user.id)

        self.assertTrue(result.did_pre_hold)

    def test_released_state_without_award_fails_loudly(self):
        Rating.objects.create(
            user=self.user, movie_id=MOVIE, pre_rating=8, post_rating=9,
            award_state=AwardState.RELEASED,
        )

        with self.assertRaises(InvalidAwardState):
            apply_points(self.user.id, MOVIE, caller_id=self.user.id)

        self.assertEqual(balances(self.user), (0, 0))

    def test_release_with_missing_hold_balance_fails_loudly(self):
        Rating.objects.create(
            user=self.user, movie_id=MOVIE, pre_rating=8, post_rating=9,
            award_state=AwardState.PRE_HELD,
        )
        PointsAward.objects.create(
            user=self.user, movie_id=MOVIE, kind="pre_hold",
            points_available_delta=0, points_on_hold_delta=5,
        )
        PointsAccount.objects.create(user=self.user, points_available=0, points_on_hold=0)

        with self.assertRaises(InvalidAwardState):
            apply_points(self.user.id, MOVIE, caller_id=self.user.id)

        self.assertEqual(balances(self.user), (0, 0))
        self.assertEqual(
            Rating.objects.get(user=self.user, movie_id=MOVIE).award_state,
            AwardState.PRE_HELD,
        )

    def test_storage_failure_rolls_back(self):
        save_rating(self.user.id, MOVIE, pre_rating=8)

        with mock.patch.object(
            PointsAward.objects, "create", side_effect=OperationalError("database is locked"),
        ):
            with self.assertRaises(TransientStorageFailure):
                apply_points(self.user.id, MOVIE, caller_id=self.user.id)

        self.assertEqual(balances(self.user), (0, 0))
        self.assertEqual(
            Rating.objects.get(user=self.user, movie_id=MOVIE).award_state,
            AwardState.NONE,
        )

        # Safe to retry once storage recovers.
        result = apply_points(self.user.id, MOVIE, caller_id=self.user.id)
        self.assertTrue(result.did_pre_hold)
        self.assertEqual(balances(self.user), (0, 5))

    def test_lost_race_on_award_is_transient(self):
        save_rating(self.user.id, MOVIE, pre_rating=8)

        with mock.patch.object(
            PointsAward.objects, "create", side_effect=IntegrityError("duplicate key"),
        ):
            with self.assertRaises(TransientStorageFailure):
                apply_points(self.user.id, MOVIE, caller_id=self.user.id)

        self.assertEqual(balances(self.user), (0, 0))

    def test_result_serialises_to_wire_keys(self):
        save_rating(self.user.id, MOVIE, pre_rating=8)

        payload = apply_points(self.user.id, MOVIE, caller_id=self.user.id).as_dict()

        self.assertEqual(
            payload,
            {"points_available": 0, "points_on_hold": 5, "did_pre_hold": True, "did_release": False},
        )


class SaveRatingTest(TestCase):

    def setUp(self):
        self.user = User.objects.create_user(username="viewer", password="secret")

    def test_upsert_keeps_one_row_per_pair(self):
        save_rating(self.user.id, MOVIE, pre_rating=8)
        save_rating(self.user.id, MOVIE, post_rating=6)

        rating = Rating.objects.get(user=self.user, movie_id=MOVIE)
        self.assertEqual(Rating.objects.count(), 1)
        self.assertEqual((rating.pre_rating, rating.post_rating), (8, 6))
        self.assertEqual(rating.gap, -2)

    def test_save_never_touches_award_state(self):
        save_rating(self.user.id, MOVIE, pre_rating=8, post_rating=9)

        rating = Rating.objects.get(user=self.user, movie_id=MOVIE)
        self.assertEqual(rating.award_state, AwardState.NONE)
        self.assertEqual(balances(self.user), (0, 0))

    def test_out_of_range_rating_is_rejected(self):
        for value in (0, 11, -3, True, "8"):
            with self.assertRaises(InvalidRating):
                save_rating(self.user.id, MOVIE, pre_rating=value)

        self.assertEqual(Rating.objects.count(), 0)

    def test_empty_save_is_rejected(self):
        with self.assertRaises(InvalidRating):
            save_rating(self.user.id, MOVIE)

    def test_movie_metadata_is_cached(self):
        save_rating(
            self.user.id, MOVIE, pre_rating=8,
            movie={"title": "Fight Club", "release_year": 1999, "poster_url": None},
        )
        save_rating(self.user.id, MOVIE, post_rating=9, movie={"title": "Fight Club (1999)"})

        movie = Movie.objects.get(tmdb_id=MOVIE)
        self.assertEqual(movie.title, "Fight Club (1999)")
        self.assertEqual(movie.release_year, 1999)


class ConcurrentApplyPointsTest(TransactionTestCase):
    """
    Duplicate calls racing for the same pair must credit once.

    Runs on the default SQLite database as well as PostgreSQL. Callers retry
    on TransientStorageFailure, the way the web layer's clients do.
    """

    retries = 20

    def setUp(self):
        self.user = User.objects.create_user(username="viewer", password="secret")
        self.other = User.objects.create_user(username="other", password="secret")

    def _run_concurrently(self, calls):
        errors = []
        barrier = threading.Barrier(len(calls))

        def worker(user_id):
            try:
                barrier.wait()
                for _ in range(self.retries):
                    try:
                        apply_points(user_id, MOVIE, caller_id=user_id)
                        break
                    except TransientStorageFailure:
                        time.sleep(0.01)
                else:
                    errors.append(f"user {user_id} never committed")
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker, args=(user_id,)) for user_id in calls]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])

    def test_duplicate_calls_credit_once(self):
        save_rating(self.user.id, MOVIE, pre_rating=8, post_rating=9)

        self._run_concurrently([self.user.id] * 8)

        self.assertEqual(balances(self.user), (10, 0))
        self.assertEqual(PointsAward.objects.filter(user=self.user).count(), 1)

    def test_different_users_run_independently(self):
        save_rating(self.user.id, MOVIE, pre_rating=8)
        save_rating(self.other.id, MOVIE, pre_rating=2, post_rating=7)

        self._run_concurrently([self.user.id, self.other.id])

        self.assertEqual(balances(self.user), (0, 5))
        self.assertEqual(balances(self.other), (10, 0))
