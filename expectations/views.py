"""
API Layer: Ratings, Points and Rankings (Django REST Framework)

Thin controllers. Each view validates and coerces input, delegates to the
application layer and maps domain exceptions onto HTTP responses:

- RatingNotFound -> 404
- Unauthorized -> 403
- InvalidAwardState -> 409
- TransientStorageFailure -> 503, marked retryable

The target user is always the authenticated request user. A user_id in the
body is only checked against it, never trusted on its own.
"""

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from expectations.application import queries
from expectations.application.use_cases import apply_points, save_rating
from expectations.domain.exceptions import (
    InvalidAwardState,
    InvalidRating,
    RatingNotFound,
    TransientStorageFailure,
    Unauthorized,
)


def parse_int(value):
    """Coerces request values to int. Returns None for absent values."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"not an integer: {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"not a whole number: {value!r}")
    return int(value)


def parse_optional_text(movie, field):
    value = movie.get(field)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{field} must be a string")
    return value


def parse_movie(movie):
    """
    Validates the optional movie metadata sent along with a rating.

    Returns a dict holding only the fields the client sent.
    """
    if not isinstance(movie, dict):
        raise ValueError("movie must be an object")

    cleaned = {}
    for field in ("title", "poster_url", "description"):
        if field in movie:
            cleaned[field] = parse_optional_text(movie, field)
    if "release_year" in movie:
        release_year = parse_int(movie["release_year"])
        if release_year is not None and not 1800 <= release_year <= 3000:
            raise ValueError(f"release_year out of range: {release_year}")
        cleaned["release_year"] = release_year
    return cleaned


def bad_request(message):
    return Response({"error": message}, status=status.HTTP_400_BAD_REQUEST)


def points_response(user_id, movie_id, caller_id, extra=None):
    """Runs the points engine and maps its failures to HTTP responses."""
    try:
        result = apply_points(user_id, movie_id, caller_id=caller_id)
    except Unauthorized as exc:
        return Response({"error": str(exc)}, status=status.HTTP_403_FORBIDDEN)
    except RatingNotFound as exc:
        return Response({"error": str(exc)}, status=status.HTTP_404_NOT_FOUND)
    except InvalidAwardState as exc:
        return Response({"error": str(exc)}, status=status.HTTP_409_CONFLICT)
    except TransientStorageFailure as exc:
        return Response(
            {"error": str(exc), "retryable": True},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    body = {"ok": True, "result": result.as_dict()}
    if extra:
        body.update(extra)
    return Response(body, status=status.HTTP_200_OK)


class ApplyPointsView(APIView):
    """
    POST /api/points/apply/

    Body: {"movie_id": <int>} ("movieId" is accepted too) and optionally the
    user_id the client believes it is acting for.
    """

    def post(self, request):
        raw_movie_id = request.data.get("movie_id", request.data.get("movieId"))

        try:
            movie_id = parse_int(raw_movie_id)
            asserted_user_id = parse_int(request.data.get("user_id"))
        except (TypeError, ValueError):
            return bad_request("movie_id and user_id must be integers.")

        if not movie_id or movie_id <= 0:
            return bad_request("Invalid movie_id.")

        caller_id = request.user.id
        user_id = asserted_user_id if asserted_user_id is not None else caller_id

        return points_response(user_id, movie_id, caller_id)


class SaveRatingView(APIView):
    """
    POST /api/ratings/

    Upserts the caller's pre and/or post rating for a movie, caches the movie
    metadata when given, then applies points.
    """

    def post(self, request):
        try:
            movie_id = parse_int(request.data.get("movie_id"))
            pre_rating = parse_int(request.data.get("pre_rating"))
            post_rating = parse_int(request.data.get("post_rating"))
        except (TypeError, ValueError):
            return bad_request("movie_id, pre_rating and post_rating must be integers.")

        if not movie_id or movie_id <= 0:
            return bad_request("Invalid movie_id.")

        movie = request.data.get("movie")
        if movie is not None:
            try:
                movie = parse_movie(movie)
            except (TypeError, ValueError) as exc:
                return bad_request(f"Invalid movie: {exc}.")

        try:
            rating = save_rating(
                request.user.id,
                movie_id,
                pre_rating=pre_rating,
                post_rating=post_rating,
                movie=movie,
            )
        except InvalidRating as exc:
            return bad_request(str(exc))

        return points_response(
            request.user.id,
            movie_id,
            request.user.id,
            extra={
                "rating": {
                    "movie_id": rating.movie_id,
                    "pre_rating": rating.pre_rating,
                    "post_rating": rating.post_rating,
                    "gap": rating.gap,
                },
            },
        )


class AccountView(APIView):
    """GET /api/points/me/"""

    def get(self, request):
        user_id = request.user.id
        return Response(
            {
                "ok": True,
                "username": request.user.get_username(),
                **queries.account_summary(user_id),
                "pending": queries.pending_ratings(user_id),
                "pending_potential_points": queries.pending_potential_points(user_id),
            },
            status=status.HTTP_200_OK,
        )


class LeaderboardView(APIView):
    """GET /api/leaderboard/"""

    def get(self, request):
        return Response({"ok": True, "rows": queries.leaderboard()}, status=status.HTTP_200_OK)


class DiscoverView(APIView):
    """
    GET /api/discover/?mode=underrated|overrated&top=<5..200>&page=<n>

    Returns one movie picked at random from the requested slice of the ranking.
    """

    def get(self, request):
        mode = request.query_params.get("mode") or "underrated"
        if mode not in queries.DISCOVER_MODES:
            return bad_request(f"mode must be one of: {', '.join(queries.DISCOVER_MODES)}.")

        try:
            top = parse_int(request.query_params.get("top"))
            page = parse_int(request.query_params.get("page")) or 0
        except (TypeError, ValueError):
            return bad_request("top and page must be integers.")

        movie = queries.discover_movie(mode=mode, top=top, page=page)
        if movie is None:
            return Response(
                {"error": "No movies found in expectation gap view."},
                status=status.HTTP_404_NOT_FOUND,
            )

        return Response(
            {"ok": True, "mode": mode, "top": queries.clamp_top(top), "movie": movie},
            status=status.HTTP_200_OK,
        )


class SurprisingView(APIView):
    """GET /api/surprising/?mode=best|worst&min_ratings=<n>"""

    def get(self, request):
        mode = request.query_params.get("mode") or "best"
        if mode not in queries.SURPRISING_MODES:
            return bad_request(f"mode must be one of: {', '.join(queries.SURPRISING_MODES)}.")

        try:
            min_ratings = parse_int(request.query_params.get("min_ratings")) or 1
        except (TypeError, ValueError):
            return bad_request("min_ratings must be an integer.")

        rows = queries.surprising_movies(mode=mode, min_ratings=max(min_ratings, 1))
        return Response({"ok": True, "mode": mode, "rows": rows}, status=status.HTTP_200_OK)
