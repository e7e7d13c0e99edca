class RatingNotFound(Exception):
    """Raised when points are applied for a (user, movie) pair that has no rating."""

    def __init__(self, user_id, movie_id):
        self.user_id = user_id
        self.movie_id = movie_id
        super().__init__(
            f"No rating for user {user_id} and movie {movie_id}"
        )


class Unauthorized(Exception):
    """Raised when the verified caller identity does not match the target user."""

    def __init__(self, user_id, caller_id):
        self.user_id = user_id
        self.caller_id = caller_id
        super().__init__(
            f"Caller {caller_id} may not apply points for user {user_id}"
        )


class TransientStorageFailure(Exception):
    """
    Raised when the points transaction could not be committed.

    Nothing was written; the call is safe to retry.
    """

    def __init__(self, user_id, movie_id):
        self.user_id = user_id
        self.movie_id = movie_id
        super().__init__(
            f"Points update for user {user_id} and movie {movie_id} was rolled back"
        )


class InvalidAwardState(Exception):
    """Raised when the stored award state disagrees with the recorded awards or balances."""

    def __init__(self, user_id, movie_id, detail):
        self.user_id = user_id
        self.movie_id = movie_id
        self.detail = detail
        super().__init__(
            f"Invalid award state for user {user_id} and movie {movie_id}: {detail}"
        )


class InvalidRating(Exception):
    """Raised when a rating value is missing or outside 1..10."""

    def __init__(self, field, value):
        self.field = field
        self.value = value
        super().__init__(f"{field} must be an integer between 1 and 10, got {value!r}")
