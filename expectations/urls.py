from django.urls import path
from .views import (
    AccountView,
    ApplyPointsView,
    DiscoverView,
    LeaderboardView,
    SaveRatingView,
    SurprisingView,
)

urlpatterns = [
    path("ratings/", SaveRatingView.as_view(), name="save-rating"),
    path("points/apply/", ApplyPointsView.as_view(), name="apply-points"),
    path("points/me/", AccountView.as_view(), name="points-account"),
    path("leaderboard/", LeaderboardView.as_view(), name="leaderboard"),
    path("discover/", DiscoverView.as_view(), name="discover"),
    path("surprising/", SurprisingView.as_view(), name="surprising"),
]
