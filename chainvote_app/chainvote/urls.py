from django.urls import path

from chainvote import views_elections

urlpatterns = [
    path("elections", views_elections.election_create, name="election-create"),
    path("elections/<int:election_id>", views_elections.election_detail, name="election-detail"),
    path("elections/<int:election_id>/status", views_elections.election_status, name="election-status"),
    path("elections/<int:election_id>/finalize", views_elections.election_finalize, name="election-finalize"),
    path("elections/<int:election_id>/reset-code", views_elections.election_reset_code, name="election-reset-code"),
    path("elections/<int:election_id>/reset", views_elections.election_reset, name="election-reset"),
    path(
        "elections/<int:election_id>/clear-votes",
        views_elections.election_clear_votes,
        name="election-clear-votes",
    ),
    path(
        "elections/<int:election_id>/candidates/lock",
        views_elections.election_lock_candidates,
        name="election-lock-candidates",
    ),
    path("elections/<int:election_id>/candidates", views_elections.election_candidates, name="election-candidates"),
    path(
        "elections/<int:election_id>/candidates/<int:candidate_id>",
        views_elections.election_candidate,
        name="election-candidate",
    ),
]
