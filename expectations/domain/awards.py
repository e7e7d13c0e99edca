"""
Points award rule.

A (user, movie) pair moves through three award states:

    none -> pre_held -> released
    none -> released

Entering ``pre_held`` puts PRE_HOLD_POINTS on hold. Entering ``released``
credits RELEASE_POINTS to the available balance and, coming from
``pre_held``, takes the hold back off. ``released`` is terminal.

This module only decides. Applying the decision atomically is the job of
``expectations.application.use_cases.apply_points``.
"""

from dataclasses import dataclass

from django.db import models

PRE_HOLD_POINTS = 5
RELEASE_POINTS = 10


class AwardState(models.TextChoices):
    NONE = "none", "None"
    PRE_HELD = "pre_held", "Pre-rating held"
    RELEASED = "released", "Released"


class AwardKind(models.TextChoices):
    PRE_HOLD = "pre_hold", "Pre-rating hold"
    RELEASE = "release", "Release"


# Award kinds that must have been recorded for a pair in a given state.
# Keyed by plain values: rows come back from the database as str.
REQUIRED_AWARDS = {
    AwardState.NONE.value: frozenset(),
    AwardState.PRE_HELD.value: frozenset({AwardKind.PRE_HOLD.value}),
    AwardState.RELEASED.value: frozenset({AwardKind.RELEASE.value}),
}


@dataclass(frozen=True)
class Transition:
    """A state change and the balance deltas it carries."""

    kind: str
    target: str
    available_delta: int
    on_hold_delta: int


PRE_HOLD = Transition(
    kind=AwardKind.PRE_HOLD,
    target=AwardState.PRE_HELD,
    available_delta=0,
    on_hold_delta=PRE_HOLD_POINTS,
)

DIRECT_RELEASE = Transition(
    kind=AwardKind.RELEASE,
    target=AwardState.RELEASED,
    available_delta=RELEASE_POINTS,
    on_hold_delta=0,
)

HELD_RELEASE = Transition(
    kind=AwardKind.RELEASE,
    target=AwardState.RELEASED,
    available_delta=RELEASE_POINTS,
    on_hold_delta=-PRE_HOLD_POINTS,
)


def next_transition(state, pre_rating, post_rating):
    """
    Returns the Transition to apply for a pair, or None when nothing fires.

    ``pre_rating`` and ``post_rating`` must be the persisted values, never
    values supplied by the client.

    A post-rating without a pre-rating earns nothing: the pair stays in
    ``none`` until a pre-rating is saved, and then releases directly.
    """
    has_pre = pre_rating is not None
    has_post = post_rating is not None

    if state == AwardState.NONE:
        if not has_pre:
            return None
        return DIRECT_RELEASE if has_post else PRE_HOLD

    if state == AwardState.PRE_HELD:
        return HELD_RELEASE if has_post else None

    if state == AwardState.RELEASED:
        return None

    raise ValueError(f"Unknown award state: {state!r}")


def is_consistent(state, recorded_kinds):
    """True when the recorded award kinds are exactly what ``state`` implies."""
    expected = REQUIRED_AWARDS.get(str(state))
    if expected is None:
        return False
    recorded = frozenset(str(kind) for kind in recorded_kinds)
    if state == AwardState.RELEASED:
        # The hold is optional on the way to release.
        return recorded - {AwardKind.PRE_HOLD.value} == expected
    return recorded == expected
