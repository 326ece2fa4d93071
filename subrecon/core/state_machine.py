"""
Subscription State Machine
==========================

Which status changes are legal, and who may make them.

Rules:
    - Only validation may create a record, and only as pending, active or
      grace_period.
    - Only webhooks and the scheduler may move a record out of active.
    - expired is reached through grace_period, except from revoked,
      refunded and cancelled which bypass grace.
    - expired is terminal.
    - Moving to the status a record already has is a no-op.
"""

from enum import Enum
from typing import Iterable

from subrecon.core.errors import ErrorCodes, SubscriptionError
from subrecon.models.subscription import SubscriptionStatus as S


class Actor(str, Enum):
    """Component requesting a transition."""
    VALIDATION = "validation"
    WEBHOOK = "webhook"
    SCHEDULER = "scheduler"


class TransitionError(SubscriptionError):
    """Requested status change is not allowed."""

    code = ErrorCodes.FAILED_PRECONDITION


CREATABLE_STATES = frozenset({S.PENDING, S.ACTIVE, S.GRACE_PERIOD})

# Sources that may go straight to expired without a grace waypoint
GRACE_BYPASS_STATES = frozenset({S.REVOKED, S.REFUNDED, S.CANCELLED})

TERMINAL_STATES = frozenset({S.EXPIRED})

_SUSPENDED = {S.CANCELLED, S.PAYMENT_FAILED, S.ON_HOLD, S.PAUSED, S.DEFERRED}
_FINANCIAL = {S.REVOKED, S.REFUNDED}

TRANSITIONS: dict[S, frozenset[S]] = {
    S.PENDING: frozenset({S.ACTIVE, S.GRACE_PERIOD, S.CANCELLED, S.PAYMENT_FAILED} | _FINANCIAL),
    S.ACTIVE: frozenset({S.GRACE_PERIOD} | _SUSPENDED | _FINANCIAL),
    S.GRACE_PERIOD: frozenset({S.ACTIVE, S.EXPIRED} | _SUSPENDED | _FINANCIAL),
    S.CANCELLED: frozenset({S.ACTIVE, S.GRACE_PERIOD, S.EXPIRED} | _FINANCIAL),
    S.PAYMENT_FAILED: frozenset({S.ACTIVE, S.GRACE_PERIOD, S.ON_HOLD, S.CANCELLED} | _FINANCIAL),
    S.ON_HOLD: frozenset({S.ACTIVE, S.GRACE_PERIOD, S.PAUSED, S.CANCELLED} | _FINANCIAL),
    S.PAUSED: frozenset({S.ACTIVE, S.GRACE_PERIOD, S.CANCELLED} | _FINANCIAL),
    S.DEFERRED: frozenset({S.ACTIVE, S.GRACE_PERIOD, S.PAUSED, S.CANCELLED} | _FINANCIAL),
    S.REVOKED: frozenset({S.ACTIVE, S.EXPIRED, S.REFUNDED}),
    S.REFUNDED: frozenset({S.ACTIVE, S.EXPIRED}),
    S.EXPIRED: frozenset(),
}

# Validation may only bring a record (back) into an entitling state
_VALIDATION_TARGETS = frozenset({S.ACTIVE, S.GRACE_PERIOD})


def _check_hop(current: S, target: S, actor: Actor) -> None:
    if target not in TRANSITIONS[current]:
        raise TransitionError(
            f"Transition {current.value} -> {target.value} is not allowed",
            reason="invalid_transition",
        )
    if actor == Actor.VALIDATION:
        if current == S.ACTIVE or target not in _VALIDATION_TARGETS:
            raise TransitionError(
                f"Validation may not move a subscription {current.value} -> {target.value}",
                reason="actor_not_permitted",
            )


def plan_transition(current: S, target: S, actor: Actor) -> list[S]:
    """
    Return the ordered statuses to write to get from ``current`` to ``target``.

    An empty list means the record is already in ``target``. Raises
    ``TransitionError`` when any hop is illegal for ``actor``.
    """
    if current == target:
        return []

    if target == S.EXPIRED and current not in GRACE_BYPASS_STATES and current != S.GRACE_PERIOD:
        path = [S.GRACE_PERIOD, S.EXPIRED]
    else:
        path = [target]

    previous = current
    for hop in path:
        _check_hop(previous, hop, actor)
        previous = hop
    return path


def can_transition(current: S, target: S, actor: Actor) -> bool:
    try:
        plan_transition(current, target, actor)
    except TransitionError:
        return False
    return True


def assert_can_create(status: S, actor: Actor) -> None:
    if actor != Actor.VALIDATION:
        raise TransitionError(
            f"Only validation may create subscriptions (actor={actor.value})",
            reason="actor_not_permitted",
        )
    if status not in CREATABLE_STATES:
        raise TransitionError(
            f"Subscriptions cannot be created as {status.value}",
            reason="invalid_initial_state",
        )


def statuses(values: Iterable[S]) -> list[str]:
    return [value.value for value in values]
