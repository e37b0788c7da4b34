from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, FrozenSet

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    """Persisted lifecycle state of one cluster instance."""

    NOT_EXISTS = "NotExists"
    RESET = "Reset"
    READY = "Ready"
    RECOVERING = "Recovering"
    UPDATING = "Updating"
    SCALE = "Scale"

    @classmethod
    def parse(cls, value: str | None) -> "LifecycleState":
        """Parse a status field; empty means NotExists, unknown values fall back to Recovering."""
        if not value:
            return cls.NOT_EXISTS
        try:
            return cls(value)
        except ValueError:
            logger.warning("Unknown lifecycle state '%s', treating it as %s", value, cls.RECOVERING.value)
            return cls.RECOVERING


class HandlerOutcome(str, Enum):
    """Outcome reported by the handler of a lifecycle state."""

    INITIALIZED = "initialized"
    INIT_FAILED = "init_failed"

    INCOMPLETE = "incomplete"
    STALE = "stale"
    SCALE_REQUIRED = "scale_required"
    HEALTHY = "healthy"
    READY_FAILED = "ready_failed"

    RECOVERED = "recovered"
    RECOVERY_PENDING = "recovery_pending"

    UPDATED = "updated"
    UPDATE_FAILED = "update_failed"

    SCALED = "scaled"
    SCALE_FAILED = "scale_failed"


_INIT_TRANSITIONS: Dict[HandlerOutcome, LifecycleState] = {
    HandlerOutcome.INITIALIZED: LifecycleState.READY,
    HandlerOutcome.INIT_FAILED: LifecycleState.RESET,
}

TRANSITIONS: Dict[LifecycleState, Dict[HandlerOutcome, LifecycleState]] = {
    LifecycleState.NOT_EXISTS: _INIT_TRANSITIONS,
    LifecycleState.RESET: _INIT_TRANSITIONS,
    LifecycleState.READY: {
        HandlerOutcome.INCOMPLETE: LifecycleState.RECOVERING,
        HandlerOutcome.STALE: LifecycleState.UPDATING,
        HandlerOutcome.SCALE_REQUIRED: LifecycleState.SCALE,
        HandlerOutcome.HEALTHY: LifecycleState.READY,
        HandlerOutcome.READY_FAILED: LifecycleState.RECOVERING,
    },
    LifecycleState.RECOVERING: {
        HandlerOutcome.RECOVERED: LifecycleState.READY,
        HandlerOutcome.RECOVERY_PENDING: LifecycleState.RECOVERING,
    },
    LifecycleState.UPDATING: {
        HandlerOutcome.UPDATED: LifecycleState.RECOVERING,
        HandlerOutcome.UPDATE_FAILED: LifecycleState.RECOVERING,
    },
    LifecycleState.SCALE: {
        HandlerOutcome.SCALED: LifecycleState.READY,
        HandlerOutcome.SCALE_FAILED: LifecycleState.READY,
    },
}

FAILURE_OUTCOMES: Dict[LifecycleState, HandlerOutcome] = {
    LifecycleState.NOT_EXISTS: HandlerOutcome.INIT_FAILED,
    LifecycleState.RESET: HandlerOutcome.INIT_FAILED,
    LifecycleState.READY: HandlerOutcome.READY_FAILED,
    LifecycleState.RECOVERING: HandlerOutcome.RECOVERY_PENDING,
    LifecycleState.UPDATING: HandlerOutcome.UPDATE_FAILED,
    LifecycleState.SCALE: HandlerOutcome.SCALE_FAILED,
}


def outcomes_for(state: LifecycleState) -> FrozenSet[HandlerOutcome]:
    """Outcomes the handler of `state` may report."""
    return frozenset(TRANSITIONS[state])


def failure_outcome(state: LifecycleState) -> HandlerOutcome:
    """Outcome used when the handler of `state` raised instead of reporting."""
    return FAILURE_OUTCOMES[state]


def transition_lifecycle_state(current: LifecycleState, outcome: HandlerOutcome) -> LifecycleState:
    """Compute the next lifecycle state for a handler outcome.

    The table is total over every (state, outcome) pair a handler can produce.
    An outcome that does not belong to the state's handler raises ValueError.
    """

    try:
        table = TRANSITIONS[current]
    except KeyError:
        raise ValueError(f"Unknown lifecycle state: {current}") from None

    if outcome not in table:
        raise ValueError(f"Invalid lifecycle transition: {current.value} -> {outcome.value}")

    return table[outcome]
