"""Desired-state actions and their sequential, fail-fast execution.

An :class:`Action` pairs an optional check of the current state with the
mutation that establishes the desired state. Running a list of actions logs
one ``[i/n]`` step per action, skips those already satisfied, and lets the
first failure propagate so later steps never run.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from vps_setup._logging import log_step

logger = logging.getLogger(__name__)


class ActionStatus(enum.StrEnum):
    """What happened to a single action."""

    APPLIED = "applied"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class Action:
    """A single idempotent provisioning step.

    Attributes
    ----------
    description
        Step label written to the log.
    apply
        Mutation establishing the desired state.
    is_satisfied
        Check of the current state; ``None`` means always apply, for steps
        that are idempotent by construction.
    satisfied_message
        Log line used when the step is skipped.
    """

    description: str
    apply: Callable[[], None]
    is_satisfied: Callable[[], bool] | None = None
    satisfied_message: str | None = None


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    """Result of running one action."""

    description: str
    status: ActionStatus


def run_action(action: Action) -> ActionOutcome:
    """Apply ``action`` unless its desired state already holds."""

    if action.is_satisfied is not None and action.is_satisfied():
        logger.info("%s", action.satisfied_message or f"{action.description}: already done")
        return ActionOutcome(action.description, ActionStatus.SKIPPED)
    action.apply()
    return ActionOutcome(action.description, ActionStatus.APPLIED)


def run_actions(actions: Sequence[Action]) -> list[ActionOutcome]:
    """Run ``actions`` in order, stopping at the first exception.

    Examples
    --------
    >>> seen = []
    >>> outcomes = run_actions([
    ...     Action("first", apply=lambda: seen.append("first")),
    ...     Action("second", apply=lambda: seen.append("second"), is_satisfied=lambda: True),
    ... ])
    >>> seen, [o.status.value for o in outcomes]
    (['first'], ['applied', 'skipped'])
    """

    outcomes: list[ActionOutcome] = []
    total = len(actions)
    for index, action in enumerate(actions, start=1):
        log_step(logger, index, total, action.description)
        outcomes.append(run_action(action))
    return outcomes


__all__ = [
    "Action",
    "ActionOutcome",
    "ActionStatus",
    "run_action",
    "run_actions",
]
