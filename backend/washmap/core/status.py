"""Closed status type shared by tasks and campaigns."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet

from washmap.core.errors import InvalidTransition


class Status(str, Enum):
    UNPROCESSED = "unprocessed"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


TASK_TRANSITIONS: Dict[Status, FrozenSet[Status]] = {
    Status.UNPROCESSED: frozenset({Status.PROCESSING}),
    # processing -> unprocessed only releases a claim that never produced a signature
    Status.PROCESSING: frozenset({Status.PROCESSED, Status.FAILED, Status.UNPROCESSED}),
    Status.FAILED: frozenset({Status.PROCESSING, Status.UNPROCESSED}),
    Status.PROCESSED: frozenset(),
}

CLAIMABLE: FrozenSet[Status] = frozenset({Status.UNPROCESSED, Status.FAILED})


def check_transition(current: Status, target: Status) -> Status:
    """Return ``target`` if a task may move there from ``current``."""
    current = Status(current)
    target = Status(target)
    if target not in TASK_TRANSITIONS[current]:
        raise InvalidTransition(f"Task status cannot change from {current.value} to {target.value}")
    return target


__all__ = ["Status", "TASK_TRANSITIONS", "CLAIMABLE", "check_transition"]
