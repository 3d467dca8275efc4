"""
Operation status transitions.

The only legal edges are::

    pending --start--> processing --complete--> completed
                                  \\--fail-----> failed

``transition`` is pure; the registry applies its result with an atomic
compare-and-set so the edge is also enforced under concurrent access.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Tuple

from .errors import InvalidTransition
from .models import OperationStatus


class OperationEvent(str, Enum):
    START = "start"
    COMPLETE = "complete"
    FAIL = "fail"


TRANSITIONS: Dict[Tuple[OperationStatus, OperationEvent], OperationStatus] = {
    (OperationStatus.PENDING, OperationEvent.START): OperationStatus.PROCESSING,
    (OperationStatus.PROCESSING, OperationEvent.COMPLETE): OperationStatus.COMPLETED,
    (OperationStatus.PROCESSING, OperationEvent.FAIL): OperationStatus.FAILED,
}


def transition(current: OperationStatus, event: OperationEvent) -> OperationStatus:
    """
    Return the status reached by applying ``event`` to ``current``.

    Raises:
        InvalidTransition: If the edge does not exist
    """
    try:
        return TRANSITIONS[(OperationStatus(current), OperationEvent(event))]
    except KeyError:
        raise InvalidTransition(f"Cannot apply '{OperationEvent(event).value}' to an operation in status '{OperationStatus(current).value}'") from None


def required_status(event: OperationEvent) -> OperationStatus:
    """The single status from which ``event`` is legal."""
    for (source, candidate), _ in TRANSITIONS.items():
        if candidate == event:
            return source
    raise InvalidTransition(f"Unknown event: {event}")
