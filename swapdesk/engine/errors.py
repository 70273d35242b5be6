"""Exception hierarchy for the order and settlement engines.

Synchronous paths (create/cancel/join) raise these to the caller; batch
passes catch them per entity and log.
"""

from __future__ import annotations


class SwapdeskError(Exception):
    """Base class for all engine errors."""


class ValidationError(SwapdeskError):
    """Malformed request rejected before anything is persisted."""


class NotFoundError(SwapdeskError):
    pass


class UnauthorizedError(SwapdeskError):
    """Caller does not own the entity."""


class StaleStateError(SwapdeskError):
    """Entity is no longer in the state the request expected."""


class InvalidTransitionError(SwapdeskError):
    """Write along an edge the state machine does not have."""

    def __init__(self, kind: str, current: str, target: str):
        super().__init__(f"{kind}: illegal transition {current} -> {target}")
        self.kind = kind
        self.current = current
        self.target = target
