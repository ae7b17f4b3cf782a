"""Exception hierarchy for the regimen engine.

Missing data (no plan, no items) is never an error and yields empty results.
Malformed clock times are recovered locally. What remains:

- ``PersistenceError``: a store could not be read or written. Aborts the
  current ``ensure_schedule`` call.
- ``ReconciliationError``: the config sync failed. Logged, never fatal.
- ``InvalidTransitionError``: a status change would violate the monotonic
  instance lifecycle.
"""

from __future__ import annotations


class RegimenError(Exception):
    """Base class for all regimen engine errors."""


class PersistenceError(RegimenError):
    """A backing store was unreachable or rejected a read/write."""


class ReconciliationError(RegimenError):
    """Syncing the plan catalog with the external config failed."""


class InvalidTransitionError(RegimenError):
    """Raised when an instance status change is not allowed.

    Attributes:
        instance_id: The instance the change was attempted on.
        current: The instance's status at the time of the attempt.
        target: The requested status.
    """

    def __init__(self, instance_id: str, current: str, target: str) -> None:
        self.instance_id = instance_id
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move instance {instance_id!r} from {current!r} to {target!r}"
        )
