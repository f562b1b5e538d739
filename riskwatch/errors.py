"""
Error taxonomy for the RiskWatch engine.

* ``TransientStoreError``  -- retried with backoff, then deferred to the
  reconciliation sweep.
* ``InvariantViolation``   -- data-integrity alarm.  Never auto-repaired.
* ``ConflictError``        -- a reviewer tried to resolve an item into an
  outcome that contradicts its terminal state.  Surfaced, not retried.
* ``UpstreamScoringError`` -- the risk scorer failed.  The snapshot is left
  untouched so no stale or default risk value is written.
"""

from __future__ import annotations

from typing import Optional


class RiskWatchError(Exception):
    """Base class for all engine errors."""


class TransientStoreError(RiskWatchError):
    """The backing store is temporarily unavailable."""


class ConcurrentUpdateError(TransientStoreError):
    """A compare-and-append lost a race with another writer.

    The caller should re-read current state and re-derive.
    """

    def __init__(self, patient_id: str, expected_sequence: int) -> None:
        self.patient_id = patient_id
        self.expected_sequence = expected_sequence
        super().__init__(
            f"Risk history for patient '{patient_id}' already has sequence "
            f"{expected_sequence}; another writer appended first."
        )


class InvariantViolation(RiskWatchError):
    """Persisted state breaks an engine invariant."""


class ConflictError(RiskWatchError):
    """A reviewer action conflicts with an item's terminal state."""

    def __init__(
        self,
        message: str,
        action_id: Optional[str] = None,
        current_status: Optional[str] = None,
    ) -> None:
        self.action_id = action_id
        self.current_status = current_status
        super().__init__(message)


class NotFoundError(RiskWatchError, KeyError):
    """An action, diagnosis event, or protocol id does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class UpstreamScoringError(RiskWatchError):
    """The risk recomputation service is unavailable or returned nothing."""


class InvalidPayloadError(RiskWatchError, ValueError):
    """An inbound channel message could not be parsed."""
