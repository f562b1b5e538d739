"""
Interfaces of the external collaborators the engine consumes.

None of these are implemented here: the clinical scoring model, the record
loader, the notification transport and the change channel are all owned by
the surrounding system.
"""

from __future__ import annotations

from typing import Iterator, Optional, Protocol

from pydantic import BaseModel

from riskwatch.models import ClinicalSnapshot, NotificationRequest, RiskResult


class SnapshotAssembler(Protocol):
    def load(self, patient_id: str) -> Optional[ClinicalSnapshot]:
        """Load the current clinical snapshot, or None for an unknown patient."""
        ...


class RiskScorer(Protocol):
    def compute_risk(self, snapshot: ClinicalSnapshot) -> RiskResult:
        """Pure function: snapshot -> score, priority label and alerts."""
        ...


class DeliveryChannel(Protocol):
    def send(self, request: NotificationRequest) -> bool:
        """Hand a notification to email/SMS/push.  Returns accepted (True) or rejected."""
        ...


class ChannelMessage(BaseModel):
    channel: str
    payload: str


class ChannelDisconnected(Exception):
    """The change-notification subscription was lost."""


class ChannelSubscription(Protocol):
    def listen(self, channels: list[str]) -> Iterator[ChannelMessage]:
        """Subscribe, then return an iterator over messages as they arrive.

        The subscription must be live when this returns, so a reconciliation
        sweep run right after cannot miss a change.  Iteration blocks while
        waiting.  Raises ``ChannelDisconnected`` (or
        ``ConnectionError``) when the subscription drops; returns normally
        only when the channel is closed for good.
        """
        ...
