"""
Append-Only Audit Trail (Hash-Chained).

Every decision the engine makes -- accepted recomputations, escalations,
diagnosis detections, expiry sweeps -- and every reviewer decision is
appended to the audit trail.  Entries are linked by a SHA-256 hash of the
previous entry so that after-the-fact edits are detectable with
``verify_chain()``.

The trail is an operational record for review and replay debugging.  The
backing store, not the trail, is the source of truth for clinical state.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from riskwatch.models import utcnow


class AuditEventType(str, enum.Enum):
    """Auditable engine and reviewer events."""

    # Transition detector
    RISK_ASSESSED = "RISK_ASSESSED"
    RISK_ESCALATED = "RISK_ESCALATED"
    RISK_IMPROVED = "RISK_IMPROVED"
    MONITORING_ACTIVATED = "MONITORING_ACTIVATED"

    # Diagnosis onset
    DIAGNOSIS_DETECTED = "DIAGNOSIS_DETECTED"
    DIAGNOSIS_CONFIRMED = "DIAGNOSIS_CONFIRMED"
    DIAGNOSIS_DECLINED = "DIAGNOSIS_DECLINED"
    TREATMENT_PROPOSED = "TREATMENT_PROPOSED"
    TREATMENT_APPROVED = "TREATMENT_APPROVED"
    TREATMENT_DECLINED = "TREATMENT_DECLINED"

    # Action queue
    ACTION_CREATED = "ACTION_CREATED"
    ACTION_DECLINED = "ACTION_DECLINED"
    ACTION_EXPIRED = "ACTION_EXPIRED"

    # Reviewer-only
    MONITORING_STATUS_CHANGED = "MONITORING_STATUS_CHANGED"

    # Listener
    RECONCILIATION_SWEEP = "RECONCILIATION_SWEEP"


class AuditEntry(BaseModel):
    """A single audit entry: who did what, to which entity, for which patient."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)
    event_type: AuditEventType
    actor_id: str = "SYSTEM"
    actor_role: str = "SYSTEM"
    patient_id: str = ""
    target_entity: str = ""
    correlation_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = ""

    def canonical_bytes(self) -> bytes:
        data = self.model_dump(mode="json")
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


class AuditTrail:
    """Thread-safe, append-only audit trail with hash chaining.

    There is no update or delete.  ``query()`` returns copies so callers
    cannot mutate stored entries.

    With ``max_entries`` set, only the newest entries are retained.  The
    hash of the last evicted entry is kept as the anchor the oldest
    retained entry must link to.
    """

    def __init__(self, max_entries: Optional[int] = None) -> None:
        if max_entries is not None and max_entries < 1:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self._lock = threading.Lock()
        self._max_entries = max_entries
        self._entries: deque[AuditEntry] = deque()
        self._hashes: deque[str] = deque()
        self._anchor = ""
        self.evicted = 0

    def record(
        self,
        event_type: AuditEventType,
        patient_id: str = "",
        target_entity: str = "",
        actor_id: str = "SYSTEM",
        actor_role: str = "SYSTEM",
        correlation_id: Optional[str] = None,
        **metadata: Any,
    ) -> AuditEntry:
        """Build and append an entry in one call."""
        return self.append(AuditEntry(
            event_type=event_type,
            patient_id=patient_id,
            target_entity=target_entity,
            actor_id=actor_id,
            actor_role=actor_role,
            correlation_id=correlation_id,
            metadata=metadata,
        ))

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Link ``entry`` to the chain tail and append it."""
        with self._lock:
            entry.previous_hash = self._hashes[-1] if self._hashes else self._anchor
            if self._max_entries is not None and len(self._entries) >= self._max_entries:
                self._entries.popleft()
                self._anchor = self._hashes.popleft()
                self.evicted += 1
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
        return entry

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the trail and validate every hash link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index, among
            retained entries, of the first entry whose link or stored hash
            does not match.
        """
        with self._lock:
            entries = list(self._entries)
            hashes = list(self._hashes)
            previous = self._anchor

        for i, entry in enumerate(entries):
            if entry.previous_hash != previous:
                return (False, i)
            recomputed = entry.compute_hash()
            if hashes[i] != recomputed:
                return (False, i)
            previous = recomputed
        return (True, None)

    def query(
        self,
        patient_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        actor_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        with self._lock:
            entries = list(self._entries)

        results = []
        for entry in entries:
            if patient_id is not None and entry.patient_id != patient_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            if since is not None and entry.timestamp < since:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def __len__(self) -> int:
        return len(self._entries)
