"""
Clinical Store port and in-memory adapter.

The store is the single source of truth and the only mutation point.  No
engine component caches patient state between events; every decision
re-reads the store first.

Atomic conditional writes the port must provide:

* ``record_assessment`` -- compare-and-append on the per-patient history
  sequence, together with the snapshot overwrite, as one write.
* ``insert_diagnosis_event_if_none_open`` -- at most one open event per
  patient.
* ``upsert_pending_action`` -- at most one pending item per
  ``(patient_id, action_type, related_entity_id)``.
* ``transition_*`` -- compare-and-set on a status field.

A read followed by a separate insert does not satisfy this contract: two
engine instances could both observe "no row" and both insert.
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Any, Optional, Protocol

from riskwatch.errors import ConcurrentUpdateError, ConflictError, InvariantViolation, NotFoundError
from riskwatch.models import (
    ActionQueueItem,
    ActionStatus,
    ActionType,
    DiagnosisEvent,
    DiagnosisEventStatus,
    MonitoringStatus,
    PatientRiskSnapshot,
    Priority,
    ProtocolStatus,
    RiskHistoryEntry,
    TreatmentProtocol,
)


class ClinicalStore(Protocol):
    """Port for engine persistence.  See module docstring for atomicity rules."""

    # -- risk snapshot and history --

    def get_snapshot(self, patient_id: str) -> Optional[PatientRiskSnapshot]:
        ...

    def record_assessment(
        self, entry: RiskHistoryEntry, activate_monitoring: bool
    ) -> tuple[RiskHistoryEntry, PatientRiskSnapshot]:
        """Append ``entry`` and overwrite the patient's snapshot from it.

        ``entry.sequence`` must be exactly one past the stored tail.  When
        ``activate_monitoring`` is set and the stored status is
        ``inactive``, the status becomes ``active`` and the stored entry is
        marked ``monitoring_activated``.  Any other status is left alone.

        Raises:
            ConcurrentUpdateError: another writer appended that sequence.
        """
        ...

    def recent_history(self, patient_id: str, limit: int = 2) -> list[RiskHistoryEntry]:
        """Newest-first history entries, ordered by sequence."""
        ...

    def history(self, patient_id: str) -> list[RiskHistoryEntry]:
        """All history entries for a patient, oldest first."""
        ...

    def set_monitoring_status(
        self,
        patient_id: str,
        status: MonitoringStatus,
        changed_by: str,
        changed_at: datetime,
    ) -> PatientRiskSnapshot:
        ...

    def list_stale_patients(self, older_than: datetime) -> list[str]:
        """Patients whose ``last_assessed_at`` is before ``older_than``."""
        ...

    # -- diagnosis events --

    def get_open_diagnosis_event(self, patient_id: str) -> Optional[DiagnosisEvent]:
        """Raises InvariantViolation if more than one event is open."""
        ...

    def insert_diagnosis_event_if_none_open(
        self, event: DiagnosisEvent
    ) -> tuple[DiagnosisEvent, bool]:
        """Insert ``event`` unless the patient already has an open one.

        Returns the stored event (new or existing) and whether it was created.
        """
        ...

    def get_diagnosis_event(self, event_id: str) -> DiagnosisEvent:
        ...

    def list_diagnosis_events(self, patient_id: Optional[str] = None) -> list[DiagnosisEvent]:
        """Events ordered by diagnosis date, newest first."""
        ...

    def transition_diagnosis_event(
        self, event_id: str, expected: DiagnosisEventStatus, **changes: Any
    ) -> DiagnosisEvent:
        """Apply ``changes`` only if the stored status equals ``expected``.

        Raises:
            NotFoundError: unknown id.
            ConflictError: status differs from ``expected``.
        """
        ...

    # -- treatment protocols --

    def insert_protocol_if_none_pending(
        self, protocol: TreatmentProtocol
    ) -> tuple[TreatmentProtocol, bool]:
        """One ``pending_approval`` draft per diagnosis event."""
        ...

    def get_protocol(self, protocol_id: str) -> TreatmentProtocol:
        ...

    def list_protocols(
        self,
        patient_id: Optional[str] = None,
        diagnosis_event_id: Optional[str] = None,
    ) -> list[TreatmentProtocol]:
        """Protocols ordered by creation time, newest first."""
        ...

    def transition_protocol(
        self, protocol_id: str, expected: ProtocolStatus, **changes: Any
    ) -> TreatmentProtocol:
        ...

    # -- action queue --

    def upsert_pending_action(self, item: ActionQueueItem) -> tuple[ActionQueueItem, bool]:
        """Conditional insert on the idempotency key.

        If a pending item with the same key exists it is returned unchanged
        and ``created`` is False.
        """
        ...

    def get_action(self, action_id: str) -> ActionQueueItem:
        ...

    def list_actions(
        self,
        patient_id: Optional[str] = None,
        status: Optional[ActionStatus] = None,
        action_type: Optional[ActionType] = None,
        priority: Optional[Priority] = None,
        related_entity_id: Optional[str] = None,
    ) -> list[ActionQueueItem]:
        ...

    def list_overdue_actions(self, now: datetime) -> list[ActionQueueItem]:
        """Pending items whose ``due_at`` is before ``now``."""
        ...

    def transition_action(
        self, action_id: str, expected: ActionStatus, **changes: Any
    ) -> ActionQueueItem:
        ...


# ---------------------------------------------------------------------------
# In-memory adapter
# ---------------------------------------------------------------------------

def _apply(record, changes: dict[str, Any]):
    """Return a validated copy of ``record`` with ``changes`` applied."""
    return type(record).model_validate({**record.model_dump(), **changes})


class InMemoryClinicalStore:
    """Lock-guarded in-memory implementation of ``ClinicalStore``.

    Suitable for tests and single-process deployments.  Every public method
    holds one lock for its whole read-check-write, which is what makes the
    conditional writes atomic here.  Returned records are copies.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._snapshots: dict[str, PatientRiskSnapshot] = {}
        self._history: dict[str, list[RiskHistoryEntry]] = {}
        self._diagnosis_events: dict[str, DiagnosisEvent] = {}
        self._protocols: dict[str, TreatmentProtocol] = {}
        self._actions: dict[str, ActionQueueItem] = {}

    # -- risk snapshot and history --

    def get_snapshot(self, patient_id: str) -> Optional[PatientRiskSnapshot]:
        with self._lock:
            snapshot = self._snapshots.get(patient_id)
            return copy.deepcopy(snapshot)

    def record_assessment(
        self, entry: RiskHistoryEntry, activate_monitoring: bool
    ) -> tuple[RiskHistoryEntry, PatientRiskSnapshot]:
        with self._lock:
            stream = self._history.setdefault(entry.patient_id, [])
            tail = stream[-1].sequence if stream else 0
            if entry.sequence != tail + 1:
                raise ConcurrentUpdateError(entry.patient_id, entry.sequence)

            current = self._snapshots.get(entry.patient_id)
            status = current.monitoring_status if current else MonitoringStatus.INACTIVE
            activated = activate_monitoring and status == MonitoringStatus.INACTIVE

            stored = entry.model_copy(update={"monitoring_activated": activated}, deep=True)
            stream.append(stored)

            if current is None:
                snapshot = PatientRiskSnapshot(
                    patient_id=entry.patient_id,
                    current_priority=entry.priority,
                    current_score=entry.score,
                    last_assessed_at=entry.assessed_at,
                    last_history_sequence=entry.sequence,
                )
            else:
                snapshot = current.model_copy(update={
                    "current_priority": entry.priority,
                    "current_score": entry.score,
                    "last_assessed_at": entry.assessed_at,
                    "last_history_sequence": entry.sequence,
                }, deep=True)
            if activated:
                snapshot.monitoring_status = MonitoringStatus.ACTIVE
                snapshot.monitoring_changed_at = entry.assessed_at
                snapshot.monitoring_changed_by = "SYSTEM"
            self._snapshots[entry.patient_id] = snapshot

            return copy.deepcopy(stored), copy.deepcopy(snapshot)

    def recent_history(self, patient_id: str, limit: int = 2) -> list[RiskHistoryEntry]:
        with self._lock:
            stream = self._history.get(patient_id, [])
            return copy.deepcopy(list(reversed(stream[-limit:])))

    def history(self, patient_id: str) -> list[RiskHistoryEntry]:
        with self._lock:
            return copy.deepcopy(self._history.get(patient_id, []))

    def set_monitoring_status(
        self,
        patient_id: str,
        status: MonitoringStatus,
        changed_by: str,
        changed_at: datetime,
    ) -> PatientRiskSnapshot:
        with self._lock:
            snapshot = self._snapshots.get(patient_id)
            if snapshot is None:
                raise NotFoundError(f"No risk snapshot for patient '{patient_id}'")
            snapshot.monitoring_status = status
            snapshot.monitoring_changed_at = changed_at
            snapshot.monitoring_changed_by = changed_by
            return copy.deepcopy(snapshot)

    def list_stale_patients(self, older_than: datetime) -> list[str]:
        with self._lock:
            return sorted(
                pid for pid, s in self._snapshots.items()
                if s.last_assessed_at < older_than
            )

    # -- diagnosis events --

    def _open_events(self, patient_id: str) -> list[DiagnosisEvent]:
        return [
            e for e in self._diagnosis_events.values()
            if e.patient_id == patient_id and e.is_open
        ]

    def get_open_diagnosis_event(self, patient_id: str) -> Optional[DiagnosisEvent]:
        with self._lock:
            open_events = self._open_events(patient_id)
            if len(open_events) > 1:
                raise InvariantViolation(
                    f"Patient '{patient_id}' has {len(open_events)} open diagnosis events: "
                    f"{sorted(e.event_id for e in open_events)}"
                )
            return copy.deepcopy(open_events[0]) if open_events else None

    def insert_diagnosis_event_if_none_open(
        self, event: DiagnosisEvent
    ) -> tuple[DiagnosisEvent, bool]:
        with self._lock:
            existing = self.get_open_diagnosis_event(event.patient_id)
            if existing is not None:
                return existing, False
            self._diagnosis_events[event.event_id] = copy.deepcopy(event)
            return copy.deepcopy(event), True

    def get_diagnosis_event(self, event_id: str) -> DiagnosisEvent:
        with self._lock:
            if event_id not in self._diagnosis_events:
                raise NotFoundError(f"Diagnosis event '{event_id}' not found")
            return copy.deepcopy(self._diagnosis_events[event_id])

    def list_diagnosis_events(self, patient_id: Optional[str] = None) -> list[DiagnosisEvent]:
        with self._lock:
            events = [
                e for e in self._diagnosis_events.values()
                if patient_id is None or e.patient_id == patient_id
            ]
            events.sort(key=lambda e: e.diagnosis_date, reverse=True)
            return copy.deepcopy(events)

    def transition_diagnosis_event(
        self, event_id: str, expected: DiagnosisEventStatus, **changes: Any
    ) -> DiagnosisEvent:
        with self._lock:
            current = self._diagnosis_events.get(event_id)
            if current is None:
                raise NotFoundError(f"Diagnosis event '{event_id}' not found")
            if current.status != expected:
                raise ConflictError(
                    f"Diagnosis event '{event_id}' is {current.status.value}, "
                    f"expected {expected.value}.",
                    current_status=current.status.value,
                )
            updated = _apply(current, changes)
            self._diagnosis_events[event_id] = updated
            return copy.deepcopy(updated)

    # -- treatment protocols --

    def insert_protocol_if_none_pending(
        self, protocol: TreatmentProtocol
    ) -> tuple[TreatmentProtocol, bool]:
        with self._lock:
            for existing in self._protocols.values():
                if (
                    existing.diagnosis_event_id == protocol.diagnosis_event_id
                    and existing.status == ProtocolStatus.PENDING_APPROVAL
                ):
                    return copy.deepcopy(existing), False
            self._protocols[protocol.protocol_id] = copy.deepcopy(protocol)
            return copy.deepcopy(protocol), True

    def get_protocol(self, protocol_id: str) -> TreatmentProtocol:
        with self._lock:
            if protocol_id not in self._protocols:
                raise NotFoundError(f"Treatment protocol '{protocol_id}' not found")
            return copy.deepcopy(self._protocols[protocol_id])

    def list_protocols(
        self,
        patient_id: Optional[str] = None,
        diagnosis_event_id: Optional[str] = None,
    ) -> list[TreatmentProtocol]:
        with self._lock:
            protocols = [
                p for p in self._protocols.values()
                if (patient_id is None or p.patient_id == patient_id)
                and (diagnosis_event_id is None or p.diagnosis_event_id == diagnosis_event_id)
            ]
            protocols.sort(key=lambda p: p.created_at, reverse=True)
            return copy.deepcopy(protocols)

    def transition_protocol(
        self, protocol_id: str, expected: ProtocolStatus, **changes: Any
    ) -> TreatmentProtocol:
        with self._lock:
            current = self._protocols.get(protocol_id)
            if current is None:
                raise NotFoundError(f"Treatment protocol '{protocol_id}' not found")
            if current.status != expected:
                raise ConflictError(
                    f"Treatment protocol '{protocol_id}' is {current.status.value}, "
                    f"expected {expected.value}.",
                    current_status=current.status.value,
                )
            updated = _apply(current, changes)
            self._protocols[protocol_id] = updated
            return copy.deepcopy(updated)

    # -- action queue --

    def upsert_pending_action(self, item: ActionQueueItem) -> tuple[ActionQueueItem, bool]:
        with self._lock:
            for existing in self._actions.values():
                if (
                    existing.status == ActionStatus.PENDING
                    and existing.idempotency_key == item.idempotency_key
                ):
                    return copy.deepcopy(existing), False
            stored = item.model_copy(update={"status": ActionStatus.PENDING}, deep=True)
            self._actions[stored.action_id] = stored
            return copy.deepcopy(stored), True

    def get_action(self, action_id: str) -> ActionQueueItem:
        with self._lock:
            if action_id not in self._actions:
                raise NotFoundError(f"Action '{action_id}' not found")
            return copy.deepcopy(self._actions[action_id])

    def list_actions(
        self,
        patient_id: Optional[str] = None,
        status: Optional[ActionStatus] = None,
        action_type: Optional[ActionType] = None,
        priority: Optional[Priority] = None,
        related_entity_id: Optional[str] = None,
    ) -> list[ActionQueueItem]:
        with self._lock:
            results = []
            for item in self._actions.values():
                if patient_id is not None and item.patient_id != patient_id:
                    continue
                if status is not None and item.status != status:
                    continue
                if action_type is not None and item.action_type != action_type:
                    continue
                if priority is not None and item.priority != priority:
                    continue
                if related_entity_id is not None and item.related_entity_id != related_entity_id:
                    continue
                results.append(item)
            results.sort(key=lambda i: i.created_at)
            return copy.deepcopy(results)

    def list_overdue_actions(self, now: datetime) -> list[ActionQueueItem]:
        with self._lock:
            overdue = [
                i for i in self._actions.values()
                if i.status == ActionStatus.PENDING and i.due_at < now
            ]
            overdue.sort(key=lambda i: i.due_at)
            return copy.deepcopy(overdue)

    def transition_action(
        self, action_id: str, expected: ActionStatus, **changes: Any
    ) -> ActionQueueItem:
        with self._lock:
            current = self._actions.get(action_id)
            if current is None:
                raise NotFoundError(f"Action '{action_id}' not found")
            if current.status != expected:
                raise ConflictError(
                    f"Action '{action_id}' is already {current.status.value}.",
                    action_id=action_id,
                    current_status=current.status.value,
                )
            updated = _apply(current, changes)
            self._actions[action_id] = updated
            return copy.deepcopy(updated)
