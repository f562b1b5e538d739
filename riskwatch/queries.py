"""
Read-only query surface for reviewer dashboards.

Nothing here writes to the store.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from riskwatch import rbac
from riskwatch.action_queue import ActionQueueManager
from riskwatch.audit import AuditEntry, AuditEventType, AuditTrail
from riskwatch.diagnosis import DiagnosisStateMachine
from riskwatch.models import (
    ActionQueueItem,
    ActionStatus,
    ActionType,
    DiagnosisEvent,
    DiagnosisEventStatus,
    DiagnosisState,
    PatientRiskSnapshot,
    Priority,
    ProtocolStatus,
    RiskHistoryEntry,
    Role,
    TreatmentProtocol,
    utcnow,
)
from riskwatch.store import ClinicalStore


class QueueStatistics(BaseModel):
    """Dashboard counters across all patients."""

    generated_at: datetime = Field(default_factory=utcnow)
    pending_total: int = 0
    pending_overdue: int = Field(
        default=0,
        description="Pending items already past due that the next expiry sweep will expire.",
    )
    pending_by_type: dict[ActionType, int] = Field(default_factory=dict)
    pending_by_priority: dict[Priority, int] = Field(default_factory=dict)
    diagnosis_events: dict[DiagnosisEventStatus, int] = Field(default_factory=dict)
    protocols: dict[ProtocolStatus, int] = Field(default_factory=dict)


class QueryService:
    def __init__(
        self,
        store: ClinicalStore,
        action_queue: ActionQueueManager,
        diagnosis: DiagnosisStateMachine,
        audit: AuditTrail,
    ) -> None:
        self._store = store
        self._queue = action_queue
        self._diagnosis = diagnosis
        self._audit = audit

    def list_pending_actions(
        self,
        priority: Optional[Priority] = None,
        action_type: Optional[ActionType] = None,
    ) -> list[ActionQueueItem]:
        """Pending items, CRITICAL first, then oldest first."""
        return self._queue.list_pending(priority=priority, action_type=action_type)

    def risk_snapshot(self, patient_id: str) -> Optional[PatientRiskSnapshot]:
        return self._store.get_snapshot(patient_id)

    def patient_actions(self, patient_id: str) -> list[ActionQueueItem]:
        """Every item for a patient in any status, oldest first."""
        return self._store.list_actions(patient_id=patient_id)

    def diagnosis_history(self, patient_id: str) -> list[DiagnosisEvent]:
        return self._store.list_diagnosis_events(patient_id)

    def protocol_history(self, patient_id: str) -> list[TreatmentProtocol]:
        return self._store.list_protocols(patient_id=patient_id)

    def risk_history(self, patient_id: str) -> list[RiskHistoryEntry]:
        return self._store.history(patient_id)

    def patient_state(self, patient_id: str) -> DiagnosisState:
        return self._diagnosis.patient_state(patient_id)

    def queue_statistics(self, now: Optional[datetime] = None) -> QueueStatistics:
        now = now or utcnow()
        pending = self._store.list_actions(status=ActionStatus.PENDING)
        events = self._store.list_diagnosis_events()
        protocols = self._store.list_protocols()
        return QueueStatistics(
            generated_at=now,
            pending_total=len(pending),
            pending_overdue=sum(1 for i in pending if i.due_at < now),
            pending_by_type=dict(Counter(i.action_type for i in pending)),
            pending_by_priority=dict(Counter(i.priority for i in pending)),
            diagnosis_events=dict(Counter(e.status for e in events)),
            protocols=dict(Counter(p.status for p in protocols)),
        )

    def audit_trail(
        self,
        role: Role,
        patient_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        since: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        """Audit entries, for roles allowed to read them.

        Raises:
            PermissionError: ``role`` may not query the audit trail.
        """
        rbac.require_permission(role, rbac.QUERY_AUDIT)
        return self._audit.query(patient_id=patient_id, event_type=event_type, since=since)
