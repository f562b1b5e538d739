"""
Reviewer Action API.

The only externally triggered mutation path.  Every operation:

* checks the caller's role,
* is idempotent: repeating the same terminal outcome returns the stored
  result without writing anything,
* raises ``ConflictError`` when the item is already terminal with a
  different outcome (including ``expired``).

The domain record (diagnosis event, protocol) is transitioned before the
work item, so a crash between the two writes leaves a pending item that a
replay of the same call completes.

**Human gates enforced in code:**

* Declining requires a reason.
* Only reviewers move monitoring status to ``inactive`` or ``paused``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

import structlog

from riskwatch import rbac
from riskwatch.action_queue import ActionQueueManager
from riskwatch.audit import AuditEventType, AuditTrail
from riskwatch.diagnosis import DiagnosisStateMachine
from riskwatch.errors import ConflictError
from riskwatch.models import (
    ActionQueueItem,
    ActionStatus,
    ActionType,
    DiagnosisEvent,
    MonitoringStatus,
    PatientRiskSnapshot,
    Role,
    TreatmentProtocol,
    utcnow,
)
from riskwatch.store import ClinicalStore

logger = structlog.get_logger(__name__)


class ReviewOutcome:
    """Result of a reviewer call."""

    def __init__(
        self,
        action: ActionQueueItem,
        event: Optional[DiagnosisEvent] = None,
        protocol: Optional[TreatmentProtocol] = None,
        follow_up: Optional[ActionQueueItem] = None,
        replayed: bool = False,
    ) -> None:
        self.action = action
        self.event = event
        self.protocol = protocol
        self.follow_up = follow_up
        self.replayed = replayed

    def __repr__(self) -> str:
        return (
            f"ReviewOutcome(action={self.action.action_id}, status={self.action.status.value}, "
            f"replayed={self.replayed})"
        )


def _require_type(item: ActionQueueItem, expected: ActionType) -> None:
    if item.action_type != expected:
        raise ConflictError(
            f"Action '{item.action_id}' is a {item.action_type.value} item, "
            f"not {expected.value}.",
            action_id=item.action_id,
            current_status=item.status.value,
        )


def _already_resolved(item: ActionQueueItem, status: ActionStatus, outcome: Optional[bool]) -> bool:
    """True if ``item`` already carries exactly this terminal outcome."""
    return item.status == status and item.outcome == outcome


def _require_reason(reason: Optional[str]) -> None:
    if not reason or not reason.strip():
        raise ValueError("A reason is required to decline an action.")


def _conflict(item: ActionQueueItem) -> ConflictError:
    return ConflictError(
        f"Action '{item.action_id}' is already {item.status.value}.",
        action_id=item.action_id,
        current_status=item.status.value,
    )


class ReviewerActions:
    def __init__(
        self,
        store: ClinicalStore,
        action_queue: ActionQueueManager,
        diagnosis: DiagnosisStateMachine,
        audit: AuditTrail,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._queue = action_queue
        self._diagnosis = diagnosis
        self._audit = audit
        self._clock = clock

    # -- diagnosis --

    def confirm_diagnosis(
        self,
        action_id: str,
        confirmed: bool,
        reviewer_id: str,
        note: Optional[str] = None,
        role: Role = Role.CLINICIAN,
    ) -> ReviewOutcome:
        """Confirm (``confirmed=True``) or decline a detected diagnosis.

        Confirmation drafts a treatment protocol and opens an
        ``approve_treatment`` item, returned as ``follow_up``.  Declining
        needs a non-blank ``note`` as the reason.
        """
        if not confirmed:
            _require_reason(note)
        rbac.require_permission(role, rbac.CONFIRM_DIAGNOSIS)
        item = self._queue.get(action_id)
        _require_type(item, ActionType.CONFIRM_DIAGNOSIS)

        status = ActionStatus.COMPLETED if confirmed else ActionStatus.DECLINED
        if item.is_terminal():
            return self._replay(item, status, confirmed)

        protocol = follow_up = None
        if confirmed:
            result = self._diagnosis.confirm(
                item.related_entity_id, reviewer_id, note or "", actor_role=role.value
            )
            event, protocol, follow_up = result.event, result.protocol, result.action
        else:
            event = self._diagnosis.decline(
                item.related_entity_id, reviewer_id, note or "", actor_role=role.value
            )

        resolved = self._resolve(item, status, reviewer_id, note or "", confirmed, role)
        if resolved is None:
            return self._replay(self._queue.get(action_id), status, confirmed)
        return ReviewOutcome(resolved, event=event, protocol=protocol, follow_up=follow_up)

    # -- treatment --

    def approve_treatment(
        self,
        action_id: str,
        approved: bool,
        reviewer_id: str,
        note: Optional[str] = None,
        role: Role = Role.CLINICIAN,
    ) -> ReviewOutcome:
        """Approve (``approved=True``) or decline a drafted treatment protocol.

        Declining needs a non-blank ``note`` as the reason.
        """
        if not approved:
            _require_reason(note)
        rbac.require_permission(role, rbac.APPROVE_TREATMENT)
        item = self._queue.get(action_id)
        _require_type(item, ActionType.APPROVE_TREATMENT)

        status = ActionStatus.COMPLETED if approved else ActionStatus.DECLINED
        if item.is_terminal():
            return self._replay(item, status, approved)

        if approved:
            protocol = self._diagnosis.approve_protocol(
                item.related_entity_id, reviewer_id, note or "", actor_role=role.value
            )
        else:
            protocol = self._diagnosis.decline_protocol(
                item.related_entity_id, reviewer_id, note or "", actor_role=role.value
            )

        resolved = self._resolve(item, status, reviewer_id, note or "", approved, role)
        if resolved is None:
            return self._replay(self._queue.get(action_id), status, approved)
        return ReviewOutcome(resolved, protocol=protocol)

    # -- generic --

    def decline_action(
        self,
        action_id: str,
        reason: str,
        reviewer_id: str,
        role: Role = Role.CLINICIAN,
    ) -> ReviewOutcome:
        """Decline any pending item with a mandatory reason.

        Declining a ``confirm_diagnosis`` item declines its diagnosis event;
        declining an ``approve_treatment`` item declines its protocol.
        """
        _require_reason(reason)
        item = self._queue.get(action_id)
        rbac.require_permission(role, rbac.decline_permission_for(item.action_type))

        if item.action_type == ActionType.CONFIRM_DIAGNOSIS:
            return self.confirm_diagnosis(action_id, False, reviewer_id, reason, role=role)
        if item.action_type == ActionType.APPROVE_TREATMENT:
            return self.approve_treatment(action_id, False, reviewer_id, reason, role=role)

        if item.is_terminal():
            return self._replay(item, ActionStatus.DECLINED, False)
        resolved = self._resolve(item, ActionStatus.DECLINED, reviewer_id, reason, False, role)
        if resolved is None:
            return self._replay(self._queue.get(action_id), ActionStatus.DECLINED, False)
        return ReviewOutcome(resolved)

    def acknowledge_escalation(
        self,
        action_id: str,
        reviewer_id: str,
        note: Optional[str] = None,
        role: Role = Role.CLINICIAN,
    ) -> ReviewOutcome:
        """Complete a ``review_escalation`` item."""
        rbac.require_permission(role, rbac.ACKNOWLEDGE_ESCALATION)
        item = self._queue.get(action_id)
        _require_type(item, ActionType.REVIEW_ESCALATION)

        if item.is_terminal():
            return self._replay(item, ActionStatus.COMPLETED, True)
        resolved = self._resolve(item, ActionStatus.COMPLETED, reviewer_id, note or "", True, role)
        if resolved is None:
            return self._replay(self._queue.get(action_id), ActionStatus.COMPLETED, True)
        return ReviewOutcome(resolved)

    # -- monitoring --

    def set_monitoring_status(
        self,
        patient_id: str,
        status: MonitoringStatus,
        reviewer_id: str,
        reason: str = "",
        role: Role = Role.CLINICIAN,
    ) -> PatientRiskSnapshot:
        """Manually set a patient's monitoring status.

        The engine only ever activates monitoring; deactivating or pausing
        is always a reviewer decision.
        """
        rbac.require_permission(role, rbac.CHANGE_MONITORING)
        before = self._store.get_snapshot(patient_id)
        snapshot = self._store.set_monitoring_status(
            patient_id, status, changed_by=reviewer_id, changed_at=self._clock()
        )
        logger.info(
            "monitoring_status_changed",
            patient_id=patient_id,
            previous=before.monitoring_status.value if before else None,
            status=status.value,
            reviewer_id=reviewer_id,
        )
        self._audit.record(
            AuditEventType.MONITORING_STATUS_CHANGED,
            patient_id=patient_id,
            target_entity=patient_id,
            actor_id=reviewer_id,
            actor_role=role.value,
            previous=before.monitoring_status.value if before else None,
            status=status.value,
            reason=reason,
        )
        return snapshot

    # -- helpers --

    def _resolve(
        self,
        item: ActionQueueItem,
        status: ActionStatus,
        reviewer_id: str,
        note: str,
        outcome: bool,
        role: Role,
    ) -> Optional[ActionQueueItem]:
        """Resolve ``item``; None if a concurrent call resolved it first."""
        try:
            resolved = self._queue.resolve(item.action_id, status, reviewer_id, note, outcome)
        except ConflictError:
            return None

        logger.info(
            "action_resolved",
            action_id=item.action_id,
            patient_id=item.patient_id,
            action_type=item.action_type.value,
            status=status.value,
            reviewer_id=reviewer_id,
        )
        if status == ActionStatus.DECLINED:
            self._audit.record(
                AuditEventType.ACTION_DECLINED,
                patient_id=item.patient_id,
                target_entity=item.action_id,
                actor_id=reviewer_id,
                actor_role=role.value,
                action_type=item.action_type.value,
                reason=note,
            )
        return resolved

    def _replay(self, item: ActionQueueItem, status: ActionStatus, outcome: bool) -> ReviewOutcome:
        """Return the stored result for a repeated call, or raise on a conflicting one."""
        if not _already_resolved(item, status, outcome):
            raise _conflict(item)

        logger.debug("reviewer_action_replayed", action_id=item.action_id, status=item.status.value)
        event = protocol = follow_up = None
        if item.action_type == ActionType.CONFIRM_DIAGNOSIS:
            event = self._store.get_diagnosis_event(item.related_entity_id)
            if outcome:
                protocols = self._store.list_protocols(diagnosis_event_id=event.event_id)
                protocol = protocols[0] if protocols else None
                if protocol is not None:
                    matches = self._store.list_actions(
                        action_type=ActionType.APPROVE_TREATMENT,
                        related_entity_id=protocol.protocol_id,
                    )
                    follow_up = matches[-1] if matches else None
        elif item.action_type == ActionType.APPROVE_TREATMENT:
            protocol = self._store.get_protocol(item.related_entity_id)
        return ReviewOutcome(item, event=event, protocol=protocol, follow_up=follow_up, replayed=True)
