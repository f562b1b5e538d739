"""
Diagnosis Onset State Machine.

Per-patient states::

    not_at_risk -> at_risk -> pending_confirmation -> confirmed
        -> treatment_pending_approval -> treatment_active

``declined`` is reachable from ``pending_confirmation``.  A declined
patient is detected again only on a new qualifying change: a fresh
crossing of the cutoff or a lower function marker.  Declining a
treatment protocol returns the patient to ``confirmed``.  There is no
transition out of ``treatment_active``.

The state is never stored as its own column.  It is derived on every call
from the patient's diagnosis events, protocols and latest risk history, so
every engine instance reaches the same answer from the same store.

After each risk recomputation ``evaluate()`` checks the diagnostic criteria
against the two most recent history entries.  A qualifying patient gets at
most one open ``DiagnosisEvent`` and one pending ``confirm_diagnosis`` item.
Treatment work (``TreatmentProtocol`` plus ``approve_treatment``) is created
only after a clinician confirms.

DISCLAIMER: Detections and protocol drafts are decision-support artifacts
that require clinician confirmation and approval.  Stage labels follow the
KDIGO GFR categories used by the default criteria.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from riskwatch.action_queue import ActionQueueManager
from riskwatch.audit import AuditEventType, AuditTrail
from riskwatch.config import DEFAULT_SETTINGS, DiagnosticCriteria, EngineSettings
from riskwatch.errors import ConflictError, InvariantViolation
from riskwatch.models import (
    ActionQueueItem,
    ActionType,
    DetectionTrigger,
    DiagnosisEvent,
    DiagnosisEventStatus,
    DiagnosisState,
    Priority,
    ProtocolStatus,
    RiskHistoryEntry,
    TreatmentProtocol,
    priority_rank,
    utcnow,
)
from riskwatch.notifications import (
    NotificationDispatcher,
    compose_diagnosis_detected,
    compose_treatment_ready,
)
from riskwatch.store import ClinicalStore

logger = structlog.get_logger(__name__)

# States from which a new detection may open an event.
DETECTABLE_STATES = frozenset({
    DiagnosisState.NOT_AT_RISK,
    DiagnosisState.AT_RISK,
    DiagnosisState.DECLINED,
})

_MIN_DETECTION_PRIORITY = Priority.HIGH


# ---------------------------------------------------------------------------
# Staging and criteria
# ---------------------------------------------------------------------------

def classify_stage(function_value: Optional[float]) -> str:
    """KDIGO GFR category (G1-G5) for a function marker value."""
    if function_value is None:
        return "unknown"
    if function_value >= 90:
        return "G1"
    if function_value >= 60:
        return "G2"
    if function_value >= 45:
        return "G3a"
    if function_value >= 30:
        return "G3b"
    if function_value >= 15:
        return "G4"
    return "G5"


def classify_damage(damage_value: Optional[float]) -> str:
    """KDIGO albuminuria category (A1-A3) for a damage marker value."""
    if damage_value is None:
        return "unknown"
    if damage_value < 30:
        return "A1"
    if damage_value <= 300:
        return "A2"
    return "A3"


def evaluate_criteria(
    current: Optional[RiskHistoryEntry],
    previous: Optional[RiskHistoryEntry],
    criteria: DiagnosticCriteria,
) -> Optional[DetectionTrigger]:
    """Return the trigger if the diagnostic criteria are met, else None.

    * Function marker below the cutoff, previous reading at or above it:
      ``THRESHOLD_CROSS`` (accelerated decline).
    * Function marker below the cutoff with no earlier reading above it:
      ``PERSISTENT_MARKER``.
    * Function marker in the borderline band and damage marker above its
      threshold: ``PERSISTENT_MARKER``.

    ``current`` and ``previous`` are the two most recent history entries by
    sequence, never the order in which change events arrived.
    """
    if current is None or current.function_marker_value is None:
        return None

    value = current.function_marker_value
    if value < criteria.function_cutoff:
        prior = previous.function_marker_value if previous is not None else None
        if prior is not None and prior >= criteria.function_cutoff:
            return DetectionTrigger.THRESHOLD_CROSS
        return DetectionTrigger.PERSISTENT_MARKER

    damage = current.damage_marker_value
    if (
        value < criteria.borderline_upper
        and damage is not None
        and damage > criteria.damage_threshold
    ):
        return DetectionTrigger.PERSISTENT_MARKER
    return None


_MONITORING_INTERVAL_MONTHS = {
    "G1": 12, "G2": 12, "G3a": 6, "G3b": 4, "G4": 3, "G5": 1,
}


def build_protocol_body(
    stage: str,
    function_value: Optional[float],
    damage_value: Optional[float],
) -> dict[str, Any]:
    """Draft an early-treatment recommendation set for ``stage``.

    Sections: ``medication_orders``, ``lab_monitoring_schedule``,
    ``referrals``, ``lifestyle_modifications``.
    """
    medications = [{
        "drug_class": "RAS inhibitor",
        "options": ["ACE inhibitor", "ARB"],
        "instruction": "Start low and titrate to the maximum tolerated dose.",
    }]
    if function_value is None or function_value >= 20:
        medications.append({
            "drug_class": "SGLT2 inhibitor",
            "options": ["dapagliflozin", "empagliflozin"],
            "instruction": "Initiate unless contraindicated.",
        })

    interval = _MONITORING_INTERVAL_MONTHS.get(stage, 6)
    labs = [
        {"test": "eGFR", "interval_months": interval},
        {"test": "urine ACR", "interval_months": interval},
        {
            "test": "serum potassium and creatinine",
            "interval_months": interval,
            "note": "Also recheck 2-4 weeks after starting or titrating a RAS inhibitor.",
        },
    ]

    referrals = []
    if (function_value is not None and function_value < 30) or (
        damage_value is not None and damage_value > 300
    ):
        referrals.append({
            "specialty": "nephrology",
            "reason": f"Stage {stage}, albuminuria {classify_damage(damage_value)}",
        })

    lifestyle = [
        "Blood pressure target below 130/80 mmHg",
        "Dietary sodium below 2 g/day",
        "Smoking cessation where applicable",
        "Avoid nephrotoxic agents (NSAIDs, contrast without precautions)",
        "Regular physical activity",
    ]

    return {
        "medication_orders": medications,
        "lab_monitoring_schedule": labs,
        "referrals": referrals,
        "lifestyle_modifications": lifestyle,
    }


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class DiagnosisEvaluation:
    """Outcome of one post-recomputation evaluation."""

    def __init__(
        self,
        state: DiagnosisState,
        event: Optional[DiagnosisEvent] = None,
        action: Optional[ActionQueueItem] = None,
        detected: bool = False,
    ) -> None:
        self.state = state
        self.event = event
        self.action = action
        self.detected = detected

    def __repr__(self) -> str:
        return (
            f"DiagnosisEvaluation(state={self.state.value}, detected={self.detected}, "
            f"event={self.event.event_id if self.event else None})"
        )


class ConfirmationResult:
    """Records touched by a diagnosis confirmation."""

    def __init__(
        self,
        event: DiagnosisEvent,
        protocol: Optional[TreatmentProtocol] = None,
        action: Optional[ActionQueueItem] = None,
    ) -> None:
        self.event = event
        self.protocol = protocol
        self.action = action


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class DiagnosisStateMachine:
    def __init__(
        self,
        store: ClinicalStore,
        action_queue: ActionQueueManager,
        audit: AuditTrail,
        dispatcher: Optional[NotificationDispatcher] = None,
        settings: EngineSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._queue = action_queue
        self._audit = audit
        self._dispatcher = dispatcher
        self._settings = settings
        self._clock = clock

    # -- derived state --

    def open_event(self, patient_id: str) -> Optional[DiagnosisEvent]:
        try:
            return self._store.get_open_diagnosis_event(patient_id)
        except InvariantViolation as e:
            logger.critical("open_diagnosis_invariant_violated", patient_id=patient_id, error=str(e))
            raise

    def patient_state(self, patient_id: str) -> DiagnosisState:
        """Derive the patient's current diagnosis state from the store."""
        if self.open_event(patient_id) is not None:
            return DiagnosisState.PENDING_CONFIRMATION

        events = self._store.list_diagnosis_events(patient_id)
        if events:
            latest = events[0]
            if latest.status == DiagnosisEventStatus.CONFIRMED:
                statuses = {
                    p.status for p in self._store.list_protocols(diagnosis_event_id=latest.event_id)
                }
                if statuses & {ProtocolStatus.ACTIVE, ProtocolStatus.APPROVED}:
                    return DiagnosisState.TREATMENT_ACTIVE
                if ProtocolStatus.PENDING_APPROVAL in statuses:
                    return DiagnosisState.TREATMENT_PENDING_APPROVAL
                return DiagnosisState.CONFIRMED
            if latest.status == DiagnosisEventStatus.DECLINED:
                return DiagnosisState.DECLINED

        return self._risk_state(patient_id)

    def _risk_state(self, patient_id: str) -> DiagnosisState:
        history = self._store.recent_history(patient_id, limit=1)
        if not history:
            return DiagnosisState.NOT_AT_RISK
        latest = history[0]
        value = latest.function_marker_value
        if value is not None and value < self._settings.diagnostic_criteria.borderline_upper:
            return DiagnosisState.AT_RISK
        if priority_rank(latest.priority) >= priority_rank(Priority.MODERATE):
            return DiagnosisState.AT_RISK
        return DiagnosisState.NOT_AT_RISK

    # -- detection --

    def evaluate(self, patient_id: str, correlation_id: Optional[str] = None) -> DiagnosisEvaluation:
        """Run the onset guard against the latest recorded assessment.

        Must run after the Transition Detector has recorded the current
        recomputation.  Repeated calls for an unchanged patient are no-ops.
        """
        state = self.patient_state(patient_id)

        if state == DiagnosisState.PENDING_CONFIRMATION:
            # Re-issues the confirmation item if the previous one expired.
            event = self.open_event(patient_id)
            action = self._upsert_confirmation_action(event, correlation_id)
            return DiagnosisEvaluation(state, event=event, action=action)

        if state not in DETECTABLE_STATES:
            return DiagnosisEvaluation(state)

        recent = self._store.recent_history(patient_id, limit=2)
        current = recent[0] if recent else None
        previous = recent[1] if len(recent) > 1 else None
        trigger = evaluate_criteria(current, previous, self._settings.diagnostic_criteria)
        if trigger is None:
            return DiagnosisEvaluation(state)
        if state == DiagnosisState.DECLINED and not self._new_evidence_since_decline(
            patient_id, current, trigger
        ):
            logger.debug("diagnosis_redetection_suppressed", patient_id=patient_id, trigger=trigger.value)
            return DiagnosisEvaluation(state)

        event, created = self._store.insert_diagnosis_event_if_none_open(DiagnosisEvent(
            patient_id=patient_id,
            diagnosis_date=self._next_diagnosis_date(patient_id),
            stage_at_diagnosis=classify_stage(current.function_marker_value),
            detection_trigger=trigger,
            previous_status=state,
            previous_priority=previous.priority if previous else None,
            function_marker_value=current.function_marker_value,
            damage_marker_value=current.damage_marker_value,
        ))
        action = self._upsert_confirmation_action(event, correlation_id, current.priority)

        if not created:
            logger.debug("diagnosis_detection_suppressed", patient_id=patient_id, event_id=event.event_id)
            return DiagnosisEvaluation(DiagnosisState.PENDING_CONFIRMATION, event=event, action=action)

        logger.info(
            "diagnosis_detected",
            patient_id=patient_id,
            event_id=event.event_id,
            stage=event.stage_at_diagnosis,
            trigger=trigger.value,
            previous_status=state.value,
        )
        self._audit.record(
            AuditEventType.DIAGNOSIS_DETECTED,
            patient_id=patient_id,
            target_entity=event.event_id,
            correlation_id=correlation_id,
            stage=event.stage_at_diagnosis,
            trigger=trigger.value,
            function_marker_value=event.function_marker_value,
            damage_marker_value=event.damage_marker_value,
        )
        self._dispatch(compose_diagnosis_detected(
            event, action, self._settings.notification_target_role
        ))
        return DiagnosisEvaluation(
            DiagnosisState.PENDING_CONFIRMATION, event=event, action=action, detected=True
        )

    def _new_evidence_since_decline(
        self,
        patient_id: str,
        current: RiskHistoryEntry,
        trigger: DetectionTrigger,
    ) -> bool:
        """Whether ``current`` justifies reopening after the latest decline.

        The assessment must be recorded after the decline and either cross
        the cutoff again or show a lower function marker than the declined
        event.  Redelivered and reconciliation recomputations of unchanged
        values do not qualify.
        """
        declined = self._store.list_diagnosis_events(patient_id)[0]
        if declined.resolved_at is not None and current.assessed_at <= declined.resolved_at:
            return False
        if trigger == DetectionTrigger.THRESHOLD_CROSS:
            return True
        if declined.function_marker_value is None:
            return True
        return current.function_marker_value < declined.function_marker_value

    def _next_diagnosis_date(self, patient_id: str) -> datetime:
        """Now, nudged past the latest event so the newest event sorts first."""
        now = self._clock()
        events = self._store.list_diagnosis_events(patient_id)
        if events and now <= events[0].diagnosis_date:
            return events[0].diagnosis_date + timedelta(microseconds=1)
        return now

    def _upsert_confirmation_action(
        self,
        event: DiagnosisEvent,
        correlation_id: Optional[str],
        risk_priority: Optional[Priority] = None,
    ) -> ActionQueueItem:
        priority = _MIN_DETECTION_PRIORITY
        if priority_rank(risk_priority) > priority_rank(priority):
            priority = risk_priority
        hours = self._settings.due_windows.confirm_diagnosis_hours
        markers = []
        if event.function_marker_value is not None:
            markers.append(f"function marker {event.function_marker_value:g}")
        if event.damage_marker_value is not None:
            markers.append(f"damage marker {event.damage_marker_value:g}")
        return self._queue.upsert_pending_action(
            patient_id=event.patient_id,
            action_type=ActionType.CONFIRM_DIAGNOSIS,
            related_entity_id=event.event_id,
            priority=priority,
            due_at=self._clock() + timedelta(hours=hours),
            title=f"Confirm diagnosis (stage {event.stage_at_diagnosis})",
            description=(
                f"Criteria met by {event.detection_trigger.value}"
                + (f": {', '.join(markers)}." if markers else ".")
            ),
            correlation_id=correlation_id,
        )

    # -- reviewer decisions --

    def confirm(
        self,
        event_id: str,
        reviewer_id: str,
        note: str = "",
        actor_role: str = "CLINICIAN",
        correlation_id: Optional[str] = None,
    ) -> ConfirmationResult:
        """Confirm an open event and draft its treatment protocol.

        Confirming an already confirmed event only makes sure its protocol
        and approval item exist.

        Raises:
            ConflictError: the event was declined.
        """
        event = self._store.get_diagnosis_event(event_id)
        if event.status == DiagnosisEventStatus.PENDING_CONFIRMATION:
            now = self._clock()
            try:
                event = self._store.transition_diagnosis_event(
                    event_id,
                    expected=DiagnosisEventStatus.PENDING_CONFIRMATION,
                    status=DiagnosisEventStatus.CONFIRMED,
                    confirmed=True,
                    confirmed_at=now,
                    resolved_at=now,
                    resolved_by=reviewer_id,
                    resolution_note=note,
                )
            except ConflictError:
                event = self._store.get_diagnosis_event(event_id)
                if event.status != DiagnosisEventStatus.CONFIRMED:
                    raise
            else:
                logger.info("diagnosis_confirmed", patient_id=event.patient_id, event_id=event_id, reviewer_id=reviewer_id)
                self._audit.record(
                    AuditEventType.DIAGNOSIS_CONFIRMED,
                    patient_id=event.patient_id,
                    target_entity=event_id,
                    actor_id=reviewer_id,
                    actor_role=actor_role,
                    correlation_id=correlation_id,
                    stage=event.stage_at_diagnosis,
                )

        if event.status != DiagnosisEventStatus.CONFIRMED:
            raise ConflictError(
                f"Diagnosis event '{event_id}' is already {event.status.value}.",
                current_status=event.status.value,
            )

        protocol, action = self.propose_treatment(event_id, correlation_id=correlation_id)
        return ConfirmationResult(event, protocol, action)

    def decline(
        self,
        event_id: str,
        reviewer_id: str,
        note: str = "",
        actor_role: str = "CLINICIAN",
        correlation_id: Optional[str] = None,
    ) -> DiagnosisEvent:
        """Close an open event as declined.  The patient becomes re-detectable.

        Declining an already declined event is a no-op.

        Raises:
            ConflictError: the event was confirmed.
        """
        event = self._store.get_diagnosis_event(event_id)
        if event.status == DiagnosisEventStatus.DECLINED:
            return event
        event = self._store.transition_diagnosis_event(
            event_id,
            expected=DiagnosisEventStatus.PENDING_CONFIRMATION,
            status=DiagnosisEventStatus.DECLINED,
            resolved_at=self._clock(),
            resolved_by=reviewer_id,
            resolution_note=note,
        )
        logger.info("diagnosis_declined", patient_id=event.patient_id, event_id=event_id, reviewer_id=reviewer_id)
        self._audit.record(
            AuditEventType.DIAGNOSIS_DECLINED,
            patient_id=event.patient_id,
            target_entity=event_id,
            actor_id=reviewer_id,
            actor_role=actor_role,
            correlation_id=correlation_id,
            reason=note,
        )
        return event

    def propose_treatment(
        self, event_id: str, correlation_id: Optional[str] = None
    ) -> tuple[Optional[TreatmentProtocol], Optional[ActionQueueItem]]:
        """Draft a protocol for a confirmed event, unless one is pending or active.

        Also used to re-propose treatment after a protocol was declined.
        Returns ``(None, None)`` when treatment is already active.
        """
        event = self._store.get_diagnosis_event(event_id)
        if event.status != DiagnosisEventStatus.CONFIRMED:
            raise ConflictError(
                f"Diagnosis event '{event_id}' is {event.status.value}; "
                "treatment can only be proposed for a confirmed diagnosis.",
                current_status=event.status.value,
            )
        existing = self._store.list_protocols(diagnosis_event_id=event_id)
        if any(p.status in (ProtocolStatus.ACTIVE, ProtocolStatus.APPROVED) for p in existing):
            return None, None

        stage = classify_stage(event.function_marker_value)
        protocol, created = self._store.insert_protocol_if_none_pending(TreatmentProtocol(
            diagnosis_event_id=event_id,
            patient_id=event.patient_id,
            protocol_name=f"Early treatment protocol (stage {stage})",
            stage=stage,
            protocol_body=build_protocol_body(
                stage, event.function_marker_value, event.damage_marker_value
            ),
            created_at=self._clock(),
        ))
        action = self._queue.upsert_pending_action(
            patient_id=event.patient_id,
            action_type=ActionType.APPROVE_TREATMENT,
            related_entity_id=protocol.protocol_id,
            priority=_MIN_DETECTION_PRIORITY,
            due_at=self._clock() + timedelta(hours=self._settings.due_windows.approve_treatment_hours),
            title=f"Approve treatment protocol (stage {stage})",
            description=protocol.protocol_name,
            correlation_id=correlation_id,
        )
        if created:
            logger.info(
                "treatment_proposed",
                patient_id=event.patient_id,
                event_id=event_id,
                protocol_id=protocol.protocol_id,
                stage=stage,
            )
            self._audit.record(
                AuditEventType.TREATMENT_PROPOSED,
                patient_id=event.patient_id,
                target_entity=protocol.protocol_id,
                correlation_id=correlation_id,
                diagnosis_event_id=event_id,
                stage=stage,
            )
            self._dispatch(compose_treatment_ready(
                protocol, action, self._settings.notification_target_role
            ))
        return protocol, action

    def approve_protocol(
        self,
        protocol_id: str,
        reviewer_id: str,
        note: str = "",
        actor_role: str = "CLINICIAN",
        correlation_id: Optional[str] = None,
    ) -> TreatmentProtocol:
        """Activate a pending protocol.  Approving an active one is a no-op.

        Raises:
            ConflictError: the protocol was declined.
        """
        protocol = self._store.get_protocol(protocol_id)
        if protocol.status == ProtocolStatus.ACTIVE:
            return protocol
        protocol = self._store.transition_protocol(
            protocol_id,
            expected=ProtocolStatus.PENDING_APPROVAL,
            status=ProtocolStatus.ACTIVE,
            decided_at=self._clock(),
            decided_by=reviewer_id,
            decision_note=note,
        )
        logger.info("treatment_approved", patient_id=protocol.patient_id, protocol_id=protocol_id, reviewer_id=reviewer_id)
        self._audit.record(
            AuditEventType.TREATMENT_APPROVED,
            patient_id=protocol.patient_id,
            target_entity=protocol_id,
            actor_id=reviewer_id,
            actor_role=actor_role,
            correlation_id=correlation_id,
        )
        return protocol

    def decline_protocol(
        self,
        protocol_id: str,
        reviewer_id: str,
        note: str = "",
        actor_role: str = "CLINICIAN",
        correlation_id: Optional[str] = None,
    ) -> TreatmentProtocol:
        """Decline a pending protocol; the patient returns to ``confirmed``.

        Raises:
            ConflictError: the protocol is already active.
        """
        protocol = self._store.get_protocol(protocol_id)
        if protocol.status == ProtocolStatus.DECLINED:
            return protocol
        protocol = self._store.transition_protocol(
            protocol_id,
            expected=ProtocolStatus.PENDING_APPROVAL,
            status=ProtocolStatus.DECLINED,
            decided_at=self._clock(),
            decided_by=reviewer_id,
            decision_note=note,
        )
        logger.info("treatment_declined", patient_id=protocol.patient_id, protocol_id=protocol_id, reviewer_id=reviewer_id)
        self._audit.record(
            AuditEventType.TREATMENT_DECLINED,
            patient_id=protocol.patient_id,
            target_entity=protocol_id,
            actor_id=reviewer_id,
            actor_role=actor_role,
            correlation_id=correlation_id,
            reason=note,
        )
        return protocol

    def _dispatch(self, notification) -> None:
        if self._dispatcher is not None:
            self._dispatcher.dispatch(notification)
