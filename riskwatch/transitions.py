"""
Transition Detector.

Compares a fresh ``RiskResult`` with the patient's last recorded state and
classifies the change.  Every recomputation is recorded, changed or not;
the snapshot is overwritten from the same inputs, so re-running a
recomputation is a re-derivation, never a delta.

**Escalation** (a strictly higher priority than the previous one, or a first
ever assessment at HIGH/CRITICAL) creates a ``review_escalation`` work item
keyed by the new history entry and sends a notification.  **Improvement** is
recorded and audited but never creates work.

Monitoring status is raised from ``inactive`` to ``active`` when the new
priority is HIGH or CRITICAL.  The detector never lowers it.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from riskwatch.action_queue import ActionQueueManager
from riskwatch.audit import AuditEventType, AuditTrail
from riskwatch.config import DEFAULT_SETTINGS, EngineSettings
from riskwatch.errors import ConcurrentUpdateError
from riskwatch.models import (
    ELEVATED_PRIORITIES,
    ActionQueueItem,
    ActionType,
    ClinicalSnapshot,
    NotificationRequest,
    PatientRiskSnapshot,
    Priority,
    RiskHistoryEntry,
    RiskResult,
    priority_rank,
    utcnow,
)
from riskwatch.notifications import NotificationDispatcher, compose_escalation, compose_improvement
from riskwatch.store import ClinicalStore

logger = structlog.get_logger(__name__)


class TransitionOutcome:
    """What one recomputation recorded and produced."""

    def __init__(
        self,
        entry: RiskHistoryEntry,
        snapshot: PatientRiskSnapshot,
        action: Optional[ActionQueueItem] = None,
        notification: Optional[NotificationRequest] = None,
    ) -> None:
        self.entry = entry
        self.snapshot = snapshot
        self.action = action
        self.notification = notification

    @property
    def escalated(self) -> bool:
        return self.entry.escalated

    @property
    def improved(self) -> bool:
        return self.entry.improved

    @property
    def priority_changed(self) -> bool:
        return self.entry.priority_changed

    @property
    def monitoring_activated(self) -> bool:
        return self.entry.monitoring_activated

    def __repr__(self) -> str:
        previous = self.entry.previous_priority.value if self.entry.previous_priority else None
        return (
            f"TransitionOutcome(patient={self.entry.patient_id}, "
            f"{previous}->{self.entry.priority.value}, escalated={self.escalated}, "
            f"improved={self.improved})"
        )


def classify_transition(
    previous: Optional[Priority], new: Priority
) -> tuple[bool, bool, bool]:
    """Return ``(priority_changed, escalated, improved)``.

    A first assessment (``previous is None``) counts as a change; it is an
    escalation only when it lands on HIGH or CRITICAL.
    """
    changed = new != previous
    if previous is None:
        return changed, new in ELEVATED_PRIORITIES, False
    escalated = changed and priority_rank(new) > priority_rank(previous)
    improved = changed and priority_rank(new) < priority_rank(previous)
    return changed, escalated, improved


class TransitionDetector:
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

    def record(
        self,
        patient_id: str,
        result: RiskResult,
        snapshot: Optional[ClinicalSnapshot] = None,
        correlation_id: Optional[str] = None,
    ) -> TransitionOutcome:
        """Record one recomputation for ``patient_id``.

        ``snapshot`` supplies the marker values stored on the history entry
        for the diagnosis onset guard.

        Raises:
            ConcurrentUpdateError: lost the history race on every attempt.
            TransientStoreError: the store is unavailable.
        """
        self._repair_missing_escalation(patient_id, correlation_id)

        criteria = self._settings.diagnostic_criteria
        function_value = snapshot.marker(criteria.function_marker) if snapshot else None
        damage_value = snapshot.marker(criteria.damage_marker) if snapshot else None

        attempts = self._settings.max_history_conflict_retries
        for attempt in range(1, attempts + 1):
            current = self._store.get_snapshot(patient_id)
            previous = current.current_priority if current else None
            changed, escalated, improved = classify_transition(previous, result.priority)

            entry = RiskHistoryEntry(
                patient_id=patient_id,
                sequence=(current.last_history_sequence if current else 0) + 1,
                assessed_at=self._next_assessment_time(current),
                priority=result.priority,
                score=result.score,
                previous_priority=previous,
                priority_changed=changed,
                escalated=escalated,
                improved=improved,
                function_marker_value=function_value,
                damage_marker_value=damage_value,
                alert_count=len(result.alerts),
                correlation_id=correlation_id,
            )
            try:
                stored, updated = self._store.record_assessment(
                    entry, activate_monitoring=result.priority in ELEVATED_PRIORITIES
                )
                break
            except ConcurrentUpdateError:
                logger.warning(
                    "history_append_conflict",
                    patient_id=patient_id,
                    sequence=entry.sequence,
                    attempt=attempt,
                )
        else:
            raise ConcurrentUpdateError(patient_id, entry.sequence)

        logger.info(
            "risk_assessed",
            patient_id=patient_id,
            sequence=stored.sequence,
            previous_priority=previous.value if previous else None,
            priority=stored.priority.value,
            score=stored.score,
            escalated=stored.escalated,
            improved=stored.improved,
        )
        self._audit.record(
            AuditEventType.RISK_ASSESSED,
            patient_id=patient_id,
            target_entity=stored.entry_id,
            correlation_id=correlation_id,
            priority=stored.priority.value,
            previous_priority=previous.value if previous else None,
            score=stored.score,
        )

        outcome = TransitionOutcome(entry=stored, snapshot=updated)

        if stored.monitoring_activated:
            logger.info("monitoring_activated", patient_id=patient_id, priority=stored.priority.value)
            self._audit.record(
                AuditEventType.MONITORING_ACTIVATED,
                patient_id=patient_id,
                target_entity=stored.entry_id,
                correlation_id=correlation_id,
                priority=stored.priority.value,
            )

        if stored.escalated:
            outcome.action, outcome.notification = self._open_escalation_review(
                stored, result, correlation_id
            )
        elif stored.improved:
            self._audit.record(
                AuditEventType.RISK_IMPROVED,
                patient_id=patient_id,
                target_entity=stored.entry_id,
                correlation_id=correlation_id,
                previous_priority=previous.value if previous else None,
                priority=stored.priority.value,
            )
            if self._settings.notify_on_improvement:
                outcome.notification = compose_improvement(
                    stored, self._settings.notification_target_role
                )
                self._dispatch(outcome.notification)

        return outcome

    # -- helpers --

    def _next_assessment_time(self, current: Optional[PatientRiskSnapshot]) -> datetime:
        """Now, nudged forward if needed so history stays strictly ordered."""
        now = self._clock()
        if current is not None and now <= current.last_assessed_at:
            return current.last_assessed_at + timedelta(microseconds=1)
        return now

    def _open_escalation_review(
        self,
        entry: RiskHistoryEntry,
        result: Optional[RiskResult],
        correlation_id: Optional[str],
    ) -> tuple[ActionQueueItem, NotificationRequest]:
        hours = self._settings.due_windows.review_window_for(entry.priority)
        previous = entry.previous_priority.value if entry.previous_priority else "unassessed"
        action = self._queue.upsert_pending_action(
            patient_id=entry.patient_id,
            action_type=ActionType.REVIEW_ESCALATION,
            related_entity_id=entry.entry_id,
            priority=entry.priority,
            due_at=entry.assessed_at + timedelta(hours=hours),
            title=f"Review risk escalation to {entry.priority.value}",
            description=(
                f"Priority changed from {previous} to {entry.priority.value} "
                f"(score {entry.score:g}, {entry.alert_count} alerts)."
            ),
            correlation_id=correlation_id,
        )
        self._audit.record(
            AuditEventType.RISK_ESCALATED,
            patient_id=entry.patient_id,
            target_entity=entry.entry_id,
            correlation_id=correlation_id,
            previous_priority=entry.previous_priority.value if entry.previous_priority else None,
            priority=entry.priority.value,
            action_id=action.action_id,
        )
        notification = compose_escalation(
            entry, result, action, self._settings.notification_target_role
        )
        self._dispatch(notification)
        return action, notification

    def _repair_missing_escalation(
        self,
        patient_id: str,
        correlation_id: Optional[str],
    ) -> None:
        """Create the review item for the latest escalated entry if a crash lost it.

        The history append and the action upsert are separate writes.  If
        processing died between them, the retry sees the escalated priority
        as "unchanged" and would otherwise never open the review.  The
        notification is composed from the stored entry alone, since the
        current recomputation's alerts describe a later assessment.
        """
        latest = self._store.recent_history(patient_id, limit=1)
        if not latest or not latest[0].escalated:
            return
        entry = latest[0]
        existing = self._store.list_actions(
            patient_id=patient_id,
            action_type=ActionType.REVIEW_ESCALATION,
            related_entity_id=entry.entry_id,
        )
        if existing:
            return
        logger.warning("escalation_review_repaired", patient_id=patient_id, entry_id=entry.entry_id)
        self._open_escalation_review(entry, None, correlation_id)

    def _dispatch(self, notification: NotificationRequest) -> None:
        if self._dispatcher is not None:
            self._dispatcher.dispatch(notification)
