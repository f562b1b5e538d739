"""
Notification Dispatcher.

Turns accepted transitions into outbound ``NotificationRequest`` objects and
hands them to the external delivery channel on a worker thread, so state
commits never wait on email/SMS/push.

Delivery failures are logged and **not retried** here.  The durable record
that a clinician must act is the action queue item; a lost notification is
recoverable because the pending item is still in the queue.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Optional

import structlog

from riskwatch.collaborators import DeliveryChannel
from riskwatch.models import (
    ActionQueueItem,
    DiagnosisEvent,
    NotificationRequest,
    NotificationType,
    Priority,
    RiskHistoryEntry,
    RiskResult,
    TreatmentProtocol,
)

logger = structlog.get_logger(__name__)


class NotificationDispatcher:
    """Fire-and-forget dispatch to a ``DeliveryChannel``."""

    def __init__(
        self,
        channel: DeliveryChannel,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self._channel = channel
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="riskwatch-notify"
        )
        self._lock = threading.Lock()
        self._in_flight: set[Future] = set()

    def dispatch(self, request: NotificationRequest) -> bool:
        """Queue ``request`` for delivery.

        Returns True once the request is accepted for delivery.  The
        channel's own accept/reject answer arrives later and is only logged.
        """
        try:
            future = self._executor.submit(self._deliver, request)
        except RuntimeError:
            logger.warning(
                "notification_dropped_shutdown",
                request_id=request.request_id,
                patient_id=request.patient_id,
            )
            return False

        with self._lock:
            self._in_flight.add(future)
        future.add_done_callback(self._forget)
        return True

    def _deliver(self, request: NotificationRequest) -> bool:
        try:
            accepted = self._channel.send(request)
        except Exception as e:
            logger.error(
                "notification_delivery_failed",
                request_id=request.request_id,
                patient_id=request.patient_id,
                notification_type=request.notification_type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        if accepted:
            logger.info(
                "notification_delivered",
                request_id=request.request_id,
                patient_id=request.patient_id,
                notification_type=request.notification_type.value,
                target_role=request.target_role,
            )
        else:
            logger.warning(
                "notification_rejected",
                request_id=request.request_id,
                patient_id=request.patient_id,
                notification_type=request.notification_type.value,
            )
        return bool(accepted)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._in_flight.discard(future)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until every queued delivery has finished."""
        with self._lock:
            pending = list(self._in_flight)
        wait(pending, timeout=timeout)

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)


# ---------------------------------------------------------------------------
# Message composition
# ---------------------------------------------------------------------------

def _format_alerts(result: RiskResult) -> str:
    if not result.alerts:
        return "  (none)"
    return "\n".join(
        f"  {i}. [{a.severity.value}] {a.message}"
        + (f"\n     Action: {a.recommended_action}" if a.recommended_action else "")
        for i, a in enumerate(result.alerts, start=1)
    )


def compose_escalation(
    entry: RiskHistoryEntry,
    result: Optional[RiskResult],
    action: ActionQueueItem,
    target_role: str,
) -> NotificationRequest:
    """Escalation notice for ``entry``.

    ``result`` carries the alert details of the recomputation that produced
    the entry.  Without it (a review re-created after a crash) only the
    alert count stored on the entry is reported.
    """
    previous = entry.previous_priority.value if entry.previous_priority else "Not assessed"
    if result is not None:
        alerts = [f"Alerts ({len(result.alerts)}):", _format_alerts(result)]
    else:
        alerts = [
            f"Alerts ({entry.alert_count}): recorded at {entry.assessed_at.isoformat()}, "
            "details not retained."
        ]
    lines = [
        "Risk State Escalation",
        "",
        f"Patient: {entry.patient_id}",
        f"Previous priority: {previous}",
        f"Current priority: {entry.priority.value}",
        f"Risk score: {entry.score:g}",
        "",
        *alerts,
        "",
        f"Review required by {action.due_at.isoformat()} (action {action.action_id}).",
    ]
    if entry.monitoring_activated:
        lines.insert(6, "Monitoring status: ACTIVE (automatically activated)")
    return NotificationRequest(
        patient_id=entry.patient_id,
        notification_type=NotificationType.RISK_ESCALATION,
        target_role=target_role,
        subject=f"URGENT: patient {entry.patient_id} risk escalated to {entry.priority.value}",
        body="\n".join(lines),
        priority=entry.priority,
        source_entity_id=entry.entry_id,
    )


def compose_improvement(entry: RiskHistoryEntry, target_role: str) -> NotificationRequest:
    previous = entry.previous_priority.value if entry.previous_priority else "Not assessed"
    return NotificationRequest(
        patient_id=entry.patient_id,
        notification_type=NotificationType.RISK_IMPROVEMENT,
        target_role=target_role,
        subject=f"Patient {entry.patient_id} risk improved to {entry.priority.value}",
        body=(
            f"Risk priority changed from {previous} to {entry.priority.value} "
            f"(score {entry.score:g}).  Informational only; no action required."
        ),
        priority=Priority.LOW,
        source_entity_id=entry.entry_id,
    )


def compose_diagnosis_detected(
    event: DiagnosisEvent,
    action: ActionQueueItem,
    target_role: str,
) -> NotificationRequest:
    markers = []
    if event.function_marker_value is not None:
        markers.append(f"  Function marker: {event.function_marker_value:g}")
    if event.damage_marker_value is not None:
        markers.append(f"  Damage marker: {event.damage_marker_value:g}")
    body = "\n".join([
        "Diagnostic Criteria Met",
        "",
        f"Patient: {event.patient_id}",
        f"Stage at detection: {event.stage_at_diagnosis}",
        f"Detection trigger: {event.detection_trigger.value}",
        *markers,
        f"Previous status: {event.previous_status.value}",
        "",
        "Required: confirm or decline the diagnosis in the action queue "
        f"by {action.due_at.isoformat()} (action {action.action_id}).",
        "A treatment protocol is drafted only after confirmation.",
    ])
    return NotificationRequest(
        patient_id=event.patient_id,
        notification_type=NotificationType.DIAGNOSIS_DETECTED,
        target_role=target_role,
        subject=f"NEW: diagnosis criteria met for patient {event.patient_id} (stage {event.stage_at_diagnosis})",
        body=body,
        priority=action.priority,
        source_entity_id=event.event_id,
    )


def compose_treatment_ready(
    protocol: TreatmentProtocol,
    action: ActionQueueItem,
    target_role: str,
) -> NotificationRequest:
    medications = protocol.protocol_body.get("medication_orders", [])
    body = "\n".join([
        f"Treatment protocol drafted: {protocol.protocol_name}",
        "",
        f"Patient: {protocol.patient_id}",
        f"Stage: {protocol.stage}",
        f"Medication orders: {len(medications)}",
        "",
        f"Approve or decline by {action.due_at.isoformat()} (action {action.action_id}).",
    ])
    return NotificationRequest(
        patient_id=protocol.patient_id,
        notification_type=NotificationType.TREATMENT_READY,
        target_role=target_role,
        subject=f"Treatment protocol awaiting approval for patient {protocol.patient_id}",
        body=body,
        priority=action.priority,
        source_entity_id=protocol.protocol_id,
    )
