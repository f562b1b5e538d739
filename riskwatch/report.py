"""
Patient Timeline Report.

A chronological summary of everything the engine recorded for one patient:
risk assessments that changed priority, diagnosis detections and decisions,
treatment protocols, and work items.  Gives the reviewer full context before
confirming a diagnosis or approving treatment.

Unchanged recomputations are counted but left out of the timeline.

DISCLAIMER: Timeline reports are decision-support summaries for clinician
review.  They do not constitute clinical assessments, diagnoses, or
treatment recommendations.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from riskwatch.models import (
    ActionQueueItem,
    DiagnosisEvent,
    RiskHistoryEntry,
    TreatmentProtocol,
    utcnow,
)
from riskwatch.queries import QueryService


class PatientTimelineReport:
    """A structured timeline for clinician review."""

    def __init__(
        self,
        patient_id: str,
        diagnosis_state: str,
        current_priority: Optional[str],
        monitoring_status: Optional[str],
        assessments_recorded: int,
        pending_actions: int,
        timeline: list[dict[str, str]],
        generated_at: str,
    ) -> None:
        self.patient_id = patient_id
        self.diagnosis_state = diagnosis_state
        self.current_priority = current_priority
        self.monitoring_status = monitoring_status
        self.assessments_recorded = assessments_recorded
        self.pending_actions = pending_actions
        self.timeline = timeline
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_type": "Patient State Timeline",
            "disclaimer": (
                "This report is a decision-support summary for clinician review. "
                "It does not constitute a clinical assessment or diagnosis."
            ),
            "patient_id": self.patient_id,
            "diagnosis_state": self.diagnosis_state,
            "current_priority": self.current_priority,
            "monitoring_status": self.monitoring_status,
            "assessments_recorded": self.assessments_recorded,
            "pending_actions": self.pending_actions,
            "timeline": self.timeline,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"PatientTimelineReport(patient_id={self.patient_id}, "
            f"state={self.diagnosis_state}, entries={len(self.timeline)})"
        )


def generate_patient_timeline(
    queries: QueryService,
    patient_id: str,
    now: Optional[datetime] = None,
) -> PatientTimelineReport:
    """Build the timeline report for ``patient_id`` from the store."""
    snapshot = queries.risk_snapshot(patient_id)
    history = queries.risk_history(patient_id)
    events = queries.diagnosis_history(patient_id)
    protocols = queries.protocol_history(patient_id)
    actions = queries.patient_actions(patient_id)

    timeline: list[tuple[datetime, dict[str, str]]] = []
    timeline.extend(_history_entries(history))
    timeline.extend(_diagnosis_entries(events))
    timeline.extend(_protocol_entries(protocols))
    timeline.extend(_action_entries(actions))
    timeline.sort(key=lambda pair: pair[0])

    return PatientTimelineReport(
        patient_id=patient_id,
        diagnosis_state=queries.patient_state(patient_id).value,
        current_priority=snapshot.current_priority.value if snapshot else None,
        monitoring_status=snapshot.monitoring_status.value if snapshot else None,
        assessments_recorded=len(history),
        pending_actions=sum(1 for a in actions if not a.is_terminal()),
        timeline=[entry for _, entry in timeline],
        generated_at=(now or utcnow()).isoformat(),
    )


def _entry(when: datetime, kind: str, description: str) -> tuple[datetime, dict[str, str]]:
    return when, {"timestamp": when.isoformat(), "kind": kind, "description": description}


def _history_entries(history: list[RiskHistoryEntry]):
    for h in history:
        if not h.priority_changed and not h.monitoring_activated:
            continue
        previous = h.previous_priority.value if h.previous_priority else "unassessed"
        if h.escalated:
            text = f"Risk escalated {previous} -> {h.priority.value} (score {h.score:g})."
        elif h.improved:
            text = f"Risk improved {previous} -> {h.priority.value} (score {h.score:g})."
        else:
            text = f"Risk assessed at {h.priority.value} (score {h.score:g})."
        if h.monitoring_activated:
            text += " Monitoring activated."
        yield _entry(h.assessed_at, "risk", text)


def _diagnosis_entries(events: list[DiagnosisEvent]):
    for e in events:
        yield _entry(
            e.diagnosis_date,
            "diagnosis",
            f"Diagnosis criteria met ({e.detection_trigger.value}), stage {e.stage_at_diagnosis}.",
        )
        if e.resolved_at is not None:
            note = f" Notes: {e.resolution_note}" if e.resolution_note else ""
            yield _entry(
                e.resolved_at,
                "diagnosis",
                f"Diagnosis {e.status.value} by {e.resolved_by or 'unknown'}.{note}",
            )


def _protocol_entries(protocols: list[TreatmentProtocol]):
    for p in protocols:
        yield _entry(p.created_at, "treatment", f"{p.protocol_name} drafted.")
        if p.decided_at is not None:
            yield _entry(
                p.decided_at,
                "treatment",
                f"Protocol {p.status.value} by {p.decided_by or 'unknown'}.",
            )


def _action_entries(actions: list[ActionQueueItem]):
    for a in actions:
        yield _entry(
            a.created_at,
            "action",
            f"{a.action_type.value} item opened ({a.priority.value}, due {a.due_at.isoformat()}).",
        )
        if a.resolved_at is not None:
            yield _entry(
                a.resolved_at,
                "action",
                f"{a.action_type.value} item {a.status.value} by {a.resolved_by or 'unknown'}.",
            )
