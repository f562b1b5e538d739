"""
Synthetic Scenario: Kidney Function Decline Walkthrough
=======================================================

This script runs the RiskWatch engine end to end on entirely synthetic
data.  No real patient data, PHI, or PII is used.

The scenario follows one synthetic patient whose kidney function declines
over a few days of lab results.

Steps demonstrated:
  1. Load engine settings from YAML
  2. Bind the engine to a SQL store (in-memory SQLite)
  3. Baseline assessment, then the same change delivered twice
  4. Escalation to CRITICAL opens one review item
  5. eGFR crosses the cutoff: diagnosis detected, confirmation requested
  6. Clinician confirms, then approves the drafted treatment protocol
  7. Expiry and reconciliation sweeps
  8. Patient timeline report and audit chain verification

DISCLAIMER: This is a synthetic demonstration.  This software is not a
medical device, and all outputs require review by licensed clinicians.

Usage:
    python -m examples.synthetic_scenario
    # or: python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from riskwatch.config import DEFAULT_SETTINGS, load_settings_from_yaml
from riskwatch.engine import RiskWatchEngine
from riskwatch.listener import parse_change_message
from riskwatch.logging_config import configure_logging
from riskwatch.models import (
    AlertDescriptor,
    ClinicalSnapshot,
    NotificationRequest,
    Priority,
    RiskResult,
    Role,
    priority_rank,
)
from riskwatch.report import generate_patient_timeline
from riskwatch.sql_store import SqlClinicalStore


# ---------------------------------------------------------------------------
# Synthetic collaborators
# ---------------------------------------------------------------------------

class SyntheticRecords:
    """Snapshot assembler backed by a dict of lab values."""

    def __init__(self) -> None:
        self.labs: dict[str, dict[str, float]] = {}

    def load(self, patient_id: str) -> Optional[ClinicalSnapshot]:
        if patient_id not in self.labs:
            return None
        return ClinicalSnapshot(patient_id=patient_id, observations=dict(self.labs[patient_id]))


class SyntheticScorer:
    """Toy rule set: potassium drives acuity, eGFR adds a floor."""

    def compute_risk(self, snapshot: ClinicalSnapshot) -> RiskResult:
        alerts = []
        potassium = snapshot.marker("potassium")
        egfr = snapshot.marker("egfr")

        if potassium is not None and potassium >= 6.0:
            alerts.append(AlertDescriptor(
                code="K_CRITICAL",
                severity=Priority.CRITICAL,
                message=f"Potassium {potassium} mmol/L",
                recommended_action="Repeat potassium and obtain ECG",
            ))
        if egfr is not None and egfr < 60:
            alerts.append(AlertDescriptor(
                code="EGFR_LOW",
                severity=Priority.HIGH,
                message=f"eGFR {egfr} mL/min/1.73m2",
            ))
        if egfr is not None and egfr < 90 and not alerts:
            alerts.append(AlertDescriptor(code="EGFR_BORDERLINE", severity=Priority.MODERATE))

        if not alerts:
            return RiskResult(score=1.0, priority=Priority.LOW)
        worst = max(alerts, key=lambda a: priority_rank(a.severity))
        score = {Priority.MODERATE: 4.0, Priority.HIGH: 7.0, Priority.CRITICAL: 9.5}[worst.severity]
        return RiskResult(score=score, priority=worst.severity, alerts=alerts)


class PrintingChannel:
    def send(self, request: NotificationRequest) -> bool:
        print(f"  [notify -> {request.target_role}] {request.subject}")
        return True


class ScenarioClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _change(patient_id: str, table: str) -> str:
    return json.dumps({"patient_id": patient_id, "mrn": "SYN-0001", "table": table})


def main() -> None:
    configure_logging(level="WARNING", json_output=False)

    _banner("RiskWatch Synthetic Scenario: Kidney Function Decline")
    print("DISCLAIMER: All data in this demo is entirely synthetic.")
    print("This software is not a medical device.\n")

    # ------------------------------------------------------------------
    # Step 1: Settings
    # ------------------------------------------------------------------
    _banner("Step 1: Load Engine Settings")

    settings_yaml = Path(__file__).parent / "engine_settings.yaml"
    if settings_yaml.exists():
        settings = load_settings_from_yaml(settings_yaml)
        print(f"Loaded settings from {settings_yaml.name}")
    else:
        settings = DEFAULT_SETTINGS
        print("Using built-in default settings")
    criteria = settings.diagnostic_criteria
    print(f"  function marker: {criteria.function_marker} < {criteria.function_cutoff:g}")
    print(f"  borderline band: [{criteria.function_cutoff:g}, {criteria.borderline_upper:g})")

    # ------------------------------------------------------------------
    # Step 2: Engine
    # ------------------------------------------------------------------
    _banner("Step 2: Start Engine on SQL Store")

    db = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    clock = ScenarioClock()
    records = SyntheticRecords()
    engine = RiskWatchEngine(
        SqlClinicalStore(db),
        records,
        SyntheticScorer(),
        channel=PrintingChannel(),
        settings=settings,
        clock=clock,
    )
    patient = "syn-patient-001"
    print(f"Engine ready.  Synthetic patient: {patient}")

    # ------------------------------------------------------------------
    # Step 3: Baseline and duplicate delivery
    # ------------------------------------------------------------------
    _banner("Step 3: Baseline Labs (delivered twice)")

    records.labs[patient] = {"egfr": 68.0, "uacr": 18.0, "potassium": 4.6}
    for _ in range(2):
        result = engine.process(parse_change_message(_change(patient, "observations")))
        print(f"  {result}  priority={result.transition.entry.priority.value}")
    print(f"History entries: {len(engine.queries.risk_history(patient))}")
    print(f"Pending items: {len(engine.queries.list_pending_actions())}")

    # ------------------------------------------------------------------
    # Step 4: Escalation
    # ------------------------------------------------------------------
    _banner("Step 4: Potassium 6.4 -- Escalation")

    clock.advance(days=1)
    records.labs[patient] = {"egfr": 64.0, "uacr": 22.0, "potassium": 6.4}
    result = engine.process(parse_change_message(_change(patient, "observations")))
    engine.dispatcher.drain()
    review = result.transition.action
    print(f"  escalated={result.transition.escalated}  review item: {review.action_id}")
    print(f"  due: {review.due_at.isoformat()}")
    snapshot = engine.queries.risk_snapshot(patient)
    print(f"  monitoring: {snapshot.monitoring_status.value}")

    ack = engine.reviewer.acknowledge_escalation(
        review.action_id, "nurse_synthetic_01", "Repeat K ordered", role=Role.CARE_COORDINATOR
    )
    print(f"  review acknowledged: {ack.action.status.value}")

    # ------------------------------------------------------------------
    # Step 5: Diagnosis detection
    # ------------------------------------------------------------------
    _banner("Step 5: eGFR 52 -- Diagnostic Criteria Met")

    clock.advance(days=1)
    records.labs[patient] = {"egfr": 52.0, "uacr": 48.0, "potassium": 5.1}
    result = engine.process(parse_change_message(_change(patient, "observations")))
    engine.dispatcher.drain()
    evaluation = result.diagnosis
    print(f"  detected={evaluation.detected}  state={evaluation.state.value}")
    print(f"  trigger: {evaluation.event.detection_trigger.value}")
    print(f"  stage: {evaluation.event.stage_at_diagnosis}")
    confirm_item = evaluation.action

    # ------------------------------------------------------------------
    # Step 6: Human gates
    # ------------------------------------------------------------------
    _banner("Step 6: Clinician Confirms and Approves")

    outcome = engine.reviewer.confirm_diagnosis(
        confirm_item.action_id, True, "dr_synthetic_001", "Consistent with CKD G3a A2"
    )
    engine.dispatcher.drain()
    print(f"  diagnosis: {outcome.event.status.value}")
    print(f"  protocol drafted: {outcome.protocol.protocol_name}")
    print(json.dumps(outcome.protocol.protocol_body["medication_orders"], indent=2))

    replay = engine.reviewer.confirm_diagnosis(confirm_item.action_id, True, "dr_synthetic_001")
    print(f"  repeated confirmation replayed={replay.replayed}")

    approved = engine.reviewer.approve_treatment(outcome.follow_up.action_id, True, "dr_synthetic_001")
    print(f"  protocol: {approved.protocol.status.value}")
    print(f"  patient state: {engine.queries.patient_state(patient).value}")

    # ------------------------------------------------------------------
    # Step 7: Sweeps
    # ------------------------------------------------------------------
    _banner("Step 7: Expiry and Reconciliation Sweeps")

    clock.advance(days=10)
    report = engine.run_sweeps()
    print(f"  {report}")
    stats = engine.queries.queue_statistics(now=clock())
    print(f"  pending items: {stats.pending_total}")

    # ------------------------------------------------------------------
    # Step 8: Timeline and audit
    # ------------------------------------------------------------------
    _banner("Step 8: Patient Timeline and Audit Chain")

    timeline = generate_patient_timeline(engine.queries, patient, now=clock())
    print(json.dumps(timeline.to_dict(), indent=2))

    entries = engine.queries.audit_trail(Role.AUDITOR, patient_id=patient)
    print(f"\nAudit entries for {patient}: {len(entries)}")
    valid, broken_at = engine.audit.verify_chain()
    print(f"Chain verification: valid={valid}, broken_at={broken_at}")

    engine.close()

    _banner("Scenario Complete")
    print("All data was synthetic. No real patients, PHI, or PII.")
    print("This software is not a medical device.")


if __name__ == "__main__":
    main()
