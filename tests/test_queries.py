"""
Tests for riskwatch.queries and riskwatch.report -- the read-only surfaces.
"""

from __future__ import annotations

import pytest

from riskwatch.audit import AuditEventType
from riskwatch.models import (
    ActionType,
    ChangeEvent,
    ChangeSource,
    DiagnosisEventStatus,
    Priority,
    ProtocolStatus,
    Role,
)
from riskwatch.report import generate_patient_timeline


def _observe(engine, assembler, scorer, patient_id, priority, **markers):
    assembler.set_markers(patient_id, **markers)
    scorer.set(patient_id, priority)
    return engine.process(ChangeEvent(entity_id=patient_id, source=ChangeSource.OBSERVATION))


class TestPendingQueue:
    def test_critical_first_then_oldest(self, engine, assembler, scorer, clock):
        _observe(engine, assembler, scorer, "p1", Priority.HIGH, egfr=95)
        clock.advance(minutes=1)
        _observe(engine, assembler, scorer, "p2", Priority.CRITICAL, egfr=95)
        clock.advance(minutes=1)
        _observe(engine, assembler, scorer, "p3", Priority.CRITICAL, egfr=95)

        pending = engine.queries.list_pending_actions()
        assert [(i.patient_id, i.priority) for i in pending] == [
            ("p2", Priority.CRITICAL),
            ("p3", Priority.CRITICAL),
            ("p1", Priority.HIGH),
        ]

    def test_filter_by_type(self, engine, assembler, scorer):
        _observe(engine, assembler, scorer, "p1", Priority.CRITICAL, egfr=40)
        confirm = engine.queries.list_pending_actions(action_type=ActionType.CONFIRM_DIAGNOSIS)
        assert [i.patient_id for i in confirm] == ["p1"]


class TestStatistics:
    def test_counts(self, engine, assembler, scorer, clock):
        _observe(engine, assembler, scorer, "p1", Priority.CRITICAL, egfr=40)
        _observe(engine, assembler, scorer, "p2", Priority.MODERATE, egfr=50)
        item = engine.queries.list_pending_actions(action_type=ActionType.CONFIRM_DIAGNOSIS)[0]
        engine.reviewer.confirm_diagnosis(item.action_id, True, "dr_lee")

        stats = engine.queries.queue_statistics(now=clock.advance(hours=30))
        assert stats.pending_by_type == {
            ActionType.REVIEW_ESCALATION: 1,
            ActionType.CONFIRM_DIAGNOSIS: 1,
            ActionType.APPROVE_TREATMENT: 1,
        }
        assert stats.pending_total == 3
        # The CRITICAL review (24h) is overdue; the rest are not.
        assert stats.pending_overdue == 1
        assert stats.diagnosis_events == {
            DiagnosisEventStatus.CONFIRMED: 1,
            DiagnosisEventStatus.PENDING_CONFIRMATION: 1,
        }
        assert stats.protocols == {ProtocolStatus.PENDING_APPROVAL: 1}

    def test_empty(self, engine):
        stats = engine.queries.queue_statistics()
        assert stats.pending_total == 0
        assert stats.pending_by_priority == {}


class TestAuditAccess:
    def test_auditor_reads_patient_trail(self, engine, assembler, scorer):
        _observe(engine, assembler, scorer, "p1", Priority.HIGH, egfr=95)
        _observe(engine, assembler, scorer, "p2", Priority.LOW, egfr=95)
        entries = engine.queries.audit_trail(Role.AUDITOR, patient_id="p1")
        assert entries
        assert {e.patient_id for e in entries} == {"p1"}
        escalations = engine.queries.audit_trail(Role.AUDITOR, event_type=AuditEventType.RISK_ESCALATED)
        assert len(escalations) == 1

    def test_coordinator_denied(self, engine):
        with pytest.raises(PermissionError):
            engine.queries.audit_trail(Role.CARE_COORDINATOR)


class TestTimeline:
    def test_full_pathway(self, engine, assembler, scorer, clock):
        _observe(engine, assembler, scorer, "p1", Priority.MODERATE, egfr=65)
        clock.advance(hours=1)
        _observe(engine, assembler, scorer, "p1", Priority.MODERATE, egfr=64)
        clock.advance(hours=1)
        result = _observe(engine, assembler, scorer, "p1", Priority.HIGH, egfr=52)
        clock.advance(hours=1)
        outcome = engine.reviewer.confirm_diagnosis(result.diagnosis.action.action_id, True, "dr_lee", "agree")

        report = generate_patient_timeline(engine.queries, "p1", now=clock())
        data = report.to_dict()

        assert data["diagnosis_state"] == "treatment_pending_approval"
        assert data["current_priority"] == "HIGH"
        assert data["monitoring_status"] == "active"
        assert data["assessments_recorded"] == 3
        assert data["pending_actions"] == 2
        assert "decision-support" in data["disclaimer"]

        timestamps = [e["timestamp"] for e in data["timeline"]]
        assert timestamps == sorted(timestamps)
        descriptions = " | ".join(e["description"] for e in data["timeline"])
        assert "Risk escalated MODERATE -> HIGH" in descriptions
        assert "Diagnosis confirmed by dr_lee. Notes: agree" in descriptions
        assert f"{outcome.protocol.protocol_name} drafted." in descriptions
        # The unchanged second assessment is counted but not listed.
        assert sum(1 for e in data["timeline"] if e["kind"] == "risk") == 2

    def test_unknown_patient(self, engine):
        data = generate_patient_timeline(engine.queries, "ghost").to_dict()
        assert data["timeline"] == []
        assert data["current_priority"] is None
        assert data["diagnosis_state"] == "not_at_risk"
