"""
Contract tests for the ClinicalStore port.

Every test runs against both the in-memory store and the SQLAlchemy store
(in-memory SQLite), so the two adapters stay interchangeable.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from riskwatch.errors import ConcurrentUpdateError, ConflictError, NotFoundError
from riskwatch.models import (
    ActionQueueItem,
    ActionStatus,
    ActionType,
    DetectionTrigger,
    DiagnosisEvent,
    DiagnosisEventStatus,
    DiagnosisState,
    MonitoringStatus,
    Priority,
    ProtocolStatus,
    RiskHistoryEntry,
    TreatmentProtocol,
)
from riskwatch.sql_store import SqlClinicalStore
from riskwatch.store import InMemoryClinicalStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sql"])
def any_store(request):
    if request.param == "memory":
        return InMemoryClinicalStore()
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    return SqlClinicalStore(engine)


def _make_entry(
    patient_id: str = "p1",
    sequence: int = 1,
    priority: Priority = Priority.LOW,
    minutes: int = 0,
    egfr: float | None = None,
) -> RiskHistoryEntry:
    return RiskHistoryEntry(
        patient_id=patient_id,
        sequence=sequence,
        assessed_at=T0 + timedelta(minutes=minutes),
        priority=priority,
        score=10.0 * sequence,
        function_marker_value=egfr,
    )


def _make_event(patient_id: str = "p1", minutes: int = 0) -> DiagnosisEvent:
    return DiagnosisEvent(
        patient_id=patient_id,
        diagnosis_date=T0 + timedelta(minutes=minutes),
        stage_at_diagnosis="G3a",
        detection_trigger=DetectionTrigger.THRESHOLD_CROSS,
        previous_status=DiagnosisState.AT_RISK,
        function_marker_value=52.0,
    )


def _make_action(
    patient_id: str = "p1",
    action_type: ActionType = ActionType.REVIEW_ESCALATION,
    related: str = "entry-1",
    priority: Priority = Priority.HIGH,
    due_minutes: int = 60,
    created_minutes: int = 0,
) -> ActionQueueItem:
    return ActionQueueItem(
        patient_id=patient_id,
        action_type=action_type,
        related_entity_id=related,
        priority=priority,
        due_at=T0 + timedelta(minutes=due_minutes),
        created_at=T0 + timedelta(minutes=created_minutes),
    )


# ---------------------------------------------------------------------------
# 1. Risk snapshot and history
# ---------------------------------------------------------------------------

class TestRecordAssessment:
    def test_first_assessment_creates_snapshot(self, any_store):
        stored, snapshot = any_store.record_assessment(_make_entry(priority=Priority.MODERATE), False)
        assert stored.sequence == 1
        assert snapshot.current_priority == Priority.MODERATE
        assert snapshot.monitoring_status == MonitoringStatus.INACTIVE
        assert snapshot.last_history_sequence == 1
        assert any_store.get_snapshot("p1").last_assessed_at == T0

    def test_sequence_must_follow_tail(self, any_store):
        any_store.record_assessment(_make_entry(sequence=1), False)
        with pytest.raises(ConcurrentUpdateError):
            any_store.record_assessment(_make_entry(sequence=1, minutes=1), False)
        with pytest.raises(ConcurrentUpdateError):
            any_store.record_assessment(_make_entry(sequence=3, minutes=1), False)
        assert len(any_store.history("p1")) == 1

    def test_lost_race_leaves_snapshot_untouched(self, any_store):
        any_store.record_assessment(_make_entry(sequence=1, priority=Priority.LOW), False)
        with pytest.raises(ConcurrentUpdateError):
            any_store.record_assessment(_make_entry(sequence=1, priority=Priority.CRITICAL), True)
        snapshot = any_store.get_snapshot("p1")
        assert snapshot.current_priority == Priority.LOW
        assert snapshot.monitoring_status == MonitoringStatus.INACTIVE

    def test_activation_only_from_inactive(self, any_store):
        stored, snapshot = any_store.record_assessment(_make_entry(priority=Priority.HIGH), True)
        assert stored.monitoring_activated is True
        assert snapshot.monitoring_status == MonitoringStatus.ACTIVE

        any_store.set_monitoring_status("p1", MonitoringStatus.PAUSED, "dr_lee", T0)
        stored, snapshot = any_store.record_assessment(
            _make_entry(sequence=2, priority=Priority.CRITICAL, minutes=5), True
        )
        assert stored.monitoring_activated is False
        assert snapshot.monitoring_status == MonitoringStatus.PAUSED

    def test_recent_history_newest_first(self, any_store):
        for seq in (1, 2, 3):
            any_store.record_assessment(_make_entry(sequence=seq, minutes=seq, egfr=70.0 - seq), False)
        recent = any_store.recent_history("p1", limit=2)
        assert [e.sequence for e in recent] == [3, 2]
        assert recent[0].function_marker_value == 67.0
        assert [e.sequence for e in any_store.history("p1")] == [1, 2, 3]

    def test_unknown_patient(self, any_store):
        assert any_store.get_snapshot("nobody") is None
        assert any_store.recent_history("nobody") == []

    def test_set_monitoring_status_unknown_patient(self, any_store):
        with pytest.raises(NotFoundError):
            any_store.set_monitoring_status("nobody", MonitoringStatus.ACTIVE, "dr_lee", T0)

    def test_list_stale_patients(self, any_store):
        any_store.record_assessment(_make_entry("old", minutes=0), False)
        any_store.record_assessment(_make_entry("fresh", minutes=30), False)
        assert any_store.list_stale_patients(T0 + timedelta(minutes=10)) == ["old"]


# ---------------------------------------------------------------------------
# 2. Diagnosis events
# ---------------------------------------------------------------------------

class TestDiagnosisEvents:
    def test_at_most_one_open_event(self, any_store):
        first, created = any_store.insert_diagnosis_event_if_none_open(_make_event())
        assert created is True
        second, created = any_store.insert_diagnosis_event_if_none_open(_make_event(minutes=5))
        assert created is False
        assert second.event_id == first.event_id
        assert len(any_store.list_diagnosis_events("p1")) == 1

    def test_closed_event_lifts_guard(self, any_store):
        first, _ = any_store.insert_diagnosis_event_if_none_open(_make_event())
        any_store.transition_diagnosis_event(
            first.event_id,
            expected=DiagnosisEventStatus.PENDING_CONFIRMATION,
            status=DiagnosisEventStatus.DECLINED,
        )
        assert any_store.get_open_diagnosis_event("p1") is None
        second, created = any_store.insert_diagnosis_event_if_none_open(_make_event(minutes=5))
        assert created is True
        assert [e.event_id for e in any_store.list_diagnosis_events("p1")] == [
            second.event_id, first.event_id,
        ]

    def test_transition_requires_expected_status(self, any_store):
        event, _ = any_store.insert_diagnosis_event_if_none_open(_make_event())
        confirmed = any_store.transition_diagnosis_event(
            event.event_id,
            expected=DiagnosisEventStatus.PENDING_CONFIRMATION,
            status=DiagnosisEventStatus.CONFIRMED,
            confirmed=True,
            confirmed_at=T0,
        )
        assert confirmed.confirmed is True
        assert confirmed.confirmed_at == T0
        with pytest.raises(ConflictError):
            any_store.transition_diagnosis_event(
                event.event_id,
                expected=DiagnosisEventStatus.PENDING_CONFIRMATION,
                status=DiagnosisEventStatus.DECLINED,
            )

    def test_unknown_event(self, any_store):
        with pytest.raises(NotFoundError):
            any_store.get_diagnosis_event("missing")
        with pytest.raises(NotFoundError):
            any_store.transition_diagnosis_event(
                "missing", expected=DiagnosisEventStatus.PENDING_CONFIRMATION
            )


# ---------------------------------------------------------------------------
# 3. Treatment protocols
# ---------------------------------------------------------------------------

class TestProtocols:
    def _protocol(self, event_id: str = "event-1") -> TreatmentProtocol:
        return TreatmentProtocol(
            diagnosis_event_id=event_id,
            patient_id="p1",
            protocol_name="Early treatment protocol (stage G3a)",
            stage="G3a",
            protocol_body={"medication_orders": [{"drug_class": "RAS inhibitor"}]},
            created_at=T0,
        )

    def test_one_pending_draft_per_event(self, any_store):
        first, created = any_store.insert_protocol_if_none_pending(self._protocol())
        assert created is True
        second, created = any_store.insert_protocol_if_none_pending(self._protocol())
        assert created is False
        assert second.protocol_id == first.protocol_id
        assert second.protocol_body == {"medication_orders": [{"drug_class": "RAS inhibitor"}]}

    def test_redraft_after_decline(self, any_store):
        first, _ = any_store.insert_protocol_if_none_pending(self._protocol())
        any_store.transition_protocol(
            first.protocol_id,
            expected=ProtocolStatus.PENDING_APPROVAL,
            status=ProtocolStatus.DECLINED,
        )
        _, created = any_store.insert_protocol_if_none_pending(self._protocol())
        assert created is True
        assert len(any_store.list_protocols(diagnosis_event_id="event-1")) == 2

    def test_transition_conflict(self, any_store):
        protocol, _ = any_store.insert_protocol_if_none_pending(self._protocol())
        any_store.transition_protocol(
            protocol.protocol_id, expected=ProtocolStatus.PENDING_APPROVAL, status=ProtocolStatus.ACTIVE
        )
        with pytest.raises(ConflictError):
            any_store.transition_protocol(
                protocol.protocol_id,
                expected=ProtocolStatus.PENDING_APPROVAL,
                status=ProtocolStatus.DECLINED,
            )


# ---------------------------------------------------------------------------
# 4. Action queue
# ---------------------------------------------------------------------------

class TestActionQueue:
    def test_upsert_is_idempotent_on_key(self, any_store):
        first, created = any_store.upsert_pending_action(_make_action())
        assert created is True
        again, created = any_store.upsert_pending_action(_make_action(priority=Priority.CRITICAL))
        assert created is False
        assert again.action_id == first.action_id
        assert again.priority == Priority.HIGH
        assert len(any_store.list_actions(patient_id="p1")) == 1

    def test_different_related_entity_is_new_work(self, any_store):
        any_store.upsert_pending_action(_make_action(related="entry-1"))
        _, created = any_store.upsert_pending_action(_make_action(related="entry-2"))
        assert created is True

    def test_terminal_item_does_not_block_new_pending(self, any_store):
        first, _ = any_store.upsert_pending_action(_make_action())
        any_store.transition_action(first.action_id, expected=ActionStatus.PENDING, status=ActionStatus.EXPIRED)
        fresh, created = any_store.upsert_pending_action(_make_action(created_minutes=5))
        assert created is True
        assert fresh.action_id != first.action_id
        statuses = [a.status for a in any_store.list_actions(patient_id="p1")]
        assert statuses == [ActionStatus.EXPIRED, ActionStatus.PENDING]

    def test_filters(self, any_store):
        any_store.upsert_pending_action(_make_action(related="e1", priority=Priority.HIGH))
        any_store.upsert_pending_action(_make_action(
            related="d1", action_type=ActionType.CONFIRM_DIAGNOSIS, priority=Priority.CRITICAL,
        ))
        any_store.upsert_pending_action(_make_action(patient_id="p2", related="e2"))
        assert len(any_store.list_actions(action_type=ActionType.CONFIRM_DIAGNOSIS)) == 1
        assert len(any_store.list_actions(priority=Priority.HIGH)) == 2
        assert len(any_store.list_actions(patient_id="p2")) == 1
        assert len(any_store.list_actions(related_entity_id="e1")) == 1

    def test_overdue_only_pending_past_due(self, any_store):
        overdue, _ = any_store.upsert_pending_action(_make_action(related="a", due_minutes=10))
        any_store.upsert_pending_action(_make_action(related="b", due_minutes=120))
        resolved, _ = any_store.upsert_pending_action(_make_action(related="c", due_minutes=5))
        any_store.transition_action(resolved.action_id, expected=ActionStatus.PENDING, status=ActionStatus.COMPLETED)
        result = any_store.list_overdue_actions(T0 + timedelta(minutes=60))
        assert [a.action_id for a in result] == [overdue.action_id]

    def test_transition_conflict_carries_status(self, any_store):
        item, _ = any_store.upsert_pending_action(_make_action())
        any_store.transition_action(
            item.action_id,
            expected=ActionStatus.PENDING,
            status=ActionStatus.DECLINED,
            outcome=False,
            resolved_at=T0,
            resolved_by="dr_lee",
        )
        with pytest.raises(ConflictError) as exc:
            any_store.transition_action(item.action_id, expected=ActionStatus.PENDING, status=ActionStatus.COMPLETED)
        assert exc.value.current_status == "declined"
        assert exc.value.action_id == item.action_id
        stored = any_store.get_action(item.action_id)
        assert stored.outcome is False
        assert stored.resolved_by == "dr_lee"

    def test_unknown_action(self, any_store):
        with pytest.raises(NotFoundError):
            any_store.get_action("missing")
