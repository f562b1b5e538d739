"""
Tests for riskwatch.models -- value objects and ordering helpers.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from riskwatch.models import (
    ActionQueueItem,
    ActionStatus,
    ActionType,
    ChangeEvent,
    ChangeSource,
    DetectionTrigger,
    DiagnosisEvent,
    DiagnosisEventStatus,
    DiagnosisState,
    Priority,
    RiskHistoryEntry,
    priority_rank,
)


# ---------------------------------------------------------------------------
# 1. Priority ordering
# ---------------------------------------------------------------------------

class TestPriorityOrdering:
    def test_total_order(self):
        ranks = [priority_rank(p) for p in (Priority.LOW, Priority.MODERATE, Priority.HIGH, Priority.CRITICAL)]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 4

    def test_unassessed_ranks_below_low(self):
        assert priority_rank(None) < priority_rank(Priority.LOW)

    def test_string_values_are_not_the_order(self):
        """Alphabetical order would put CRITICAL first; the rank does not."""
        assert priority_rank(Priority.CRITICAL) > priority_rank(Priority.LOW)


# ---------------------------------------------------------------------------
# 2. Change event parsing
# ---------------------------------------------------------------------------

class TestChangeEvent:
    def test_wire_keys(self):
        event = ChangeEvent.model_validate({
            "entityId": "p1",
            "source": "observation",
            "occurredAt": "2026-03-02T09:00:00Z",
        })
        assert event.entity_id == "p1"
        assert event.source == ChangeSource.OBSERVATION
        assert event.occurred_at == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        assert event.synthetic is False

    def test_trigger_payload_keys_and_plural_table(self):
        event = ChangeEvent.model_validate_json(
            '{"patient_id": "p2", "mrn": "MRN-1", "table": "conditions", '
            '"timestamp": "2026-03-02T10:30:00Z"}'
        )
        assert event.entity_id == "p2"
        assert event.source == ChangeSource.CONDITION

    def test_python_field_names(self):
        event = ChangeEvent(entity_id="p3", source=ChangeSource.PATIENT, synthetic=True)
        assert event.synthetic is True

    def test_unknown_source_rejected(self):
        with pytest.raises(ValidationError):
            ChangeEvent.model_validate({"entityId": "p1", "source": "medications"})

    def test_empty_entity_rejected(self):
        with pytest.raises(ValidationError):
            ChangeEvent.model_validate({"entityId": "", "source": "patient"})

    def test_frozen(self):
        event = ChangeEvent(entity_id="p1", source=ChangeSource.PATIENT)
        with pytest.raises(ValidationError):
            event.entity_id = "p2"


# ---------------------------------------------------------------------------
# 3. Engine-owned records
# ---------------------------------------------------------------------------

class TestRecords:
    def test_history_sequence_starts_at_one(self):
        with pytest.raises(ValidationError):
            RiskHistoryEntry(
                patient_id="p1",
                sequence=0,
                assessed_at=datetime.now(timezone.utc),
                priority=Priority.LOW,
                score=1.0,
            )

    def test_action_idempotency_key(self):
        item = ActionQueueItem(
            patient_id="p1",
            action_type=ActionType.REVIEW_ESCALATION,
            related_entity_id="entry-1",
            priority=Priority.HIGH,
            due_at=datetime.now(timezone.utc),
        )
        assert item.idempotency_key == ("p1", ActionType.REVIEW_ESCALATION, "entry-1")
        assert item.status == ActionStatus.PENDING
        assert not item.is_terminal()

    def test_diagnosis_event_open_only_while_pending(self):
        event = DiagnosisEvent(
            patient_id="p1",
            stage_at_diagnosis="G3a",
            detection_trigger=DetectionTrigger.THRESHOLD_CROSS,
            previous_status=DiagnosisState.AT_RISK,
        )
        assert event.is_open
        declined = event.model_copy(update={"status": DiagnosisEventStatus.DECLINED})
        assert not declined.is_open
