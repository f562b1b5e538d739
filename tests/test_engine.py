"""
Tests for riskwatch.engine -- the change pipeline, retries and sweeps.
"""

from __future__ import annotations

import pytest

from riskwatch.audit import AuditEventType
from riskwatch.config import EngineSettings, RetryPolicy
from riskwatch.engine import ProcessingStatus, RiskWatchEngine
from riskwatch.errors import InvariantViolation, TransientStoreError
from riskwatch.models import (
    ActionStatus,
    ChangeEvent,
    ChangeSource,
    DetectionTrigger,
    DiagnosisEvent,
    DiagnosisState,
    Priority,
)
from riskwatch.store import InMemoryClinicalStore


def _event(patient_id: str = "p1") -> ChangeEvent:
    return ChangeEvent(entity_id=patient_id, source=ChangeSource.OBSERVATION)


def _make_engine(store, assembler, scorer, clock, sleeps, **settings):
    return RiskWatchEngine(
        store,
        assembler,
        scorer,
        settings=EngineSettings(**settings),
        clock=clock,
        sleep=sleeps.append,
    )


class FlakyStore(InMemoryClinicalStore):
    """Raises TransientStoreError on the first ``failures`` snapshot reads."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def get_snapshot(self, patient_id):
        if self.failures > 0:
            self.failures -= 1
            raise TransientStoreError("connection pool exhausted")
        return super().get_snapshot(patient_id)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TestProcess:
    def test_processed_result(self, engine, assembler, scorer):
        assembler.set_markers("p1", egfr=95.0)
        scorer.set("p1", Priority.HIGH, score=7.0)
        result = engine.process(_event(), correlation_id="corr-1")

        assert result.status == ProcessingStatus.PROCESSED
        assert result.attempts == 1
        assert result.transition.entry.correlation_id == "corr-1"
        assert result.diagnosis.state == DiagnosisState.AT_RISK
        assert result.transition.entry.function_marker_value == 95.0

    def test_unknown_patient_is_skipped(self, engine, scorer):
        result = engine.process(_event("ghost"))
        assert result.status == ProcessingStatus.SKIPPED
        assert scorer.calls == 0
        assert engine.store.get_snapshot("ghost") is None

    def test_wire_payload_keys(self, engine, assembler):
        assembler.set_markers("p1", egfr=95.0)
        event = ChangeEvent.model_validate({
            "entityId": "p1", "source": "conditions", "occurredAt": "2026-03-02T09:00:00Z",
        })
        assert event.source == ChangeSource.CONDITION
        assert engine.process(event).status == ProcessingStatus.PROCESSED


class TestRetry:
    def test_scorer_outage_retried_then_succeeds(self, store, assembler, scorer, clock):
        sleeps = []
        eng = _make_engine(store, assembler, scorer, clock, sleeps)
        assembler.set_markers("p1", egfr=95.0)
        scorer.set("p1", Priority.HIGH)
        scorer.failures_remaining = 2

        result = eng.process(_event())
        assert result.status == ProcessingStatus.PROCESSED
        assert result.attempts == 3
        assert sleeps == [0.5, 1.0]

    def test_exhausted_scorer_leaves_snapshot_untouched(self, store, assembler, scorer, clock):
        sleeps = []
        eng = _make_engine(store, assembler, scorer, clock, sleeps)
        assembler.set_markers("p1", egfr=95.0)
        scorer.set("p1", Priority.LOW)
        eng.process(_event())
        before = store.get_snapshot("p1")

        scorer.set("p1", Priority.CRITICAL)
        scorer.failures_remaining = 10
        result = eng.process(_event())

        assert result.status == ProcessingStatus.FAILED
        assert result.attempts == 3
        assert "scoring" in result.error
        assert store.get_snapshot("p1") == before
        assert len(store.history("p1")) == 1
        assert store.list_actions() == []

    def test_store_outage_retried(self, assembler, scorer, clock):
        sleeps = []
        store = FlakyStore(failures=1)
        eng = _make_engine(store, assembler, scorer, clock, sleeps)
        assembler.set_markers("p1", egfr=95.0)

        result = eng.process(_event())
        assert result.status == ProcessingStatus.PROCESSED
        assert result.attempts == 2
        assert sleeps == [0.5]

    def test_backoff_is_capped(self, store, assembler, scorer, clock):
        sleeps = []
        eng = _make_engine(
            store, assembler, scorer, clock, sleeps,
            retry=RetryPolicy(max_attempts=5, initial_backoff_seconds=1, max_backoff_seconds=3),
        )
        assembler.set_markers("p1", egfr=95.0)
        scorer.failures_remaining = 10
        assert eng.process(_event()).status == ProcessingStatus.FAILED
        assert sleeps == [1, 2, 3, 3]

    def test_assembler_failure_is_transient(self, engine, assembler, monkeypatch):
        def broken(patient_id):
            raise OSError("records service timeout")

        monkeypatch.setattr(assembler, "load", broken)
        result = engine.process(_event())
        assert result.status == ProcessingStatus.FAILED
        assert "records service timeout" in result.error

    def test_invariant_violation_not_retried(self, engine, store, assembler, scorer):
        assembler.set_markers("p1", egfr=50.0)
        for _ in range(2):
            event = DiagnosisEvent(
                patient_id="p1",
                stage_at_diagnosis="G3a",
                detection_trigger=DetectionTrigger.PERSISTENT_MARKER,
                previous_status=DiagnosisState.AT_RISK,
            )
            store._diagnosis_events[event.event_id] = event

        with pytest.raises(InvariantViolation):
            engine.process(_event())
        assert scorer.calls == 1


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------

class TestSweeps:
    def test_reconcile_resubmits_stale_patients(self, engine, assembler, scorer, clock):
        for pid in ("p1", "p2"):
            assembler.set_markers(pid, egfr=95.0)
            engine.process(_event(pid))
        clock.advance(minutes=3)
        assembler.set_markers("p3", egfr=95.0)
        engine.process(_event("p3"))

        clock.advance(minutes=3)
        scorer.set("p1", Priority.CRITICAL)
        results = engine.reconcile()

        assert sorted(r.event.entity_id for r in results) == ["p1", "p2"]
        assert all(r.event.synthetic for r in results)
        assert engine.store.get_snapshot("p1").current_priority == Priority.CRITICAL
        sweeps = engine.audit.query(event_type=AuditEventType.RECONCILIATION_SWEEP)
        assert sweeps[-1].metadata["stale_patients"] == 2

    def test_corrupt_patient_does_not_stop_reconciliation(self, engine, store, assembler, clock):
        for pid in ("a", "b", "c"):
            assembler.set_markers(pid, egfr=95.0)
            engine.process(_event(pid))
        for _ in range(2):
            event = DiagnosisEvent(
                patient_id="a",
                stage_at_diagnosis="G3a",
                detection_trigger=DetectionTrigger.PERSISTENT_MARKER,
                previous_status=DiagnosisState.AT_RISK,
            )
            store._diagnosis_events[event.event_id] = event

        clock.advance(minutes=10)
        results = engine.reconcile()

        statuses = {r.event.entity_id: r.status for r in results}
        assert statuses == {
            "a": ProcessingStatus.FAILED,
            "b": ProcessingStatus.PROCESSED,
            "c": ProcessingStatus.PROCESSED,
        }
        for pid in ("b", "c"):
            assert store.get_snapshot(pid).last_assessed_at == clock()
        sweep = engine.audit.query(event_type=AuditEventType.RECONCILIATION_SWEEP)[-1]
        assert sweep.metadata["failed"] == 1

    def test_reconcile_with_nothing_stale(self, engine):
        assert engine.reconcile() == []

    def test_run_sweeps_expires_then_reconciles(self, engine, assembler, scorer, clock):
        assembler.set_markers("p1", egfr=95.0)
        scorer.set("p1", Priority.CRITICAL)
        first = engine.process(_event())
        review = first.transition.action

        clock.advance(hours=25)
        report = engine.run_sweeps()

        assert [i.action_id for i in report.expired] == [review.action_id]
        assert engine.action_queue.get(review.action_id).status == ActionStatus.EXPIRED
        assert len(report.reconciled) == 1
        # Still CRITICAL: no new escalation, so no new review item.
        assert engine.queries.list_pending_actions() == []
