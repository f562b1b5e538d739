"""
Change processing pipeline.

One change event for one patient runs:

    load snapshot -> compute risk -> Transition Detector -> Diagnosis State Machine

Every step re-reads the store, so processing the same event twice, or two
events for the same patient out of order, converges on the same state.

Transient failures (store unavailable, lost history race, scorer down) are
retried with bounded exponential backoff.  An event that exhausts its
attempts is logged as failed and left for the reconciliation sweep.

``RiskWatchEngine`` wires the components to one store and is the object
deployments construct.
"""

from __future__ import annotations

import enum
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from riskwatch.action_queue import ActionQueueManager
from riskwatch.audit import AuditEventType, AuditTrail
from riskwatch.collaborators import DeliveryChannel, RiskScorer, SnapshotAssembler
from riskwatch.config import DEFAULT_SETTINGS, EngineSettings
from riskwatch.diagnosis import DiagnosisEvaluation, DiagnosisStateMachine
from riskwatch.errors import (
    InvariantViolation,
    RiskWatchError,
    TransientStoreError,
    UpstreamScoringError,
)
from riskwatch.models import ActionQueueItem, ChangeEvent, ChangeSource, RiskResult, utcnow
from riskwatch.notifications import NotificationDispatcher
from riskwatch.queries import QueryService
from riskwatch.reviewer import ReviewerActions
from riskwatch.store import ClinicalStore
from riskwatch.transitions import TransitionDetector, TransitionOutcome

logger = structlog.get_logger(__name__)


class ProcessingStatus(str, enum.Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


class ProcessingResult:
    """Outcome of processing one change event."""

    def __init__(
        self,
        event: ChangeEvent,
        status: ProcessingStatus,
        attempts: int = 1,
        transition: Optional[TransitionOutcome] = None,
        diagnosis: Optional[DiagnosisEvaluation] = None,
        error: Optional[str] = None,
    ) -> None:
        self.event = event
        self.status = status
        self.attempts = attempts
        self.transition = transition
        self.diagnosis = diagnosis
        self.error = error

    def __repr__(self) -> str:
        return (
            f"ProcessingResult(patient={self.event.entity_id}, status={self.status.value}, "
            f"attempts={self.attempts})"
        )


class ChangeProcessor:
    """Runs the per-event pipeline with bounded retry."""

    def __init__(
        self,
        assembler: SnapshotAssembler,
        scorer: RiskScorer,
        detector: TransitionDetector,
        diagnosis: DiagnosisStateMachine,
        settings: EngineSettings = DEFAULT_SETTINGS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._assembler = assembler
        self._scorer = scorer
        self._detector = detector
        self._diagnosis = diagnosis
        self._settings = settings
        self._sleep = sleep

    def process(self, event: ChangeEvent, correlation_id: Optional[str] = None) -> ProcessingResult:
        """Process one change event.

        Never raises for transient failures; those come back as a FAILED
        result after the retry budget is spent.

        Raises:
            InvariantViolation: persisted state is corrupt.  Not retried.
        """
        policy = self._settings.retry
        last_error: Optional[RiskWatchError] = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                result = self._process_once(event, correlation_id)
                result.attempts = attempt
                return result
            except InvariantViolation:
                logger.critical(
                    "event_processing_invariant_violation",
                    patient_id=event.entity_id,
                    correlation_id=correlation_id,
                )
                raise
            except (TransientStoreError, UpstreamScoringError) as e:
                last_error = e
                logger.warning(
                    "event_processing_retry",
                    patient_id=event.entity_id,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )

            if attempt < policy.max_attempts:
                self._sleep(policy.backoff_for(attempt))

        logger.error(
            "event_processing_failed",
            patient_id=event.entity_id,
            source=event.source.value,
            attempts=policy.max_attempts,
            error=str(last_error),
            error_type=type(last_error).__name__,
        )
        return ProcessingResult(
            event,
            ProcessingStatus.FAILED,
            attempts=policy.max_attempts,
            error=str(last_error),
        )

    def _process_once(self, event: ChangeEvent, correlation_id: Optional[str]) -> ProcessingResult:
        patient_id = event.entity_id
        try:
            snapshot = self._assembler.load(patient_id)
        except RiskWatchError:
            raise
        except Exception as e:
            raise TransientStoreError(f"Could not load snapshot for patient '{patient_id}': {e}") from e

        if snapshot is None:
            logger.info("event_skipped_unknown_patient", patient_id=patient_id)
            return ProcessingResult(event, ProcessingStatus.SKIPPED)

        result = self._score(patient_id, snapshot)
        transition = self._detector.record(patient_id, result, snapshot, correlation_id)
        diagnosis = self._diagnosis.evaluate(patient_id, correlation_id)

        logger.info(
            "event_processed",
            patient_id=patient_id,
            source=event.source.value,
            synthetic=event.synthetic,
            priority=result.priority.value,
            escalated=transition.escalated,
            diagnosis_state=diagnosis.state.value,
            detected=diagnosis.detected,
        )
        return ProcessingResult(
            event,
            ProcessingStatus.PROCESSED,
            transition=transition,
            diagnosis=diagnosis,
        )

    def _score(self, patient_id: str, snapshot) -> RiskResult:
        try:
            result = self._scorer.compute_risk(snapshot)
        except Exception as e:
            raise UpstreamScoringError(f"Risk scoring failed for patient '{patient_id}': {e}") from e
        if result is None:
            raise UpstreamScoringError(f"Risk scoring returned no result for patient '{patient_id}'")
        return result


class SweepReport:
    """What one sweep pass did."""

    def __init__(
        self,
        expired: Optional[list[ActionQueueItem]] = None,
        reconciled: Optional[list[ProcessingResult]] = None,
    ) -> None:
        self.expired = expired or []
        self.reconciled = reconciled or []

    def __repr__(self) -> str:
        return f"SweepReport(expired={len(self.expired)}, reconciled={len(self.reconciled)})"


class RiskWatchEngine:
    """One engine instance bound to a store and its collaborators.

    Several instances may share a store; every one of them receives every
    change event.
    """

    def __init__(
        self,
        store: ClinicalStore,
        assembler: SnapshotAssembler,
        scorer: RiskScorer,
        channel: Optional[DeliveryChannel] = None,
        settings: EngineSettings = DEFAULT_SETTINGS,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit if audit is not None else AuditTrail(max_entries=settings.audit_max_entries)
        self._clock = clock
        self.dispatcher = NotificationDispatcher(channel) if channel is not None else None
        self.action_queue = ActionQueueManager(store, self.audit, clock)
        self.detector = TransitionDetector(
            store, self.action_queue, self.audit, self.dispatcher, settings, clock
        )
        self.diagnosis = DiagnosisStateMachine(
            store, self.action_queue, self.audit, self.dispatcher, settings, clock
        )
        self.processor = ChangeProcessor(
            assembler, scorer, self.detector, self.diagnosis, settings, sleep
        )
        self.reviewer = ReviewerActions(
            store, self.action_queue, self.diagnosis, self.audit, clock
        )
        self.queries = QueryService(store, self.action_queue, self.diagnosis, self.audit)

    def process(self, event: ChangeEvent, correlation_id: Optional[str] = None) -> ProcessingResult:
        return self.processor.process(event, correlation_id)

    def reconcile(self, now: Optional[datetime] = None) -> list[ProcessingResult]:
        """Resubmit every patient whose last assessment is older than the staleness window.

        Closes the gap left by notifications missed while disconnected.  A
        patient with corrupt state is reported as failed and the sweep moves
        on to the next one.
        """
        now = now or self._clock()
        window = timedelta(seconds=self.settings.listener.staleness_window_seconds)
        stale = self.store.list_stale_patients(now - window)
        results = []
        for patient_id in stale:
            event = ChangeEvent(
                entity_id=patient_id,
                source=ChangeSource.PATIENT,
                occurred_at=now,
                synthetic=True,
            )
            try:
                results.append(self.processor.process(event))
            except InvariantViolation as e:
                logger.critical(
                    "reconciliation_invariant_violation",
                    patient_id=patient_id,
                    error=str(e),
                )
                results.append(ProcessingResult(event, ProcessingStatus.FAILED, error=str(e)))

        logger.info("reconciliation_sweep", stale_patients=len(stale))
        self.audit.record(
            AuditEventType.RECONCILIATION_SWEEP,
            stale_patients=len(stale),
            failed=sum(1 for r in results if r.status == ProcessingStatus.FAILED),
        )
        return results

    def run_sweeps(self, now: Optional[datetime] = None) -> SweepReport:
        """Expiry sweep followed by reconciliation."""
        now = now or self._clock()
        expired = self.action_queue.expire_overdue(now)
        reconciled = self.reconcile(now)
        return SweepReport(expired=expired, reconciled=reconciled)

    def close(self) -> None:
        if self.dispatcher is not None:
            self.dispatcher.close()
