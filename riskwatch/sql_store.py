"""
SQLAlchemy implementation of the ``ClinicalStore`` port.

Shared by every engine instance pointed at the same database.  The
conditional writes are enforced by the database itself:

* ``risk_history``       -- unique ``(patient_id, sequence)``: compare-and-append.
* ``diagnosis_events``   -- partial unique index on ``patient_id`` where
  ``status = 'pending_confirmation'``: at most one open event.
* ``treatment_protocols`` -- partial unique index on ``diagnosis_event_id``
  where ``status = 'pending_approval'``.
* ``action_queue``       -- partial unique index on ``(patient_id,
  action_type, related_entity_id)`` where ``status = 'pending'``: the
  idempotency key.

An insert that loses a race raises ``IntegrityError``; the transaction is
rolled back and the winning row is read and returned.  Status transitions
are single conditional ``UPDATE ... WHERE status = :expected`` statements.
``OperationalError`` (connection lost, database locked) surfaces as
``TransientStoreError``.

Timestamps are stored in UTC.  Backends without timezone support (SQLite)
return naive values, which are read back as UTC.
"""

from __future__ import annotations

import enum
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from riskwatch.errors import (
    ConcurrentUpdateError,
    ConflictError,
    InvariantViolation,
    NotFoundError,
    TransientStoreError,
)
from riskwatch.models import (
    ActionQueueItem,
    ActionStatus,
    ActionType,
    DiagnosisEvent,
    DiagnosisEventStatus,
    MonitoringStatus,
    PatientRiskSnapshot,
    Priority,
    ProtocolStatus,
    RiskHistoryEntry,
    TreatmentProtocol,
)


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

class SnapshotRow(Base):
    __tablename__ = "patient_risk_snapshots"

    patient_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    current_priority: Mapped[str] = mapped_column(String(16), nullable=False)
    current_score: Mapped[float] = mapped_column(Float, nullable=False)
    monitoring_status: Mapped[str] = mapped_column(String(16), nullable=False)
    last_assessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    last_history_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    monitoring_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    monitoring_changed_by: Mapped[Optional[str]] = mapped_column(String(128))


class HistoryRow(Base):
    __tablename__ = "risk_history"
    __table_args__ = (
        UniqueConstraint("patient_id", "sequence", name="uq_risk_history_sequence"),
    )

    entry_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    assessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    previous_priority: Mapped[Optional[str]] = mapped_column(String(16))
    priority_changed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    escalated: Mapped[bool] = mapped_column(Boolean, nullable=False)
    improved: Mapped[bool] = mapped_column(Boolean, nullable=False)
    function_marker_value: Mapped[Optional[float]] = mapped_column(Float)
    damage_marker_value: Mapped[Optional[float]] = mapped_column(Float)
    alert_count: Mapped[int] = mapped_column(Integer, nullable=False)
    monitoring_activated: Mapped[bool] = mapped_column(Boolean, nullable=False)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(36))


class DiagnosisEventRow(Base):
    __tablename__ = "diagnosis_events"
    __table_args__ = (
        Index(
            "uq_diagnosis_events_open",
            "patient_id",
            unique=True,
            sqlite_where=text("status = 'pending_confirmation'"),
            postgresql_where=text("status = 'pending_confirmation'"),
        ),
    )

    event_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    diagnosis_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    stage_at_diagnosis: Mapped[str] = mapped_column(String(16), nullable=False)
    detection_trigger: Mapped[str] = mapped_column(String(32), nullable=False)
    previous_status: Mapped[str] = mapped_column(String(32), nullable=False)
    previous_priority: Mapped[Optional[str]] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    function_marker_value: Mapped[Optional[float]] = mapped_column(Float)
    damage_marker_value: Mapped[Optional[float]] = mapped_column(Float)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[Optional[str]] = mapped_column(String(128))
    resolution_note: Mapped[str] = mapped_column(Text, nullable=False, default="")


class ProtocolRow(Base):
    __tablename__ = "treatment_protocols"
    __table_args__ = (
        Index(
            "uq_treatment_protocols_pending",
            "diagnosis_event_id",
            unique=True,
            sqlite_where=text("status = 'pending_approval'"),
            postgresql_where=text("status = 'pending_approval'"),
        ),
    )

    protocol_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    diagnosis_event_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    protocol_name: Mapped[str] = mapped_column(String(256), nullable=False)
    stage: Mapped[str] = mapped_column(String(16), nullable=False)
    protocol_body: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    decided_by: Mapped[Optional[str]] = mapped_column(String(128))
    decision_note: Mapped[str] = mapped_column(Text, nullable=False, default="")


class ActionRow(Base):
    __tablename__ = "action_queue"
    __table_args__ = (
        Index(
            "uq_action_queue_pending_key",
            "patient_id",
            "action_type",
            "related_entity_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_action_queue_status_due", "status", "due_at"),
    )

    action_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    related_entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[Optional[str]] = mapped_column(String(128))
    resolution_note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    outcome: Mapped[Optional[bool]] = mapped_column(Boolean)


# ---------------------------------------------------------------------------
# Row <-> model conversion
# ---------------------------------------------------------------------------

def _column_value(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc)
    return value


def _columns(values: dict[str, Any]) -> dict[str, Any]:
    return {k: _column_value(v) for k, v in values.items()}


def _to_row(row_cls, record):
    return row_cls(**_columns(record.model_dump()))


def _to_model(model_cls, row):
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, datetime) and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        data[column.key] = value
    return model_cls.model_validate(data)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SqlClinicalStore:
    """``ClinicalStore`` backed by any SQLAlchemy 2.x engine."""

    def __init__(self, engine: Engine, create_schema: bool = True) -> None:
        self._engine = engine
        self._sessions = sessionmaker(engine, expire_on_commit=False)
        if create_schema:
            Base.metadata.create_all(engine)

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._sessions.begin() as session:
                yield session
        except OperationalError as e:
            raise TransientStoreError(f"Clinical store unavailable: {e.orig}") from e

    # -- risk snapshot and history --

    def get_snapshot(self, patient_id: str) -> Optional[PatientRiskSnapshot]:
        with self._transaction() as s:
            row = s.get(SnapshotRow, patient_id)
            return _to_model(PatientRiskSnapshot, row) if row is not None else None

    def record_assessment(
        self, entry: RiskHistoryEntry, activate_monitoring: bool
    ) -> tuple[RiskHistoryEntry, PatientRiskSnapshot]:
        try:
            with self._transaction() as s:
                tail = s.scalar(
                    select(func.max(HistoryRow.sequence)).where(HistoryRow.patient_id == entry.patient_id)
                ) or 0
                if entry.sequence != tail + 1:
                    raise ConcurrentUpdateError(entry.patient_id, entry.sequence)

                snapshot = s.get(SnapshotRow, entry.patient_id, with_for_update=True)
                activated = activate_monitoring and (
                    snapshot is None or snapshot.monitoring_status == MonitoringStatus.INACTIVE.value
                )
                stored = entry.model_copy(update={"monitoring_activated": activated})
                s.add(_to_row(HistoryRow, stored))

                if snapshot is None:
                    snapshot = _to_row(SnapshotRow, PatientRiskSnapshot(
                        patient_id=entry.patient_id,
                        current_priority=entry.priority,
                        current_score=entry.score,
                        last_assessed_at=entry.assessed_at,
                        last_history_sequence=entry.sequence,
                    ))
                    s.add(snapshot)
                else:
                    snapshot.current_priority = entry.priority.value
                    snapshot.current_score = entry.score
                    snapshot.last_assessed_at = _column_value(entry.assessed_at)
                    snapshot.last_history_sequence = entry.sequence
                if activated:
                    snapshot.monitoring_status = MonitoringStatus.ACTIVE.value
                    snapshot.monitoring_changed_at = _column_value(entry.assessed_at)
                    snapshot.monitoring_changed_by = "SYSTEM"
                s.flush()
                return stored, _to_model(PatientRiskSnapshot, snapshot)
        except IntegrityError as e:
            raise ConcurrentUpdateError(entry.patient_id, entry.sequence) from e

    def recent_history(self, patient_id: str, limit: int = 2) -> list[RiskHistoryEntry]:
        with self._transaction() as s:
            rows = s.scalars(
                select(HistoryRow)
                .where(HistoryRow.patient_id == patient_id)
                .order_by(HistoryRow.sequence.desc())
                .limit(limit)
            ).all()
            return [_to_model(RiskHistoryEntry, r) for r in rows]

    def history(self, patient_id: str) -> list[RiskHistoryEntry]:
        with self._transaction() as s:
            rows = s.scalars(
                select(HistoryRow)
                .where(HistoryRow.patient_id == patient_id)
                .order_by(HistoryRow.sequence)
            ).all()
            return [_to_model(RiskHistoryEntry, r) for r in rows]

    def set_monitoring_status(
        self,
        patient_id: str,
        status: MonitoringStatus,
        changed_by: str,
        changed_at: datetime,
    ) -> PatientRiskSnapshot:
        with self._transaction() as s:
            result = s.execute(
                update(SnapshotRow)
                .where(SnapshotRow.patient_id == patient_id)
                .values(_columns({
                    "monitoring_status": status,
                    "monitoring_changed_at": changed_at,
                    "monitoring_changed_by": changed_by,
                }))
            )
            if result.rowcount == 0:
                raise NotFoundError(f"No risk snapshot for patient '{patient_id}'")
            row = s.get(SnapshotRow, patient_id, populate_existing=True)
            return _to_model(PatientRiskSnapshot, row)

    def list_stale_patients(self, older_than: datetime) -> list[str]:
        with self._transaction() as s:
            return list(s.scalars(
                select(SnapshotRow.patient_id)
                .where(SnapshotRow.last_assessed_at < _column_value(older_than))
                .order_by(SnapshotRow.patient_id)
            ).all())

    # -- diagnosis events --

    def _open_event_rows(self, s: Session, patient_id: str) -> list[DiagnosisEventRow]:
        return list(s.scalars(
            select(DiagnosisEventRow).where(
                DiagnosisEventRow.patient_id == patient_id,
                DiagnosisEventRow.status == DiagnosisEventStatus.PENDING_CONFIRMATION.value,
            )
        ).all())

    def get_open_diagnosis_event(self, patient_id: str) -> Optional[DiagnosisEvent]:
        with self._transaction() as s:
            rows = self._open_event_rows(s, patient_id)
            if len(rows) > 1:
                raise InvariantViolation(
                    f"Patient '{patient_id}' has {len(rows)} open diagnosis events: "
                    f"{sorted(r.event_id for r in rows)}"
                )
            return _to_model(DiagnosisEvent, rows[0]) if rows else None

    def insert_diagnosis_event_if_none_open(
        self, event: DiagnosisEvent
    ) -> tuple[DiagnosisEvent, bool]:
        try:
            with self._transaction() as s:
                rows = self._open_event_rows(s, event.patient_id)
                if rows:
                    return _to_model(DiagnosisEvent, rows[0]), False
                s.add(_to_row(DiagnosisEventRow, event))
                s.flush()
                return event, True
        except IntegrityError:
            existing = self.get_open_diagnosis_event(event.patient_id)
            if existing is None:
                raise TransientStoreError(
                    f"Open diagnosis event for patient '{event.patient_id}' conflicted and then vanished"
                )
            return existing, False

    def get_diagnosis_event(self, event_id: str) -> DiagnosisEvent:
        with self._transaction() as s:
            row = s.get(DiagnosisEventRow, event_id)
            if row is None:
                raise NotFoundError(f"Diagnosis event '{event_id}' not found")
            return _to_model(DiagnosisEvent, row)

    def list_diagnosis_events(self, patient_id: Optional[str] = None) -> list[DiagnosisEvent]:
        stmt = select(DiagnosisEventRow).order_by(DiagnosisEventRow.diagnosis_date.desc())
        if patient_id is not None:
            stmt = stmt.where(DiagnosisEventRow.patient_id == patient_id)
        with self._transaction() as s:
            return [_to_model(DiagnosisEvent, r) for r in s.scalars(stmt).all()]

    def transition_diagnosis_event(
        self, event_id: str, expected: DiagnosisEventStatus, **changes: Any
    ) -> DiagnosisEvent:
        with self._transaction() as s:
            row = self._compare_and_set(
                s, DiagnosisEventRow, DiagnosisEventRow.event_id, event_id, expected, changes
            )
            if row is None:
                current = s.get(DiagnosisEventRow, event_id)
                if current is None:
                    raise NotFoundError(f"Diagnosis event '{event_id}' not found")
                raise ConflictError(
                    f"Diagnosis event '{event_id}' is {current.status}, expected {expected.value}.",
                    current_status=current.status,
                )
            return _to_model(DiagnosisEvent, row)

    # -- treatment protocols --

    def insert_protocol_if_none_pending(
        self, protocol: TreatmentProtocol
    ) -> tuple[TreatmentProtocol, bool]:
        def pending(s: Session) -> Optional[ProtocolRow]:
            return s.scalars(select(ProtocolRow).where(
                ProtocolRow.diagnosis_event_id == protocol.diagnosis_event_id,
                ProtocolRow.status == ProtocolStatus.PENDING_APPROVAL.value,
            )).first()

        try:
            with self._transaction() as s:
                existing = pending(s)
                if existing is not None:
                    return _to_model(TreatmentProtocol, existing), False
                s.add(_to_row(ProtocolRow, protocol))
                s.flush()
                return protocol, True
        except IntegrityError:
            with self._transaction() as s:
                existing = pending(s)
                if existing is None:
                    raise TransientStoreError(
                        f"Pending protocol for event '{protocol.diagnosis_event_id}' "
                        "conflicted and then vanished"
                    )
                return _to_model(TreatmentProtocol, existing), False

    def get_protocol(self, protocol_id: str) -> TreatmentProtocol:
        with self._transaction() as s:
            row = s.get(ProtocolRow, protocol_id)
            if row is None:
                raise NotFoundError(f"Treatment protocol '{protocol_id}' not found")
            return _to_model(TreatmentProtocol, row)

    def list_protocols(
        self,
        patient_id: Optional[str] = None,
        diagnosis_event_id: Optional[str] = None,
    ) -> list[TreatmentProtocol]:
        stmt = select(ProtocolRow).order_by(ProtocolRow.created_at.desc())
        if patient_id is not None:
            stmt = stmt.where(ProtocolRow.patient_id == patient_id)
        if diagnosis_event_id is not None:
            stmt = stmt.where(ProtocolRow.diagnosis_event_id == diagnosis_event_id)
        with self._transaction() as s:
            return [_to_model(TreatmentProtocol, r) for r in s.scalars(stmt).all()]

    def transition_protocol(
        self, protocol_id: str, expected: ProtocolStatus, **changes: Any
    ) -> TreatmentProtocol:
        with self._transaction() as s:
            row = self._compare_and_set(
                s, ProtocolRow, ProtocolRow.protocol_id, protocol_id, expected, changes
            )
            if row is None:
                current = s.get(ProtocolRow, protocol_id)
                if current is None:
                    raise NotFoundError(f"Treatment protocol '{protocol_id}' not found")
                raise ConflictError(
                    f"Treatment protocol '{protocol_id}' is {current.status}, expected {expected.value}.",
                    current_status=current.status,
                )
            return _to_model(TreatmentProtocol, row)

    # -- action queue --

    @staticmethod
    def _pending_action(s: Session, item: ActionQueueItem) -> Optional[ActionRow]:
        return s.scalars(select(ActionRow).where(
            ActionRow.patient_id == item.patient_id,
            ActionRow.action_type == item.action_type.value,
            ActionRow.related_entity_id == item.related_entity_id,
            ActionRow.status == ActionStatus.PENDING.value,
        )).first()

    def upsert_pending_action(self, item: ActionQueueItem) -> tuple[ActionQueueItem, bool]:
        stored = item.model_copy(update={"status": ActionStatus.PENDING})
        try:
            with self._transaction() as s:
                existing = self._pending_action(s, stored)
                if existing is not None:
                    return _to_model(ActionQueueItem, existing), False
                s.add(_to_row(ActionRow, stored))
                s.flush()
                return stored, True
        except IntegrityError:
            with self._transaction() as s:
                existing = self._pending_action(s, stored)
                if existing is None:
                    raise TransientStoreError(
                        f"Pending action {stored.idempotency_key} conflicted and then vanished"
                    )
                return _to_model(ActionQueueItem, existing), False

    def get_action(self, action_id: str) -> ActionQueueItem:
        with self._transaction() as s:
            row = s.get(ActionRow, action_id)
            if row is None:
                raise NotFoundError(f"Action '{action_id}' not found")
            return _to_model(ActionQueueItem, row)

    def list_actions(
        self,
        patient_id: Optional[str] = None,
        status: Optional[ActionStatus] = None,
        action_type: Optional[ActionType] = None,
        priority: Optional[Priority] = None,
        related_entity_id: Optional[str] = None,
    ) -> list[ActionQueueItem]:
        stmt = select(ActionRow).order_by(ActionRow.created_at)
        if patient_id is not None:
            stmt = stmt.where(ActionRow.patient_id == patient_id)
        if status is not None:
            stmt = stmt.where(ActionRow.status == status.value)
        if action_type is not None:
            stmt = stmt.where(ActionRow.action_type == action_type.value)
        if priority is not None:
            stmt = stmt.where(ActionRow.priority == priority.value)
        if related_entity_id is not None:
            stmt = stmt.where(ActionRow.related_entity_id == related_entity_id)
        with self._transaction() as s:
            return [_to_model(ActionQueueItem, r) for r in s.scalars(stmt).all()]

    def list_overdue_actions(self, now: datetime) -> list[ActionQueueItem]:
        with self._transaction() as s:
            rows = s.scalars(
                select(ActionRow)
                .where(
                    ActionRow.status == ActionStatus.PENDING.value,
                    ActionRow.due_at < _column_value(now),
                )
                .order_by(ActionRow.due_at)
            ).all()
            return [_to_model(ActionQueueItem, r) for r in rows]

    def transition_action(
        self, action_id: str, expected: ActionStatus, **changes: Any
    ) -> ActionQueueItem:
        with self._transaction() as s:
            row = self._compare_and_set(
                s, ActionRow, ActionRow.action_id, action_id, expected, changes
            )
            if row is None:
                current = s.get(ActionRow, action_id)
                if current is None:
                    raise NotFoundError(f"Action '{action_id}' not found")
                raise ConflictError(
                    f"Action '{action_id}' is already {current.status}.",
                    action_id=action_id,
                    current_status=current.status,
                )
            return _to_model(ActionQueueItem, row)

    # -- helpers --

    @staticmethod
    def _compare_and_set(s: Session, row_cls, key_column, key: str, expected: enum.Enum, changes: dict[str, Any]):
        """Conditional UPDATE on ``status``; the updated row, or None if nothing matched."""
        result = s.execute(
            update(row_cls)
            .where(key_column == key, row_cls.status == expected.value)
            .values(_columns(changes))
        )
        if result.rowcount == 0:
            return None
        return s.get(row_cls, key, populate_existing=True)
