"""
Core data models for the RiskWatch State-Change Orchestrator.

Value objects exchanged with external collaborators (``ChangeEvent``,
``ClinicalSnapshot``, ``RiskResult``) are immutable.  Records owned by the
engine (``PatientRiskSnapshot``, ``RiskHistoryEntry``, ``DiagnosisEvent``,
``TreatmentProtocol``, ``ActionQueueItem``) are mutable only through the
store, and only on their narrow status fields.

DISCLAIMER: Priorities, diagnosis candidates and protocol drafts defined
here are decision-support artifacts.  They require clinician review before
any clinical action is taken.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Priority(str, enum.Enum):
    """Ordered clinical urgency label produced by the risk scorer.

    The total order is ``LOW < MODERATE < HIGH < CRITICAL``; use
    ``priority_rank()`` rather than comparing the string values.
    """

    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class MonitoringStatus(str, enum.Enum):
    """Monitoring status of a patient.

    The engine only ever moves ``inactive`` to ``active``.  Every other
    change is a manual reviewer action.
    """

    INACTIVE = "inactive"
    ACTIVE = "active"
    PAUSED = "paused"


class ChangeSource(str, enum.Enum):
    """Source table of a change notification."""

    PATIENT = "patient"
    OBSERVATION = "observation"
    CONDITION = "condition"


class DetectionTrigger(str, enum.Enum):
    """Which diagnostic criterion produced a diagnosis event.

    * ``THRESHOLD_CROSS``   -- the function marker was at or above the
      cutoff on the previous assessment and is below it now.
    * ``PERSISTENT_MARKER`` -- the function marker is below the cutoff with
      no earlier reading above it, or it sits in the borderline band while
      the damage marker exceeds its threshold.
    """

    THRESHOLD_CROSS = "threshold_cross"
    PERSISTENT_MARKER = "persistent_marker"


class DiagnosisState(str, enum.Enum):
    """Per-patient state of the diagnosis onset state machine."""

    NOT_AT_RISK = "not_at_risk"
    AT_RISK = "at_risk"
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    TREATMENT_PENDING_APPROVAL = "treatment_pending_approval"
    TREATMENT_ACTIVE = "treatment_active"
    DECLINED = "declined"


class DiagnosisEventStatus(str, enum.Enum):
    """Lifecycle of a single diagnosis event.

    An event is *open* while it is ``PENDING_CONFIRMATION``.
    """

    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    DECLINED = "declined"


class ProtocolStatus(str, enum.Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    ACTIVE = "active"
    DECLINED = "declined"


class ActionType(str, enum.Enum):
    """Kinds of work items placed in the clinician action queue."""

    CONFIRM_DIAGNOSIS = "confirm_diagnosis"
    APPROVE_TREATMENT = "approve_treatment"
    REVIEW_ESCALATION = "review_escalation"


class ActionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    DECLINED = "declined"
    EXPIRED = "expired"


class NotificationType(str, enum.Enum):
    RISK_ESCALATION = "risk_escalation"
    RISK_IMPROVEMENT = "risk_improvement"
    DIAGNOSIS_DETECTED = "diagnosis_detected"
    TREATMENT_READY = "treatment_ready"


class Role(str, enum.Enum):
    """Roles used for reviewer action permissions.

    ``SYSTEM`` is the engine itself (sweeps, automated transitions).  The
    other roles are humans acting through the reviewer API.
    """

    CLINICIAN = "CLINICIAN"
    CARE_COORDINATOR = "CARE_COORDINATOR"
    AUDITOR = "AUDITOR"
    SYSTEM = "SYSTEM"


# ---------------------------------------------------------------------------
# Priority ordering
# ---------------------------------------------------------------------------

_PRIORITY_ORDER = {
    Priority.LOW: 0,
    Priority.MODERATE: 1,
    Priority.HIGH: 2,
    Priority.CRITICAL: 3,
}

ELEVATED_PRIORITIES = frozenset({Priority.HIGH, Priority.CRITICAL})


def priority_rank(priority: Optional[Priority]) -> int:
    """Return the position of ``priority`` in the total order.

    ``None`` (never assessed) ranks below ``LOW``.
    """
    if priority is None:
        return -1
    return _PRIORITY_ORDER[priority]


# ---------------------------------------------------------------------------
# Inbound value objects
# ---------------------------------------------------------------------------

_TABLE_TO_SOURCE = {
    "patients": "patient",
    "observations": "observation",
    "conditions": "condition",
}


class ChangeEvent(BaseModel):
    """A change notification for one patient.

    Accepts the wire keys (``entityId``, ``source``, ``occurredAt``) as well
    as the database trigger payload keys (``patient_id``, ``table``,
    ``timestamp``).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    entity_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("entityId", "entity_id", "patient_id"),
    )
    source: ChangeSource = Field(
        ...,
        validation_alias=AliasChoices("source", "table"),
    )
    occurred_at: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("occurredAt", "occurred_at", "timestamp"),
    )
    synthetic: bool = Field(
        default=False,
        description="True when resubmitted by the reconciliation sweep.",
    )

    @field_validator("source", mode="before")
    @classmethod
    def normalize_table_name(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _TABLE_TO_SOURCE.get(v, v)
        return v


class ClinicalSnapshot(BaseModel):
    """Minimal, current clinical data needed to score one patient."""

    model_config = ConfigDict(frozen=True)

    patient_id: str
    observations: dict[str, float] = Field(
        default_factory=dict,
        description="Latest lab/observation values keyed by marker name (e.g. 'egfr', 'uacr').",
    )
    conditions: list[str] = Field(default_factory=list)
    demographics: dict[str, Any] = Field(default_factory=dict)
    captured_at: datetime = Field(default_factory=utcnow)

    def marker(self, name: str) -> Optional[float]:
        return self.observations.get(name)


class AlertDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    severity: Priority = Priority.MODERATE
    message: str = ""
    recommended_action: str = ""


class RiskResult(BaseModel):
    """Output of the external risk scoring function."""

    model_config = ConfigDict(frozen=True)

    score: float
    priority: Priority
    alerts: list[AlertDescriptor] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Engine-owned records
# ---------------------------------------------------------------------------

class PatientRiskSnapshot(BaseModel):
    """Current derived risk state, one row per patient.

    Owned by the Transition Detector.  ``monitoring_status`` is only ever
    raised to ``active`` by the engine; reviewers own every other change.
    """

    patient_id: str
    current_priority: Priority
    current_score: float
    monitoring_status: MonitoringStatus = MonitoringStatus.INACTIVE
    last_assessed_at: datetime
    last_history_sequence: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    monitoring_changed_at: Optional[datetime] = None
    monitoring_changed_by: Optional[str] = None


class RiskHistoryEntry(BaseModel):
    """One accepted recomputation.  Append-only.

    ``sequence`` is contiguous per patient (1, 2, 3, ...) and is the key for
    compare-and-append: two writers deriving from the same previous entry
    cannot both succeed.
    """

    entry_id: str = Field(default_factory=_new_id)
    patient_id: str
    sequence: int = Field(..., ge=1)
    assessed_at: datetime
    priority: Priority
    score: float
    previous_priority: Optional[Priority] = None
    priority_changed: bool = False
    escalated: bool = False
    improved: bool = False
    function_marker_value: Optional[float] = None
    damage_marker_value: Optional[float] = None
    alert_count: int = 0
    monitoring_activated: bool = False
    correlation_id: Optional[str] = None


class DiagnosisEvent(BaseModel):
    """A detected onset of the monitored condition, awaiting or past review."""

    event_id: str = Field(default_factory=_new_id)
    patient_id: str
    diagnosis_date: datetime = Field(default_factory=utcnow)
    stage_at_diagnosis: str
    detection_trigger: DetectionTrigger
    previous_status: DiagnosisState
    previous_priority: Optional[Priority] = None
    status: DiagnosisEventStatus = DiagnosisEventStatus.PENDING_CONFIRMATION
    confirmed: bool = False
    confirmed_at: Optional[datetime] = None
    function_marker_value: Optional[float] = None
    damage_marker_value: Optional[float] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_note: str = ""

    @property
    def is_open(self) -> bool:
        return self.status == DiagnosisEventStatus.PENDING_CONFIRMATION


class TreatmentProtocol(BaseModel):
    """Draft treatment recommendation set for a confirmed diagnosis."""

    protocol_id: str = Field(default_factory=_new_id)
    diagnosis_event_id: str
    patient_id: str
    protocol_name: str
    stage: str
    protocol_body: dict[str, Any] = Field(default_factory=dict)
    status: ProtocolStatus = ProtocolStatus.PENDING_APPROVAL
    created_at: datetime = Field(default_factory=utcnow)
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    decision_note: str = ""


class ActionQueueItem(BaseModel):
    """A durable work item for a human reviewer.

    At most one ``pending`` item exists per ``idempotency_key``.
    """

    action_id: str = Field(default_factory=_new_id)
    patient_id: str
    action_type: ActionType
    related_entity_id: str = Field(
        ...,
        description="Diagnosis event, treatment protocol, or risk history entry this item concerns.",
    )
    priority: Priority
    due_at: datetime
    status: ActionStatus = ActionStatus.PENDING
    title: str = ""
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_note: str = ""
    outcome: Optional[bool] = Field(
        default=None,
        description="The reviewer's decision (True = confirmed/approved).  None until resolved.",
    )

    @property
    def idempotency_key(self) -> tuple[str, ActionType, str]:
        return (self.patient_id, self.action_type, self.related_entity_id)

    def is_terminal(self) -> bool:
        return self.status != ActionStatus.PENDING


class NotificationRequest(BaseModel):
    """A write-once outbound notification, handed to the delivery channel."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=_new_id)
    patient_id: str
    notification_type: NotificationType
    target_role: str
    subject: str
    body: str
    priority: Priority
    source_entity_id: str
    created_at: datetime = Field(default_factory=utcnow)
