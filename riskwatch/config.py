"""
Engine Settings -- Configuration for the RiskWatch Orchestrator.

Every tunable the engine consults lives here as a validated pydantic model:
diagnostic criteria for onset detection, due windows for clinician work
items, retry and reconnect backoff, and the reconciliation staleness window.
Deployments override the defaults from a YAML file.

Diagnostic defaults follow the chronic kidney disease criteria of the
original deployment (eGFR as the function marker, urine ACR as the damage
marker).  They are configuration, not clinical guidance: a deployment
monitoring a different condition supplies its own marker names and
cut-offs.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from riskwatch.models import Priority


# ---------------------------------------------------------------------------
# Diagnostic criteria
# ---------------------------------------------------------------------------

class DiagnosticCriteria(BaseModel):
    """Thresholds for the diagnosis onset guard.

    The function marker declines with disease (lower is worse).  The
    borderline band is ``[function_cutoff, borderline_upper)``; inside it,
    onset additionally requires the damage marker to exceed
    ``damage_threshold``.
    """

    function_marker: str = Field(
        default="egfr",
        min_length=1,
        description="Observation key of the continuous function marker.",
    )
    damage_marker: str = Field(
        default="uacr",
        min_length=1,
        description="Observation key of the damage marker.",
    )
    function_cutoff: float = Field(
        default=60.0,
        gt=0,
        description="Diagnosis is met when the function marker falls below this value.",
    )
    borderline_upper: float = Field(
        default=90.0,
        gt=0,
        description="Upper (exclusive) bound of the borderline band.",
    )
    damage_threshold: float = Field(
        default=30.0,
        ge=0,
        description="Damage marker value that must be exceeded inside the borderline band.",
    )

    @field_validator("borderline_upper")
    @classmethod
    def borderline_above_cutoff(cls, v: float, info) -> float:
        cutoff = info.data.get("function_cutoff")
        if cutoff is not None and v <= cutoff:
            raise ValueError(
                f"borderline_upper ({v}) must be > function_cutoff ({cutoff})"
            )
        return v


# ---------------------------------------------------------------------------
# Due windows
# ---------------------------------------------------------------------------

class ActionDueWindows(BaseModel):
    """How long a reviewer has before a pending work item expires."""

    confirm_diagnosis_hours: int = Field(default=48, gt=0)
    approve_treatment_hours: int = Field(default=72, gt=0)
    review_escalation_hours: dict[Priority, int] = Field(
        default_factory=lambda: {Priority.CRITICAL: 24, Priority.HIGH: 168},
        description="Due window per escalated priority.  Missing priorities use the default.",
    )
    default_review_escalation_hours: int = Field(default=168, gt=0)

    @field_validator("review_escalation_hours")
    @classmethod
    def windows_positive(cls, v: dict[Priority, int]) -> dict[Priority, int]:
        for priority, hours in v.items():
            if hours <= 0:
                raise ValueError(f"review window for {priority.value} must be > 0")
        return v

    def review_window_for(self, priority: Priority) -> int:
        return self.review_escalation_hours.get(
            priority, self.default_review_escalation_hours
        )


# ---------------------------------------------------------------------------
# Retry and listener settings
# ---------------------------------------------------------------------------

class RetryPolicy(BaseModel):
    """Bounded retry for per-event processing."""

    max_attempts: int = Field(default=3, ge=1)
    initial_backoff_seconds: float = Field(default=0.5, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff_seconds: float = Field(default=5.0, ge=0)

    def backoff_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self.initial_backoff_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_backoff_seconds)


class ListenerSettings(BaseModel):
    """Channel subscription, reconnect and sweep settings."""

    channels: list[str] = Field(
        default_factory=lambda: ["patient_data_updated"],
        min_length=1,
    )
    reconnect_base_seconds: float = Field(default=1.0, gt=0)
    reconnect_cap_seconds: float = Field(default=30.0, gt=0)
    staleness_window_seconds: int = Field(
        default=300,
        gt=0,
        description=(
            "Patients whose last assessment is older than this are resubmitted "
            "by the reconciliation sweep."
        ),
    )
    reconcile_on_start: bool = True
    sweep_interval_seconds: float = Field(default=60.0, gt=0)

    @field_validator("reconnect_cap_seconds")
    @classmethod
    def cap_above_base(cls, v: float, info) -> float:
        base = info.data.get("reconnect_base_seconds")
        if base is not None and v < base:
            raise ValueError(
                f"reconnect_cap_seconds ({v}) must be >= reconnect_base_seconds ({base})"
            )
        return v

    def reconnect_delay(self, attempt: int) -> float:
        """Exponential backoff for reconnect ``attempt`` (1-based), capped."""
        return min(self.reconnect_base_seconds * (2 ** (attempt - 1)), self.reconnect_cap_seconds)


# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------

class EngineSettings(BaseModel):
    """Complete configuration for one engine instance."""

    diagnostic_criteria: DiagnosticCriteria = Field(default_factory=DiagnosticCriteria)
    due_windows: ActionDueWindows = Field(default_factory=ActionDueWindows)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    listener: ListenerSettings = Field(default_factory=ListenerSettings)
    notify_on_improvement: bool = Field(
        default=False,
        description=(
            "Send an informational notification when priority improves.  "
            "Improvements never create action items."
        ),
    )
    notification_target_role: str = Field(default="attending_clinician", min_length=1)
    max_history_conflict_retries: int = Field(default=5, ge=1)
    audit_max_entries: Optional[int] = Field(
        default=100_000,
        gt=0,
        description="Audit entries retained in memory; None keeps every entry.",
    )


DEFAULT_SETTINGS = EngineSettings()
"""Built-in settings used when no YAML file is supplied."""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_settings_from_yaml(path: str | Path) -> EngineSettings:
    """Load engine settings from a YAML file.

    The file must contain a top-level ``engine`` mapping.  Missing keys take
    their defaults::

        engine:
          notify_on_improvement: true
          diagnostic_criteria:
            function_cutoff: 60
          listener:
            staleness_window_seconds: 600

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If a value fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "engine" not in raw:
        raise ValueError("YAML file must contain a top-level 'engine' mapping.")

    engine_data = raw["engine"] or {}
    if not isinstance(engine_data, dict):
        raise ValueError("'engine' must be a mapping of settings.")

    return EngineSettings.model_validate(engine_data)
