"""
Role-based permissions for reviewer actions.

Authentication is out of scope: callers assert the actor's role, and this
module only decides whether that role may perform the requested action.

**Roles:**

* CLINICIAN        -- confirms diagnoses, approves treatment, declines any
  work item, acknowledges escalations, changes monitoring status.
* CARE_COORDINATOR -- acknowledges or declines escalation reviews and
  changes monitoring status.  Cannot make diagnosis or treatment decisions.
* AUDITOR          -- read-only access to the queue and the audit trail.
* SYSTEM           -- the engine itself: runs the expiry and
  reconciliation sweeps.
"""

from __future__ import annotations

from riskwatch.models import ActionType, Role

# Permission names
CONFIRM_DIAGNOSIS = "confirm_diagnosis"
APPROVE_TREATMENT = "approve_treatment"
DECLINE_ACTION = "decline_action"
DECLINE_ESCALATION = "decline_escalation"
ACKNOWLEDGE_ESCALATION = "acknowledge_escalation"
CHANGE_MONITORING = "change_monitoring"
VIEW_QUEUE = "view_queue"
QUERY_AUDIT = "query_audit"
RUN_SWEEPS = "run_sweeps"

_PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.CLINICIAN: frozenset({
        CONFIRM_DIAGNOSIS,
        APPROVE_TREATMENT,
        DECLINE_ACTION,
        DECLINE_ESCALATION,
        ACKNOWLEDGE_ESCALATION,
        CHANGE_MONITORING,
        VIEW_QUEUE,
        QUERY_AUDIT,
    }),
    Role.CARE_COORDINATOR: frozenset({
        DECLINE_ESCALATION,
        ACKNOWLEDGE_ESCALATION,
        CHANGE_MONITORING,
        VIEW_QUEUE,
    }),
    Role.AUDITOR: frozenset({
        VIEW_QUEUE,
        QUERY_AUDIT,
    }),
    Role.SYSTEM: frozenset({
        RUN_SWEEPS,
    }),
}


def check_permission(role: Role, action: str) -> bool:
    return action in _PERMISSIONS.get(role, frozenset())


def require_permission(role: Role, action: str) -> None:
    """Raise ``PermissionError`` unless ``role`` may perform ``action``."""
    if not check_permission(role, action):
        raise PermissionError(
            f"Role '{role.value}' is not permitted to perform action '{action}'."
        )


def decline_permission_for(action_type: ActionType) -> str:
    """Permission needed to decline an item of ``action_type``.

    Escalation reviews can be declined by care coordinators; diagnosis and
    treatment items need the broader clinician permission.
    """
    if action_type == ActionType.REVIEW_ESCALATION:
        return DECLINE_ESCALATION
    return DECLINE_ACTION


def get_permissions_for_role(role: Role) -> dict[str, bool]:
    """Every known permission mapped to whether ``role`` holds it."""
    every = frozenset().union(*_PERMISSIONS.values())
    return {action: check_permission(role, action) for action in sorted(every)}
