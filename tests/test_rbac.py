"""
Tests for riskwatch.rbac -- reviewer action permissions.
"""

import pytest

from riskwatch import rbac
from riskwatch.models import ActionType, Role
from riskwatch.rbac import (
    check_permission,
    decline_permission_for,
    get_permissions_for_role,
    require_permission,
)


class TestRBAC:
    def test_clinician_can_confirm_and_approve(self):
        assert check_permission(Role.CLINICIAN, rbac.CONFIRM_DIAGNOSIS) is True
        assert check_permission(Role.CLINICIAN, rbac.APPROVE_TREATMENT) is True

    def test_coordinator_cannot_make_diagnosis_decisions(self):
        assert check_permission(Role.CARE_COORDINATOR, rbac.CONFIRM_DIAGNOSIS) is False
        assert check_permission(Role.CARE_COORDINATOR, rbac.APPROVE_TREATMENT) is False

    def test_coordinator_can_decline_escalations_and_change_monitoring(self):
        assert check_permission(Role.CARE_COORDINATOR, rbac.DECLINE_ESCALATION) is True
        assert check_permission(Role.CARE_COORDINATOR, rbac.CHANGE_MONITORING) is True

    def test_audit_readers(self):
        assert check_permission(Role.AUDITOR, rbac.QUERY_AUDIT) is True
        assert check_permission(Role.CLINICIAN, rbac.QUERY_AUDIT) is True
        assert check_permission(Role.CARE_COORDINATOR, rbac.QUERY_AUDIT) is False

    def test_only_system_runs_sweeps(self):
        assert check_permission(Role.SYSTEM, rbac.RUN_SWEEPS) is True
        for role in (Role.CLINICIAN, Role.CARE_COORDINATOR, Role.AUDITOR):
            assert check_permission(role, rbac.RUN_SWEEPS) is False

    def test_unknown_action_denied(self):
        assert check_permission(Role.CLINICIAN, "delete_patient") is False

    def test_require_permission_raises_on_denied(self):
        with pytest.raises(PermissionError, match="AUDITOR"):
            require_permission(Role.AUDITOR, rbac.CONFIRM_DIAGNOSIS)

    def test_require_permission_passes_on_allowed(self):
        require_permission(Role.CLINICIAN, rbac.CHANGE_MONITORING)

    def test_decline_permission_depends_on_item_type(self):
        assert decline_permission_for(ActionType.REVIEW_ESCALATION) == rbac.DECLINE_ESCALATION
        assert decline_permission_for(ActionType.CONFIRM_DIAGNOSIS) == rbac.DECLINE_ACTION
        assert decline_permission_for(ActionType.APPROVE_TREATMENT) == rbac.DECLINE_ACTION

    def test_get_permissions_lists_every_action(self):
        perms = get_permissions_for_role(Role.AUDITOR)
        assert perms[rbac.QUERY_AUDIT] is True
        assert perms[rbac.CONFIRM_DIAGNOSIS] is False
        assert set(perms) == set(get_permissions_for_role(Role.SYSTEM))
