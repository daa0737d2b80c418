"""
Tests for role assignment delegation limits.
"""
from unittest.mock import patch

import pytest

from apps.core.exceptions import PermissionDeniedError, ValidationError
from apps.rbac.models import AuditLog
from apps.rbac.services.assignments import MANAGE_ROLES_PERMISSION, RoleAssignmentService


@pytest.fixture
def ladder(make_role, make_permission, grant):
    """Hospital admin (80) who may manage roles, above pharmacist (50) and porter (10)."""
    manage = make_permission(MANAGE_ROLES_PERMISSION, resource='role-permissions', action='manage')
    admin = grant(make_role('hospital-admin', priority=80), manage)
    return {
        'admin': admin,
        'peer': make_role('medical-director', priority=80),
        'pharmacist': make_role('pharmacist', priority=50, parent=admin),
        'porter': make_role('porter', priority=10),
    }


@pytest.mark.django_db
class TestRoleAssignmentService:
    """Assigning roles ranked below the assigner's own."""

    def test_allowed_role_assignments(self, audit, ladder, make_user, super_admin):
        assigner = make_user('Admin', role=ladder['admin'])

        slugs = [r.slug for r in RoleAssignmentService.allowed_role_assignments(assigner)]

        assert slugs == ['pharmacist', 'porter']
        assert len(RoleAssignmentService.allowed_role_assignments(super_admin)) == 5
        assert RoleAssignmentService.allowed_role_assignments(make_user('No Role')) == []

    def test_assign_lower_role(self, audit, ladder, make_user):
        assigner = make_user('Admin', role=ladder['admin'])
        user = make_user('New Pharmacist')

        updated = RoleAssignmentService(audit=audit).assign_role(user, ladder['pharmacist'], assigner)

        assert updated.role == ladder['pharmacist']
        assert updated.role_assigned_at is not None
        entry = AuditLog.objects.get(action='role_assigned')
        assert entry.context['previous_role'] is None
        assert entry.context['role'] == 'pharmacist'

    @patch('apps.rbac.services.assignments.SecurityLogger.log_privilege_escalation')
    def test_equal_priority_refused(self, mock_log, audit, ladder, make_user):
        assigner = make_user('Admin', role=ladder['admin'])
        user = make_user('Pharmacist', role=ladder['pharmacist'])

        with pytest.raises(PermissionDeniedError) as exc:
            RoleAssignmentService(audit=audit).assign_role(user, ladder['peer'], assigner)

        assert exc.value.details['role_priority'] == 80
        mock_log.assert_called_once()
        user.refresh_from_db()
        assert user.role == ladder['pharmacist']

    @patch('apps.rbac.services.assignments.SecurityLogger.log_privilege_escalation')
    def test_self_assignment_refused(self, mock_log, audit, ladder, make_user):
        assigner = make_user('Admin', role=ladder['admin'])

        with pytest.raises(PermissionDeniedError):
            RoleAssignmentService(audit=audit).assign_role(assigner, ladder['porter'], assigner)
        mock_log.assert_called_once()

    def test_assigner_needs_capability(self, audit, ladder, make_user):
        assigner = make_user('Director', role=ladder['peer'])
        user = make_user('Porter')

        with pytest.raises(PermissionDeniedError) as exc:
            RoleAssignmentService(audit=audit).assign_role(user, ladder['porter'], assigner)
        assert exc.value.details['required_permission'] == MANAGE_ROLES_PERMISSION

    def test_super_admin_assigns_anything(self, audit, ladder, make_user, super_admin):
        user = make_user('Future Admin')
        updated = RoleAssignmentService(audit=audit).assign_role(user, ladder['admin'], super_admin)
        assert updated.role == ladder['admin']

    def test_inactive_target_refused(self, audit, ladder, make_user, super_admin):
        user = make_user('Former Porter', is_active=False)
        with pytest.raises(ValidationError):
            RoleAssignmentService(audit=audit).assign_role(user, ladder['porter'], super_admin)
        assert not AuditLog.objects.filter(action='role_assigned').exists()
