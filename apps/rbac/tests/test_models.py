"""
Unit tests for RBAC models.

Tests soft delete, managers, validity helpers and database constraints
of Role, Permission, PermissionDependency, TemporaryPermission,
PermissionChangeRequest and PermissionSession.
"""
from datetime import timedelta

import pytest
from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.rbac.models import (
    ChangeRequestStatus, Permission, PermissionChangeRequest, PermissionDependency,
    PermissionSession, Role, RolePermission, TemporaryPermission, User
)


@pytest.mark.django_db
class TestRoleModel:
    """Test Role model functionality."""

    def test_soft_delete(self, make_role):
        role = make_role('porter', priority=10)

        role.delete()

        assert Role.objects.by_slug('porter') is None
        assert Role.objects_with_deleted.get(pk=role.pk).is_deleted

        role.restore()
        assert Role.objects.by_slug('porter') == role

    def test_grants_module(self, make_role):
        nurse = make_role('nurse', priority=20, module_access=['patients'])
        everyone = make_role('auditor', priority=30, module_access=['*'])
        super_admin = make_role('super-admin', priority=100, is_super_admin=True)

        assert nurse.grants_module('patients')
        assert not nurse.grants_module('billing')
        assert everyone.grants_module('billing')
        assert super_admin.grants_module('billing')

    def test_roots_and_system_roles(self, make_role):
        root = make_role('root', priority=100, is_system=True)
        make_role('child', priority=50, parent=root)

        assert list(Role.objects.roots()) == [root]
        assert list(Role.objects.system_roles()) == [root]

    def test_str(self, make_role):
        assert str(make_role('pharmacy-admin', priority=60, name='Pharmacy Admin')) == 'Pharmacy Admin (60)'


@pytest.mark.django_db
class TestPermissionModel:
    """Test Permission model functionality."""

    def test_needs_approval(self, make_permission):
        assert not make_permission('view-reports').needs_approval
        assert make_permission('create-users', requires_approval=True).needs_approval
        assert make_permission('delete-roles', is_critical=True).needs_approval

    def test_by_names_skips_deleted(self, make_permission):
        keep = make_permission('view-reports')
        gone = make_permission('view-billing')
        gone.delete()

        assert list(Permission.objects.by_names(['view-reports', 'view-billing'])) == [keep]

    def test_dependency_self_loop_rejected_by_database(self, make_permission):
        view = make_permission('view-reports')
        with pytest.raises(IntegrityError):
            with transaction.atomic():
                PermissionDependency.objects.create(permission=view, depends_on=view)

    def test_dependency_unique(self, make_permission, depends):
        view = make_permission('view-reports')
        export = make_permission('export-reports')
        depends(export, view)

        with pytest.raises(IntegrityError):
            with transaction.atomic():
                depends(export, view)

    def test_role_permission_grant_idempotent(self, make_role, make_permission):
        role = make_role('clerk', priority=10)
        view = make_permission('view-reports')

        _, created = RolePermission.objects.grant_permission(role, view)
        _, created_again = RolePermission.objects.grant_permission(role, view)

        assert created and not created_again
        assert RolePermission.objects.for_role(role).count() == 1


@pytest.mark.django_db
class TestTemporaryPermissionModel:
    """Test time-bound grant validity."""

    def test_is_valid(self, make_user, make_permission):
        now = timezone.now()
        grant = TemporaryPermission.objects.create(
            user=make_user('Locum'), permission=make_permission('view-theatre'),
            granted_at=now, expires_at=now + timedelta(hours=1),
        )

        assert grant.is_valid(now)
        assert not grant.is_valid(now + timedelta(hours=1))

        grant.is_active = False
        assert not grant.is_valid(now)

    def test_expired_manager(self, make_user, make_permission):
        now = timezone.now()
        user = make_user('Locum')
        stale = TemporaryPermission.objects.create(
            user=user, permission=make_permission('view-theatre'),
            granted_at=now - timedelta(days=1), expires_at=now - timedelta(minutes=5),
        )
        TemporaryPermission.objects.create(
            user=user, permission=make_permission('view-icu'),
            granted_at=now, expires_at=now + timedelta(days=1),
        )

        assert list(TemporaryPermission.objects.expired(now)) == [stale]
        assert TemporaryPermission.objects.active_for(user, now).count() == 1


@pytest.mark.django_db
class TestChangeRequestModel:
    """Test change request validity and transitions."""

    def test_is_valid(self, make_user):
        now = timezone.now()
        request = PermissionChangeRequest.objects.create(
            user=make_user('Target'), requested_by=make_user('Requester'),
            reason='Cover', expires_at=now + timedelta(hours=1),
        )

        assert request.is_valid(now)
        assert not request.is_valid(now + timedelta(hours=2))

        request.expires_at = None
        assert request.is_valid(now + timedelta(days=365))

    def test_can_transition_to(self):
        request = PermissionChangeRequest(status=ChangeRequestStatus.PENDING)
        assert request.can_transition_to(ChangeRequestStatus.APPROVED)

        request.status = ChangeRequestStatus.REJECTED
        assert not request.can_transition_to(ChangeRequestStatus.APPROVED)
        assert not request.can_transition_to(ChangeRequestStatus.PENDING)

    def test_overdue(self, make_user):
        now = timezone.now()
        target, requester = make_user('Target'), make_user('Requester')
        overdue = PermissionChangeRequest.objects.create(
            user=target, requested_by=requester, expires_at=now - timedelta(minutes=1)
        )
        PermissionChangeRequest.objects.create(user=target, requested_by=requester, expires_at=None)

        assert list(PermissionChangeRequest.objects.overdue(now)) == [overdue]


@pytest.mark.django_db
class TestPermissionSessionModel:
    """Test session activity helpers."""

    def test_duration(self, make_user):
        start = timezone.now()
        session = PermissionSession.objects.create(
            user=make_user('Nurse'), session_token='t' * 64, started_at=start, last_activity_at=start,
        )

        assert session.is_active
        assert session.duration_minutes is None

        session.ended_at = start + timedelta(minutes=42, seconds=30)
        assert not session.is_active
        assert session.duration_minutes == 42


@pytest.mark.django_db
class TestUserManager:
    """Test user lookups."""

    def test_by_email_case_insensitive(self, make_user):
        user = make_user('Ward Clerk')
        assert User.objects.by_email('WARD.CLERK@hospital.test') == user
        assert User.objects.by_email('nobody@hospital.test') is None

    def test_active(self, make_user):
        active = make_user('On Shift')
        make_user('Left', is_active=False)
        assert list(User.objects.active()) == [active]
