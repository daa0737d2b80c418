"""
Tests for the append-only audit trail.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from django.test import TestCase
from django.utils import timezone

from apps.core.exceptions import AuditIntegrityError, ValidationError
from apps.rbac.models import AuditLog, Role, User
from apps.rbac.services.audit import AuditTrail, create_audit_trail


class ProductionAuditTrailTestCase(TestCase):
    """Existing rows cannot change in production."""

    def setUp(self):
        self.audit = AuditTrail(environment='production')
        self.entry = self.audit.append(
            'role_created',
            description='Created pharmacist role',
            context={'role': 'pharmacist'},
        )

    @patch('apps.rbac.services.audit.SecurityLogger.log_audit_tamper_attempt')
    def test_update_refused_and_row_unchanged(self, mock_log):
        with self.assertRaises(AuditIntegrityError):
            self.audit.update_entry(self.entry, description='Nothing happened')

        stored = AuditLog.objects.get(pk=self.entry.pk)
        self.assertEqual(stored.description, 'Created pharmacist role')
        mock_log.assert_called_once_with(self.entry.pk, 'update', 'production')

    @patch('apps.rbac.services.audit.SecurityLogger.log_audit_tamper_attempt')
    def test_delete_refused_and_row_kept(self, mock_log):
        with self.assertRaises(AuditIntegrityError):
            self.audit.delete_entry(self.entry)

        self.assertTrue(AuditLog.objects.filter(pk=self.entry.pk).exists())
        mock_log.assert_called_once_with(self.entry.pk, 'delete', 'production')

    @patch('apps.rbac.services.audit.SecurityLogger.log_audit_tamper_attempt')
    def test_purge_refused(self, mock_log):
        with self.assertRaises(AuditIntegrityError):
            self.audit.purge()
        self.assertEqual(AuditLog.objects.count(), 1)
        mock_log.assert_called_once()

    def test_prod_alias_is_production(self):
        self.assertTrue(AuditTrail(environment='PROD').is_production)
        self.assertFalse(AuditTrail(environment='staging').is_production)

    def test_append_still_allowed(self):
        self.audit.append('role_deleted', description='Removed temp role')
        self.assertEqual(AuditLog.objects.count(), 2)


@pytest.mark.django_db
class TestAuditTrail:
    """Append, guard and cleanup outside production."""

    def test_append_copies_user_identity(self, audit, make_role, make_user):
        role = make_role('pharmacist', priority=40)
        user = make_user('Ada Okafor', role=role)

        entry = audit.append('permission_granted', user=user, severity='warning')

        assert entry.user_id == user.id
        assert entry.user_name == 'Ada Okafor'
        assert entry.user_role == 'pharmacist'
        assert entry.severity == AuditLog.SEVERITY_WARNING

    def test_append_rejects_unknown_severity(self, audit):
        with pytest.raises(ValidationError) as exc:
            audit.append('something', severity='catastrophic')
        assert exc.value.details['severity'] == 'catastrophic'
        assert not AuditLog.objects.exists()

    def test_append_redacts_secrets_in_context(self, audit):
        entry = audit.append('session_started', context={'session_token': 'abc123', 'ip': '10.0.0.1'})
        assert entry.context == {'session_token': '[REDACTED]', 'ip': '10.0.0.1'}

    def test_user_survives_deletion(self, audit, make_user):
        """Rows copy identity, so they outlive the user."""
        user = make_user('Temp Staff')
        entry = audit.append('user_created', user=user)

        User.objects.filter(pk=user.pk).hard_delete()

        entry.refresh_from_db()
        assert entry.user_name == 'Temp Staff'

    def test_update_and_delete_outside_production(self, audit):
        entry = audit.append('role_created', description='before')

        audit.update_entry(entry, description='after')
        assert AuditLog.objects.get(pk=entry.pk).description == 'after'

        audit.delete_entry(entry)
        assert not AuditLog.objects.filter(pk=entry.pk).exists()

    def test_purge_subset(self, audit):
        audit.append('a', module='sessions')
        audit.append('b', module='sessions')
        audit.append('c', module='rbac')

        assert audit.purge(AuditLog.objects.by_module('sessions')) == 2
        assert list(AuditLog.objects.values_list('action', flat=True)) == ['c']

    def test_direct_model_mutation_blocked(self, audit):
        entry = audit.append('role_created')

        entry.description = 'edited'
        with pytest.raises(AuditIntegrityError):
            entry.save()
        with pytest.raises(AuditIntegrityError):
            entry.delete()

    def test_queryset_mutation_blocked(self, audit):
        audit.append('role_created')

        with pytest.raises(AuditIntegrityError):
            AuditLog.objects.all().update(description='edited')
        with pytest.raises(AuditIntegrityError):
            AuditLog.objects.all().delete()
        with pytest.raises(AuditIntegrityError):
            AuditLog.objects.filter(action='role_created').update(severity='critical')
        assert AuditLog.objects.count() == 1
        assert AuditLog.objects.get().severity == AuditLog.SEVERITY_INFO

    def test_queryset_has_no_unguarded_bypass(self):
        queryset = AuditLog.objects.all()
        assert not hasattr(queryset, 'rewrite')
        assert not hasattr(queryset, 'purge')

    def test_manager_queries(self, audit, make_user):
        user = make_user('Auditor')
        audit.append('report_viewed', user=user, module='reports')
        audit.append('four_eyes_violation', severity='critical')
        AuditLog.objects.create(action='ancient', logged_at=timezone.now() - timedelta(days=40))

        assert AuditLog.objects.for_user(user).count() == 1
        assert AuditLog.objects.for_user(user.id).count() == 1
        assert AuditLog.objects.by_module('reports').count() == 1
        assert AuditLog.objects.by_severity('critical').count() == 1
        assert AuditLog.objects.critical().count() == 1
        assert AuditLog.objects.by_action('ancient').count() == 1
        assert AuditLog.objects.recent(days=30).count() == 2

    def test_factory_reads_settings(self, settings):
        settings.DEPLOYMENT_ENVIRONMENT = 'production'
        assert create_audit_trail().is_production
        assert not create_audit_trail('development').is_production

    def test_environment_required(self):
        with pytest.raises(ValueError):
            AuditTrail(environment='')

    def test_role_name_recorded_without_role(self, audit, make_user):
        entry = audit.append('login', user=make_user('No Role'))
        assert entry.user_role == ''
        assert not Role.objects.exists()
