"""
Pytest configuration and fixtures.
"""
import uuid

import pytest
from django.conf import settings
import django
from django.core.management import call_command


def pytest_configure(config):
    """Configure Django settings for tests."""
    settings.DATABASES['default'] = {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
        'ATOMIC_REQUESTS': False,
    }
    django.setup()


@pytest.fixture(scope='session')
def django_db_setup(django_db_setup, django_db_blocker):
    """Set up test database with migrations."""
    with django_db_blocker.unblock():
        call_command('migrate', '--run-syncdb', verbosity=0)


@pytest.fixture
def make_role(db):
    """Factory for roles written straight to the table (no hierarchy checks)."""
    from apps.rbac.models import Role

    def _make_role(slug=None, priority=50, parent=None, **kwargs):
        slug = slug or f'role-{uuid.uuid4().hex[:8]}'
        kwargs.setdefault('name', slug.replace('-', ' ').title())
        return Role.objects.create(slug=slug, priority=priority, parent_role=parent, **kwargs)

    return _make_role


@pytest.fixture
def make_permission(db):
    """Factory for catalog permissions."""
    from apps.rbac.models import Permission

    def _make_permission(name, **kwargs):
        action, _, resource = name.partition('-')
        kwargs.setdefault('resource', resource or name)
        kwargs.setdefault('action', action)
        kwargs.setdefault('category', 'Test')
        return Permission.objects.create(name=name, **kwargs)

    return _make_permission


@pytest.fixture
def make_user(db):
    """Factory for staff users."""
    from apps.rbac.models import User

    def _make_user(name=None, role=None, **kwargs):
        name = name or f'user-{uuid.uuid4().hex[:8]}'
        kwargs.setdefault('email', f'{name.lower().replace(" ", ".")}@hospital.test')
        return User.objects.create(name=name, role=role, **kwargs)

    return _make_user


@pytest.fixture
def grant(db):
    """Attach permissions to a role."""
    from apps.rbac.models import RolePermission

    def _grant(role, *permissions):
        for permission in permissions:
            RolePermission.objects.grant_permission(role, permission)
        return role

    return _grant


@pytest.fixture
def depends(db):
    """Record a dependency edge without going through the catalog service."""
    from apps.rbac.models import PermissionDependency

    def _depends(permission, depends_on):
        return PermissionDependency.objects.create(permission=permission, depends_on=depends_on)

    return _depends


@pytest.fixture
def audit(db):
    """Audit trail for a non-production deployment."""
    from apps.rbac.services.audit import AuditTrail
    return AuditTrail(environment='test')


@pytest.fixture
def production_audit(db):
    """Audit trail for a production deployment."""
    from apps.rbac.services.audit import AuditTrail
    return AuditTrail(environment='production')


@pytest.fixture
def engine(db):
    """Authorization engine for a non-production deployment."""
    from apps.rbac.services.engine import AuthorizationEngine
    return AuthorizationEngine(environment='test')


@pytest.fixture
def super_admin_role(make_role):
    return make_role('super-admin', priority=100, is_system=True, is_super_admin=True, name='Super Admin')


@pytest.fixture
def super_admin(make_user, super_admin_role):
    return make_user('Super Admin', role=super_admin_role)


@pytest.fixture
def lab_permissions(make_permission, depends):
    """view-laboratory and edit-lab-tests, where editing requires viewing."""
    view = make_permission('view-laboratory', resource='laboratory', segregation_group='laboratory_operations')
    edit = make_permission('edit-lab-tests', resource='lab-tests', segregation_group='laboratory_operations')
    depends(edit, view)
    return {'view': view, 'edit': edit}
