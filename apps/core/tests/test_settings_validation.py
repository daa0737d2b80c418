"""
Tests for startup settings validation.

Validates:
- DEPLOYMENT_ENVIRONMENT presence
- RBAC_* authorization settings
- Production-only security requirements
"""
import pytest
from django.apps import apps
from django.core.exceptions import ImproperlyConfigured
from django.test import override_settings

STRONG_KEY = 'k7Qp2vX9rT4wZ8mN1bH6cJ3fL5sD0gY-aE7uR2iO9pK4xV1nB8qW6tZ3yM5'


@pytest.fixture
def core_config():
    return apps.get_app_config('core')


class TestEnvironmentValidation:
    """DEPLOYMENT_ENVIRONMENT must be set."""

    @pytest.mark.parametrize('value', ['', '   '])
    def test_blank_environment_rejected(self, core_config, value):
        with override_settings(DEPLOYMENT_ENVIRONMENT=value):
            with pytest.raises(ImproperlyConfigured):
                core_config._validate_environment()

    def test_environment_accepted(self, core_config):
        with override_settings(DEPLOYMENT_ENVIRONMENT='staging'):
            core_config._validate_environment()


class TestAuthorizationSettingsValidation:
    """RBAC_* settings must be usable."""

    def test_defaults_pass(self, core_config):
        core_config._validate_authorization_settings()

    @pytest.mark.parametrize('overrides', [
        {'RBAC_SUPER_ADMIN_SLUG': ''},
        {'RBAC_SUPER_ADMIN_SLUG': 'Super Admin'},
        {'RBAC_MAX_TEMPORARY_GRANT_DAYS': 0},
        {'RBAC_CHANGE_REQUEST_TTL_HOURS': -1},
    ])
    def test_invalid_values_rejected(self, core_config, overrides):
        with override_settings(**overrides):
            with pytest.raises(ImproperlyConfigured):
                core_config._validate_authorization_settings()

    def test_zero_ttl_allowed(self, core_config):
        with override_settings(RBAC_CHANGE_REQUEST_TTL_HOURS=0):
            core_config._validate_authorization_settings()


class TestSecuritySettingsValidation:
    """Weak configuration is only fatal in production."""

    def test_development_tolerates_default_key(self, core_config):
        with override_settings(DEPLOYMENT_ENVIRONMENT='development',
                               SECRET_KEY='django-insecure-hms-rbac-development-key'):
            core_config._validate_security_settings()

    def test_production_rejects_default_key(self, core_config):
        with override_settings(DEPLOYMENT_ENVIRONMENT='production', DEBUG=False,
                               SECRET_KEY='django-insecure-hms-rbac-development-key'):
            with pytest.raises(ImproperlyConfigured) as exc:
                core_config._validate_security_settings()
        assert 'insecure' in str(exc.value)

    def test_production_rejects_debug(self, core_config):
        with override_settings(DEPLOYMENT_ENVIRONMENT='prod', DEBUG=True, SECRET_KEY=STRONG_KEY):
            with pytest.raises(ImproperlyConfigured):
                core_config._validate_security_settings()

    def test_production_with_strong_key(self, core_config):
        with override_settings(DEPLOYMENT_ENVIRONMENT='production', DEBUG=False,
                               SECRET_KEY=STRONG_KEY, SENTRY_DSN='https://key@sentry.example/1'):
            core_config._validate_security_settings()
