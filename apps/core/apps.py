from django.apps import AppConfig
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
import logging
import re

logger = logging.getLogger(__name__)

PRODUCTION_ENVIRONMENTS = ('production', 'prod')


class CoreConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.core'
    verbose_name = 'Core'

    def ready(self):
        """
        Perform startup validation checks when Django initializes.

        The audit trail's behaviour depends on the deployment environment,
        so it and the authorization settings are checked before anything
        else runs.
        """
        # Only run validation once (not in every worker/thread)
        import sys
        if 'runserver' not in sys.argv and 'gunicorn' not in sys.argv[0]:
            # Skip validation for management commands (except runserver)
            # This allows migrations, shell, etc. to run without full config
            if len(sys.argv) > 1 and sys.argv[1] not in ['runserver', 'test']:
                return

        self._validate_environment()
        self._validate_authorization_settings()
        self._validate_security_settings()

        logger.info("✓ All startup validations passed")

    def _validate_environment(self):
        """DEPLOYMENT_ENVIRONMENT decides whether audit rows may ever change."""
        environment = getattr(settings, 'DEPLOYMENT_ENVIRONMENT', '')
        if not environment or not environment.strip():
            raise ImproperlyConfigured(
                "DEPLOYMENT_ENVIRONMENT must be set (e.g. 'production', 'staging', 'development')."
            )
        logger.info(f"✓ Deployment environment: {environment}")

    def _validate_authorization_settings(self):
        """Validate the RBAC_* settings."""
        slug = getattr(settings, 'RBAC_SUPER_ADMIN_SLUG', '')
        if not slug or not re.match(r'^[-a-z0-9_]+$', slug):
            raise ImproperlyConfigured(
                f"RBAC_SUPER_ADMIN_SLUG must be a lowercase slug. Current value: '{slug}'"
            )

        max_days = getattr(settings, 'RBAC_MAX_TEMPORARY_GRANT_DAYS', 30)
        if max_days < 1:
            raise ImproperlyConfigured(
                f"RBAC_MAX_TEMPORARY_GRANT_DAYS must be at least 1. Current value: {max_days}"
            )

        ttl_hours = getattr(settings, 'RBAC_CHANGE_REQUEST_TTL_HOURS', 72)
        if ttl_hours < 0:
            raise ImproperlyConfigured(
                f"RBAC_CHANGE_REQUEST_TTL_HOURS cannot be negative (0 disables expiry). "
                f"Current value: {ttl_hours}"
            )

        if getattr(settings, 'RBAC_AUTHORIZE_INCLUDES_INHERITED', False):
            logger.warning(
                "⚠ RBAC_AUTHORIZE_INCLUDES_INHERITED is enabled. "
                "Authorization will honour grants of every ancestor role."
            )

        logger.info("✓ Authorization settings validated")

    def _validate_security_settings(self):
        """Validate general security settings."""
        secret_key = getattr(settings, 'SECRET_KEY', None)
        environment = (getattr(settings, 'DEPLOYMENT_ENVIRONMENT', '') or '').lower()

        # SECRET_KEY must be set
        if not secret_key:
            raise ImproperlyConfigured(
                "SECRET_KEY must be set in environment variables. "
                "Generate with: "
                "python -c \"import secrets; print(secrets.token_urlsafe(50))\""
            )

        if environment not in PRODUCTION_ENVIRONMENTS:
            return

        if getattr(settings, 'DEBUG', False):
            raise ImproperlyConfigured("DEBUG must be disabled in production.")

        weak_patterns = [
            'your-secret-key',
            'change-me',
            'insecure',
            'django-insecure',
            '12345',
            'password',
        ]

        secret_lower = secret_key.lower()
        for pattern in weak_patterns:
            if pattern in secret_lower:
                raise ImproperlyConfigured(
                    f"SECRET_KEY appears to be a default or weak value (contains '{pattern}'). "
                    f"Generate a strong key with: "
                    f"python -c \"import secrets; print(secrets.token_urlsafe(50))\""
                )

        # Warn about weak SECRET_KEY
        if len(secret_key) < 50:
            logger.warning(
                f"⚠ SECRET_KEY is shorter than recommended (current: {len(secret_key)}, recommended: 50+)."
            )

        if not getattr(settings, 'SENTRY_DSN', None):
            logger.warning(
                "⚠ SENTRY_DSN is not set in production. "
                "Critical security events will only reach the log files."
            )

        logger.info("✓ Security settings validated")
