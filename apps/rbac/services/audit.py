"""
Append-only audit trail.

The deployment environment is handed to ``AuditTrail`` at construction.
In production every attempt to change or remove an existing row is
refused with AuditIntegrityError and reported as a security event.
"""
import logging
from typing import Optional, Dict, Any

from django.conf import settings
from django.db import models

from apps.core.exceptions import AuditIntegrityError, ValidationError
from apps.core.log_sanitizer import sanitize_dict_for_logging
from apps.core.logging import SecurityLogger
from apps.rbac.models import AuditLog

logger = logging.getLogger(__name__)

PRODUCTION_ENVIRONMENTS = frozenset({'production', 'prod'})


class AuditTrail:
    """
    Writes and guards AuditLog rows.

    Example:
        >>> audit = AuditTrail(environment='production')
        >>> entry = audit.append('role_created', description='Created pharmacist role')
        >>> audit.delete_entry(entry)
        Traceback (most recent call last):
        ...
        AuditIntegrityError: Audit entries cannot be deleted in production
    """

    SEVERITIES = {choice for choice, _ in AuditLog.SEVERITY_CHOICES}

    def __init__(self, environment: str):
        if not environment:
            raise ValueError("environment is required")
        self.environment = environment.lower()

    @property
    def is_production(self) -> bool:
        return self.environment in PRODUCTION_ENVIRONMENTS

    def append(
        self,
        action: str,
        description: str = '',
        module: str = 'rbac',
        severity: str = AuditLog.SEVERITY_INFO,
        user=None,
        user_id=None,
        ip_address: Optional[str] = None,
        user_agent: str = '',
        session=None,
        error_details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        request=None,
    ) -> AuditLog:
        """
        Create a new audit row. Always inserts; never touches existing rows.

        Args:
            action: Action identifier (e.g., 'change_request_approved')
            description: Human-readable description
            module: Module the action belongs to
            severity: One of info, warning, error, critical
            user: Acting User instance (identity is copied onto the row)
            user_id: Acting user id when no instance is at hand
            ip_address: Client address
            user_agent: Client user agent
            session: PermissionSession the action happened in
            error_details: Error payload for failed operations
            context: Extra structured context (sanitized before storing)
            request: Django request to pull method, URL, address and agent from

        Returns:
            The created AuditLog row

        Raises:
            ValidationError: If severity is unknown
        """
        if severity not in self.SEVERITIES:
            raise ValidationError(
                f"Unknown audit severity '{severity}'",
                details={'severity': severity, 'allowed': sorted(self.SEVERITIES)}
            )

        log_data = {
            'action': action,
            'description': description or '',
            'module': module or '',
            'severity': severity,
            'ip_address': ip_address or None,
            'user_agent': user_agent or '',
            'error_details': error_details,
            'context': sanitize_dict_for_logging(context or {}),
        }

        if user is not None:
            log_data['user_id'] = user.id
            log_data['user_name'] = user.name
            log_data['user_role'] = user.role.slug if user.role_id else ''
        elif user_id is not None:
            log_data['user_id'] = user_id

        if session is not None:
            log_data['session_id'] = session.id

        if request is not None:
            log_data['ip_address'] = log_data['ip_address'] or self._get_client_ip(request)
            log_data['user_agent'] = log_data['user_agent'] or request.META.get('HTTP_USER_AGENT', '')
            log_data['request_method'] = request.method or ''
            log_data['request_url'] = request.build_absolute_uri()

        try:
            return AuditLog.objects.create(**log_data)
        except Exception:
            logger.error(
                "Failed to write audit log entry",
                extra={'action': action, 'severity': severity},
                exc_info=True
            )
            raise

    def update_entry(self, entry: AuditLog, **changes) -> AuditLog:
        """
        Change fields on an existing row. Refused in production.

        Raises:
            AuditIntegrityError: In production, before anything is modified
        """
        self._guard(entry, 'update')
        for field, value in changes.items():
            setattr(entry, field, value)
        entry.save(allow_mutation=True)
        return entry

    def delete_entry(self, entry: AuditLog) -> None:
        """
        Remove a row, for test cleanup outside production.

        Raises:
            AuditIntegrityError: In production
        """
        self._guard(entry, 'delete')
        entry.delete(allow_mutation=True)

    def purge(self, queryset=None) -> int:
        """Delete many rows at once outside production. Returns the count removed."""
        if self.is_production:
            SecurityLogger.log_audit_tamper_attempt('*', 'purge', self.environment)
            raise AuditIntegrityError(
                "Audit entries cannot be purged in production",
                details={'environment': self.environment}
            )
        queryset = queryset if queryset is not None else AuditLog.objects.all()
        # The append-only queryset refuses delete(); only this guarded path reaches the base one
        deleted, _ = models.QuerySet.delete(queryset)
        logger.info(f"Purged {deleted} audit entries", extra={'environment': self.environment})
        return deleted

    def _guard(self, entry, operation):
        if not self.is_production:
            return
        SecurityLogger.log_audit_tamper_attempt(entry.pk, operation, self.environment)
        verb = 'updated' if operation == 'update' else 'deleted'
        raise AuditIntegrityError(
            f"Audit entries cannot be {verb} in production",
            details={'entry_id': str(entry.pk), 'operation': operation}
        )

    @staticmethod
    def _get_client_ip(request):
        """Extract client IP from request."""
        x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
        if x_forwarded_for:
            return x_forwarded_for.split(',')[0].strip()
        return request.META.get('REMOTE_ADDR')


def create_audit_trail(environment: Optional[str] = None) -> AuditTrail:
    """
    Factory function to create an AuditTrail.

    Args:
        environment: Deployment environment; defaults to settings.DEPLOYMENT_ENVIRONMENT

    Returns:
        AuditTrail instance
    """
    return AuditTrail(environment=environment or settings.DEPLOYMENT_ENVIRONMENT)
